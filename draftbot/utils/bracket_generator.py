"""
Single-elimination bracket generation.

Teams are shuffled and padded to the next power of two. Padding is spread so
every first-round pairing holds at least one real team: the first
``N - slots/2`` pairings are full matches and the rest are byes. Byes
therefore only ever occur in round 1 of a fresh bracket, and every later
round receives a power-of-two number of winners.
"""

import math
import random
from typing import List, Optional, Sequence

from draftbot.config import Config
from draftbot.data_models.bracket import PlannedMatch
from draftbot.utils.exceptions import InsufficientTeamsError


def elimination_round_count(team_count: int) -> int:
    """R = ceil(log2(N))"""
    if team_count < 2:
        return 0
    return math.ceil(math.log2(team_count))


def bracket_size(team_count: int) -> int:
    """Next power of two at or above team_count"""
    return 2 ** elimination_round_count(team_count)


def build_first_round(
    team_ids: Sequence[int],
    round_number: int = 1,
    rng: Optional[random.Random] = None,
    shuffle: bool = True
) -> List[PlannedMatch]:
    """
    Pair teams into ``slots / 2`` opening matches, giving byes to the remainder.

    Bye matches carry their lone team as winner so promotion can read it
    without a result submission.

    Args:
        team_ids: Teams entering the bracket
        round_number: Round number for the created matches (knockout stages
            that follow a group stage start after the last group)
        rng: Random source for the shuffle
        shuffle: Shuffle before pairing

    Returns:
        Matches numbered from 1 in pairing order
    """
    if len(team_ids) < Config.MIN_ELIMINATION_TEAMS:
        raise InsufficientTeamsError(len(team_ids), Config.MIN_ELIMINATION_TEAMS, "elimination")

    teams = list(team_ids)
    if shuffle:
        (rng or random.Random()).shuffle(teams)

    pairings = bracket_size(len(teams)) // 2
    full_matches = len(teams) - pairings

    matches = []
    cursor = 0
    for index in range(pairings):
        if index < full_matches:
            team1, team2 = teams[cursor], teams[cursor + 1]
            cursor += 2
            matches.append(PlannedMatch(round=round_number, match_number=index + 1,
                                        team1_id=team1, team2_id=team2))
        else:
            lone = teams[cursor]
            cursor += 1
            matches.append(PlannedMatch(round=round_number, match_number=index + 1,
                                        team1_id=lone, winner_id=lone))
    return matches


def pair_in_order(team_ids: Sequence[int], round_number: int) -> List[PlannedMatch]:
    """
    Pair teams by index (0,1), (2,3), ... keeping their order.

    Used when promoting winners; an unpaired last team gets a bye.
    """
    matches = []
    for index in range(0, len(team_ids), 2):
        team1 = team_ids[index]
        team2 = team_ids[index + 1] if index + 1 < len(team_ids) else None
        matches.append(PlannedMatch(
            round=round_number,
            match_number=index // 2 + 1,
            team1_id=team1,
            team2_id=team2,
            winner_id=team1 if team2 is None else None,
        ))
    return matches


def build_elimination_plan(
    team_ids: Sequence[int],
    rng: Optional[random.Random] = None,
    first_round: int = 1
) -> List[List[PlannedMatch]]:
    """
    Build the full single-elimination tree.

    Round 1 carries the team assignments; later rounds are empty shells whose
    teams are filled in by promotion.

    Returns:
        One list of matches per round, in round order
    """
    opening = build_first_round(team_ids, round_number=first_round, rng=rng)
    rounds = [opening]

    shells = len(opening) // 2
    round_number = first_round + 1
    while shells >= 1:
        rounds.append([PlannedMatch(round=round_number, match_number=n + 1) for n in range(shells)])
        shells //= 2
        round_number += 1
    return rounds


def count_playable_matches(rounds: List[List[PlannedMatch]]) -> int:
    """Matches that will produce a winner by being played (byes excluded)."""
    return sum(1 for matches in rounds for m in matches if not m.is_bye)
