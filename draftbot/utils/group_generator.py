"""
Round-robin group generation and group standings.

In the groups format a match's ``round`` is the 1-based group number.
"""

import math
import random
from typing import Dict, Iterable, List, Optional, Sequence

from draftbot.config import Config
from draftbot.data_models.bracket import PlannedMatch, StandingRow
from draftbot.database.models import MatchStatus
from draftbot.utils.exceptions import InsufficientTeamsError


def split_into_groups(
    team_ids: Sequence[int],
    max_group_size: int = None,
    group_count: Optional[int] = None,
    rng: Optional[random.Random] = None
) -> List[List[int]]:
    """
    Shuffle teams and slice them into contiguous groups.

    group_count = ceil(N / max_group_size) unless given explicitly;
    teams_per_group = ceil(N / group_count). Trailing empty slices are dropped.
    """
    max_group_size = max_group_size or Config.MAX_GROUP_SIZE
    if len(team_ids) < Config.MIN_GROUP_TEAMS:
        raise InsufficientTeamsError(len(team_ids), Config.MIN_GROUP_TEAMS, "groups")
    if max_group_size < 2:
        raise ValueError("max_group_size must be at least 2")

    teams = list(team_ids)
    (rng or random.Random()).shuffle(teams)

    if not group_count:
        group_count = math.ceil(len(teams) / max_group_size)
    teams_per_group = math.ceil(len(teams) / group_count)

    groups = []
    for index in range(group_count):
        chunk = teams[index * teams_per_group:(index + 1) * teams_per_group]
        if chunk:
            groups.append(chunk)
    return groups


def round_robin_matches(groups: List[List[int]]) -> List[PlannedMatch]:
    """All C(k,2) pairs per group; match numbers run across groups."""
    matches = []
    match_number = 1
    for group_index, group in enumerate(groups, 1):
        for i in range(len(group)):
            for j in range(i + 1, len(group)):
                matches.append(PlannedMatch(
                    round=group_index,
                    match_number=match_number,
                    team1_id=group[i],
                    team2_id=group[j],
                ))
                match_number += 1
    return matches


def compute_standings(team_ids: Sequence[int], matches: Iterable) -> List[StandingRow]:
    """
    Group table from completed matches.

    Sorted by points, then goal difference, then goals for, all descending.
    The sort is stable: teams still level keep their order in ``team_ids``.

    Args:
        team_ids: Teams in the group, in their original order
        matches: Objects with team1_id/team2_id/team1_score/team2_score/status

    Returns:
        Ranked standing rows
    """
    rows: Dict[int, StandingRow] = {team_id: StandingRow(team_id=team_id) for team_id in team_ids}

    for match in matches:
        if match.status != MatchStatus.COMPLETED:
            continue
        if match.team1_id not in rows or match.team2_id not in rows:
            continue

        home, away = rows[match.team1_id], rows[match.team2_id]
        home.played += 1
        away.played += 1
        home.goals_for += match.team1_score
        home.goals_against += match.team2_score
        away.goals_for += match.team2_score
        away.goals_against += match.team1_score

        if match.team1_score > match.team2_score:
            home.wins += 1
            away.losses += 1
        elif match.team1_score < match.team2_score:
            away.wins += 1
            home.losses += 1
        else:
            home.draws += 1
            away.draws += 1

    ordered = [rows[team_id] for team_id in team_ids]
    return sorted(ordered, key=lambda r: (-r.points, -r.goal_difference, -r.goals_for))


def group_team_ids(matches: Iterable) -> Dict[int, List[int]]:
    """Recover group membership (group number -> team ids) from persisted matches."""
    groups: Dict[int, List[int]] = {}
    for match in sorted(matches, key=lambda m: (m.round, m.match_number)):
        members = groups.setdefault(match.round, [])
        for team_id in (match.team1_id, match.team2_id):
            if team_id is not None and team_id not in members:
                members.append(team_id)
    return groups
