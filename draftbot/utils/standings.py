"""
Final tournament standings.

Elimination standings come from the last rounds of the knockout tree: the
final's winner, the final's loser, then the semifinal losers in match order.
Deeper places are not ranked.
"""

from typing import Dict, List, Optional, Sequence

from draftbot.data_models.finalization import FinalStanding
from draftbot.database.models import MatchStatus


def knockout_order(matches: Sequence) -> List[int]:
    """
    Team ids in finishing order from a completed knockout tree.

    Args:
        matches: Knockout matches only (group stage matches excluded)

    Returns:
        Winner, runner-up, then semifinal losers; duplicates removed
    """
    if not matches:
        return []

    final_round = max(m.round for m in matches)
    finals = sorted((m for m in matches if m.round == final_round), key=lambda m: m.match_number)
    final = finals[0]

    order: List[int] = []
    if final.winner_id is not None:
        order.append(final.winner_id)
        runner_up = final.loser_id()
        if runner_up is not None:
            order.append(runner_up)

    semifinals = sorted(
        (m for m in matches if m.round == final_round - 1 and m.status == MatchStatus.COMPLETED),
        key=lambda m: m.match_number
    )
    for semi in semifinals:
        loser = semi.loser_id()
        if loser is not None:
            order.append(loser)

    seen = set()
    unique = []
    for team_id in order:
        if team_id not in seen:
            seen.add(team_id)
            unique.append(team_id)
    return unique


def alphabetical_order(teams: Sequence) -> List[int]:
    """Placeholder order for group brackets without a knockout stage."""
    return [team.id for team in sorted(teams, key=lambda t: (t.name.lower(), t.id))]


def build_final_standings(team_order: Sequence[int], teams_by_id: Dict[int, object],
                          limit: Optional[int] = None) -> List[FinalStanding]:
    """Number an ordered list of team ids into FinalStanding rows."""
    standings = []
    for team_id in (team_order[:limit] if limit else team_order):
        team = teams_by_id.get(team_id)
        if team is None:
            continue
        standings.append(FinalStanding(
            position=len(standings) + 1,
            team_id=team_id,
            team_name=team.name,
            captain_id=team.captain_id,
        ))
    return standings
