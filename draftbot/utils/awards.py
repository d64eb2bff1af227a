"""
Award and ranking formulas.

Pure functions over aggregated player totals and final standings, so the
finalization service can recompute them any number of times with the same
result.
"""

from typing import Dict, List, Optional, Sequence

from draftbot.constants import AwardConstants, RankingWeights
from draftbot.data_models.finalization import AwardResult, FinalStanding, PlayerTotals
from draftbot.database.models import AwardType


def is_goalkeeper(position: Optional[str]) -> bool:
    position = (position or '').lower()
    return any(marker in position for marker in AwardConstants.GOALKEEPER_MARKERS)


def is_defensive(position: Optional[str]) -> bool:
    position = (position or '').lower().strip()
    if not position:
        return False
    if is_goalkeeper(position):
        return True
    return position in AwardConstants.DEFENSIVE_MARKERS or position.startswith('def')


def _leader(players: Sequence[PlayerTotals], metric) -> Optional[PlayerTotals]:
    """Highest metric; ties go to the first player seen."""
    best = None
    for player in players:
        if best is None or metric(player) > metric(best):
            best = player
    return best


def compute_awards(players: Sequence[PlayerTotals], standings: Sequence[FinalStanding],
                   captain_names: Optional[Dict[int, str]] = None) -> List[AwardResult]:
    """
    Compute event awards.

    Each award is emitted only when its value is positive. The tournament
    winner award goes to the captain of the first-placed team.

    Args:
        players: Aggregated totals in roster order
        standings: Final standings, first place first
        captain_names: Fallback names for captains without a totals row
    """
    awards: List[AwardResult] = []
    if not players and not standings:
        return awards

    mvp = _leader(players, lambda p: p.mvp_score)
    if mvp and mvp.mvp_score > 0:
        awards.append(AwardResult(
            award_type=AwardType.MVP.value,
            player_id=mvp.player_id,
            username=mvp.username,
            value=mvp.mvp_score,
            description=f"{mvp.goals} goals, {mvp.assists} assists, {mvp.clean_sheets} clean sheets",
        ))

    scorer = _leader(players, lambda p: p.goals)
    if scorer and scorer.goals > 0:
        awards.append(AwardResult(
            award_type=AwardType.TOP_SCORER.value,
            player_id=scorer.player_id,
            username=scorer.username,
            value=scorer.goals,
            description=f"{scorer.goals} goals scored",
        ))

    assister = _leader(players, lambda p: p.assists)
    if assister and assister.assists > 0:
        awards.append(AwardResult(
            award_type=AwardType.TOP_ASSISTS.value,
            player_id=assister.player_id,
            username=assister.username,
            value=assister.assists,
            description=f"{assister.assists} assists provided",
        ))

    goalkeeper = _leader([p for p in players if is_goalkeeper(p.position)], lambda p: p.clean_sheets)
    if goalkeeper and goalkeeper.clean_sheets > 0:
        awards.append(AwardResult(
            award_type=AwardType.BEST_GOALKEEPER.value,
            player_id=goalkeeper.player_id,
            username=goalkeeper.username,
            value=goalkeeper.clean_sheets,
            description=f"{goalkeeper.clean_sheets} clean sheets",
        ))

    if standings and standings[0].captain_id is not None:
        champion = standings[0]
        by_id = {p.player_id: p for p in players}
        captain = by_id.get(champion.captain_id)
        username = captain.username if captain else (captain_names or {}).get(champion.captain_id)
        if username:
            awards.append(AwardResult(
                award_type=AwardType.TOURNAMENT_WINNER.value,
                player_id=champion.captain_id,
                username=username,
                value=1,
                description=f"Captain of {champion.team_name}, tournament winners",
            ))

    return awards


def compute_ranking_points(
    wins: int = 0,
    goals: int = 0,
    assists: int = 0,
    clean_sheets: int = 0,
    draft_participations: int = 0,
    mvp_count: int = 0,
    top_scorer_count: int = 0,
    top_assists_count: int = 0,
    best_goalkeeper_count: int = 0,
    captain_count: int = 0,
    tournament_wins: int = 0
) -> int:
    """Cumulative ranking score across all events."""
    return (
        wins * RankingWeights.WIN
        + goals * RankingWeights.GOAL
        + assists * RankingWeights.ASSIST
        + clean_sheets * RankingWeights.CLEAN_SHEET
        + draft_participations * RankingWeights.DRAFT_PARTICIPATION
        + mvp_count * RankingWeights.MVP
        + top_scorer_count * RankingWeights.TOP_SCORER
        + top_assists_count * RankingWeights.TOP_ASSISTS
        + best_goalkeeper_count * RankingWeights.BEST_GOALKEEPER
        + captain_count * RankingWeights.CAPTAINCY
        + tournament_wins * RankingWeights.TOURNAMENT_WIN
    )
