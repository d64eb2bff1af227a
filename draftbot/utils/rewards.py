"""
Tiered credit reward calculation.
"""

import math
from typing import Dict, List, Sequence

from draftbot.data_models.finalization import FinalStanding, PayoutLine
from draftbot.database.models import ReductionType


def reward_amount(base_amount: int, position: int, reduction_per_position: int,
                  reduction_type: ReductionType) -> int:
    """
    Credits for a 1-indexed finishing position.

    Position 1 receives the base amount. Each further position reduces it by
    ``reduction_per_position`` either as a percentage of the base or as a flat
    amount. Never negative.

    >>> reward_amount(100, 3, 25, ReductionType.PERCENTAGE)
    50
    """
    if position < 1:
        raise ValueError("position is 1-indexed")
    if position == 1:
        return max(0, base_amount)

    reduction = reduction_per_position * (position - 1)
    if reduction_type == ReductionType.PERCENTAGE:
        # Round half up
        amount = math.floor(base_amount * (1 - reduction / 100) + 0.5)
    else:
        amount = base_amount - reduction
    return max(0, amount)


def plan_payouts(standings: Sequence[FinalStanding], settings,
                 team_members: Dict[int, List[int]]) -> List[PayoutLine]:
    """
    One ledger line per recipient per rewarded position.

    Args:
        standings: Final standings, first place first
        settings: RewardSettings row (or any object with the same fields)
        team_members: team id -> member player ids

    Returns:
        Payout lines in position order; zero-amount lines are included so the
        caller can decide whether to skip them
    """
    lines = []
    positions = min(settings.reward_positions, len(standings))
    for standing in standings[:positions]:
        amount = reward_amount(settings.base_reward_amount, standing.position,
                               settings.reduction_per_position, settings.reduction_type)
        if settings.only_captains:
            recipients = [standing.captain_id] if standing.captain_id is not None else []
        else:
            recipients = team_members.get(standing.team_id, [])

        for player_id in recipients:
            lines.append(PayoutLine(
                player_id=player_id,
                team_id=standing.team_id,
                position=standing.position,
                amount=amount,
                reason=f"{_ordinal(standing.position)} place - {standing.team_name}",
            ))
    return lines


def _ordinal(position: int) -> str:
    if 10 <= position % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(position % 10, "th")
    return f"{position}{suffix}"
