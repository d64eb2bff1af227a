"""
Finalization data models for statistics, awards and payouts.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from draftbot.constants import AwardConstants


@dataclass
class PlayerTotals:
    """One player's aggregated numbers for a single event."""
    player_id: int
    username: str
    team_id: Optional[int] = None
    position: str = ''
    was_captain: bool = False
    matches: int = 0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    goals: int = 0
    assists: int = 0
    clean_sheets: int = 0

    @property
    def mvp_score(self) -> int:
        return self.goals + self.assists + AwardConstants.MVP_CLEAN_SHEET_WEIGHT * self.clean_sheets


@dataclass(frozen=True)
class FinalStanding:
    position: int
    team_id: int
    team_name: str
    captain_id: Optional[int] = None


@dataclass(frozen=True)
class AwardResult:
    award_type: str
    player_id: int
    username: str
    value: int
    description: str


@dataclass(frozen=True)
class PayoutLine:
    player_id: int
    team_id: int
    position: int
    amount: int
    reason: str


@dataclass
class FinalizationReport:
    event_id: int
    players_aggregated: int = 0
    awards: List[AwardResult] = field(default_factory=list)
    rankings_updated: int = 0
    payouts: List[PayoutLine] = field(default_factory=list)
    rewards_skipped_reason: Optional[str] = None
    steps_completed: List[str] = field(default_factory=list)

    @property
    def credits_distributed(self) -> int:
        return sum(p.amount for p in self.payouts)

    def awards_by_type(self) -> Dict[str, AwardResult]:
        return {a.award_type: a for a in self.awards}
