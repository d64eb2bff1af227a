"""
Bracket data models.

Plain data transfer objects produced by the pure generators and scheduler
before anything is persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from draftbot.constants import StandingsPoints


@dataclass
class PlannedMatch:
    """A match slot produced by a generator. Teams are None for placeholders."""
    round: int
    match_number: int
    team1_id: Optional[int] = None
    team2_id: Optional[int] = None
    winner_id: Optional[int] = None
    scheduled_at: Optional[datetime] = None

    @property
    def team_ids(self) -> List[int]:
        return [t for t in (self.team1_id, self.team2_id) if t is not None]

    @property
    def is_bye(self) -> bool:
        return len(self.team_ids) == 1

    @property
    def is_placeholder(self) -> bool:
        return not self.team_ids


@dataclass
class StandingRow:
    """One team's line in a group table."""
    team_id: int
    played: int = 0
    wins: int = 0
    draws: int = 0
    losses: int = 0
    goals_for: int = 0
    goals_against: int = 0

    @property
    def goal_difference(self) -> int:
        return self.goals_for - self.goals_against

    @property
    def points(self) -> int:
        return (self.wins * StandingsPoints.WIN
                + self.draws * StandingsPoints.DRAW
                + self.losses * StandingsPoints.LOSS)


@dataclass
class PromotionResult:
    """Outcome of a promotion attempt."""
    bracket_id: int
    round_number: Optional[int]
    match_ids: List[int] = field(default_factory=list)
    created: bool = False            # False when the round already existed
    bracket_completed: bool = False
    champion_team_id: Optional[int] = None
