"""
Result submission data models.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List


@dataclass(frozen=True)
class PlayerStatEntry:
    """Validated per-player line carried by a result submission."""
    player_id: int
    goals: int = 0
    assists: int = 0
    clean_sheet: bool = False
    position: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SubmissionOutcome(Enum):
    ACCEPTED = "accepted"          # first open submission for the match
    CORROBORATED = "corroborated"  # agrees with the other team's open submission
    CONFLICTED = "conflicted"      # disagrees; all open submissions marked conflicted
    DUPLICATE = "duplicate"        # same team, same score, nothing changed


@dataclass
class SubmissionReceipt:
    submission_id: int
    outcome: SubmissionOutcome
    warnings: List[str] = field(default_factory=list)
    conflicting_submission_ids: List[int] = field(default_factory=list)
