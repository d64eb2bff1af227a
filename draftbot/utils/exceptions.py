"""
Custom exceptions for the tournament engine with user-friendly error messages.

Every error is recoverable at the call site. ``user_message`` carries the
actionable text the command layer shows to admins and captains.
"""

from typing import Optional


class TournamentError(Exception):
    """Base exception for tournament engine errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message


class InsufficientTeamsError(TournamentError):
    """Raised when a bracket format needs more teams than the roster has."""
    def __init__(self, team_count: int, required: int, bracket_format: str):
        self.team_count = team_count
        self.required = required
        super().__init__(
            f"{bracket_format} bracket needs at least {required} teams, got {team_count}",
            f"❌ A {bracket_format} bracket needs at least {required} teams (currently {team_count})."
        )


class NotReadyError(TournamentError):
    """Raised when promotion or finalization is attempted before its preconditions hold."""
    def __init__(self, message: str, user_message: str = None,
                 round_number: Optional[int] = None, pending_match_ids: Optional[list] = None):
        self.round_number = round_number
        self.pending_match_ids = pending_match_ids or []
        super().__init__(message, user_message)

    @classmethod
    def incomplete_round(cls, round_number: int, pending_match_ids: list) -> 'NotReadyError':
        return cls(
            f"Round {round_number} has {len(pending_match_ids)} incomplete match(es): {pending_match_ids}",
            f"⏳ Complete all matches in round {round_number} first "
            f"({len(pending_match_ids)} remaining).",
            round_number=round_number,
            pending_match_ids=pending_match_ids,
        )

    @classmethod
    def incomplete_group(cls, group_number: int, pending_match_ids: list) -> 'NotReadyError':
        return cls(
            f"Group {group_number} has {len(pending_match_ids)} incomplete match(es): {pending_match_ids}",
            f"⏳ Complete all matches in group {chr(64 + group_number)} first "
            f"({len(pending_match_ids)} remaining).",
            round_number=group_number,
            pending_match_ids=pending_match_ids,
        )


class DuplicateSubmissionError(TournamentError):
    """Raised when a team submits a different result while its previous one is still open."""
    def __init__(self, match_label: str, team_id: int, existing_submission_id: int):
        self.existing_submission_id = existing_submission_id
        super().__init__(
            f"Team {team_id} already has open submission {existing_submission_id} for {match_label}",
            "❌ Your team already submitted a result for this match. "
            "Ask an admin to reject it before submitting a different score."
        )


class AlreadyFinalizedError(TournamentError):
    """Raised when finalization or reward distribution is re-run for an event."""
    def __init__(self, event_id: int, what: str = "Tournament"):
        self.event_id = event_id
        super().__init__(
            f"{what} for event {event_id} already finalized",
            f"ℹ️ {what} for this event has already been finalized."
        )


class NotFoundError(TournamentError):
    """Raised when a bracket, match, submission or event id is unknown."""
    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} {entity_id} not found",
            f"❌ {entity} `{entity_id}` not found."
        )


class InvalidScoreError(TournamentError):
    """Raised when a score is negative or not an integer."""
    def __init__(self, score, reason: str):
        self.score = score
        super().__init__(
            f"Invalid score {score!r}: {reason}",
            f"❌ {reason}"
        )


class InvalidPayloadError(TournamentError):
    """Raised when an embedded player stat payload cannot be decoded.

    Submission intake records it as a warning instead of failing the submission.
    """
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(
            f"Invalid player stat payload: {reason}",
            f"⚠️ Player statistics were ignored: {reason}"
        )


class MatchStateError(TournamentError):
    """Raised when a match is in the wrong state for an operation."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message, user_message or f"❌ {message}")


class SubmissionStateError(TournamentError):
    """Raised when a submission is in the wrong state for an operation."""
    def __init__(self, submission_id: int, status: str, action: str):
        self.submission_id = submission_id
        super().__init__(
            f"Cannot {action} submission {submission_id} with status {status}",
            f"❌ This submission is already {status} and cannot be {action}d."
        )


class PermissionDeniedError(TournamentError):
    """Raised when the acting user may not perform an action."""
    def __init__(self, action: str, user_id: Optional[int] = None):
        super().__init__(
            f"User {user_id} is not allowed to {action}",
            "❌ You don't have permission to perform this action."
        )


class FinalizationStepError(TournamentError):
    """Raised when one finalization step fails; earlier steps are not rolled back."""
    def __init__(self, step: str, event_id: int, cause: Exception):
        self.step = step
        self.event_id = event_id
        self.cause = cause
        super().__init__(
            f"Finalization step '{step}' failed for event {event_id}: {cause}",
            f"❌ Finalization failed during {step.replace('_', ' ')}. "
            "Fix the problem and re-run that step."
        )


class InvalidSettingsError(TournamentError):
    """Raised when reward or bracket settings fail validation."""
    def __init__(self, field: str, reason: str):
        self.field = field
        super().__init__(
            f"Invalid value for {field}: {reason}",
            f"❌ `{field}` {reason}."
        )
