"""
Submission Operations Module

Captain-reported results and their arbitration.

State per match: no submissions -> pending submission(s) -> approved | rejected
| conflicted. Two open submissions that disagree on the score are both marked
conflicted; agreeing submissions stay pending and corroborate each other.

Approval is the only path that moves a pending match to completed. It is
guarded by an atomic ``UPDATE ... WHERE status = pending`` so two admins racing
to approve different submissions cannot both win.
"""

import json
from typing import Dict, List, Optional, Sequence, Tuple, Union
from contextlib import asynccontextmanager
from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from draftbot.config import Config
from draftbot.data_models.context import RequestContext
from draftbot.data_models.results import SubmissionOutcome, SubmissionReceipt
from draftbot.database.models import (
    Bracket, BracketFormat, BracketStage, MatchRef, MatchStatus, PlayerMatchStat, RegularMatch,
    RegularMatchRef, ResultSubmission, SubmissionStatus, Team, TeamMember, TournamentMatch,
    TournamentMatchRef, match_ref_columns
)
from draftbot.utils.datetime_utils import utcnow
from draftbot.utils.exceptions import (
    DuplicateSubmissionError, InvalidPayloadError, InvalidScoreError, MatchStateError,
    NotFoundError, PermissionDeniedError, SubmissionStateError
)
from draftbot.utils.logger import setup_logger
from draftbot.utils.stat_payload import decode_notes, parse_stat_entries

logger = setup_logger(__name__)

AUTO_REJECT_NOTE = "Automatically rejected - another submission was approved"
SUPERSEDED_NOTE = "Superseded by admin forfeit"

AnyMatch = Union[TournamentMatch, RegularMatch]


def validate_score(score) -> int:
    """Scores are non-negative integers; booleans are rejected."""
    if isinstance(score, bool) or not isinstance(score, int):
        raise InvalidScoreError(score, "Scores must be whole numbers.")
    if score < 0:
        raise InvalidScoreError(score, "Scores cannot be negative.")
    return score


def winner_for(match: AnyMatch, team1_score: int, team2_score: int) -> Optional[int]:
    """Team with the strictly higher score; None for a draw."""
    if team1_score > team2_score:
        return match.team1_id
    if team2_score > team1_score:
        return match.team2_id
    return None


class SubmissionOperations:
    """
    Result intake and admin arbitration for bracket and regular matches.
    """

    def __init__(self, database, config_service=None):
        """Initialize with database instance and optional config service"""
        self.db = database
        self.config_service = config_service
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise creates a transaction that commits on exit.
        """
        if session:
            # If a session is provided, we do not manage its lifecycle
            yield session
        else:
            async with self.db.transaction() as new_session:
                yield new_session

    def _forfeit_scores(self) -> Tuple[int, int]:
        if self.config_service:
            return (self.config_service.get('forfeit.winner_score', Config.FORFEIT_WINNER_SCORE),
                    self.config_service.get('forfeit.loser_score', Config.FORFEIT_LOSER_SCORE))
        return Config.FORFEIT_WINNER_SCORE, Config.FORFEIT_LOSER_SCORE

    # ============================================================================
    # Loading helpers
    # ============================================================================

    @staticmethod
    def _match_model(ref: MatchRef):
        if isinstance(ref, TournamentMatchRef):
            return TournamentMatch
        if isinstance(ref, RegularMatchRef):
            return RegularMatch
        raise TypeError(f"Unsupported match reference: {ref!r}")

    async def _load_match(self, session: AsyncSession, ref: MatchRef, lock: bool = False) -> AnyMatch:
        model = self._match_model(ref)
        stmt = select(model).where(model.id == ref.id)
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        match = result.scalar_one_or_none()
        if not match:
            raise NotFoundError("Match", ref.id)
        return match

    @staticmethod
    def _ensure_playable(match: AnyMatch, action: str):
        if not match.team_ids:
            raise MatchStateError(
                f"Cannot {action} placeholder match {match.id}",
                "❌ This match has no teams yet."
            )
        if match.is_bye:
            raise MatchStateError(
                f"Cannot {action} bye match {match.id}",
                "❌ Bye matches advance automatically and take no result."
            )

    @staticmethod
    def _ref_filter(model, ref: MatchRef):
        columns = match_ref_columns(ref)
        if columns['tournament_match_id'] is not None:
            return model.tournament_match_id == columns['tournament_match_id']
        return model.regular_match_id == columns['regular_match_id']

    async def _get_submission(self, session: AsyncSession, submission_id: int,
                              lock: bool = False) -> ResultSubmission:
        stmt = select(ResultSubmission).where(ResultSubmission.id == submission_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        submission = result.scalar_one_or_none()
        if not submission:
            raise NotFoundError("Submission", submission_id)
        return submission

    async def _open_submissions(self, session: AsyncSession, ref: MatchRef) -> List[ResultSubmission]:
        result = await session.execute(
            select(ResultSubmission)
            .where(
                self._ref_filter(ResultSubmission, ref),
                ResultSubmission.status.in_([SubmissionStatus.PENDING, SubmissionStatus.CONFLICTED])
            )
            .order_by(ResultSubmission.id)
        )
        return list(result.scalars().all())

    async def _roster(self, session: AsyncSession, match: AnyMatch) -> Dict[int, int]:
        """player id -> team id for both teams of a match"""
        result = await session.execute(
            select(TeamMember.player_id, TeamMember.team_id).where(TeamMember.team_id.in_(match.team_ids))
        )
        return {player_id: team_id for player_id, team_id in result.all()}

    async def _has_successor(self, session: AsyncSession, match: AnyMatch) -> bool:
        """Whether later bracket rounds were already built from this match's result."""
        if not isinstance(match, TournamentMatch):
            return False

        bracket = await session.get(Bracket, match.bracket_id)
        if bracket.format == BracketFormat.GROUPS:
            group_count = bracket.get_setting('group_count', 0)
            if match.round <= group_count:
                return bracket.stage == BracketStage.KNOCKOUT_STAGE

        result = await session.execute(
            select(TournamentMatch.id).where(
                TournamentMatch.bracket_id == match.bracket_id,
                TournamentMatch.round == match.round + 1
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def _group_result_locked(session: AsyncSession, match: AnyMatch) -> bool:
        """Group standings seeded the knockout, so a group match's score is final."""
        if not isinstance(match, TournamentMatch):
            return False
        bracket = await session.get(Bracket, match.bracket_id)
        return (bracket.format == BracketFormat.GROUPS
                and bracket.stage == BracketStage.KNOCKOUT_STAGE
                and match.round <= bracket.get_setting('group_count', 0))

    async def _ensure_result_editable(self, session: AsyncSession, match: AnyMatch, match_ref: MatchRef,
                                      team1_score: int, team2_score: int, new_winner: Optional[int]):
        if match.status != MatchStatus.COMPLETED:
            return
        if await self._group_result_locked(session, match):
            if (match.team1_score, match.team2_score) != (team1_score, team2_score):
                raise MatchStateError(
                    f"Cannot change {match_ref}: knockout stage already seeded from group results",
                    "❌ Group results are locked once the knockout stage is seeded."
                )
            return
        if new_winner != match.winner_id and await self._has_successor(session, match):
            raise MatchStateError(
                f"Cannot change winner of {match_ref}: next round already generated",
                "❌ The next round already uses this result, so the winner can't change."
            )

    @staticmethod
    def _reconcile(open_submissions: Sequence[ResultSubmission]) -> bool:
        """
        Mark open submissions conflicted if their scores disagree, pending otherwise.

        Returns:
            True if the set is in conflict
        """
        conflicted = len({s.scores for s in open_submissions}) > 1
        status = SubmissionStatus.CONFLICTED if conflicted else SubmissionStatus.PENDING
        for submission in open_submissions:
            submission.status = status
        return conflicted

    async def _replace_match_stats(self, session: AsyncSession, match: AnyMatch,
                                   submission: Optional[ResultSubmission]) -> int:
        """Replace the PlayerMatchStat rows of a match with the submission's payload."""
        ref = match.match_ref
        await session.execute(delete(PlayerMatchStat).where(self._ref_filter(PlayerMatchStat, ref)))
        if submission is None:
            return 0

        entries = submission.get_player_stats()
        if not entries:
            return 0

        roster = await self._roster(session, match)
        columns = match_ref_columns(ref)
        created = 0
        for entry in entries:
            team_id = roster.get(entry['player_id'])
            if team_id is None:
                self.logger.warning(
                    f"Skipping stats for player {entry['player_id']}: not on either team of {ref}"
                )
                continue
            session.add(PlayerMatchStat(
                submission_id=submission.id,
                player_id=entry['player_id'],
                team_id=team_id,
                goals=entry.get('goals', 0),
                assists=entry.get('assists', 0),
                clean_sheet=entry.get('clean_sheet', False),
                position=entry.get('position', ''),
                **columns
            ))
            created += 1
        return created

    # ============================================================================
    # Intake
    # ============================================================================

    async def submit_result(
        self,
        ctx: RequestContext,
        match_ref: MatchRef,
        team_id: int,
        team1_score,
        team2_score,
        screenshot_url: Optional[str] = None,
        notes: Optional[str] = None,
        player_stats: Optional[list] = None,
        session: Optional[AsyncSession] = None
    ) -> SubmissionReceipt:
        """
        Record a team's reported result for a match.

        Player stats may be passed explicitly or embedded in ``notes`` as JSON.
        A malformed stat payload does not fail the submission: it is stored
        without stats and the problem is returned as a warning.

        Returns:
            Receipt with the outcome (accepted, corroborated, conflicted or
            duplicate) and any payload warnings

        Raises:
            InvalidScoreError: Negative or non-integer score
            NotFoundError: Unknown match or team
            MatchStateError: Match is a bye, already completed, or the team is not playing it
            PermissionDeniedError: Acting user is neither the team's captain nor an admin
            DuplicateSubmissionError: Team already has an open submission with a different score
        """
        team1_score = validate_score(team1_score)
        team2_score = validate_score(team2_score)

        async with self._get_session_context(session) as s:
            match = await self._load_match(s, match_ref, lock=True)
            self._ensure_playable(match, "submit a result for")
            if match.status != MatchStatus.PENDING:
                raise MatchStateError(
                    f"{match_ref} is already {match.status.value}",
                    "❌ This match already has an approved result."
                )
            if team_id not in match.team_ids:
                raise MatchStateError(
                    f"Team {team_id} is not playing {match_ref}",
                    "❌ Your team is not playing in this match."
                )

            team = await s.get(Team, team_id)
            if not team:
                raise NotFoundError("Team", team_id)
            if not ctx.is_admin and team.captain_id != ctx.user_id:
                raise PermissionDeniedError("submit results for this team", ctx.user_id)

            warnings: List[str] = []
            payload = None
            free_text = notes
            try:
                free_text, embedded = decode_notes(notes)
                raw = player_stats if player_stats is not None else embedded
                if raw is not None:
                    roster = await self._roster(s, match)
                    payload = [entry.to_dict() for entry in parse_stat_entries(raw, roster.keys())]
            except InvalidPayloadError as e:
                self.logger.warning(f"Ignoring player stats on {match_ref} from team {team_id}: {e}")
                warnings.append(e.user_message)
                payload = None

            open_submissions = await self._open_submissions(s, match_ref)
            own = [sub for sub in open_submissions if sub.team_id == team_id]
            if own:
                existing = own[0]
                if existing.scores == (team1_score, team2_score):
                    self.logger.info(f"Duplicate submission from team {team_id} for {match_ref} ignored")
                    return SubmissionReceipt(
                        submission_id=existing.id,
                        outcome=SubmissionOutcome.DUPLICATE,
                        warnings=warnings,
                    )
                raise DuplicateSubmissionError(str(match_ref), team_id, existing.id)

            submission = ResultSubmission(
                team_id=team_id,
                submitted_by=ctx.user_id,
                team1_score=team1_score,
                team2_score=team2_score,
                screenshot_url=screenshot_url,
                notes=free_text,
                player_stats_payload=json.dumps(payload) if payload else None,
                status=SubmissionStatus.PENDING,
                **match_ref_columns(match_ref)
            )
            s.add(submission)
            await s.flush()

            if not open_submissions:
                outcome = SubmissionOutcome.ACCEPTED
                conflicting = []
            elif self._reconcile(open_submissions + [submission]):
                outcome = SubmissionOutcome.CONFLICTED
                conflicting = [sub.id for sub in open_submissions]
                self.logger.warning(
                    f"Conflicting results for {match_ref}: submissions "
                    f"{[sub.id for sub in open_submissions + [submission]]}"
                )
            else:
                outcome = SubmissionOutcome.CORROBORATED
                conflicting = []

            await s.flush()
            self.logger.info(
                f"Submission {submission.id} for {match_ref} by team {team_id}: "
                f"{team1_score}-{team2_score} ({outcome.value})"
            )
            return SubmissionReceipt(
                submission_id=submission.id,
                outcome=outcome,
                warnings=warnings,
                conflicting_submission_ids=conflicting,
            )

    # ============================================================================
    # Arbitration
    # ============================================================================

    async def approve_submission(self, submission_id: int, admin_id: Optional[int] = None,
                                 admin_notes: Optional[str] = None,
                                 session: Optional[AsyncSession] = None) -> ResultSubmission:
        """
        Approve a submission and write its result onto the match.

        Every other open submission for the match is rejected with an
        explanatory note. Re-approving an approved submission is a no-op.

        Raises:
            NotFoundError: Unknown submission
            SubmissionStateError: Submission was rejected
            MatchStateError: Match already completed by another result, or is a bye
        """
        async with self._get_session_context(session) as s:
            submission = await self._get_submission(s, submission_id, lock=True)
            ref = submission.match_ref
            match = await self._load_match(s, ref, lock=True)

            if submission.status == SubmissionStatus.APPROVED and match.status == MatchStatus.COMPLETED:
                self.logger.info(f"Submission {submission_id} already approved; nothing to do")
                return submission
            if not submission.is_open:
                raise SubmissionStateError(submission_id, submission.status.value, "approve")
            self._ensure_playable(match, "approve a result for")

            now = utcnow()
            model = self._match_model(ref)

            # Atomic UPDATE with status check in WHERE clause
            result = await s.execute(
                update(model)
                .where(model.id == ref.id, model.status == MatchStatus.PENDING)
                .values(
                    team1_score=submission.team1_score,
                    team2_score=submission.team2_score,
                    winner_id=winner_for(match, submission.team1_score, submission.team2_score),
                    status=MatchStatus.COMPLETED,
                    completed_at=now
                )
            )
            if result.rowcount == 0:
                raise MatchStateError(
                    f"{ref} is no longer pending",
                    "❌ This match already has an approved result. Use a score edit to change it."
                )

            submission.status = SubmissionStatus.APPROVED
            submission.approved_by = admin_id
            submission.reviewed_at = now
            if admin_notes:
                submission.admin_notes = admin_notes

            others = [sub for sub in await self._open_submissions(s, ref) if sub.id != submission.id]
            for other in others:
                other.status = SubmissionStatus.REJECTED
                other.admin_notes = AUTO_REJECT_NOTE
                other.reviewed_at = now

            await s.refresh(match)
            stats = await self._replace_match_stats(s, match, submission)
            await s.flush()

            self.logger.info(
                f"Approved submission {submission_id} for {ref}: {submission.team1_score}-"
                f"{submission.team2_score}, {len(others)} other(s) auto-rejected, {stats} stat line(s)"
            )
            return submission

    async def reject_submission(self, submission_id: int, admin_id: Optional[int] = None,
                                admin_notes: Optional[str] = None,
                                session: Optional[AsyncSession] = None) -> ResultSubmission:
        """
        Reject a submission without touching the match.

        Remaining open submissions are re-evaluated, so rejecting one side of a
        conflict returns the other to pending.
        """
        async with self._get_session_context(session) as s:
            submission = await self._get_submission(s, submission_id, lock=True)
            if submission.status == SubmissionStatus.REJECTED:
                return submission
            if not submission.is_open:
                raise SubmissionStateError(submission_id, submission.status.value, "reject")

            submission.status = SubmissionStatus.REJECTED
            submission.reviewed_at = utcnow()
            if admin_notes:
                submission.admin_notes = admin_notes

            remaining = [sub for sub in await self._open_submissions(s, submission.match_ref)
                         if sub.id != submission.id]
            still_conflicted = self._reconcile(remaining) if remaining else False
            await s.flush()

            self.logger.info(f"Rejected submission {submission_id} for {submission.match_ref} by admin {admin_id}")
            if remaining:
                self.logger.info(
                    f"{len(remaining)} open submission(s) remain for {submission.match_ref}"
                    f" ({'conflicted' if still_conflicted else 'pending'})"
                )
            return submission

    async def edit_match_score(self, match_ref: MatchRef, team1_score, team2_score,
                               admin_id: Optional[int] = None, admin_notes: Optional[str] = None,
                               session: Optional[AsyncSession] = None) -> AnyMatch:
        """
        Admin override of a match score.

        Updates the approved submission (or creates an admin one) and the
        match. Other open submissions are left alone. Once a later round was
        built from this match, the winner can no longer change; group scores
        are frozen entirely once the knockout stage is seeded.

        Raises:
            InvalidScoreError: Negative or non-integer score
            MatchStateError: Bye, placeholder, a winner change after promotion, or
                any change to a group result after the knockout is seeded
        """
        team1_score = validate_score(team1_score)
        team2_score = validate_score(team2_score)

        async with self._get_session_context(session) as s:
            match = await self._load_match(s, match_ref, lock=True)
            self._ensure_playable(match, "edit the score of")

            new_winner = winner_for(match, team1_score, team2_score)
            await self._ensure_result_editable(s, match, match_ref, team1_score, team2_score, new_winner)

            now = utcnow()
            result = await s.execute(
                select(ResultSubmission).where(
                    self._ref_filter(ResultSubmission, match_ref),
                    ResultSubmission.status == SubmissionStatus.APPROVED
                ).order_by(ResultSubmission.id.desc())
            )
            approved = result.scalars().first()

            if approved:
                approved.team1_score = team1_score
                approved.team2_score = team2_score
                approved.reviewed_at = now
                if admin_notes:
                    approved.admin_notes = admin_notes
            else:
                approved = ResultSubmission(
                    team_id=None,
                    submitted_by=admin_id,
                    team1_score=team1_score,
                    team2_score=team2_score,
                    notes="Admin score entry",
                    status=SubmissionStatus.APPROVED,
                    admin_notes=admin_notes,
                    approved_by=admin_id,
                    reviewed_at=now,
                    **match_ref_columns(match_ref)
                )
                s.add(approved)

            previous = (match.team1_score, match.team2_score, match.status.value)
            match.team1_score = team1_score
            match.team2_score = team2_score
            match.winner_id = new_winner
            if match.status != MatchStatus.COMPLETED:
                match.completed_at = now
            match.status = MatchStatus.COMPLETED
            match.manually_adjusted = True
            if admin_notes:
                match.admin_notes = admin_notes
            await s.flush()

            self.logger.info(
                f"Edited {match_ref}: {previous[0]}-{previous[1]} ({previous[2]}) -> "
                f"{team1_score}-{team2_score} by admin {admin_id}"
            )
            return match

    async def forfeit_match(self, match_ref: MatchRef, winning_team_id: int,
                            admin_id: Optional[int] = None, reason: Optional[str] = None,
                            session: Optional[AsyncSession] = None) -> AnyMatch:
        """
        Award a walkover to one team.

        Writes the configured forfeit score (3-0 by default) to a new approved
        admin submission and to the match, and rejects every other open or
        approved submission. Repeating the same forfeit is a no-op.

        Raises:
            MatchStateError: Bye, placeholder, team not in match, a winner
                change after promotion, or a group result after the knockout is seeded
        """
        async with self._get_session_context(session) as s:
            match = await self._load_match(s, match_ref, lock=True)
            self._ensure_playable(match, "forfeit")
            if winning_team_id not in match.team_ids:
                raise MatchStateError(
                    f"Team {winning_team_id} is not playing {match_ref}",
                    "❌ The winning team must be one of the two teams in this match."
                )

            winner_score, loser_score = self._forfeit_scores()
            if winning_team_id == match.team1_id:
                team1_score, team2_score = winner_score, loser_score
            else:
                team1_score, team2_score = loser_score, winner_score

            if match.status == MatchStatus.COMPLETED:
                if (match.winner_id == winning_team_id
                        and (match.team1_score, match.team2_score) == (team1_score, team2_score)):
                    self.logger.info(f"Forfeit for {match_ref} already recorded; nothing to do")
                    return match
            await self._ensure_result_editable(s, match, match_ref, team1_score, team2_score, winning_team_id)

            now = utcnow()
            result = await s.execute(
                select(ResultSubmission).where(
                    self._ref_filter(ResultSubmission, match_ref),
                    ResultSubmission.status != SubmissionStatus.REJECTED
                )
            )
            for other in result.scalars().all():
                was_approved = other.status == SubmissionStatus.APPROVED
                other.status = SubmissionStatus.REJECTED
                other.admin_notes = SUPERSEDED_NOTE if was_approved else AUTO_REJECT_NOTE
                other.reviewed_at = now

            notes = f"Forfeit awarded to team {winning_team_id}" + (f": {reason}" if reason else "")
            forfeit = ResultSubmission(
                team_id=None,
                submitted_by=admin_id,
                team1_score=team1_score,
                team2_score=team2_score,
                notes=notes,
                status=SubmissionStatus.APPROVED,
                admin_notes=reason,
                approved_by=admin_id,
                reviewed_at=now,
                **match_ref_columns(match_ref)
            )
            s.add(forfeit)

            match.team1_score = team1_score
            match.team2_score = team2_score
            match.winner_id = winning_team_id
            match.status = MatchStatus.COMPLETED
            match.completed_at = match.completed_at or now
            match.manually_adjusted = True
            match.admin_notes = notes

            await self._replace_match_stats(s, match, None)
            await s.flush()

            self.logger.info(f"Forfeit on {match_ref}: team {winning_team_id} wins {winner_score}-{loser_score}")
            return match

    # ============================================================================
    # Queries
    # ============================================================================

    async def get_submission(self, submission_id: int,
                             session: Optional[AsyncSession] = None) -> ResultSubmission:
        async with self._get_session_context(session) as s:
            return await self._get_submission(s, submission_id)

    async def get_submissions(self, match_ref: Optional[MatchRef] = None,
                              status: Optional[SubmissionStatus] = None,
                              session: Optional[AsyncSession] = None) -> List[ResultSubmission]:
        """Submissions for a match (or all matches), oldest first, optionally by status"""
        async with self._get_session_context(session) as s:
            stmt = select(ResultSubmission)
            if match_ref is not None:
                stmt = stmt.where(self._ref_filter(ResultSubmission, match_ref))
            if status is not None:
                stmt = stmt.where(ResultSubmission.status == status)
            result = await s.execute(stmt.order_by(ResultSubmission.id))
            return list(result.scalars().all())

    async def get_match(self, match_ref: MatchRef, session: Optional[AsyncSession] = None) -> AnyMatch:
        async with self._get_session_context(session) as s:
            return await self._load_match(s, match_ref)
