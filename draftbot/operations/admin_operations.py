"""
Administrative Operations Module

The admin surface consumed by the Discord cog: every tournament action takes an
explicit RequestContext, checks permissions, runs in one transaction and leaves
an audit log entry.

- create_bracket / generate_initial_matches
- submit_result (captains) / approve_submission / reject_submission
- edit_match_score / forfeit_match
- promote_next_round / generate_knockout
- finalize_tournament / run_finalization_step
- get_reward_settings / update_reward_settings
- get_configuration / update_configuration
"""

import json
from typing import Optional, List, Dict, Any, Union
from contextlib import asynccontextmanager
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from draftbot.data_models.bracket import PromotionResult
from draftbot.data_models.context import RequestContext
from draftbot.data_models.finalization import FinalizationReport
from draftbot.data_models.results import SubmissionReceipt
from draftbot.database.models import (
    AuditLog, Bracket, BracketFormat, EventAward, MatchRef, RegularMatch, ResultSubmission, RewardSettings,
    TournamentMatch, UserRanking
)
from draftbot.operations.bracket_operations import BracketOperations
from draftbot.operations.submission_operations import SubmissionOperations
from draftbot.services.finalization_service import FinalizationService, STEPS
from draftbot.utils.exceptions import PermissionDeniedError, TournamentError
from draftbot.utils.logger import setup_logger

logger = setup_logger(__name__)


class AdminOperations:
    """
    Permission-checked, audited tournament actions.

    Composes BracketOperations, SubmissionOperations and FinalizationService
    so the command layer only deals with one object.
    """

    def __init__(self, database, config_service=None, bracket_ops: Optional[BracketOperations] = None,
                 submission_ops: Optional[SubmissionOperations] = None,
                 finalization: Optional[FinalizationService] = None):
        """Initialize with database and config service instances"""
        self.db = database
        self.config_service = config_service
        self.bracket_ops = bracket_ops or BracketOperations(database, config_service)
        self.submission_ops = submission_ops or SubmissionOperations(database, config_service)
        self.finalization = finalization or FinalizationService(database, self.bracket_ops)
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

    @staticmethod
    def _require_admin(ctx: RequestContext, action: str):
        if not ctx.is_admin:
            raise PermissionDeniedError(action, ctx.user_id)

    async def _create_audit_log(
        self,
        session: AsyncSession,
        ctx: RequestContext,
        action: str,
        target_type: Optional[str] = None,
        target_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Record an administrative action.

        Args:
            session: Database session the action ran in
            ctx: Acting user
            action: Action name (e.g., "approve_submission")
            target_type: Type of target (e.g., "bracket", "submission")
            target_id: ID of target entity
            details: Additional details stored as JSON
        """
        session.add(AuditLog(
            user_id=ctx.user_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            details=json.dumps({'username': ctx.username, **(details or {})}, default=str),
        ))

    @staticmethod
    def _ref_details(match_ref: MatchRef) -> Dict[str, Any]:
        return {'match_ref': str(match_ref)}

    # ============================================================================
    # Brackets
    # ============================================================================

    async def create_bracket(self, ctx: RequestContext, event_id: int,
                             bracket_format: Union[BracketFormat, str],
                             settings: Optional[Dict] = None) -> Bracket:
        self._require_admin(ctx, "create brackets")
        async with self._get_session_context() as session:
            bracket = await self.bracket_ops.create_bracket(event_id, bracket_format, settings, session=session)
            await self._create_audit_log(session, ctx, 'create_bracket', 'bracket', bracket.id, {
                'event_id': event_id,
                'format': bracket.format.value,
                'settings': bracket.settings_dict,
            })
            return bracket

    async def generate_initial_matches(self, ctx: RequestContext, bracket_id: int,
                                       start_at=None) -> List[TournamentMatch]:
        self._require_admin(ctx, "generate matches")
        async with self._get_session_context() as session:
            matches = await self.bracket_ops.generate_initial_matches(bracket_id, start_at, session=session)
            await self._create_audit_log(session, ctx, 'generate_matches', 'bracket', bracket_id, {
                'matches': len(matches),
                'byes': sum(1 for m in matches if m.is_bye),
            })
            return matches

    async def promote_next_round(self, ctx: RequestContext, bracket_id: int,
                                 from_round: Optional[int] = None) -> PromotionResult:
        self._require_admin(ctx, "promote rounds")
        async with self._get_session_context() as session:
            result = await self.bracket_ops.promote_next_round(bracket_id, from_round, session=session)
            if result.created or result.bracket_completed:
                await self._create_audit_log(session, ctx, 'promote_round', 'bracket', bracket_id, {
                    'round': result.round_number,
                    'matches': result.match_ids,
                    'completed': result.bracket_completed,
                    'champion_team_id': result.champion_team_id,
                })
            return result

    async def generate_knockout(self, ctx: RequestContext, bracket_id: int) -> PromotionResult:
        self._require_admin(ctx, "generate the knockout stage")
        async with self._get_session_context() as session:
            result = await self.bracket_ops.generate_knockout(bracket_id, session=session)
            if result.created or result.bracket_completed:
                await self._create_audit_log(session, ctx, 'generate_knockout', 'bracket', bracket_id, {
                    'round': result.round_number,
                    'matches': result.match_ids,
                    'completed': result.bracket_completed,
                })
            return result

    # ============================================================================
    # Results
    # ============================================================================

    async def submit_result(self, ctx: RequestContext, match_ref: MatchRef, team_id: int,
                            team1_score, team2_score, screenshot_url: Optional[str] = None,
                            notes: Optional[str] = None,
                            player_stats: Optional[list] = None) -> SubmissionReceipt:
        """Captains submit for their own team; admins may submit for any team."""
        async with self._get_session_context() as session:
            receipt = await self.submission_ops.submit_result(
                ctx, match_ref, team_id, team1_score, team2_score,
                screenshot_url=screenshot_url, notes=notes, player_stats=player_stats, session=session
            )
            await self._create_audit_log(session, ctx, 'submit_result', 'submission', receipt.submission_id, {
                **self._ref_details(match_ref),
                'team_id': team_id,
                'score': f"{team1_score}-{team2_score}",
                'outcome': receipt.outcome.value,
            })
            return receipt

    async def approve_submission(self, ctx: RequestContext, submission_id: int,
                                 admin_notes: Optional[str] = None) -> ResultSubmission:
        self._require_admin(ctx, "approve results")
        async with self._get_session_context() as session:
            submission = await self.submission_ops.approve_submission(
                submission_id, admin_id=ctx.user_id, admin_notes=admin_notes, session=session
            )
            await self._create_audit_log(session, ctx, 'approve_submission', 'submission', submission_id, {
                **self._ref_details(submission.match_ref),
                'score': f"{submission.team1_score}-{submission.team2_score}",
            })
            return submission

    async def reject_submission(self, ctx: RequestContext, submission_id: int,
                                admin_notes: Optional[str] = None) -> ResultSubmission:
        self._require_admin(ctx, "reject results")
        async with self._get_session_context() as session:
            submission = await self.submission_ops.reject_submission(
                submission_id, admin_id=ctx.user_id, admin_notes=admin_notes, session=session
            )
            await self._create_audit_log(session, ctx, 'reject_submission', 'submission', submission_id, {
                **self._ref_details(submission.match_ref),
                'notes': admin_notes,
            })
            return submission

    async def edit_match_score(self, ctx: RequestContext, match_ref: MatchRef, team1_score, team2_score,
                               admin_notes: Optional[str] = None) -> Union[TournamentMatch, RegularMatch]:
        self._require_admin(ctx, "edit match scores")
        async with self._get_session_context() as session:
            match = await self.submission_ops.edit_match_score(
                match_ref, team1_score, team2_score, admin_id=ctx.user_id,
                admin_notes=admin_notes, session=session
            )
            await self._create_audit_log(session, ctx, 'edit_match_score', 'match', match_ref.id, {
                **self._ref_details(match_ref),
                'score': f"{team1_score}-{team2_score}",
                'notes': admin_notes,
            })
            return match

    async def forfeit_match(self, ctx: RequestContext, match_ref: MatchRef, winning_team_id: int,
                            reason: Optional[str] = None) -> Union[TournamentMatch, RegularMatch]:
        self._require_admin(ctx, "declare forfeits")
        async with self._get_session_context() as session:
            match = await self.submission_ops.forfeit_match(
                match_ref, winning_team_id, admin_id=ctx.user_id, reason=reason, session=session
            )
            await self._create_audit_log(session, ctx, 'forfeit_match', 'match', match_ref.id, {
                **self._ref_details(match_ref),
                'winning_team_id': winning_team_id,
                'reason': reason,
            })
            return match

    # ============================================================================
    # Finalization and rewards
    # ============================================================================

    async def finalize_tournament(self, ctx: RequestContext, event_id: int,
                                  recompute: bool = False) -> FinalizationReport:
        self._require_admin(ctx, "finalize tournaments")
        report = await self.finalization.finalize_tournament(event_id, recompute=recompute,
                                                             awarded_by=ctx.user_id)
        async with self._get_session_context() as session:
            await self._create_audit_log(session, ctx, 'finalize_tournament', 'event', event_id, {
                'recompute': recompute,
                'players': report.players_aggregated,
                'awards': [a.award_type for a in report.awards],
                'credits': report.credits_distributed,
                'steps': report.steps_completed,
            })
        return report

    async def run_finalization_step(self, ctx: RequestContext, event_id: int, step: str):
        """Re-run a single finalization step after fixing the cause of its failure."""
        self._require_admin(ctx, "run finalization steps")
        if step not in STEPS:
            raise TournamentError(
                f"Unknown finalization step '{step}'",
                f"❌ Step must be one of: {', '.join(STEPS)}."
            )
        await self.finalization.ensure_completed(event_id)

        if step == 'aggregate_statistics':
            outcome = await self.finalization.aggregate_statistics(event_id)
        elif step == 'compute_awards':
            outcome = await self.finalization.compute_awards(event_id)
        elif step == 'update_rankings':
            outcome = await self.finalization.update_rankings()
        else:
            outcome = await self.finalization.distribute_rewards(event_id, awarded_by=ctx.user_id)

        async with self._get_session_context() as session:
            await self._create_audit_log(session, ctx, 'finalization_step', 'event', event_id, {'step': step})
        return outcome

    async def get_reward_settings(self, event_id: int) -> RewardSettings:
        return await self.finalization.get_reward_settings(event_id)

    async def update_reward_settings(self, ctx: RequestContext, event_id: int, **fields) -> RewardSettings:
        self._require_admin(ctx, "change reward settings")
        async with self._get_session_context() as session:
            settings = await self.finalization.update_reward_settings(event_id, session=session, **fields)
            await self._create_audit_log(session, ctx, 'update_reward_settings', 'event', event_id, fields)
            return settings

    # ============================================================================
    # Runtime configuration
    # ============================================================================

    def _require_config_service(self):
        if self.config_service is None:
            raise TournamentError(
                "AdminOperations was built without a configuration service",
                "❌ Runtime configuration is not available on this bot."
            )
        return self.config_service

    def get_configuration(self) -> Dict[str, Any]:
        """Effective value of every runtime key."""
        return self._require_config_service().list_all()

    async def update_configuration(self, ctx: RequestContext, key: str, value: int) -> Dict[str, Any]:
        """
        Override a scheduling, bracket or forfeit tunable.

        New values apply to matches scheduled and forfeits declared afterwards;
        existing matches keep their times and scores.

        Raises:
            PermissionDeniedError: Caller is not an admin
            InvalidSettingsError: Unknown key or out-of-range value
        """
        self._require_admin(ctx, "change configuration")
        config_service = self._require_config_service()
        await config_service.set(key, value, user_id=ctx.user_id)
        self.logger.info(f"{ctx.username} set {key} = {value}")
        return config_service.list_all()

    # ============================================================================
    # Queries
    # ============================================================================

    async def get_event_awards(self, event_id: int) -> List[EventAward]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(EventAward).where(EventAward.event_id == event_id).order_by(EventAward.id)
            )
            return list(result.scalars().all())

    async def get_rankings(self, limit: int = 10) -> List[UserRanking]:
        """Leaderboard ordered by ranking points, ties broken by wins then player id"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(UserRanking)
                .order_by(desc(UserRanking.ranking_points), desc(UserRanking.total_wins), UserRanking.player_id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_credit_history(self, player_id: int, limit: int = 20):
        return await self.db.get_credit_history(player_id, limit=limit)
