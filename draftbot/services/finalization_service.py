"""
Tournament finalization service.

Turns a completed bracket into player statistics, awards, rankings and credit
payouts. The four steps run in order but each is a public method that can be
retried on its own:

1. aggregate_statistics - per-event player totals, then cumulative totals
2. compute_awards       - MVP, top scorer, top assists, best goalkeeper, winner
3. update_rankings      - cumulative ranking points for every known player
4. distribute_rewards   - tiered credits for the top finishing teams

Steps 1-3 replace their output wholesale, so re-running them is idempotent.
Step 4 is guarded by ``rewards_distributed_at`` on the bracket and never pays
twice.
"""

import logging
from collections import Counter, defaultdict
from typing import Dict, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from draftbot.config import Config
from draftbot.data_models.finalization import AwardResult, FinalizationReport, PayoutLine, PlayerTotals
from draftbot.database.models import (
    AwardType, Bracket, BracketStatus, EventAward, MatchStatus, Player, PlayerEventStats,
    PlayerMatchStat, PlayerStats, ReductionType, RegularMatch, RewardSettings, TournamentMatch,
    UserRanking
)
from draftbot.services.base import BaseService
from draftbot.utils.awards import compute_awards, compute_ranking_points, is_defensive
from draftbot.utils.datetime_utils import utcnow
from draftbot.utils.exceptions import (
    AlreadyFinalizedError, FinalizationStepError, InvalidSettingsError, NotFoundError, NotReadyError
)
from draftbot.utils.rewards import plan_payouts

logger = logging.getLogger(__name__)

STEPS = ('aggregate_statistics', 'compute_awards', 'update_rankings', 'distribute_rewards')

REWARD_SETTING_FIELDS = (
    'enabled', 'only_captains', 'base_reward_amount', 'reward_positions',
    'reduction_per_position', 'reduction_type'
)


def default_reward_settings(event_id: int) -> RewardSettings:
    """Unsaved settings row carrying the configured defaults."""
    return RewardSettings(
        event_id=event_id,
        enabled=Config.REWARDS_ENABLED,
        only_captains=Config.REWARDS_ONLY_CAPTAINS,
        base_reward_amount=Config.REWARD_BASE_AMOUNT,
        reward_positions=Config.REWARD_POSITIONS,
        reduction_per_position=Config.REWARD_REDUCTION_PER_POSITION,
        reduction_type=ReductionType(Config.REWARD_REDUCTION_TYPE),
    )


class FinalizationService(BaseService):
    """Runs the post-tournament statistics, awards, rankings and rewards pipeline."""

    def __init__(self, database, bracket_ops):
        """
        Args:
            database: Database instance (roster provider and credit ledger)
            bracket_ops: BracketOperations used for final standings
        """
        super().__init__(database.session_factory)
        self.db = database
        self.bracket_ops = bracket_ops

    async def _get_bracket_for_event(self, session: AsyncSession, event_id: int) -> Bracket:
        result = await session.execute(
            select(Bracket).where(Bracket.event_id == event_id).with_for_update()
        )
        bracket = result.scalar_one_or_none()
        if not bracket:
            raise NotFoundError("Bracket for event", event_id)
        return bracket

    @staticmethod
    def _require_completed(bracket: Bracket):
        """Finalization only ever reads a finished bracket."""
        if bracket.status != BracketStatus.COMPLETED:
            raise NotReadyError(
                f"Bracket {bracket.id} for event {bracket.event_id} is {bracket.status.value}",
                "⏳ Finish the tournament before finalizing it."
            )

    async def ensure_completed(self, event_id: int) -> Bracket:
        """
        Raises:
            NotFoundError: Event has no bracket
            NotReadyError: Bracket is not completed
        """
        async with self.get_session() as session:
            bracket = await self._get_bracket_for_event(session, event_id)
            self._require_completed(bracket)
            return bracket

    # ============================================================================
    # Step 1: statistics
    # ============================================================================

    async def _completed_matches(self, session: AsyncSession, event_id: int) -> list:
        """Completed two-team matches of the event, bracket and regular."""
        result = await session.execute(
            select(TournamentMatch)
            .join(Bracket, Bracket.id == TournamentMatch.bracket_id)
            .where(Bracket.event_id == event_id, TournamentMatch.status == MatchStatus.COMPLETED)
            .order_by(TournamentMatch.round, TournamentMatch.match_number)
        )
        matches = [m for m in result.scalars().all() if not m.is_bye]

        result = await session.execute(
            select(RegularMatch)
            .where(RegularMatch.event_id == event_id, RegularMatch.status == MatchStatus.COMPLETED)
            .order_by(RegularMatch.id)
        )
        matches.extend(result.scalars().all())
        return matches

    async def _match_stats(self, session: AsyncSession, matches: list) -> List[PlayerMatchStat]:
        tournament_ids = [m.id for m in matches if isinstance(m, TournamentMatch)]
        regular_ids = [m.id for m in matches if isinstance(m, RegularMatch)]
        stats = []
        if tournament_ids:
            result = await session.execute(
                select(PlayerMatchStat).where(PlayerMatchStat.tournament_match_id.in_(tournament_ids))
            )
            stats.extend(result.scalars().all())
        if regular_ids:
            result = await session.execute(
                select(PlayerMatchStat).where(PlayerMatchStat.regular_match_id.in_(regular_ids))
            )
            stats.extend(result.scalars().all())
        return stats

    @staticmethod
    def _conceded(match, team_id: int) -> Optional[int]:
        if team_id == match.team1_id:
            return match.team2_score
        if team_id == match.team2_id:
            return match.team1_score
        return None

    async def aggregate_statistics(self, event_id: int) -> List[PlayerTotals]:
        """
        Aggregate every roster member's numbers for the event.

        Every member starts from zero, so players without any recorded stat
        line still get a row. Results replace the event's player_event_stats
        rows, and player_stats is recomputed from all events of each affected
        player.

        Raises:
            NotReadyError: Bracket is not completed
        """
        async with self.get_session() as session:
            self._require_completed(await self._get_bracket_for_event(session, event_id))
            teams = await self.db.get_teams(event_id, session=session)
            member_ids = [m.player_id for team in teams for m in team.members]
            result = await session.execute(select(Player).where(Player.id.in_(member_ids)))
            players = {p.id: p for p in result.scalars().all()}

            totals: Dict[int, PlayerTotals] = {}
            members_by_team: Dict[int, List[int]] = {}
            for team in teams:
                members_by_team[team.id] = []
                for member in team.members:
                    if member.player_id in totals:
                        logger.warning(f"Player {member.player_id} is on more than one team in event {event_id}")
                        continue
                    player = players.get(member.player_id)
                    totals[member.player_id] = PlayerTotals(
                        player_id=member.player_id,
                        username=player.username if player else member.display_name,
                        team_id=team.id,
                        position=member.position or '',
                        was_captain=team.captain_id == member.player_id,
                    )
                    members_by_team[team.id].append(member.player_id)

            matches = await self._completed_matches(session, event_id)
            for match in matches:
                for team_id in (match.team1_id, match.team2_id):
                    for player_id in members_by_team.get(team_id, []):
                        line = totals[player_id]
                        line.matches += 1
                        if match.winner_id is None:
                            line.draws += 1
                        elif match.winner_id == team_id:
                            line.wins += 1
                        else:
                            line.losses += 1

            match_by_ref = {m.match_ref: m for m in matches}
            for stat in await self._match_stats(session, matches):
                line = totals.get(stat.player_id)
                if line is None:
                    continue
                line.goals += stat.goals
                line.assists += stat.assists
                position = stat.position or line.position
                conceded = self._conceded(match_by_ref[stat.match_ref], stat.team_id)
                if stat.clean_sheet or (conceded == 0 and is_defensive(position)):
                    line.clean_sheets += 1

            previous = await session.execute(
                select(PlayerEventStats.player_id).where(PlayerEventStats.event_id == event_id)
            )
            affected = set(previous.scalars().all()) | set(totals)

            await session.execute(delete(PlayerEventStats).where(PlayerEventStats.event_id == event_id))
            for line in totals.values():
                session.add(PlayerEventStats(
                    player_id=line.player_id,
                    event_id=event_id,
                    team_id=line.team_id,
                    username=line.username,
                    position=line.position,
                    was_captain=line.was_captain,
                    matches=line.matches,
                    wins=line.wins,
                    losses=line.losses,
                    draws=line.draws,
                    goals=line.goals,
                    assists=line.assists,
                    clean_sheets=line.clean_sheets,
                ))
            await session.flush()

            await self._recompute_player_stats(session, affected)

        logger.info(f"Aggregated statistics for {len(totals)} players over {len(matches)} matches in event {event_id}")
        return list(totals.values())

    async def _recompute_player_stats(self, session: AsyncSession, player_ids):
        """player_stats = sum of player_event_stats across all events"""
        if not player_ids:
            return
        player_ids = sorted(player_ids)

        result = await session.execute(
            select(PlayerEventStats)
            .where(PlayerEventStats.player_id.in_(player_ids))
            .order_by(PlayerEventStats.event_id)
        )
        rows_by_player = defaultdict(list)
        for row in result.scalars().all():
            rows_by_player[row.player_id].append(row)

        result = await session.execute(select(PlayerStats).where(PlayerStats.player_id.in_(player_ids)))
        existing = {row.player_id: row for row in result.scalars().all()}

        for player_id in player_ids:
            rows = rows_by_player.get(player_id, [])
            stats = existing.get(player_id)
            if not rows:
                if stats:
                    await session.delete(stats)
                continue
            if stats is None:
                stats = PlayerStats(player_id=player_id)
                session.add(stats)

            positions = [r.position for r in rows if r.position]
            stats.username = rows[-1].username
            stats.preferred_position = positions[-1] if positions else ''
            stats.total_matches = sum(r.matches for r in rows)
            stats.total_wins = sum(r.wins for r in rows)
            stats.total_losses = sum(r.losses for r in rows)
            stats.total_goals = sum(r.goals for r in rows)
            stats.total_assists = sum(r.assists for r in rows)
            stats.total_clean_sheets = sum(r.clean_sheets for r in rows)
            stats.draft_participations = len(rows)
            stats.captain_count = sum(1 for r in rows if r.was_captain)

    # ============================================================================
    # Step 2: awards
    # ============================================================================

    async def compute_awards(self, event_id: int) -> List[AwardResult]:
        """Replace the event's awards with ones computed from its aggregated stats."""
        async with self.get_session() as session:
            self._require_completed(await self._get_bracket_for_event(session, event_id))
            result = await session.execute(
                select(PlayerEventStats)
                .where(PlayerEventStats.event_id == event_id)
                .order_by(PlayerEventStats.id)
            )
            totals = [
                PlayerTotals(
                    player_id=row.player_id,
                    username=row.username,
                    team_id=row.team_id,
                    position=row.position or '',
                    was_captain=row.was_captain,
                    matches=row.matches,
                    wins=row.wins,
                    losses=row.losses,
                    draws=row.draws,
                    goals=row.goals,
                    assists=row.assists,
                    clean_sheets=row.clean_sheets,
                )
                for row in result.scalars().all()
            ]

            standings = await self.bracket_ops.get_final_standings(event_id, session=session)
            captain_ids = [s.captain_id for s in standings[:1] if s.captain_id is not None]
            captain_names = {}
            if captain_ids:
                result = await session.execute(select(Player).where(Player.id.in_(captain_ids)))
                captain_names = {p.id: p.username for p in result.scalars().all()}

            awards = compute_awards(totals, standings, captain_names)

            await session.execute(delete(EventAward).where(EventAward.event_id == event_id))
            for award in awards:
                session.add(EventAward(
                    event_id=event_id,
                    award_type=AwardType(award.award_type),
                    player_id=award.player_id,
                    username=award.username,
                    value=award.value,
                    description=award.description,
                ))

        logger.info(f"Computed {len(awards)} awards for event {event_id}")
        return awards

    # ============================================================================
    # Step 3: rankings
    # ============================================================================

    async def update_rankings(self) -> int:
        """Recompute user_rankings for every player with cumulative stats."""
        async def recompute_rankings():
            return await self._update_rankings_once()

        count = await self.execute_with_retry(recompute_rankings)
        logger.info(f"Updated rankings for {count} players")
        return count

    async def _update_rankings_once(self) -> int:
        async with self.get_session() as session:
            result = await session.execute(select(PlayerStats))
            all_stats = list(result.scalars().all())

            result = await session.execute(select(EventAward.player_id, EventAward.award_type))
            award_counts: Dict[int, Counter] = defaultdict(Counter)
            for player_id, award_type in result.all():
                award_counts[player_id][award_type] += 1

            result = await session.execute(select(UserRanking))
            rankings = {r.player_id: r for r in result.scalars().all()}

            for stats in all_stats:
                awards = award_counts.get(stats.player_id, Counter())
                tournament_wins = awards[AwardType.TOURNAMENT_WINNER]

                ranking = rankings.get(stats.player_id)
                if ranking is None:
                    ranking = UserRanking(player_id=stats.player_id)
                    session.add(ranking)

                decided = stats.total_wins + stats.total_losses
                ranking.username = stats.username
                ranking.total_drafts = stats.draft_participations
                ranking.drafts_won = tournament_wins
                ranking.total_matches = stats.total_matches
                ranking.total_wins = stats.total_wins
                ranking.total_losses = stats.total_losses
                ranking.total_goals = stats.total_goals
                ranking.total_assists = stats.total_assists
                ranking.total_clean_sheets = stats.total_clean_sheets
                ranking.captain_count = stats.captain_count
                ranking.mvp_awards = awards[AwardType.MVP]
                ranking.top_scorer_awards = awards[AwardType.TOP_SCORER]
                ranking.top_assists_awards = awards[AwardType.TOP_ASSISTS]
                ranking.best_goalkeeper_awards = awards[AwardType.BEST_GOALKEEPER]
                ranking.ranking_points = compute_ranking_points(
                    wins=stats.total_wins,
                    goals=stats.total_goals,
                    assists=stats.total_assists,
                    clean_sheets=stats.total_clean_sheets,
                    draft_participations=stats.draft_participations,
                    mvp_count=awards[AwardType.MVP],
                    top_scorer_count=awards[AwardType.TOP_SCORER],
                    top_assists_count=awards[AwardType.TOP_ASSISTS],
                    best_goalkeeper_count=awards[AwardType.BEST_GOALKEEPER],
                    captain_count=stats.captain_count,
                    tournament_wins=tournament_wins,
                )
                ranking.win_rate = round(stats.total_wins / decided * 100, 2) if decided else 0.0
                ranking.goals_per_match = (round(stats.total_goals / stats.total_matches, 2)
                                           if stats.total_matches else 0.0)
                ranking.assists_per_match = (round(stats.total_assists / stats.total_matches, 2)
                                             if stats.total_matches else 0.0)

            return len(all_stats)

    # ============================================================================
    # Step 4: rewards
    # ============================================================================

    async def distribute_rewards(self, event_id: int, awarded_by: Optional[int] = None) -> List[PayoutLine]:
        """
        Pay tiered credits to the top finishing teams.

        All payouts for the event commit together, and the bracket's
        ``rewards_distributed_at`` is stamped in the same transaction.

        Raises:
            NotReadyError: Bracket is not completed
            AlreadyFinalizedError: Rewards were already paid for this event
        """
        async with self.get_session() as session:
            bracket = await self._get_bracket_for_event(session, event_id)
            self._require_completed(bracket)
            if bracket.rewards_distributed_at is not None:
                raise AlreadyFinalizedError(event_id, "Reward distribution")

            settings = await self._reward_settings(session, event_id)
            if not settings.enabled:
                logger.info(f"Rewards disabled for event {event_id}; nothing distributed")
                return []

            standings = await self.bracket_ops.get_final_standings(event_id, session=session)
            teams = await self.db.get_teams(event_id, session=session)
            members = {team.id: team.member_ids for team in teams}

            paid = []
            for line in plan_payouts(standings, settings, members):
                if line.amount <= 0:
                    logger.warning(f"Skipping zero reward for player {line.player_id} at position {line.position}")
                    continue
                await self.db.add_credit_transaction_atomic(
                    player_id=line.player_id,
                    amount=line.amount,
                    reason=line.reason,
                    session=session,
                    event_id=event_id,
                    position=line.position,
                    team_id=line.team_id,
                    awarded_by=awarded_by,
                )
                paid.append(line)

            bracket.rewards_distributed_at = utcnow()

        logger.info(f"Distributed {sum(p.amount for p in paid)} credits to {len(paid)} recipients for event {event_id}")
        return paid

    # ============================================================================
    # Pipeline
    # ============================================================================

    async def finalize_tournament(self, event_id: int, recompute: bool = False,
                                  awarded_by: Optional[int] = None) -> FinalizationReport:
        """
        Run all finalization steps for a completed bracket.

        A finalized event is only processed again with ``recompute=True``,
        which re-runs statistics, awards and rankings but never pays rewards
        twice. A failing step is logged and raised as FinalizationStepError;
        steps that already ran are not rolled back.

        Raises:
            NotFoundError: Event has no bracket
            NotReadyError: Bracket is not completed
            AlreadyFinalizedError: Already finalized and recompute is False
            FinalizationStepError: A step failed
        """
        async with self.get_session() as session:
            bracket = await self._get_bracket_for_event(session, event_id)
            self._require_completed(bracket)
            if bracket.finalized_at is not None and not recompute:
                raise AlreadyFinalizedError(event_id)
            rewards_already_paid = bracket.rewards_distributed_at is not None

        report = FinalizationReport(event_id=event_id)
        logger.info(f"Finalizing event {event_id}{' (recompute)' if recompute else ''}")

        async def run(step, coro_factory):
            try:
                outcome = await coro_factory()
            except Exception as e:
                logger.error(f"Finalization step '{step}' failed for event {event_id}: {e}", exc_info=True)
                raise FinalizationStepError(step, event_id, e) from e
            report.steps_completed.append(step)
            return outcome

        totals = await run('aggregate_statistics', lambda: self.aggregate_statistics(event_id))
        report.players_aggregated = len(totals)

        report.awards = await run('compute_awards', lambda: self.compute_awards(event_id))
        report.rankings_updated = await run('update_rankings', self.update_rankings)

        if rewards_already_paid:
            report.rewards_skipped_reason = "Rewards were already distributed for this event"
            logger.info(f"Skipping reward distribution for event {event_id}: already paid")
        else:
            report.payouts = await run('distribute_rewards',
                                       lambda: self.distribute_rewards(event_id, awarded_by))
            if not report.payouts:
                report.rewards_skipped_reason = "Rewards are disabled or no positive payouts"

        async with self.get_session() as session:
            bracket = await self._get_bracket_for_event(session, event_id)
            if bracket.finalized_at is None:
                bracket.finalized_at = utcnow()

        logger.info(
            f"Event {event_id} finalized: {report.players_aggregated} players, {len(report.awards)} awards, "
            f"{report.rankings_updated} rankings, {report.credits_distributed} credits"
        )
        return report

    # ============================================================================
    # Reward settings
    # ============================================================================

    async def _reward_settings(self, session: AsyncSession, event_id: int) -> RewardSettings:
        result = await session.execute(select(RewardSettings).where(RewardSettings.event_id == event_id))
        return result.scalar_one_or_none() or default_reward_settings(event_id)

    async def get_reward_settings(self, event_id: int) -> RewardSettings:
        """Stored settings for an event, or the configured defaults"""
        async with self.get_session() as session:
            return await self._reward_settings(session, event_id)

    async def update_reward_settings(self, event_id: int, session: Optional[AsyncSession] = None,
                                     **fields) -> RewardSettings:
        """
        Validate and store reward settings for an event.

        Raises:
            InvalidSettingsError: Unknown field or out-of-range value
        """
        fields = validate_reward_fields(fields)

        async def apply(s: AsyncSession) -> RewardSettings:
            result = await s.execute(select(RewardSettings).where(RewardSettings.event_id == event_id))
            settings = result.scalar_one_or_none()
            if settings is None:
                settings = default_reward_settings(event_id)
                s.add(settings)
            for key, value in fields.items():
                setattr(settings, key, value)
            await s.flush()
            return settings

        if session is not None:
            settings = await apply(session)
        else:
            async with self.get_session() as s:
                settings = await apply(s)

        logger.info(f"Updated reward settings for event {event_id}: {fields}")
        return settings


def validate_reward_fields(fields: Dict) -> Dict:
    """Check reward setting overrides; returns them with reduction_type as an enum."""
    unknown = set(fields) - set(REWARD_SETTING_FIELDS)
    if unknown:
        raise InvalidSettingsError(', '.join(sorted(unknown)), "is not a reward setting")

    clean = dict(fields)
    for flag in ('enabled', 'only_captains'):
        if flag in clean and not isinstance(clean[flag], bool):
            raise InvalidSettingsError(flag, "must be true or false")

    minimums = {'base_reward_amount': 0, 'reward_positions': 1, 'reduction_per_position': 0}
    for key, minimum in minimums.items():
        if key not in clean:
            continue
        value = clean[key]
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidSettingsError(key, "must be a whole number")
        if value < minimum:
            raise InvalidSettingsError(key, f"must be at least {minimum}")

    if 'reduction_type' in clean:
        value = clean['reduction_type']
        if not isinstance(value, ReductionType):
            try:
                value = ReductionType(str(value).lower())
            except ValueError:
                raise InvalidSettingsError('reduction_type', "must be `percentage` or `fixed`")
        clean['reduction_type'] = value

    return clean
