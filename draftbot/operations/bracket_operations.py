"""
Bracket Operations Module

Creates brackets for an event, generates their opening matches and advances
them round by round.

Lifecycle per bracket (status is monotonic):
- pending: created, no matches yet
- active: matches generated; rounds are promoted as results come in
- completed: one winner remains (or too few group qualifiers for a knockout)

For the groups format a match's ``round`` is its group number during the group
stage. The knockout stage starts at ``group_count + 1``.
"""

import json
import random
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Union
from contextlib import asynccontextmanager
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from draftbot.config import Config
from draftbot.data_models.bracket import PlannedMatch, PromotionResult, StandingRow
from draftbot.data_models.finalization import FinalStanding
from draftbot.database.models import (
    Bracket, BracketFormat, BracketStage, BracketStatus, Event, MatchStatus, Team, TournamentMatch
)
from draftbot.utils.bracket_generator import build_first_round, pair_in_order
from draftbot.utils.datetime_utils import parse_iso, to_naive_utc, utcnow
from draftbot.utils.exceptions import (
    InsufficientTeamsError, MatchStateError, NotFoundError, NotReadyError, TournamentError
)
from draftbot.utils.group_generator import compute_standings, group_team_ids, round_robin_matches, split_into_groups
from draftbot.utils.logger import setup_logger
from draftbot.utils.scheduling import assign_time_slots, slot_capacity
from draftbot.utils.standings import alphabetical_order, build_final_standings, knockout_order

logger = setup_logger(__name__)


class BracketOperations:
    """
    Bracket generation and round promotion.

    Every public method accepts an optional session so several operations can
    share one transaction; without one, each call commits on its own.
    """

    def __init__(self, database, config_service=None, rng: Optional[random.Random] = None):
        """Initialize with database instance, optional config service and random source"""
        self.db = database
        self.config_service = config_service
        self.rng = rng
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

    def _config(self, key: str, default):
        if self.config_service:
            return self.config_service.get(key, default)
        return default

    def _rng_for(self, bracket: Bracket) -> random.Random:
        if self.rng is not None:
            return self.rng
        seed = bracket.get_setting('seed')
        return random.Random(seed) if seed is not None else random.Random()

    def _interval(self, bracket: Bracket) -> int:
        return bracket.get_setting(
            'slot_interval_minutes',
            self._config('scheduling.slot_interval_minutes', Config.SLOT_INTERVAL_MINUTES)
        )

    def _slot_cap(self, bracket: Bracket, total_teams: int) -> int:
        teams_per_station = self._config('scheduling.teams_per_station', Config.TEAMS_PER_STATION)
        return slot_capacity(total_teams, teams_per_station)

    @staticmethod
    def _update_settings(bracket: Bracket, **values):
        settings = bracket.settings_dict
        settings.update(values)
        bracket.settings = json.dumps(settings)

    async def _get_bracket(self, session: AsyncSession, bracket_id: int, lock: bool = False) -> Bracket:
        stmt = select(Bracket).where(Bracket.id == bracket_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        bracket = result.scalar_one_or_none()
        if not bracket:
            raise NotFoundError("Bracket", bracket_id)
        return bracket

    async def _load_matches(self, session: AsyncSession, bracket_id: int,
                            round_number: Optional[int] = None) -> List[TournamentMatch]:
        stmt = select(TournamentMatch).where(TournamentMatch.bracket_id == bracket_id)
        if round_number is not None:
            stmt = stmt.where(TournamentMatch.round == round_number)
        result = await session.execute(stmt.order_by(TournamentMatch.round, TournamentMatch.match_number))
        return list(result.scalars().all())

    def _persist_planned(self, session: AsyncSession, bracket_id: int,
                         planned: Sequence[PlannedMatch]) -> List[TournamentMatch]:
        rows = []
        for plan in planned:
            row = TournamentMatch(
                bracket_id=bracket_id,
                round=plan.round,
                match_number=plan.match_number,
                team1_id=plan.team1_id,
                team2_id=plan.team2_id,
                winner_id=plan.winner_id,
                team1_score=0,
                team2_score=0,
                status=MatchStatus.PENDING,
                scheduled_at=plan.scheduled_at,
            )
            session.add(row)
            rows.append(row)
        return rows

    def _schedule(self, bracket: Bracket, planned: Sequence[PlannedMatch], start_at,
                  total_teams: int, rng: random.Random) -> int:
        """Slot the playable matches; byes take the round's first slot."""
        for match in planned:
            if match.is_bye:
                match.scheduled_at = start_at
        playable = [m for m in planned if not m.is_bye and not m.is_placeholder]
        return assign_time_slots(
            playable,
            start_at,
            interval_minutes=self._interval(bracket),
            max_per_slot=self._slot_cap(bracket, total_teams),
            rng=rng,
        )

    @staticmethod
    def _complete_byes(matches: Sequence[TournamentMatch]):
        now = utcnow()
        for match in matches:
            if match.is_bye and match.status == MatchStatus.PENDING:
                match.status = MatchStatus.COMPLETED
                match.completed_at = now

    @staticmethod
    def _next_start(matches: Sequence[TournamentMatch], interval_minutes: int):
        """One slot after the latest scheduled match, or now if nothing is scheduled."""
        times = [m.scheduled_at for m in matches if m.scheduled_at is not None]
        if not times:
            return utcnow()
        return max(times) + timedelta(minutes=interval_minutes)

    @staticmethod
    def _knockout_start_round(bracket: Bracket) -> int:
        return bracket.get_setting('knockout_start_round', 1)

    # ============================================================================
    # Creation and generation
    # ============================================================================

    async def create_bracket(
        self,
        event_id: int,
        bracket_format: Union[BracketFormat, str],
        settings: Optional[Dict] = None,
        session: Optional[AsyncSession] = None
    ) -> Bracket:
        """
        Create the bracket for an event.

        Args:
            event_id: Event whose teams will play
            bracket_format: 'elimination' or 'groups'
            settings: Optional overrides: max_group_size, group_count,
                teams_advancing, slot_interval_minutes, start_at, seed

        Raises:
            NotFoundError: Unknown event
            InsufficientTeamsError: Roster too small for the format
            TournamentError: Event already has a bracket
        """
        if isinstance(bracket_format, str):
            try:
                bracket_format = BracketFormat(bracket_format.lower())
            except ValueError:
                raise TournamentError(
                    f"Unknown bracket format '{bracket_format}'",
                    "❌ Format must be `elimination` or `groups`."
                )

        settings = dict(settings or {})
        if 'start_at' in settings and not isinstance(settings['start_at'], str):
            settings['start_at'] = to_naive_utc(settings['start_at']).isoformat()

        async with self._get_session_context(session) as s:
            event = await s.get(Event, event_id)
            if not event:
                raise NotFoundError("Event", event_id)

            existing = await s.execute(select(Bracket.id).where(Bracket.event_id == event_id))
            existing_id = existing.scalar_one_or_none()
            if existing_id is not None:
                raise TournamentError(
                    f"Event {event_id} already has bracket {existing_id}",
                    "❌ This event already has a bracket."
                )

            teams = await self.db.get_teams(event_id, session=s)
            if bracket_format == BracketFormat.ELIMINATION:
                required = Config.MIN_ELIMINATION_TEAMS
                stage = BracketStage.KNOCKOUT_STAGE
            else:
                required = Config.MIN_GROUP_TEAMS
                stage = BracketStage.GROUP_STAGE
                settings.setdefault('max_group_size', self._config('brackets.max_group_size', Config.MAX_GROUP_SIZE))
                settings.setdefault('teams_advancing', self._config(
                    'brackets.teams_advancing_per_group', Config.TEAMS_ADVANCING_PER_GROUP))

            if len(teams) < required:
                raise InsufficientTeamsError(len(teams), required, bracket_format.value)

            bracket = Bracket(
                event_id=event_id,
                format=bracket_format,
                stage=stage,
                status=BracketStatus.PENDING,
                settings=json.dumps(settings),
            )
            s.add(bracket)
            await s.flush()

            self.logger.info(
                f"Created {bracket_format.value} bracket {bracket.id} for event {event_id} ({len(teams)} teams)"
            )
            return bracket

    async def generate_initial_matches(self, bracket_id: int, start_at=None,
                                       session: Optional[AsyncSession] = None) -> List[TournamentMatch]:
        """
        Generate and schedule the opening matches of a pending bracket.

        Elimination brackets get their first round (byes carry a pre-set
        winner). Group brackets get every round-robin match of every group;
        group membership is recorded in the bracket settings.

        Raises:
            NotFoundError: Unknown bracket
            MatchStateError: Matches were already generated
            InsufficientTeamsError: Roster shrank below the format minimum
        """
        async with self._get_session_context(session) as s:
            bracket = await self._get_bracket(s, bracket_id, lock=True)
            if bracket.status != BracketStatus.PENDING or await self._load_matches(s, bracket_id):
                raise MatchStateError(
                    f"Bracket {bracket_id} already has matches",
                    "❌ Matches for this bracket have already been generated."
                )

            teams = await self.db.get_teams(bracket.event_id, session=s)
            team_ids = [team.id for team in teams]
            rng = self._rng_for(bracket)

            if start_at is None:
                configured = bracket.get_setting('start_at')
                start_at = parse_iso(configured) if configured else utcnow()
            else:
                start_at = to_naive_utc(start_at)

            if bracket.format == BracketFormat.ELIMINATION:
                planned = build_first_round(team_ids, round_number=1, rng=rng)
                self._update_settings(bracket, knockout_start_round=1)
            else:
                groups = split_into_groups(
                    team_ids,
                    max_group_size=bracket.get_setting('max_group_size'),
                    group_count=bracket.get_setting('group_count'),
                    rng=rng,
                )
                planned = round_robin_matches(groups)
                self._update_settings(bracket, groups=groups, group_count=len(groups))

            slots = self._schedule(bracket, planned, start_at, len(team_ids), rng)
            rows = self._persist_planned(s, bracket.id, planned)
            bracket.status = BracketStatus.ACTIVE
            await s.flush()

            self.logger.info(
                f"Generated {len(rows)} opening matches for bracket {bracket_id} "
                f"({sum(1 for r in rows if r.is_bye)} byes, {slots} slots)"
            )
            return rows

    # ============================================================================
    # Promotion
    # ============================================================================

    async def promote_next_round(self, bracket_id: int, from_round: Optional[int] = None,
                                 session: Optional[AsyncSession] = None) -> PromotionResult:
        """
        Advance winners of the latest round into a new round.

        When ``from_round`` is given and the round after it already exists the
        call is a no-op, so repeated triggers are harmless. A group-stage
        bracket is handed to generate_knockout.

        Raises:
            NotReadyError: A match in the round is unresolved or drawn
            MatchStateError: Matches not generated yet
        """
        async with self._get_session_context(session) as s:
            bracket = await self._get_bracket(s, bracket_id, lock=True)

            if bracket.format == BracketFormat.GROUPS and bracket.stage == BracketStage.GROUP_STAGE:
                return await self.generate_knockout(bracket_id, session=s)

            if bracket.status == BracketStatus.PENDING:
                raise MatchStateError(
                    f"Bracket {bracket_id} has no matches yet",
                    "❌ Generate the opening matches first."
                )

            first_round = self._knockout_start_round(bracket)
            matches = [m for m in await self._load_matches(s, bracket_id) if m.round >= first_round]
            if not matches:
                return PromotionResult(bracket_id=bracket_id, round_number=None,
                                       bracket_completed=bracket.status == BracketStatus.COMPLETED)

            latest = max(m.round for m in matches)

            if from_round is not None and not first_round <= from_round <= latest:
                raise MatchStateError(
                    f"Bracket {bracket_id} has no knockout round {from_round}",
                    f"❌ Round {from_round} does not exist in this bracket."
                )
            if from_round is not None and from_round < latest:
                existing = [m.id for m in matches if m.round == from_round + 1]
                return PromotionResult(bracket_id=bracket_id, round_number=from_round + 1,
                                       match_ids=existing, created=False,
                                       bracket_completed=bracket.status == BracketStatus.COMPLETED)

            if bracket.status == BracketStatus.COMPLETED:
                final = [m for m in matches if m.round == latest]
                return PromotionResult(bracket_id=bracket_id, round_number=latest,
                                       match_ids=[m.id for m in final], created=False,
                                       bracket_completed=True,
                                       champion_team_id=final[0].winner_id if final else None)

            current = [m for m in matches if m.round == latest]
            pending = [m.id for m in current if not m.is_resolved]
            if pending:
                raise NotReadyError.incomplete_round(latest, pending)

            drawn = [m.id for m in current if m.winner_id is None]
            if drawn:
                raise NotReadyError(
                    f"Round {latest} has drawn knockout match(es): {drawn}",
                    f"⏳ Knockout matches need a winner. Edit the score of match(es) {drawn} first.",
                    round_number=latest,
                    pending_match_ids=drawn,
                )

            self._complete_byes(current)
            winners = [m.winner_id for m in current]

            if len(winners) == 1:
                bracket.status = BracketStatus.COMPLETED
                bracket.completed_at = utcnow()
                await s.flush()
                self.logger.info(f"Bracket {bracket_id} completed, champion team {winners[0]}")
                return PromotionResult(bracket_id=bracket_id, round_number=latest,
                                       match_ids=[m.id for m in current], created=False,
                                       bracket_completed=True, champion_team_id=winners[0])

            next_round = latest + 1
            planned = pair_in_order(winners, next_round)
            interval = self._interval(bracket)
            self._schedule(bracket, planned, self._next_start(current, interval),
                           len(winners), self._rng_for(bracket))
            rows = self._persist_planned(s, bracket_id, planned)
            await s.flush()

            self.logger.info(f"Promoted {len(winners)} winners of round {latest} into round {next_round} "
                             f"of bracket {bracket_id}")
            return PromotionResult(bracket_id=bracket_id, round_number=next_round,
                                   match_ids=[r.id for r in rows], created=True)

    async def generate_knockout(self, bracket_id: int,
                                session: Optional[AsyncSession] = None) -> PromotionResult:
        """
        Turn completed groups into a knockout bracket.

        The top ``teams_advancing`` teams of every group qualify. Qualifiers are
        shuffled together and paired like an elimination first round, starting
        at round ``group_count + 1``. Fewer than two qualifiers completes the
        bracket directly.

        Raises:
            NotReadyError: A group still has unplayed matches
            MatchStateError: Bracket is not a group bracket or has no matches
        """
        async with self._get_session_context(session) as s:
            bracket = await self._get_bracket(s, bracket_id, lock=True)
            if bracket.format != BracketFormat.GROUPS:
                raise MatchStateError(
                    f"Bracket {bracket_id} is not a group bracket",
                    "❌ Only group brackets have a knockout stage."
                )
            if bracket.status == BracketStatus.PENDING:
                raise MatchStateError(
                    f"Bracket {bracket_id} has no matches yet",
                    "❌ Generate the group matches first."
                )

            matches = await self._load_matches(s, bracket_id)
            group_count = bracket.get_setting('group_count') or max((m.round for m in matches), default=0)

            if bracket.stage == BracketStage.KNOCKOUT_STAGE:
                existing = [m.id for m in matches if m.round == group_count + 1]
                return PromotionResult(bracket_id=bracket_id, round_number=group_count + 1,
                                       match_ids=existing, created=False,
                                       bracket_completed=bracket.status == BracketStatus.COMPLETED)

            group_matches = [m for m in matches if m.round <= group_count]
            for group_number in range(1, group_count + 1):
                pending = [m.id for m in group_matches
                           if m.round == group_number and m.status != MatchStatus.COMPLETED]
                if pending:
                    raise NotReadyError.incomplete_group(group_number, pending)

            teams_advancing = bracket.get_setting('teams_advancing', Config.TEAMS_ADVANCING_PER_GROUP)
            qualifiers = []
            for group_number, team_ids in self._groups(bracket, group_matches).items():
                table = compute_standings(team_ids, [m for m in group_matches if m.round == group_number])
                qualifiers.extend(row.team_id for row in table[:teams_advancing])

            rng = self._rng_for(bracket)
            rng.shuffle(qualifiers)
            bracket.stage = BracketStage.KNOCKOUT_STAGE
            self._update_settings(bracket, knockout_start_round=group_count + 1, qualifiers=qualifiers)

            if len(qualifiers) < Config.MIN_ELIMINATION_TEAMS:
                bracket.status = BracketStatus.COMPLETED
                bracket.completed_at = utcnow()
                await s.flush()
                champion = qualifiers[0] if qualifiers else None
                self.logger.warning(f"Bracket {bracket_id} has {len(qualifiers)} qualifier(s); completed without knockout")
                return PromotionResult(bracket_id=bracket_id, round_number=None, created=False,
                                       bracket_completed=True, champion_team_id=champion)

            planned = build_first_round(qualifiers, round_number=group_count + 1, shuffle=False)
            interval = self._interval(bracket)
            self._schedule(bracket, planned, self._next_start(group_matches, interval), len(qualifiers), rng)
            rows = self._persist_planned(s, bracket_id, planned)
            await s.flush()

            self.logger.info(
                f"Generated knockout stage for bracket {bracket_id}: {len(qualifiers)} qualifiers, "
                f"{len(rows)} matches from round {group_count + 1}"
            )
            return PromotionResult(bracket_id=bracket_id, round_number=group_count + 1,
                                   match_ids=[r.id for r in rows], created=True)

    @staticmethod
    def _groups(bracket: Bracket, group_matches: Sequence[TournamentMatch]) -> Dict[int, List[int]]:
        stored = bracket.get_setting('groups')
        if stored:
            return {index: list(team_ids) for index, team_ids in enumerate(stored, 1)}
        return group_team_ids(group_matches)

    # ============================================================================
    # Queries
    # ============================================================================

    async def get_bracket(self, bracket_id: int, session: Optional[AsyncSession] = None) -> Bracket:
        async with self._get_session_context(session) as s:
            return await self._get_bracket(s, bracket_id)

    async def get_bracket_for_event(self, event_id: int,
                                    session: Optional[AsyncSession] = None) -> Optional[Bracket]:
        async with self._get_session_context(session) as s:
            result = await s.execute(select(Bracket).where(Bracket.event_id == event_id))
            return result.scalar_one_or_none()

    async def get_matches(self, bracket_id: int, round_number: Optional[int] = None,
                          session: Optional[AsyncSession] = None) -> List[TournamentMatch]:
        """Matches of a bracket ordered by round and match number"""
        async with self._get_session_context(session) as s:
            await self._get_bracket(s, bracket_id)
            return await self._load_matches(s, bracket_id, round_number)

    async def get_group_standings(self, bracket_id: int,
                                  session: Optional[AsyncSession] = None) -> Dict[int, List[StandingRow]]:
        """Group number -> ranked standings from completed group matches"""
        async with self._get_session_context(session) as s:
            bracket = await self._get_bracket(s, bracket_id)
            if bracket.format != BracketFormat.GROUPS:
                raise MatchStateError(
                    f"Bracket {bracket_id} is not a group bracket",
                    "❌ Only group brackets have standings tables."
                )
            matches = await self._load_matches(s, bracket_id)
            group_count = bracket.get_setting('group_count') or max((m.round for m in matches), default=0)
            group_matches = [m for m in matches if m.round <= group_count]

            return {
                group_number: compute_standings(team_ids, [m for m in group_matches if m.round == group_number])
                for group_number, team_ids in self._groups(bracket, group_matches).items()
            }

    async def get_final_standings(self, event_id: int,
                                  session: Optional[AsyncSession] = None) -> List[FinalStanding]:
        """
        Final placings for an event's bracket.

        Elimination and knocked-out group brackets: winner, runner-up, then
        semifinal losers. Group brackets that never reached a knockout fall
        back to alphabetical team order.
        """
        async with self._get_session_context(session) as s:
            bracket = await self.get_bracket_for_event(event_id, session=s)
            if not bracket:
                raise NotFoundError("Bracket for event", event_id)

            teams = await self.db.get_teams(event_id, session=s)
            teams_by_id = {team.id: team for team in teams}
            matches = await self._load_matches(s, bracket.id)

            knockout = []
            if bracket.format == BracketFormat.ELIMINATION or bracket.stage == BracketStage.KNOCKOUT_STAGE:
                first_round = self._knockout_start_round(bracket)
                knockout = [m for m in matches if m.round >= first_round]

            if knockout:
                order = knockout_order(knockout)
            elif bracket.format == BracketFormat.GROUPS and bracket.get_setting('qualifiers'):
                # Single qualifier: it is the winner, the rest follow alphabetically
                qualifiers = bracket.get_setting('qualifiers')
                order = qualifiers + [t for t in alphabetical_order(teams) if t not in qualifiers]
            else:
                self.logger.warning(
                    f"Bracket {bracket.id} has no knockout results; using alphabetical standings"
                )
                order = alphabetical_order(teams)

            return build_final_standings(order, teams_by_id)

    async def get_champion(self, bracket_id: int, session: Optional[AsyncSession] = None) -> Optional[Team]:
        async with self._get_session_context(session) as s:
            bracket = await self._get_bracket(s, bracket_id)
            standings = await self.get_final_standings(bracket.event_id, session=s)
            if bracket.status != BracketStatus.COMPLETED or not standings:
                return None
            return await s.get(Team, standings[0].team_id)
