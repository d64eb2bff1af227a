from typing import Optional, List
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from sqlalchemy import select
from contextlib import asynccontextmanager

from draftbot.config import Config
from draftbot.database.models import (
    Base, Player, Event, Team, TeamMember, RegularMatch, RewardPayout
)
from draftbot.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = self.database_url
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
            future=True
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    @property
    def session_factory(self):
        """Session factory handed to services"""
        return self.async_session

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context are committed together on success,
        or rolled back together on failure.

        Usage:
            async with db.transaction() as session:
                await bracket_ops.create_bracket(..., session=session)
                await bracket_ops.generate_initial_matches(..., session=session)
                # All operations commit together here

        The caller is responsible for passing the yielded session to all
        participating operations. Exceptions must be allowed to propagate out
        of the context for rollback to occur.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

    # ============================================================================
    # Player operations
    # ============================================================================

    async def get_player(self, player_id: int) -> Optional[Player]:
        async with self.get_session() as session:
            return await session.get(Player, player_id)

    async def get_player_by_discord_id(self, discord_id: int) -> Optional[Player]:
        """Get a player by their Discord ID"""
        async with self.get_session() as session:
            result = await session.execute(
                select(Player).where(Player.discord_id == discord_id)
            )
            return result.scalar_one_or_none()

    async def create_player(self, username: str, discord_id: Optional[int] = None,
                            display_name: str = None) -> Player:
        """Create a new player"""
        async with self.get_session() as session:
            player = Player(
                discord_id=discord_id,
                username=username,
                display_name=display_name or username,
                total_credits=0
            )
            session.add(player)
            await session.commit()
            await session.refresh(player)
            return player

    # ============================================================================
    # Events and rosters
    # ============================================================================

    async def create_event(self, name: str) -> Event:
        async with self.get_session() as session:
            event = Event(name=name, is_active=True)
            session.add(event)
            await session.commit()
            await session.refresh(event)
            return event

    async def get_event(self, event_id: int) -> Optional[Event]:
        async with self.get_session() as session:
            return await session.get(Event, event_id)

    async def create_team(self, event_id: int, name: str, captain_id: Optional[int] = None,
                          color: str = '#ffffff') -> Team:
        """Create a drafted team; the captain is added as its first member"""
        async with self.transaction() as session:
            team = Team(event_id=event_id, name=name, captain_id=captain_id, color=color)
            session.add(team)
            await session.flush()

            if captain_id is not None:
                captain = await session.get(Player, captain_id)
                session.add(TeamMember(
                    team_id=team.id,
                    player_id=captain_id,
                    display_name=(captain.display_name or captain.username) if captain else str(captain_id),
                ))

            await session.flush()
            await session.refresh(team)
            return team

    async def add_team_member(self, team_id: int, player_id: int, position: str = '',
                              display_name: Optional[str] = None) -> TeamMember:
        """Add a player to a team, or update the position of an existing member"""
        async with self.transaction() as session:
            result = await session.execute(
                select(TeamMember).where(
                    TeamMember.team_id == team_id,
                    TeamMember.player_id == player_id
                )
            )
            member = result.scalar_one_or_none()

            if member:
                member.position = position or member.position
                if display_name:
                    member.display_name = display_name
            else:
                if display_name is None:
                    player = await session.get(Player, player_id)
                    display_name = (player.display_name or player.username) if player else str(player_id)
                member = TeamMember(
                    team_id=team_id,
                    player_id=player_id,
                    display_name=display_name,
                    position=position
                )
                session.add(member)

            await session.flush()
            await session.refresh(member)
            return member

    async def get_teams(self, event_id: int, session: Optional[AsyncSession] = None) -> List[Team]:
        """
        Roster provider: teams of an event with members loaded, in creation order.
        """
        stmt = (
            select(Team)
            .options(selectinload(Team.members))
            .where(Team.event_id == event_id)
            .order_by(Team.id)
        )
        if session is not None:
            result = await session.execute(stmt)
            return list(result.scalars().all())

        async with self.get_session() as new_session:
            result = await new_session.execute(stmt)
            return list(result.scalars().all())

    async def get_team(self, team_id: int) -> Optional[Team]:
        async with self.get_session() as session:
            result = await session.execute(
                select(Team).options(selectinload(Team.members)).where(Team.id == team_id)
            )
            return result.scalar_one_or_none()

    async def create_regular_match(self, event_id: int, team1_id: int, team2_id: int,
                                   scheduled_at=None) -> RegularMatch:
        """Create a non-bracket match between two teams of the same event"""
        if team1_id == team2_id:
            raise ValueError("A team cannot play itself")

        async with self.get_session() as session:
            match = RegularMatch(
                event_id=event_id,
                team1_id=team1_id,
                team2_id=team2_id,
                scheduled_at=scheduled_at
            )
            session.add(match)
            await session.commit()
            await session.refresh(match)
            return match

    # ============================================================================
    # Credit ledger
    # ============================================================================

    async def add_credit_transaction_atomic(self, player_id: int, amount: int, reason: str,
                                            session: AsyncSession, event_id: int,
                                            position: int, team_id: Optional[int] = None,
                                            awarded_by: Optional[int] = None) -> RewardPayout:
        """
        Add a credit ledger entry with atomic balance tracking (session-aware).

        The player row is locked with SELECT FOR UPDATE so the running balance
        and the ledger's balance_after stay consistent.
        """
        # NOTE: On SQLite, with_for_update() relies on the database-level write lock
        player_result = await session.execute(
            select(Player).where(Player.id == player_id).with_for_update()
        )
        player = player_result.scalar_one()

        new_balance = (player.total_credits or 0) + amount
        player.total_credits = new_balance

        ledger_entry = RewardPayout(
            player_id=player_id,
            event_id=event_id,
            team_id=team_id,
            position=position,
            amount=amount,
            balance_after=new_balance,
            reason=reason,
            awarded_by=awarded_by
        )

        session.add(ledger_entry)
        await session.flush()  # Use flush to get ID, let caller handle commit

        return ledger_entry

    async def get_credit_balance(self, player_id: int) -> int:
        async with self.get_session() as session:
            result = await session.execute(
                select(Player.total_credits).where(Player.id == player_id)
            )
            balance = result.scalar_one_or_none()
            return balance if balance is not None else 0

    async def get_credit_history(self, player_id: int, limit: int = 20) -> List[RewardPayout]:
        """Get credit ledger history for a player, newest first"""
        async with self.get_session() as session:
            result = await session.execute(
                select(RewardPayout)
                .where(RewardPayout.player_id == player_id)
                .order_by(RewardPayout.created_at.desc(), RewardPayout.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
