import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text,
    ForeignKey, Float, BigInteger, Enum as SQLEnum, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

# ============================================================================
# Enums
# ============================================================================

class BracketFormat(Enum):
    ELIMINATION = "elimination"
    GROUPS = "groups"

class BracketStage(Enum):
    GROUP_STAGE = "group_stage"
    KNOCKOUT_STAGE = "knockout_stage"

class BracketStatus(Enum):
    """Monotonic: pending -> active -> completed"""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"

class MatchStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class SubmissionStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CONFLICTED = "conflicted"

class AwardType(Enum):
    MVP = "mvp"
    TOP_SCORER = "top_scorer"
    TOP_ASSISTS = "top_assists"
    BEST_GOALKEEPER = "best_goalkeeper"
    TOURNAMENT_WINNER = "tournament_winner"

class ReductionType(Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"

# ============================================================================
# Match references
# ============================================================================

@dataclass(frozen=True)
class TournamentMatchRef:
    """Reference to a bracket match"""
    id: int

    def __str__(self):
        return f"tournament match {self.id}"

@dataclass(frozen=True)
class RegularMatchRef:
    """Reference to a regular (non-bracket) event match"""
    id: int

    def __str__(self):
        return f"regular match {self.id}"

MatchRef = Union[TournamentMatchRef, RegularMatchRef]

# Exactly one of the two match foreign keys may be set
MATCH_REF_CHECK = "(tournament_match_id IS NULL) <> (regular_match_id IS NULL)"


def _match_ref_from_columns(tournament_match_id, regular_match_id) -> MatchRef:
    if tournament_match_id is not None:
        return TournamentMatchRef(tournament_match_id)
    return RegularMatchRef(regular_match_id)


def match_ref_columns(ref: MatchRef) -> Dict[str, Optional[int]]:
    """Column values for storing a MatchRef on a submission or stat row."""
    if isinstance(ref, TournamentMatchRef):
        return {'tournament_match_id': ref.id, 'regular_match_id': None}
    if isinstance(ref, RegularMatchRef):
        return {'tournament_match_id': None, 'regular_match_id': ref.id}
    raise TypeError(f"Unsupported match reference: {ref!r}")

# ============================================================================
# Players, events and rosters
# ============================================================================

class Player(Base):
    __tablename__ = 'players'

    id = Column(Integer, primary_key=True)
    discord_id = Column(BigInteger, unique=True, nullable=True, index=True)
    username = Column(String(100), nullable=False)
    display_name = Column(String(100))

    # Running credit balance (cache of RewardPayout ledger)
    total_credits = Column(Integer, default=0, nullable=False)

    registered_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<Player(id={self.id}, username='{self.username}', credits={self.total_credits})>"

class Event(Base):
    __tablename__ = 'events'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())

    teams = relationship("Team", back_populates="event", order_by="Team.id")

    def __repr__(self):
        return f"<Event(id={self.id}, name='{self.name}')>"

class Team(Base):
    """A drafted team. Membership is fixed once the draft is over."""
    __tablename__ = 'teams'

    id = Column(Integer, primary_key=True)
    event_id = Column(Integer, ForeignKey('events.id'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    color = Column(String(20), default='#ffffff')
    captain_id = Column(Integer, ForeignKey('players.id'), nullable=True)

    created_at = Column(DateTime, default=func.now())

    event = relationship("Event", back_populates="teams")
    captain = relationship("Player", foreign_keys=[captain_id])
    members = relationship("TeamMember", back_populates="team", order_by="TeamMember.id",
                           cascade="all, delete-orphan")

    __table_args__ = (UniqueConstraint('event_id', 'name'),)

    @property
    def member_ids(self) -> List[int]:
        return [m.player_id for m in self.members]

    def __repr__(self):
        return f"<Team(id={self.id}, name='{self.name}', captain_id={self.captain_id})>"

class TeamMember(Base):
    __tablename__ = 'team_members'

    id = Column(Integer, primary_key=True)
    team_id = Column(Integer, ForeignKey('teams.id'), nullable=False, index=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    display_name = Column(String(100), nullable=False)
    position = Column(String(30), default='')

    team = relationship("Team", back_populates="members")
    player = relationship("Player")

    __table_args__ = (UniqueConstraint('team_id', 'player_id', name='unique_player_per_team'),)

    def __repr__(self):
        return f"<TeamMember(team_id={self.team_id}, player_id={self.player_id}, position='{self.position}')>"

# ============================================================================
# Brackets and matches
# ============================================================================

class Bracket(Base):
    """
    Tournament structure for one event: an elimination tree or a set of groups.

    For the groups format the match ``round`` doubles as the group number until
    the knockout stage is generated, whose rounds start after the last group.
    """
    __tablename__ = 'tournament_brackets'

    id = Column(Integer, primary_key=True)
    event_id = Column(Integer, ForeignKey('events.id'), nullable=False, unique=True)
    format = Column(SQLEnum(BracketFormat), nullable=False)
    stage = Column(SQLEnum(BracketStage), nullable=False)
    status = Column(SQLEnum(BracketStatus), default=BracketStatus.PENDING, nullable=False)

    # JSON: group_count, max_group_size, teams_advancing, start_at, seed
    settings = Column(Text, default='{}')

    created_at = Column(DateTime, default=func.now())
    completed_at = Column(DateTime, nullable=True)

    # Finalization guards
    finalized_at = Column(DateTime, nullable=True)
    rewards_distributed_at = Column(DateTime, nullable=True)

    event = relationship("Event")

    @property
    def settings_dict(self) -> Dict[str, Any]:
        if not self.settings:
            return {}
        return json.loads(self.settings)

    def get_setting(self, key: str, default: Any = None) -> Any:
        return self.settings_dict.get(key, default)

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None

    def __repr__(self):
        return f"<Bracket(id={self.id}, event_id={self.event_id}, format={self.format.value}, status={self.status.value})>"

class TournamentMatch(Base):
    """
    A bracket match between at most two teams.

    A match with exactly one team is a bye: its winner is set at creation time.
    A match with no teams never exists.
    """
    __tablename__ = 'tournament_matches'

    id = Column(Integer, primary_key=True)
    bracket_id = Column(Integer, ForeignKey('tournament_brackets.id'), nullable=False, index=True)
    round = Column(Integer, nullable=False)
    match_number = Column(Integer, nullable=False)

    team1_id = Column(Integer, ForeignKey('teams.id'), nullable=True)
    team2_id = Column(Integer, ForeignKey('teams.id'), nullable=True)
    team1_score = Column(Integer, default=0, nullable=False)
    team2_score = Column(Integer, default=0, nullable=False)
    winner_id = Column(Integer, ForeignKey('teams.id'), nullable=True)

    status = Column(SQLEnum(MatchStatus), default=MatchStatus.PENDING, nullable=False)
    scheduled_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    manually_adjusted = Column(Boolean, default=False)
    admin_notes = Column(Text)

    __table_args__ = (
        UniqueConstraint('bracket_id', 'round', 'match_number', name='unique_match_slot_per_round'),
        CheckConstraint('round > 0', name='positive_round_check'),
        CheckConstraint('team1_score >= 0 AND team2_score >= 0', name='non_negative_score_check'),
    )

    @property
    def team_ids(self) -> List[int]:
        return [t for t in (self.team1_id, self.team2_id) if t is not None]

    @property
    def is_bye(self) -> bool:
        return len(self.team_ids) == 1

    @property
    def is_resolved(self) -> bool:
        """Completed, or a bye whose winner was pre-set"""
        return self.status == MatchStatus.COMPLETED or (self.is_bye and self.winner_id is not None)

    @property
    def match_ref(self) -> TournamentMatchRef:
        return TournamentMatchRef(self.id)

    def loser_id(self) -> Optional[int]:
        if self.winner_id is None or len(self.team_ids) < 2:
            return None
        return self.team2_id if self.winner_id == self.team1_id else self.team1_id

    def __repr__(self):
        return (f"<TournamentMatch(id={self.id}, round={self.round}, number={self.match_number}, "
                f"teams={self.team1_id}v{self.team2_id}, status={self.status.value})>")

class RegularMatch(Base):
    """A scheduled event match outside the bracket (friendlies, showcase games)."""
    __tablename__ = 'regular_matches'

    id = Column(Integer, primary_key=True)
    event_id = Column(Integer, ForeignKey('events.id'), nullable=False, index=True)

    team1_id = Column(Integer, ForeignKey('teams.id'), nullable=False)
    team2_id = Column(Integer, ForeignKey('teams.id'), nullable=False)
    team1_score = Column(Integer, default=0, nullable=False)
    team2_score = Column(Integer, default=0, nullable=False)
    winner_id = Column(Integer, ForeignKey('teams.id'), nullable=True)

    status = Column(SQLEnum(MatchStatus), default=MatchStatus.PENDING, nullable=False)
    scheduled_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    manually_adjusted = Column(Boolean, default=False)
    admin_notes = Column(Text)

    created_at = Column(DateTime, default=func.now())

    @property
    def team_ids(self) -> List[int]:
        return [self.team1_id, self.team2_id]

    @property
    def is_bye(self) -> bool:
        return False

    @property
    def match_ref(self) -> RegularMatchRef:
        return RegularMatchRef(self.id)

    def __repr__(self):
        return f"<RegularMatch(id={self.id}, teams={self.team1_id}v{self.team2_id}, status={self.status.value})>"

# ============================================================================
# Result submissions
# ============================================================================

class ResultSubmission(Base):
    """
    A captain-reported result awaiting admin review.

    Several submissions may exist per match; two open submissions with
    different scores are both marked conflicted.
    """
    __tablename__ = 'match_result_submissions'

    id = Column(Integer, primary_key=True)

    tournament_match_id = Column(Integer, ForeignKey('tournament_matches.id'), nullable=True, index=True)
    regular_match_id = Column(Integer, ForeignKey('regular_matches.id'), nullable=True, index=True)

    # Null for admin-entered results (score edits, forfeits)
    team_id = Column(Integer, ForeignKey('teams.id'), nullable=True)
    submitted_by = Column(Integer, ForeignKey('players.id'), nullable=True)

    team1_score = Column(Integer, nullable=False)
    team2_score = Column(Integer, nullable=False)

    screenshot_url = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)

    # Validated player stat entries, JSON list
    player_stats_payload = Column(Text, nullable=True)

    status = Column(SQLEnum(SubmissionStatus), default=SubmissionStatus.PENDING, nullable=False)
    admin_notes = Column(Text, nullable=True)
    approved_by = Column(Integer, ForeignKey('players.id'), nullable=True)

    created_at = Column(DateTime, default=func.now())
    reviewed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(MATCH_REF_CHECK, name='submission_single_match_ref_check'),
        CheckConstraint('team1_score >= 0 AND team2_score >= 0', name='submission_non_negative_score_check'),
    )

    @property
    def match_ref(self) -> MatchRef:
        return _match_ref_from_columns(self.tournament_match_id, self.regular_match_id)

    @property
    def scores(self) -> tuple:
        return (self.team1_score, self.team2_score)

    @property
    def is_open(self) -> bool:
        return self.status in (SubmissionStatus.PENDING, SubmissionStatus.CONFLICTED)

    def get_player_stats(self) -> List[Dict[str, Any]]:
        if not self.player_stats_payload:
            return []
        return json.loads(self.player_stats_payload)

    def __repr__(self):
        return (f"<ResultSubmission(id={self.id}, ref={self.match_ref}, team_id={self.team_id}, "
                f"score={self.team1_score}-{self.team2_score}, status={self.status.value})>")

class PlayerMatchStat(Base):
    """Per-player, per-match line materialized from an approved submission."""
    __tablename__ = 'player_match_stats'

    id = Column(Integer, primary_key=True)

    tournament_match_id = Column(Integer, ForeignKey('tournament_matches.id'), nullable=True, index=True)
    regular_match_id = Column(Integer, ForeignKey('regular_matches.id'), nullable=True, index=True)
    submission_id = Column(Integer, ForeignKey('match_result_submissions.id'), nullable=False)

    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    team_id = Column(Integer, ForeignKey('teams.id'), nullable=False)

    goals = Column(Integer, default=0, nullable=False)
    assists = Column(Integer, default=0, nullable=False)
    clean_sheet = Column(Boolean, default=False, nullable=False)
    position = Column(String(30), default='')

    created_at = Column(DateTime, default=func.now())

    __table_args__ = (
        CheckConstraint(MATCH_REF_CHECK, name='stat_single_match_ref_check'),
        CheckConstraint('goals >= 0 AND assists >= 0', name='non_negative_stat_check'),
    )

    @property
    def match_ref(self) -> MatchRef:
        return _match_ref_from_columns(self.tournament_match_id, self.regular_match_id)

    def __repr__(self):
        return f"<PlayerMatchStat(player_id={self.player_id}, ref={self.match_ref}, goals={self.goals}, assists={self.assists})>"

# ============================================================================
# Aggregates, awards and rankings
# ============================================================================

class PlayerEventStats(Base):
    """
    One player's totals for one finalized event.

    Replaced wholesale each time the event is finalized; PlayerStats is the
    sum of these rows, so re-running finalization never double counts.
    """
    __tablename__ = 'player_event_stats'

    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey('events.id'), nullable=False, index=True)
    team_id = Column(Integer, ForeignKey('teams.id'), nullable=True)

    username = Column(String(100), nullable=False)
    position = Column(String(30), default='')
    was_captain = Column(Boolean, default=False)

    matches = Column(Integer, default=0)
    wins = Column(Integer, default=0)
    losses = Column(Integer, default=0)
    draws = Column(Integer, default=0)
    goals = Column(Integer, default=0)
    assists = Column(Integer, default=0)
    clean_sheets = Column(Integer, default=0)

    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint('player_id', 'event_id', name='unique_player_event_stats'),)

    def __repr__(self):
        return f"<PlayerEventStats(player_id={self.player_id}, event_id={self.event_id}, matches={self.matches})>"

class PlayerStats(Base):
    """Cumulative per-player totals across all finalized events."""
    __tablename__ = 'player_stats'

    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, unique=True)
    username = Column(String(100), nullable=False)
    preferred_position = Column(String(30), default='')

    total_matches = Column(Integer, default=0)
    total_wins = Column(Integer, default=0)
    total_losses = Column(Integer, default=0)
    total_goals = Column(Integer, default=0)
    total_assists = Column(Integer, default=0)
    total_clean_sheets = Column(Integer, default=0)
    draft_participations = Column(Integer, default=0)
    captain_count = Column(Integer, default=0)

    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<PlayerStats(player_id={self.player_id}, matches={self.total_matches}, goals={self.total_goals})>"

class EventAward(Base):
    __tablename__ = 'event_awards'

    id = Column(Integer, primary_key=True)
    event_id = Column(Integer, ForeignKey('events.id'), nullable=False, index=True)
    award_type = Column(SQLEnum(AwardType), nullable=False)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False)
    username = Column(String(100), nullable=False)
    value = Column(Integer, nullable=False)
    description = Column(String(255), default='')
    created_at = Column(DateTime, default=func.now())

    __table_args__ = (UniqueConstraint('event_id', 'award_type', name='unique_award_per_event'),)

    def __repr__(self):
        return f"<EventAward(event_id={self.event_id}, type={self.award_type.value}, player_id={self.player_id}, value={self.value})>"

class UserRanking(Base):
    __tablename__ = 'user_rankings'

    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, unique=True)
    username = Column(String(100), nullable=False)

    total_drafts = Column(Integer, default=0)
    drafts_won = Column(Integer, default=0)
    total_matches = Column(Integer, default=0)
    total_wins = Column(Integer, default=0)
    total_losses = Column(Integer, default=0)
    total_goals = Column(Integer, default=0)
    total_assists = Column(Integer, default=0)
    total_clean_sheets = Column(Integer, default=0)
    captain_count = Column(Integer, default=0)

    mvp_awards = Column(Integer, default=0)
    top_scorer_awards = Column(Integer, default=0)
    top_assists_awards = Column(Integer, default=0)
    best_goalkeeper_awards = Column(Integer, default=0)

    ranking_points = Column(Integer, default=0, index=True)
    win_rate = Column(Float, default=0.0)
    goals_per_match = Column(Float, default=0.0)
    assists_per_match = Column(Float, default=0.0)

    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<UserRanking(player_id={self.player_id}, points={self.ranking_points})>"

# ============================================================================
# Rewards
# ============================================================================

class RewardSettings(Base):
    __tablename__ = 'reward_settings'

    id = Column(Integer, primary_key=True)
    event_id = Column(Integer, ForeignKey('events.id'), nullable=False, unique=True)

    enabled = Column(Boolean, default=False, nullable=False)
    only_captains = Column(Boolean, default=False, nullable=False)
    base_reward_amount = Column(Integer, default=100, nullable=False)
    reward_positions = Column(Integer, default=3, nullable=False)
    reduction_per_position = Column(Integer, default=25, nullable=False)
    reduction_type = Column(SQLEnum(ReductionType), default=ReductionType.PERCENTAGE, nullable=False)

    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint('reward_positions >= 1', name='positive_reward_positions_check'),
        CheckConstraint('base_reward_amount >= 0', name='non_negative_base_reward_check'),
    )

    def __repr__(self):
        return (f"<RewardSettings(event_id={self.event_id}, enabled={self.enabled}, "
                f"base={self.base_reward_amount}, positions={self.reward_positions})>")

class RewardPayout(Base):
    """
    Credit ledger entry for a tournament placement.

    Each entry records the amount and the recipient's balance after the credit.
    """
    __tablename__ = 'reward_payouts'

    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey('events.id'), nullable=False, index=True)
    team_id = Column(Integer, ForeignKey('teams.id'), nullable=True)

    position = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=False)
    awarded_by = Column(Integer, ForeignKey('players.id'), nullable=True)

    created_at = Column(DateTime, default=func.now())

    player = relationship("Player", foreign_keys=[player_id])

    def __repr__(self):
        return f"<RewardPayout(player_id={self.player_id}, event_id={self.event_id}, amount={self.amount}, position={self.position})>"

# ============================================================================
# Runtime configuration and audit trail
# ============================================================================

class Configuration(Base):
    __tablename__ = 'configurations'

    id = Column(Integer, primary_key=True)
    key = Column(String(100), nullable=False, unique=True)
    value = Column(Text, nullable=False)  # JSON-encoded
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Configuration(key='{self.key}')>"

class AuditLog(Base):
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, nullable=True)
    action = Column(String(50), nullable=False)
    target_type = Column(String(50), nullable=True)
    target_id = Column(Integer, nullable=True)
    details = Column(Text, default='{}')
    timestamp = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<AuditLog(action='{self.action}', target={self.target_type}:{self.target_id})>"
