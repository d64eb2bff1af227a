"""
Shared pytest configuration for engine tests.

Each test gets a fresh file-backed SQLite database under pytest's tmp_path, so
tests never share state and never touch the configured bot database.
"""

import random
from dataclasses import dataclass, field
from typing import Dict, List

import pytest
import pytest_asyncio

from draftbot.data_models.context import RequestContext
from draftbot.database.database import Database
from draftbot.operations.admin_operations import AdminOperations
from draftbot.operations.bracket_operations import BracketOperations
from draftbot.operations.submission_operations import SubmissionOperations
from draftbot.services.finalization_service import FinalizationService


@dataclass
class SeededEvent:
    event_id: int
    team_ids: List[int]
    captains: Dict[int, int]                 # team id -> captain player id
    members: Dict[int, List[int]] = field(default_factory=dict)  # team id -> player ids

    def team_of(self, player_id: int) -> int:
        for team_id, players in self.members.items():
            if player_id in players:
                return team_id
        raise KeyError(player_id)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test_draft.db'}")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def bracket_ops(db, rng):
    return BracketOperations(db, rng=rng)


@pytest.fixture
def submission_ops(db):
    return SubmissionOperations(db)


@pytest.fixture
def finalization(db, bracket_ops):
    return FinalizationService(db, bracket_ops)


@pytest.fixture
def admin_ops(db, bracket_ops, submission_ops, finalization):
    return AdminOperations(db, bracket_ops=bracket_ops, submission_ops=submission_ops,
                           finalization=finalization)


@pytest.fixture
def admin_ctx():
    return RequestContext(user_id=None, username="admin", is_admin=True)


def captain_ctx(seeded: SeededEvent, team_id: int) -> RequestContext:
    return RequestContext(user_id=seeded.captains[team_id], username=f"captain{team_id}")


async def seed_event(db: Database, team_count: int, players_per_team: int = 2,
                     name: str = "Draft Night") -> SeededEvent:
    """
    Create an event with ``team_count`` drafted teams.

    The captain of each team plays goalkeeper; the other members are strikers.
    """
    event = await db.create_event(name)
    seeded = SeededEvent(event_id=event.id, team_ids=[], captains={})
    for t in range(team_count):
        captain = await db.create_player(f"captain_{t + 1}", discord_id=event.id * 1000 + t)
        team = await db.create_team(event.id, f"Team {chr(65 + t)}", captain_id=captain.id)
        await db.add_team_member(team.id, captain.id, position="GK")
        players = [captain.id]
        for p in range(players_per_team - 1):
            player = await db.create_player(f"player_{t + 1}_{p + 1}")
            await db.add_team_member(team.id, player.id, position="ST")
            players.append(player.id)
        seeded.team_ids.append(team.id)
        seeded.captains[team.id] = captain.id
        seeded.members[team.id] = players
    return seeded


async def complete_round(admin_ops, admin_ctx, matches, home_wins: bool = True):
    """Resolve every playable match of a round through admin score edits."""
    for match in matches:
        if match.is_bye:
            continue
        score = (2, 1) if home_wins else (0, 1)
        await admin_ops.edit_match_score(admin_ctx, match.match_ref, *score)
