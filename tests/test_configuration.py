"""
Runtime configuration: admin overrides reach scheduling, bracket defaults and forfeits.
"""

import json
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from conftest import captain_ctx, seed_event
from draftbot.database.models import AuditLog
from draftbot.operations.admin_operations import AdminOperations
from draftbot.operations.bracket_operations import BracketOperations
from draftbot.operations.submission_operations import SubmissionOperations
from draftbot.services.configuration import ConfigurationService
from draftbot.utils.exceptions import InvalidSettingsError, PermissionDeniedError, TournamentError

START = datetime(2025, 6, 1, 18, 0)


@pytest_asyncio.fixture
async def config_service(db):
    service = ConfigurationService(db.session_factory)
    await service.load_all()
    return service


@pytest.fixture
def configured_ops(db, config_service, rng):
    return AdminOperations(
        db, config_service,
        bracket_ops=BracketOperations(db, config_service, rng=rng),
        submission_ops=SubmissionOperations(db, config_service),
    )


@pytest.mark.asyncio
async def test_defaults_are_listed(configured_ops):
    values = configured_ops.get_configuration()
    assert values['scheduling.slot_interval_minutes'] == 25
    assert values['scheduling.teams_per_station'] == 4
    assert values['forfeit.winner_score'] == 3
    assert values['forfeit.loser_score'] == 0


@pytest.mark.asyncio
async def test_slot_interval_override_applies_to_new_schedules(db, configured_ops, admin_ctx):
    values = await configured_ops.update_configuration(admin_ctx, 'scheduling.slot_interval_minutes', 40)
    assert values['scheduling.slot_interval_minutes'] == 40

    # Four teams over four per station leaves one match per slot
    seeded = await seed_event(db, 4)
    bracket = await configured_ops.create_bracket(admin_ctx, seeded.event_id, "elimination")
    matches = await configured_ops.generate_initial_matches(admin_ctx, bracket.id, START)
    times = sorted(m.scheduled_at for m in matches)
    assert times == [START, START + timedelta(minutes=40)]


@pytest.mark.asyncio
async def test_station_count_override_widens_slots(db, configured_ops, admin_ctx):
    await configured_ops.update_configuration(admin_ctx, 'scheduling.teams_per_station', 2)

    seeded = await seed_event(db, 4)
    bracket = await configured_ops.create_bracket(admin_ctx, seeded.event_id, "elimination")
    matches = await configured_ops.generate_initial_matches(admin_ctx, bracket.id, START)
    assert [m.scheduled_at for m in matches] == [START, START]


@pytest.mark.asyncio
async def test_group_defaults_come_from_configuration(db, configured_ops, admin_ctx):
    await configured_ops.update_configuration(admin_ctx, 'brackets.teams_advancing_per_group', 1)

    seeded = await seed_event(db, 8)
    bracket = await configured_ops.create_bracket(admin_ctx, seeded.event_id, "groups")
    assert bracket.settings_dict['teams_advancing'] == 1

    # Explicit settings still win over the configured default
    other = await seed_event(db, 8, name="Second Night")
    explicit = await configured_ops.create_bracket(admin_ctx, other.event_id, "groups", {'teams_advancing': 2})
    assert explicit.settings_dict['teams_advancing'] == 2


@pytest.mark.asyncio
async def test_forfeit_score_override(db, configured_ops, admin_ctx):
    await configured_ops.update_configuration(admin_ctx, 'forfeit.winner_score', 5)

    seeded = await seed_event(db, 2)
    bracket = await configured_ops.create_bracket(admin_ctx, seeded.event_id, "elimination")
    match = (await configured_ops.generate_initial_matches(admin_ctx, bracket.id, START))[0]

    forfeited = await configured_ops.forfeit_match(admin_ctx, match.match_ref, match.team2_id)
    assert (forfeited.team1_score, forfeited.team2_score) == (0, 5)
    assert forfeited.winner_id == match.team2_id


@pytest.mark.asyncio
async def test_changes_are_audited_and_survive_reload(db, configured_ops, admin_ctx):
    await configured_ops.update_configuration(admin_ctx, 'forfeit.loser_score', 1)
    await configured_ops.update_configuration(admin_ctx, 'forfeit.loser_score', 2)

    async with db.get_session() as session:
        result = await session.execute(
            select(AuditLog).where(AuditLog.action == 'config_set').order_by(AuditLog.id)
        )
        entries = [json.loads(row.details) for row in result.scalars().all()]
    assert [(e['old_value'], e['new_value']) for e in entries] == [(0, 1), (1, 2)]

    fresh = ConfigurationService(db.session_factory)
    await fresh.load_all()
    assert fresh.get('forfeit.loser_score') == 2


@pytest.mark.asyncio
async def test_invalid_updates_are_refused(db, configured_ops, admin_ctx):
    with pytest.raises(InvalidSettingsError):
        await configured_ops.update_configuration(admin_ctx, 'scheduling.coffee_breaks', 2)
    with pytest.raises(InvalidSettingsError):
        await configured_ops.update_configuration(admin_ctx, 'scheduling.slot_interval_minutes', 0)
    with pytest.raises(InvalidSettingsError):
        await configured_ops.update_configuration(admin_ctx, 'forfeit.loser_score', -1)
    with pytest.raises(InvalidSettingsError):
        await configured_ops.update_configuration(admin_ctx, 'forfeit.winner_score', "3")
    with pytest.raises(InvalidSettingsError):
        await configured_ops.update_configuration(admin_ctx, 'forfeit.winner_score', True)

    seeded = await seed_event(db, 2)
    with pytest.raises(PermissionDeniedError):
        await configured_ops.update_configuration(
            captain_ctx(seeded, seeded.team_ids[0]), 'forfeit.winner_score', 10
        )

    assert configured_ops.get_configuration()['forfeit.winner_score'] == 3


@pytest.mark.asyncio
async def test_configuration_requires_a_service(admin_ops, admin_ctx):
    with pytest.raises(TournamentError):
        admin_ops.get_configuration()
    with pytest.raises(TournamentError):
        await admin_ops.update_configuration(admin_ctx, 'forfeit.winner_score', 4)
