"""
Bracket lifecycle tests: creation, generation, promotion and knockout seeding.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from conftest import complete_round, seed_event
from draftbot.data_models.context import RequestContext
from draftbot.database.models import (
    AuditLog, BracketFormat, BracketStage, BracketStatus, MatchStatus
)
from draftbot.utils.exceptions import (
    InsufficientTeamsError, MatchStateError, NotFoundError, NotReadyError, PermissionDeniedError,
    TournamentError
)
from draftbot.utils.scheduling import find_double_bookings

START = datetime(2025, 6, 1, 18, 0)


async def elimination_bracket(db, admin_ops, admin_ctx, team_count):
    seeded = await seed_event(db, team_count)
    bracket = await admin_ops.create_bracket(admin_ctx, seeded.event_id, "elimination")
    matches = await admin_ops.generate_initial_matches(admin_ctx, bracket.id, START)
    return seeded, bracket, matches


@pytest.mark.asyncio
async def test_create_bracket_validation(db, admin_ops, admin_ctx):
    small = await seed_event(db, 1, name="Tiny")
    with pytest.raises(InsufficientTeamsError):
        await admin_ops.create_bracket(admin_ctx, small.event_id, BracketFormat.ELIMINATION)

    three = await seed_event(db, 3, name="Three")
    with pytest.raises(InsufficientTeamsError):
        await admin_ops.create_bracket(admin_ctx, three.event_id, "groups")
    with pytest.raises(TournamentError):
        await admin_ops.create_bracket(admin_ctx, three.event_id, "swiss")

    with pytest.raises(NotFoundError):
        await admin_ops.create_bracket(admin_ctx, 999, "elimination")

    bracket = await admin_ops.create_bracket(admin_ctx, three.event_id, "elimination")
    assert bracket.stage == BracketStage.KNOCKOUT_STAGE
    assert bracket.status == BracketStatus.PENDING
    with pytest.raises(TournamentError):
        await admin_ops.create_bracket(admin_ctx, three.event_id, "elimination")


@pytest.mark.asyncio
async def test_admin_actions_require_admin_and_are_audited(db, admin_ops, admin_ctx):
    seeded = await seed_event(db, 2)
    player_ctx = RequestContext(user_id=seeded.captains[seeded.team_ids[0]], username="captain")

    with pytest.raises(PermissionDeniedError):
        await admin_ops.create_bracket(player_ctx, seeded.event_id, "elimination")

    bracket = await admin_ops.create_bracket(admin_ctx, seeded.event_id, "elimination")

    async with db.get_session() as session:
        result = await session.execute(select(AuditLog).where(AuditLog.action == 'create_bracket'))
        logs = result.scalars().all()
    assert len(logs) == 1
    assert logs[0].target_id == bracket.id


@pytest.mark.asyncio
async def test_five_team_elimination_runs_to_champion(db, admin_ops, admin_ctx, bracket_ops):
    seeded, bracket, matches = await elimination_bracket(db, admin_ops, admin_ctx, 5)

    assert len(matches) == 4
    byes = [m for m in matches if m.is_bye]
    playable = [m for m in matches if not m.is_bye]
    assert len(byes) == 3 and len(playable) == 1
    assert all(m.scheduled_at == START for m in byes)
    assert playable[0].scheduled_at == START

    with pytest.raises(MatchStateError):
        await admin_ops.generate_initial_matches(admin_ctx, bracket.id, START)

    with pytest.raises(NotReadyError) as excinfo:
        await admin_ops.promote_next_round(admin_ctx, bracket.id, from_round=1)
    assert excinfo.value.pending_match_ids == [playable[0].id]

    await complete_round(admin_ops, admin_ctx, matches)
    result = await admin_ops.promote_next_round(admin_ctx, bracket.id, from_round=1)
    assert result.created and result.round_number == 2
    assert len(result.match_ids) == 2

    round_one = await bracket_ops.get_matches(bracket.id, round_number=1)
    assert all(m.status == MatchStatus.COMPLETED for m in round_one)

    round_two = await bracket_ops.get_matches(bracket.id, round_number=2)
    assert all(m.scheduled_at >= START + timedelta(minutes=25) for m in round_two)
    assert find_double_bookings(round_two) == []

    # Promoting the same round again is a no-op
    again = await admin_ops.promote_next_round(admin_ctx, bracket.id, from_round=1)
    assert not again.created
    assert sorted(again.match_ids) == sorted(result.match_ids)

    with pytest.raises(MatchStateError):
        await admin_ops.promote_next_round(admin_ctx, bracket.id, from_round=7)

    await complete_round(admin_ops, admin_ctx, round_two)
    final_round = await admin_ops.promote_next_round(admin_ctx, bracket.id, from_round=2)
    assert final_round.round_number == 3 and len(final_round.match_ids) == 1

    final = await bracket_ops.get_matches(bracket.id, round_number=3)
    await complete_round(admin_ops, admin_ctx, final)
    done = await admin_ops.promote_next_round(admin_ctx, bracket.id, from_round=3)
    assert done.bracket_completed
    assert done.champion_team_id == final[0].team1_id

    bracket = await bracket_ops.get_bracket(bracket.id)
    assert bracket.status == BracketStatus.COMPLETED

    all_matches = await bracket_ops.get_matches(bracket.id)
    assert sum(1 for m in all_matches if not m.is_bye) == 5 - 1

    standings = await bracket_ops.get_final_standings(seeded.event_id)
    assert [s.position for s in standings] == [1, 2, 3, 4]
    assert standings[0].team_id == done.champion_team_id
    assert standings[1].team_id == final[0].team2_id

    champion = await bracket_ops.get_champion(bracket.id)
    assert champion.id == done.champion_team_id

    # Completed bracket: further promotion reports the champion and changes nothing
    repeat = await admin_ops.promote_next_round(admin_ctx, bracket.id)
    assert repeat.bracket_completed and not repeat.created


@pytest.mark.asyncio
async def test_drawn_knockout_match_blocks_promotion(db, admin_ops, admin_ctx):
    seeded, bracket, matches = await elimination_bracket(db, admin_ops, admin_ctx, 4)

    await admin_ops.edit_match_score(admin_ctx, matches[0].match_ref, 1, 1)
    await admin_ops.edit_match_score(admin_ctx, matches[1].match_ref, 2, 0)

    with pytest.raises(NotReadyError) as excinfo:
        await admin_ops.promote_next_round(admin_ctx, bracket.id)
    assert excinfo.value.pending_match_ids == [matches[0].id]

    await admin_ops.edit_match_score(admin_ctx, matches[0].match_ref, 2, 1)
    result = await admin_ops.promote_next_round(admin_ctx, bracket.id)
    assert result.created and result.round_number == 2


@pytest.mark.asyncio
async def test_winner_cannot_change_after_promotion(db, admin_ops, admin_ctx):
    seeded, bracket, matches = await elimination_bracket(db, admin_ops, admin_ctx, 4)
    await complete_round(admin_ops, admin_ctx, matches)
    await admin_ops.promote_next_round(admin_ctx, bracket.id, from_round=1)

    with pytest.raises(MatchStateError):
        await admin_ops.edit_match_score(admin_ctx, matches[0].match_ref, 0, 3)

    # Same winner, different margin is still allowed
    match = await admin_ops.edit_match_score(admin_ctx, matches[0].match_ref, 4, 1)
    assert match.winner_id == matches[0].team1_id
    assert match.manually_adjusted


@pytest.mark.asyncio
async def test_group_bracket_to_knockout(db, admin_ops, admin_ctx, bracket_ops):
    seeded = await seed_event(db, 8)
    bracket = await admin_ops.create_bracket(admin_ctx, seeded.event_id, "groups")
    assert bracket.stage == BracketStage.GROUP_STAGE

    matches = await admin_ops.generate_initial_matches(admin_ctx, bracket.id, START)
    assert len(matches) == 12
    assert {m.round for m in matches} == {1, 2}
    assert find_double_bookings(matches) == []

    with pytest.raises(NotReadyError):
        await admin_ops.generate_knockout(admin_ctx, bracket.id)

    await complete_round(admin_ops, admin_ctx, matches)

    tables = await bracket_ops.get_group_standings(bracket.id)
    assert sorted(tables) == [1, 2]
    for rows in tables.values():
        assert len(rows) == 4
        points = [row.points for row in rows]
        assert points == sorted(points, reverse=True)
    expected_qualifiers = {row.team_id for rows in tables.values() for row in rows[:2]}

    # Promotion from the group stage seeds the knockout
    result = await admin_ops.promote_next_round(admin_ctx, bracket.id)
    assert result.created and result.round_number == 3
    assert len(result.match_ids) == 2

    knockout = await bracket_ops.get_matches(bracket.id, round_number=3)
    assert {t for m in knockout for t in m.team_ids} == expected_qualifiers

    bracket = await bracket_ops.get_bracket(bracket.id)
    assert bracket.stage == BracketStage.KNOCKOUT_STAGE
    assert bracket.get_setting('knockout_start_round') == 3

    repeat = await admin_ops.generate_knockout(admin_ctx, bracket.id)
    assert not repeat.created

    # Group results feed the knockout and are now locked
    with pytest.raises(MatchStateError):
        await admin_ops.edit_match_score(admin_ctx, matches[0].match_ref, 0, 5)
    # Same winner, different margin: goal difference already decided the qualifiers
    with pytest.raises(MatchStateError):
        await admin_ops.edit_match_score(admin_ctx, matches[0].match_ref, 6, 1)
    with pytest.raises(MatchStateError):
        await admin_ops.forfeit_match(admin_ctx, matches[0].match_ref, matches[0].team1_id)
    unchanged = await admin_ops.edit_match_score(admin_ctx, matches[0].match_ref, 2, 1)
    assert (unchanged.team1_score, unchanged.team2_score) == (2, 1)
    tables_after = await bracket_ops.get_group_standings(bracket.id)
    assert {row.team_id for rows in tables_after.values() for row in rows[:2]} == expected_qualifiers

    await complete_round(admin_ops, admin_ctx, knockout)
    await admin_ops.promote_next_round(admin_ctx, bracket.id, from_round=3)
    final = await bracket_ops.get_matches(bracket.id, round_number=4)
    await complete_round(admin_ops, admin_ctx, final)
    done = await admin_ops.promote_next_round(admin_ctx, bracket.id, from_round=4)
    assert done.bracket_completed

    standings = await bracket_ops.get_final_standings(seeded.event_id)
    assert standings[0].team_id == final[0].team1_id
    assert len(standings) == 4


@pytest.mark.asyncio
async def test_group_standings_only_for_group_brackets(db, admin_ops, admin_ctx, bracket_ops):
    seeded, bracket, matches = await elimination_bracket(db, admin_ops, admin_ctx, 2)
    with pytest.raises(MatchStateError):
        await bracket_ops.get_group_standings(bracket.id)
