"""
Result intake and arbitration tests: submissions, conflicts, approval, rejection,
score edits and forfeits.
"""

import json
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy import select

from conftest import captain_ctx, seed_event
from draftbot.data_models.context import RequestContext
from draftbot.data_models.results import SubmissionOutcome
from draftbot.database.models import (
    MatchStatus, PlayerMatchStat, RegularMatchRef, SubmissionStatus
)
from draftbot.operations.submission_operations import AUTO_REJECT_NOTE, SUPERSEDED_NOTE
from draftbot.utils.exceptions import (
    DuplicateSubmissionError, InvalidScoreError, MatchStateError, PermissionDeniedError,
    SubmissionStateError
)


class Fixture:
    def __init__(self, seeded, bracket, match):
        self.seeded = seeded
        self.bracket = bracket
        self.match = match
        self.ref = match.match_ref
        self.home = match.team1_id
        self.away = match.team2_id

    def ctx(self, team_id):
        return captain_ctx(self.seeded, team_id)

    def striker(self, team_id):
        return self.seeded.members[team_id][1]

    def keeper(self, team_id):
        return self.seeded.members[team_id][0]


@pytest_asyncio.fixture
async def duel(db, admin_ops, admin_ctx):
    """A two-team elimination bracket with its single match generated."""
    seeded = await seed_event(db, 2)
    bracket = await admin_ops.create_bracket(admin_ctx, seeded.event_id, "elimination")
    matches = await admin_ops.generate_initial_matches(admin_ctx, bracket.id, datetime(2025, 6, 1, 18, 0))
    return Fixture(seeded, bracket, matches[0])


async def stat_rows(db, match_id):
    async with db.get_session() as session:
        result = await session.execute(
            select(PlayerMatchStat).where(PlayerMatchStat.tournament_match_id == match_id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_agreeing_submissions_corroborate(admin_ops, submission_ops, duel):
    first = await admin_ops.submit_result(duel.ctx(duel.home), duel.ref, duel.home, 2, 1)
    second = await admin_ops.submit_result(duel.ctx(duel.away), duel.ref, duel.away, 2, 1)

    assert first.outcome == SubmissionOutcome.ACCEPTED
    assert second.outcome == SubmissionOutcome.CORROBORATED

    submissions = await submission_ops.get_submissions(duel.ref)
    assert [s.status for s in submissions] == [SubmissionStatus.PENDING, SubmissionStatus.PENDING]

    match = await submission_ops.get_match(duel.ref)
    assert match.status == MatchStatus.PENDING


@pytest.mark.asyncio
async def test_conflict_and_resolution_by_rejection(admin_ops, admin_ctx, submission_ops, duel):
    first = await admin_ops.submit_result(duel.ctx(duel.home), duel.ref, duel.home, 2, 1)
    second = await admin_ops.submit_result(duel.ctx(duel.away), duel.ref, duel.away, 1, 2)

    assert second.outcome == SubmissionOutcome.CONFLICTED
    assert second.conflicting_submission_ids == [first.submission_id]
    statuses = {s.id: s.status for s in await submission_ops.get_submissions(duel.ref)}
    assert set(statuses.values()) == {SubmissionStatus.CONFLICTED}

    await admin_ops.reject_submission(admin_ctx, second.submission_id, "Screenshot shows 2-1")
    remaining = await submission_ops.get_submission(first.submission_id)
    assert remaining.status == SubmissionStatus.PENDING

    # Rejecting twice is harmless
    again = await admin_ops.reject_submission(admin_ctx, second.submission_id)
    assert again.status == SubmissionStatus.REJECTED


@pytest.mark.asyncio
async def test_duplicate_submissions(admin_ops, duel):
    first = await admin_ops.submit_result(duel.ctx(duel.home), duel.ref, duel.home, 3, 0)
    repeat = await admin_ops.submit_result(duel.ctx(duel.home), duel.ref, duel.home, 3, 0)
    assert repeat.outcome == SubmissionOutcome.DUPLICATE
    assert repeat.submission_id == first.submission_id

    with pytest.raises(DuplicateSubmissionError):
        await admin_ops.submit_result(duel.ctx(duel.home), duel.ref, duel.home, 3, 1)


@pytest.mark.asyncio
async def test_submission_permissions_and_validation(admin_ops, admin_ctx, duel):
    with pytest.raises(PermissionDeniedError):
        await admin_ops.submit_result(duel.ctx(duel.away), duel.ref, duel.home, 1, 0)

    stranger = RequestContext(user_id=duel.striker(duel.home), username="not the captain")
    with pytest.raises(PermissionDeniedError):
        await admin_ops.submit_result(stranger, duel.ref, duel.home, 1, 0)

    with pytest.raises(InvalidScoreError):
        await admin_ops.submit_result(duel.ctx(duel.home), duel.ref, duel.home, -1, 0)
    with pytest.raises(InvalidScoreError):
        await admin_ops.submit_result(duel.ctx(duel.home), duel.ref, duel.home, 1.5, 0)

    receipt = await admin_ops.submit_result(admin_ctx, duel.ref, duel.away, 0, 0)
    assert receipt.outcome == SubmissionOutcome.ACCEPTED


@pytest.mark.asyncio
async def test_approval_completes_match_and_rejects_others(db, admin_ops, admin_ctx, submission_ops, duel):
    stats = [
        {"player_id": duel.striker(duel.home), "goals": 2, "assists": 0},
        {"player_id": duel.keeper(duel.home), "position": "GK", "clean_sheet": True},
    ]
    home = await admin_ops.submit_result(duel.ctx(duel.home), duel.ref, duel.home, 2, 0, player_stats=stats)
    away = await admin_ops.submit_result(duel.ctx(duel.away), duel.ref, duel.away, 2, 1)

    approved = await admin_ops.approve_submission(admin_ctx, home.submission_id, "Verified")
    assert approved.status == SubmissionStatus.APPROVED

    match = await submission_ops.get_match(duel.ref)
    assert match.status == MatchStatus.COMPLETED
    assert (match.team1_score, match.team2_score) == (2, 0)
    assert match.winner_id == duel.home

    other = await submission_ops.get_submission(away.submission_id)
    assert other.status == SubmissionStatus.REJECTED
    assert other.admin_notes == AUTO_REJECT_NOTE

    rows = await stat_rows(db, duel.match.id)
    assert {(r.player_id, r.goals, r.clean_sheet) for r in rows} == {
        (duel.striker(duel.home), 2, False),
        (duel.keeper(duel.home), 0, True),
    }

    # Approving again is a no-op; the rejected one can no longer be approved
    again = await admin_ops.approve_submission(admin_ctx, home.submission_id)
    assert again.status == SubmissionStatus.APPROVED
    with pytest.raises(SubmissionStateError):
        await admin_ops.approve_submission(admin_ctx, away.submission_id)

    with pytest.raises(MatchStateError):
        await admin_ops.submit_result(duel.ctx(duel.away), duel.ref, duel.away, 5, 0)


@pytest.mark.asyncio
async def test_stats_embedded_in_notes(db, admin_ops, admin_ctx, submission_ops, duel):
    notes = json.dumps({
        "notes": "great match",
        "player_stats": [{"user_id": duel.striker(duel.away), "goals": 1, "assists": 1}],
    })
    receipt = await admin_ops.submit_result(duel.ctx(duel.away), duel.ref, duel.away, 0, 1, notes=notes)
    assert receipt.warnings == []

    submission = await submission_ops.get_submission(receipt.submission_id)
    assert submission.notes == "great match"
    assert submission.get_player_stats()[0]["player_id"] == duel.striker(duel.away)

    await admin_ops.approve_submission(admin_ctx, receipt.submission_id)
    rows = await stat_rows(db, duel.match.id)
    assert [(r.player_id, r.team_id, r.goals, r.assists) for r in rows] == [
        (duel.striker(duel.away), duel.away, 1, 1)
    ]


@pytest.mark.asyncio
async def test_malformed_stats_become_warnings(admin_ops, submission_ops, duel):
    receipt = await admin_ops.submit_result(
        duel.ctx(duel.home), duel.ref, duel.home, 1, 0,
        player_stats=[{"player_id": duel.striker(duel.home), "goals": -3}]
    )
    assert receipt.outcome == SubmissionOutcome.ACCEPTED
    assert len(receipt.warnings) == 1

    submission = await submission_ops.get_submission(receipt.submission_id)
    assert submission.player_stats_payload is None


@pytest.mark.asyncio
async def test_score_edit_creates_admin_submission(admin_ops, admin_ctx, submission_ops, duel):
    match = await admin_ops.edit_match_score(admin_ctx, duel.ref, 0, 4, "Entered from stream")
    assert match.status == MatchStatus.COMPLETED
    assert match.winner_id == duel.away
    assert match.manually_adjusted

    approved = await submission_ops.get_submissions(duel.ref, status=SubmissionStatus.APPROVED)
    assert len(approved) == 1
    assert approved[0].team_id is None
    assert approved[0].scores == (0, 4)

    # A second edit updates the same approved submission
    await admin_ops.edit_match_score(admin_ctx, duel.ref, 1, 4)
    approved = await submission_ops.get_submissions(duel.ref, status=SubmissionStatus.APPROVED)
    assert [s.scores for s in approved] == [(1, 4)]


@pytest.mark.asyncio
async def test_forfeit(db, admin_ops, admin_ctx, submission_ops, duel):
    stats = [{"player_id": duel.striker(duel.home), "goals": 1}]
    home = await admin_ops.submit_result(duel.ctx(duel.home), duel.ref, duel.home, 1, 0, player_stats=stats)
    await admin_ops.approve_submission(admin_ctx, home.submission_id)

    match = await admin_ops.forfeit_match(admin_ctx, duel.ref, duel.away, "Fielded an ineligible player")
    assert match.winner_id == duel.away
    assert (match.team1_score, match.team2_score) == (0, 3)
    assert match.status == MatchStatus.COMPLETED

    superseded = await submission_ops.get_submission(home.submission_id)
    assert superseded.status == SubmissionStatus.REJECTED
    assert superseded.admin_notes == SUPERSEDED_NOTE
    assert await stat_rows(db, duel.match.id) == []

    approved = await submission_ops.get_submissions(duel.ref, status=SubmissionStatus.APPROVED)
    assert len(approved) == 1 and approved[0].team_id is None

    # Declaring the same forfeit again changes nothing
    await admin_ops.forfeit_match(admin_ctx, duel.ref, duel.away)
    assert len(await submission_ops.get_submissions(duel.ref)) == 2

    with pytest.raises(MatchStateError):
        await admin_ops.forfeit_match(admin_ctx, duel.ref, 999)


@pytest.mark.asyncio
async def test_bye_matches_take_no_results(db, admin_ops, admin_ctx):
    seeded = await seed_event(db, 3)
    bracket = await admin_ops.create_bracket(admin_ctx, seeded.event_id, "elimination")
    matches = await admin_ops.generate_initial_matches(admin_ctx, bracket.id)
    bye = next(m for m in matches if m.is_bye)

    with pytest.raises(MatchStateError):
        await admin_ops.submit_result(admin_ctx, bye.match_ref, bye.team1_id, 1, 0)
    with pytest.raises(MatchStateError):
        await admin_ops.edit_match_score(admin_ctx, bye.match_ref, 1, 0)


@pytest.mark.asyncio
async def test_regular_match_flow(db, admin_ops, admin_ctx, submission_ops):
    seeded = await seed_event(db, 2)
    home, away = seeded.team_ids
    regular = await db.create_regular_match(seeded.event_id, home, away)
    ref = RegularMatchRef(regular.id)

    receipt = await admin_ops.submit_result(captain_ctx(seeded, home), ref, home, 1, 1)
    await admin_ops.approve_submission(admin_ctx, receipt.submission_id)

    match = await submission_ops.get_match(ref)
    assert match.status == MatchStatus.COMPLETED
    assert match.winner_id is None
