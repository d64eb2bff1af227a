"""
Finalization pipeline tests: statistics, awards, rankings and reward payouts.
"""

import pytest
from sqlalchemy import select

from conftest import captain_ctx, seed_event
from draftbot.database.models import AwardType, Bracket, PlayerEventStats, PlayerStats, RegularMatchRef
from draftbot.services.finalization_service import STEPS
from draftbot.utils.exceptions import (
    AlreadyFinalizedError, InvalidSettingsError, NotReadyError, PermissionDeniedError, TournamentError
)


async def play_to_champion(db, admin_ops, admin_ctx, bracket_ops):
    """
    Four teams, every match won 3-0 by the home side.

    The home captain reports the result with three goals for their striker and a
    goalkeeper line, and an admin approves it.

    Returns:
        (seeded event, champion team id, runner-up team id)
    """
    seeded = await seed_event(db, 4)
    bracket = await admin_ops.create_bracket(admin_ctx, seeded.event_id, "elimination")
    matches = await admin_ops.generate_initial_matches(admin_ctx, bracket.id)

    with pytest.raises(NotReadyError):
        await admin_ops.finalize_tournament(admin_ctx, seeded.event_id)

    round_number = 1
    while True:
        for match in matches:
            keeper, striker = seeded.members[match.team1_id]
            receipt = await admin_ops.submit_result(
                captain_ctx(seeded, match.team1_id), match.match_ref, match.team1_id, 3, 0,
                player_stats=[
                    {"player_id": striker, "goals": 3},
                    {"player_id": keeper, "position": "GK"},
                ]
            )
            await admin_ops.approve_submission(admin_ctx, receipt.submission_id)

        result = await admin_ops.promote_next_round(admin_ctx, bracket.id, from_round=round_number)
        if result.bracket_completed:
            final = matches[0]
            return seeded, result.champion_team_id, final.team2_id
        round_number = result.round_number
        matches = await bracket_ops.get_matches(bracket.id, round_number=round_number)


async def event_stats(db, event_id):
    async with db.get_session() as session:
        result = await session.execute(select(PlayerEventStats).where(PlayerEventStats.event_id == event_id))
        return {row.player_id: row for row in result.scalars().all()}


async def enable_rewards(admin_ops, admin_ctx, event_id):
    return await admin_ops.update_reward_settings(
        admin_ctx, event_id, enabled=True, base_reward_amount=100, reward_positions=3,
        reduction_per_position=25, reduction_type="percentage"
    )


@pytest.mark.asyncio
async def test_full_finalization(db, admin_ops, admin_ctx, bracket_ops):
    seeded, champion, runner_up = await play_to_champion(db, admin_ops, admin_ctx, bracket_ops)
    keeper, striker = seeded.members[champion]
    await enable_rewards(admin_ops, admin_ctx, seeded.event_id)

    report = await admin_ops.finalize_tournament(admin_ctx, seeded.event_id)
    assert report.steps_completed == list(STEPS)
    assert report.players_aggregated == 8

    stats = await event_stats(db, seeded.event_id)
    assert len(stats) == 8
    assert (stats[striker].matches, stats[striker].wins, stats[striker].goals) == (2, 2, 6)
    assert stats[striker].clean_sheets == 0
    assert stats[keeper].clean_sheets == 2
    assert stats[keeper].was_captain
    runner_up_keeper = seeded.members[runner_up][0]
    assert (stats[runner_up_keeper].wins, stats[runner_up_keeper].losses) == (1, 1)

    awards = {a.award_type: a.player_id for a in await admin_ops.get_event_awards(seeded.event_id)}
    assert awards == {
        AwardType.MVP: striker,
        AwardType.TOP_SCORER: striker,
        AwardType.BEST_GOALKEEPER: keeper,
        AwardType.TOURNAMENT_WINNER: keeper,
    }
    assert report.awards_by_type()[AwardType.TOP_SCORER.value].value == 6

    rankings = await admin_ops.get_rankings(limit=20)
    points = {r.player_id: r.ranking_points for r in rankings}
    assert points[keeper] == 160
    assert points[striker] == 103
    assert rankings[0].player_id == keeper
    assert rankings[0].drafts_won == 1

    assert len(report.payouts) == 6
    assert report.credits_distributed == 450
    assert await db.get_credit_balance(keeper) == 100
    assert await db.get_credit_balance(runner_up_keeper) == 75

    history = await admin_ops.get_credit_history(striker)
    assert [(h.amount, h.balance_after, h.position) for h in history] == [(100, 100, 1)]

    async with db.get_session() as session:
        result = await session.execute(select(Bracket).where(Bracket.event_id == seeded.event_id))
        bracket = result.scalar_one()
    assert bracket.finalized_at is not None
    assert bracket.rewards_distributed_at is not None


@pytest.mark.asyncio
async def test_finalization_runs_once_unless_recomputed(db, admin_ops, admin_ctx, bracket_ops):
    seeded, champion, _ = await play_to_champion(db, admin_ops, admin_ctx, bracket_ops)
    keeper = seeded.members[champion][0]
    await enable_rewards(admin_ops, admin_ctx, seeded.event_id)
    await admin_ops.finalize_tournament(admin_ctx, seeded.event_id)

    with pytest.raises(AlreadyFinalizedError):
        await admin_ops.finalize_tournament(admin_ctx, seeded.event_id)

    again = await admin_ops.finalize_tournament(admin_ctx, seeded.event_id, recompute=True)
    assert again.payouts == []
    assert again.rewards_skipped_reason is not None
    assert 'distribute_rewards' not in again.steps_completed
    assert len(again.awards) == 4
    assert await db.get_credit_balance(keeper) == 100

    # Recomputing replaces rather than accumulates
    stats = await event_stats(db, seeded.event_id)
    assert len(stats) == 8
    rankings = {r.player_id: r.ranking_points for r in await admin_ops.get_rankings(limit=20)}
    assert rankings[keeper] == 160

    with pytest.raises(AlreadyFinalizedError):
        await admin_ops.run_finalization_step(admin_ctx, seeded.event_id, 'distribute_rewards')


@pytest.mark.asyncio
async def test_disabled_rewards_can_be_paid_later(db, admin_ops, admin_ctx, bracket_ops):
    seeded, champion, _ = await play_to_champion(db, admin_ops, admin_ctx, bracket_ops)
    keeper = seeded.members[champion][0]

    settings = await admin_ops.get_reward_settings(seeded.event_id)
    assert not settings.enabled

    report = await admin_ops.finalize_tournament(admin_ctx, seeded.event_id)
    assert report.payouts == []
    assert report.rewards_skipped_reason is not None
    assert await db.get_credit_balance(keeper) == 0

    await admin_ops.update_reward_settings(admin_ctx, seeded.event_id, enabled=True, only_captains=True)
    paid = await admin_ops.run_finalization_step(admin_ctx, seeded.event_id, 'distribute_rewards')
    assert [line.amount for line in paid] == [100, 75, 50]
    assert await db.get_credit_balance(keeper) == 100


@pytest.mark.asyncio
async def test_finalization_step_and_settings_validation(db, admin_ops, admin_ctx):
    seeded = await seed_event(db, 2)

    with pytest.raises(TournamentError):
        await admin_ops.run_finalization_step(admin_ctx, seeded.event_id, 'publish_results')

    with pytest.raises(InvalidSettingsError):
        await admin_ops.update_reward_settings(admin_ctx, seeded.event_id, base_reward_amount=-5)
    with pytest.raises(InvalidSettingsError):
        await admin_ops.update_reward_settings(admin_ctx, seeded.event_id, reduction_type="exponential")
    with pytest.raises(InvalidSettingsError):
        await admin_ops.update_reward_settings(admin_ctx, seeded.event_id, jackpot=True)

    with pytest.raises(PermissionDeniedError):
        await admin_ops.update_reward_settings(captain_ctx(seeded, seeded.team_ids[0]),
                                               seeded.event_id, enabled=True)

    settings = await admin_ops.update_reward_settings(admin_ctx, seeded.event_id, reduction_type="FIXED")
    assert settings.reduction_type.value == "fixed"


@pytest.mark.asyncio
async def test_regular_match_draw_counts(db, admin_ops, admin_ctx, bracket_ops):
    seeded = await seed_event(db, 2)
    home, away = seeded.team_ids
    bracket = await admin_ops.create_bracket(admin_ctx, seeded.event_id, "elimination")
    matches = await admin_ops.generate_initial_matches(admin_ctx, bracket.id)

    friendly = await db.create_regular_match(seeded.event_id, home, away)
    await admin_ops.edit_match_score(admin_ctx, RegularMatchRef(friendly.id), 1, 1)

    final = matches[0]
    await admin_ops.edit_match_score(admin_ctx, final.match_ref, 2, 0)
    done = await admin_ops.promote_next_round(admin_ctx, bracket.id, from_round=1)
    assert done.bracket_completed

    await admin_ops.finalize_tournament(admin_ctx, seeded.event_id)

    stats = await event_stats(db, seeded.event_id)
    winner_keeper = seeded.members[final.team1_id][0]
    loser_keeper = seeded.members[final.team2_id][0]
    assert (stats[winner_keeper].matches, stats[winner_keeper].wins, stats[winner_keeper].draws) == (2, 1, 1)
    assert (stats[loser_keeper].matches, stats[loser_keeper].losses, stats[loser_keeper].draws) == (2, 1, 1)


@pytest.mark.asyncio
async def test_steps_refuse_unfinished_bracket(db, admin_ops, admin_ctx, finalization):
    seeded = await seed_event(db, 4)
    bracket = await admin_ops.create_bracket(admin_ctx, seeded.event_id, "elimination")
    matches = await admin_ops.generate_initial_matches(admin_ctx, bracket.id)
    await enable_rewards(admin_ops, admin_ctx, seeded.event_id)
    await admin_ops.edit_match_score(admin_ctx, matches[0].match_ref, 2, 1)

    for step in STEPS:
        with pytest.raises(NotReadyError):
            await admin_ops.run_finalization_step(admin_ctx, seeded.event_id, step)
    with pytest.raises(NotReadyError):
        await finalization.distribute_rewards(seeded.event_id)
    with pytest.raises(NotReadyError):
        await finalization.aggregate_statistics(seeded.event_id)

    for players in seeded.members.values():
        for player_id in players:
            assert await db.get_credit_balance(player_id) == 0
    assert await event_stats(db, seeded.event_id) == {}
    assert await admin_ops.get_event_awards(seeded.event_id) == []

    async with db.get_session() as session:
        stored = await session.get(Bracket, bracket.id)
    assert stored.rewards_distributed_at is None
    assert stored.finalized_at is None

    # A group bracket whose stage has only just been drawn is no further along
    groups = await seed_event(db, 4, name="Group Night")
    group_bracket = await admin_ops.create_bracket(admin_ctx, groups.event_id, "groups")
    await admin_ops.generate_initial_matches(admin_ctx, group_bracket.id)
    await enable_rewards(admin_ops, admin_ctx, groups.event_id)
    with pytest.raises(NotReadyError):
        await admin_ops.run_finalization_step(admin_ctx, groups.event_id, 'distribute_rewards')
    with pytest.raises(NotReadyError):
        await finalization.distribute_rewards(groups.event_id)


@pytest.mark.asyncio
async def test_totals_accumulate_across_events(db, admin_ops, admin_ctx, bracket_ops):
    first, first_champion, _ = await play_to_champion(db, admin_ops, admin_ctx, bracket_ops)
    second, second_champion, _ = await play_to_champion(db, admin_ops, admin_ctx, bracket_ops)
    striker = first.members[first_champion][1]
    await db.add_team_member(second_champion, striker, position="ST")

    await admin_ops.finalize_tournament(admin_ctx, first.event_id)
    await admin_ops.finalize_tournament(admin_ctx, second.event_id)

    async def totals():
        async with db.get_session() as session:
            result = await session.execute(select(PlayerStats).where(PlayerStats.player_id == striker))
            stats = result.scalar_one()
        ranking = {r.player_id: r for r in await admin_ops.get_rankings(limit=50)}[striker]
        return (stats.total_matches, stats.total_wins, stats.total_goals, stats.draft_participations,
                ranking.total_matches, ranking.total_drafts, ranking.drafts_won, ranking.ranking_points)

    before = await totals()
    assert before[:4] == (4, 4, 6, 2)
    assert before[4:7] == (4, 2, 0)
    # 4 wins, 6 goals, 2 drafts, plus the first event's MVP and top scorer awards
    assert before[7] == 4 * 3 + 6 * 2 + 2 * 5 + 50 + 30

    second_stats = await event_stats(db, second.event_id)
    assert (second_stats[striker].matches, second_stats[striker].goals) == (2, 0)

    # Re-running one event replaces its share instead of adding it again
    await admin_ops.finalize_tournament(admin_ctx, first.event_id, recompute=True)
    assert await totals() == before
    await admin_ops.run_finalization_step(admin_ctx, second.event_id, 'aggregate_statistics')
    await admin_ops.run_finalization_step(admin_ctx, second.event_id, 'update_rankings')
    assert await totals() == before
