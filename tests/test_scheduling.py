"""
Tests for the greedy time-slot scheduler.
"""

import random
from datetime import datetime, timedelta

from draftbot.data_models.bracket import PlannedMatch
from draftbot.utils.group_generator import round_robin_matches
from draftbot.utils.scheduling import assign_time_slots, find_double_bookings, slot_capacity

START = datetime(2025, 6, 1, 18, 0)


def test_slot_capacity():
    assert slot_capacity(16, 4) == 4
    assert slot_capacity(3, 4) == 1
    assert slot_capacity(9, 4) == 2


def test_no_team_plays_twice_in_a_slot():
    matches = round_robin_matches([[1, 2, 3, 4], [5, 6, 7, 8]])
    slots = assign_time_slots(matches, START, interval_minutes=25, rng=random.Random(5))

    assert all(m.scheduled_at is not None for m in matches)
    assert find_double_bookings(matches) == []
    assert slots >= 3  # each team plays 3 group matches


def test_slot_cap_and_slot_times():
    matches = round_robin_matches([[1, 2, 3, 4], [5, 6, 7, 8]])
    assign_time_slots(matches, START, interval_minutes=25, max_per_slot=1, rng=random.Random(1))

    times = sorted(m.scheduled_at for m in matches)
    assert times == [START + timedelta(minutes=25 * k) for k in range(len(matches))]


def test_slot_cap_derived_from_team_count():
    matches = round_robin_matches([[1, 2, 3, 4], [5, 6, 7, 8]])
    assign_time_slots(matches, START, interval_minutes=30, rng=random.Random(2))

    per_slot = {}
    for match in matches:
        per_slot[match.scheduled_at] = per_slot.get(match.scheduled_at, 0) + 1
    assert max(per_slot.values()) <= slot_capacity(8)
    assert all((t - START) % timedelta(minutes=30) == timedelta(0) for t in per_slot)


def test_empty_bag():
    assert assign_time_slots([], START) == 0


def test_double_booking_detected():
    clash = [
        PlannedMatch(round=1, match_number=1, team1_id=1, team2_id=2, scheduled_at=START),
        PlannedMatch(round=1, match_number=2, team1_id=2, team2_id=3, scheduled_at=START),
    ]
    assert find_double_bookings(clash) == [(2, START)]
