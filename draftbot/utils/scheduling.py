"""
Greedy time-slot scheduler.

Packs matches into fixed-length slots so that no team plays twice in the same
slot, capping each slot at the number of available playing stations.
"""

import random
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from draftbot.config import Config
from draftbot.utils.logger import setup_logger

logger = setup_logger(__name__)


def slot_capacity(total_teams: int, teams_per_station: int = None) -> int:
    """Matches allowed per slot: total teams // teams per station, minimum 1."""
    teams_per_station = teams_per_station or Config.TEAMS_PER_STATION
    return max(1, total_teams // teams_per_station)


def assign_time_slots(
    matches: Sequence,
    start_at: datetime,
    interval_minutes: int = None,
    max_per_slot: Optional[int] = None,
    rng: Optional[random.Random] = None
) -> int:
    """
    Set ``scheduled_at`` on every match.

    Repeatedly opens a slot and scans the remaining bag, taking each match whose
    teams are all still free in that slot, until the bag is exhausted or the
    slot is full. Slot k starts at ``start_at + k * interval``.

    Args:
        matches: Objects exposing ``team_ids`` and a writable ``scheduled_at``
        start_at: Time of the first slot
        interval_minutes: Slot length
        max_per_slot: Cap per slot; derived from the distinct team count if omitted
        rng: Random source for the bag order

    Returns:
        Number of slots used
    """
    interval = timedelta(minutes=interval_minutes or Config.SLOT_INTERVAL_MINUTES)

    bag = list(matches)
    if not bag:
        return 0
    (rng or random.Random()).shuffle(bag)

    if max_per_slot is None:
        teams = {team_id for match in bag for team_id in match.team_ids}
        max_per_slot = slot_capacity(len(teams))
    max_per_slot = max(1, max_per_slot)

    slot_index = 0
    while bag:
        slot_time = start_at + slot_index * interval
        busy = set()
        placed = 0
        remaining = []

        for match in bag:
            team_ids = set(match.team_ids)
            if placed < max_per_slot and not (team_ids & busy):
                match.scheduled_at = slot_time
                busy |= team_ids
                placed += 1
            else:
                remaining.append(match)

        bag = remaining
        slot_index += 1

    logger.debug(f"Scheduled {len(matches)} matches into {slot_index} slots of {interval}")
    return slot_index


def find_double_bookings(matches: Sequence) -> List[tuple]:
    """(team_id, scheduled_at) pairs that appear in more than one match."""
    seen = set()
    clashes = []
    for match in matches:
        for team_id in match.team_ids:
            key = (team_id, match.scheduled_at)
            if key in seen:
                clashes.append(key)
            seen.add(key)
    return clashes
