"""
Decoding of per-player stat payloads attached to result submissions.

Captains either send explicit stat entries or embed them in the notes field as
``{"notes": "...", "player_stats": [{"user_id": 1, "goals": 2, ...}]}``.
Everything is validated here, at the submission boundary.
"""

import json
from typing import Any, Collection, Dict, List, Optional, Tuple

from draftbot.data_models.results import PlayerStatEntry
from draftbot.utils.exceptions import InvalidPayloadError


def _non_negative_int(raw: Dict[str, Any], key: str, index: int) -> int:
    value = raw.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPayloadError(f"entry {index}: '{key}' must be an integer")
    if value < 0:
        raise InvalidPayloadError(f"entry {index}: '{key}' must not be negative")
    return value


def parse_stat_entries(
    raw_entries: Any,
    allowed_player_ids: Optional[Collection[int]] = None
) -> List[PlayerStatEntry]:
    """
    Validate raw stat dicts into PlayerStatEntry objects.

    Accepts ``player_id`` or ``user_id`` as the player key. Duplicate players
    and players outside ``allowed_player_ids`` are rejected.

    Raises:
        InvalidPayloadError: On any malformed entry
    """
    if not isinstance(raw_entries, list):
        raise InvalidPayloadError("player_stats must be a list")

    entries = []
    seen = set()
    for index, raw in enumerate(raw_entries):
        if not isinstance(raw, dict):
            raise InvalidPayloadError(f"entry {index} is not an object")

        player_id = raw.get('player_id', raw.get('user_id'))
        if isinstance(player_id, bool) or not isinstance(player_id, int):
            raise InvalidPayloadError(f"entry {index}: missing or non-integer player id")
        if player_id in seen:
            raise InvalidPayloadError(f"entry {index}: player {player_id} listed twice")
        if allowed_player_ids is not None and player_id not in allowed_player_ids:
            raise InvalidPayloadError(f"entry {index}: player {player_id} is not playing in this match")

        clean_sheet = raw.get('clean_sheet', False)
        if not isinstance(clean_sheet, bool):
            raise InvalidPayloadError(f"entry {index}: 'clean_sheet' must be true or false")

        position = raw.get('position') or ''
        if not isinstance(position, str):
            raise InvalidPayloadError(f"entry {index}: 'position' must be text")

        seen.add(player_id)
        entries.append(PlayerStatEntry(
            player_id=player_id,
            goals=_non_negative_int(raw, 'goals', index),
            assists=_non_negative_int(raw, 'assists', index),
            clean_sheet=clean_sheet,
            position=position,
        ))
    return entries


def decode_notes(notes: Optional[str]) -> Tuple[Optional[str], Optional[Any]]:
    """
    Split a notes field into free text and an embedded stat payload.

    Plain text notes are returned unchanged with no payload. JSON notes must be
    an object; its ``notes`` key is the free text and ``player_stats`` the raw
    payload.

    Raises:
        InvalidPayloadError: If the notes are JSON but not an object
    """
    if not notes:
        return notes, None

    stripped = notes.strip()
    if not stripped.startswith(('{', '[')):
        return notes, None

    try:
        decoded = json.loads(stripped)
    except json.JSONDecodeError:
        return notes, None

    if not isinstance(decoded, dict):
        raise InvalidPayloadError("structured notes must be a JSON object")

    free_text = decoded.get('notes')
    if free_text is not None and not isinstance(free_text, str):
        free_text = str(free_text)
    return free_text, decoded.get('player_stats')
