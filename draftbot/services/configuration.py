"""
Configuration management service for the draft tournament engine.

Provides runtime overrides for the tournament tunables in ``Config`` with an
in-memory cache and an audit trail of every change.
"""

import json
import logging
from typing import Any, Dict, Optional
from sqlalchemy import select
from draftbot.config import Config
from draftbot.services.base import BaseService
from draftbot.database.models import Configuration, AuditLog
from draftbot.utils.exceptions import InvalidSettingsError

logger = logging.getLogger(__name__)

# Runtime key -> (Config attribute it overrides, smallest accepted value)
CONFIG_KEYS = {
    'scheduling.slot_interval_minutes': ('SLOT_INTERVAL_MINUTES', 1),
    'scheduling.teams_per_station': ('TEAMS_PER_STATION', 2),
    'brackets.max_group_size': ('MAX_GROUP_SIZE', 2),
    'brackets.teams_advancing_per_group': ('TEAMS_ADVANCING_PER_GROUP', 1),
    'forfeit.winner_score': ('FORFEIT_WINNER_SCORE', 0),
    'forfeit.loser_score': ('FORFEIT_LOSER_SCORE', 0),
}


def validate_config_value(key: str, value: Any) -> int:
    """Every runtime key holds a whole number with a lower bound."""
    if key not in CONFIG_KEYS:
        raise InvalidSettingsError(key, "is not a configuration key")
    _, minimum = CONFIG_KEYS[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidSettingsError(key, "must be a whole number")
    if value < minimum:
        raise InvalidSettingsError(key, f"must be at least {minimum}")
    return value


class ConfigurationService(BaseService):
    """Manages tournament configuration with simple caching and audit trail."""

    def __init__(self, session_factory):
        """
        Initialize configuration service with session factory.

        Args:
            session_factory: Async session factory from Database class
        """
        super().__init__(session_factory)
        self._cache: Dict[str, Any] = {}

    async def load_all(self):
        """Load all configurations from database into memory with error handling."""
        new_cache = {}
        async with self.get_session() as session:
            result = await session.execute(select(Configuration))
            for row in result.scalars().all():
                try:
                    new_cache[row.key] = json.loads(row.value)
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON for config key '{row.key}', skipping")

        self._cache = new_cache
        logger.info(f"Loaded {len(self._cache)} configuration overrides")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Effective value of a key: stored override, else ``default``, else the
        ``Config`` attribute the key shadows.
        """
        if key in self._cache:
            return self._cache[key]
        if default is None and key in CONFIG_KEYS:
            return getattr(Config, CONFIG_KEYS[key][0])
        return default

    async def set(self, key: str, value: Any, user_id: Optional[int] = None) -> int:
        """
        Validate and store an override, then refresh the cache.

        Args:
            key: One of CONFIG_KEYS
            value: New whole-number value
            user_id: Acting player id for the audit trail

        Raises:
            InvalidSettingsError: Unknown key or out-of-range value
        """
        value = validate_config_value(key, value)

        async with self.get_session() as session:
            result = await session.execute(select(Configuration).where(Configuration.key == key))
            row = result.scalar_one_or_none()
            previous = self.get(key)

            if row:
                row.value = json.dumps(value)
            else:
                session.add(Configuration(key=key, value=json.dumps(value)))

            session.add(AuditLog(
                user_id=user_id,
                action='config_set',
                target_type='configuration',
                details=json.dumps({'key': key, 'old_value': previous, 'new_value': value})
            ))

        await self.load_all()
        logger.info(f"Configuration {key}: {previous} -> {value} (by {user_id})")
        return value

    def list_all(self) -> Dict[str, Any]:
        """Effective value of every runtime key, defaults included."""
        return {key: self.get(key) for key in CONFIG_KEYS}
