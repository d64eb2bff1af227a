"""
Request context passed explicitly into every admin-surface call.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RequestContext:
    """Who is acting. Replaces ambient current-user / admin-view state."""
    user_id: Optional[int]
    username: str = "system"
    is_admin: bool = False

    @classmethod
    def system(cls) -> 'RequestContext':
        """Context for scheduled jobs and maintenance scripts."""
        return cls(user_id=None, username="system", is_admin=True)
