"""
Centralized error embeds for consistent error handling across the draft tournament bot.

Engine errors already carry a ``user_message``; these helpers only decide
title and colour so every cog presents failures the same way.
"""

import discord
from typing import Optional

from draftbot.utils.exceptions import (
    TournamentError, NotReadyError, PermissionDeniedError, AlreadyFinalizedError, InvalidPayloadError
)


class ErrorEmbeds:
    """Centralized error embed factory for consistent error handling."""

    @staticmethod
    def from_error(error: TournamentError) -> discord.Embed:
        """Create embed for any engine error using its user-facing message."""
        if isinstance(error, PermissionDeniedError):
            return ErrorEmbeds.permission_denied()
        if isinstance(error, NotReadyError):
            return ErrorEmbeds.not_ready(error.user_message)
        if isinstance(error, (AlreadyFinalizedError, InvalidPayloadError)):
            color = discord.Color.orange()
        else:
            color = discord.Color.red()
        return discord.Embed(
            title="Request Failed",
            description=error.user_message,
            color=color
        )

    @staticmethod
    def player_not_found(member: Optional[discord.abc.User] = None) -> discord.Embed:
        """Create embed for when a Discord user has no player record."""
        who = member.mention if member else "This user"
        return discord.Embed(
            title="Player Not Found",
            description=f"{who} isn't registered as a player yet.",
            color=discord.Color.red()
        )

    @staticmethod
    def command_error(error: str) -> discord.Embed:
        """Create embed for general command errors."""
        return discord.Embed(
            title="Command Error",
            description=f"An error occurred: {error}\n\nPlease try again or contact an administrator.",
            color=discord.Color.red()
        )

    @staticmethod
    def invalid_input(message: str) -> discord.Embed:
        return discord.Embed(
            title="Invalid Input",
            description=message,
            color=discord.Color.red()
        )

    @staticmethod
    def not_ready(message: str) -> discord.Embed:
        return discord.Embed(
            title="Not Ready Yet",
            description=message,
            color=discord.Color.orange()
        )

    @staticmethod
    def permission_denied() -> discord.Embed:
        """Create embed for permission errors."""
        return discord.Embed(
            title="Permission Denied",
            description="You don't have permission to perform this action.",
            color=discord.Color.red()
        )

    @staticmethod
    def database_error() -> discord.Embed:
        """Create embed for database-related errors."""
        return discord.Embed(
            title="Database Error",
            description="A database error occurred. Please try again later or contact an administrator.",
            color=discord.Color.red()
        )
