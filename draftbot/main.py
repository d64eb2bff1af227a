import asyncio
import logging
import traceback
from typing import Optional

import discord
from discord.ext import commands
from discord import app_commands

from draftbot.config import Config
from draftbot.database.database import Database
from draftbot.operations.admin_operations import AdminOperations
from draftbot.services.configuration import ConfigurationService
from draftbot.utils.logger import setup_logger

class TournamentBot(commands.Bot):
    def __init__(self):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.guilds = True
        intents.members = True

        super().__init__(
            command_prefix=Config.COMMAND_PREFIX,
            intents=intents,
            help_command=None
        )

        # Attach app command error handler
        self.tree.on_error = self.on_app_command_error

        self.db: Optional[Database] = None
        self.config_service: Optional[ConfigurationService] = None
        self.admin_ops: Optional[AdminOperations] = None
        self.logger = setup_logger(__name__)

    async def setup_hook(self):
        """Called when the bot is starting up"""
        self.logger.info("Setting up Draft Tournament Bot...")

        # Initialize database
        self.db = Database()
        await self.db.initialize()

        # Initialize configuration service and load configs
        self.config_service = ConfigurationService(self.db.session_factory)
        await self.config_service.load_all()
        self.logger.info("Configuration service initialized")

        self.admin_ops = AdminOperations(self.db, self.config_service)

        # Load cogs
        await self.load_cogs()

        # Sync slash commands
        await self._sync_commands()

        self.logger.info("Draft Tournament Bot setup complete!")

    async def load_cogs(self):
        """Load all cogs"""
        cogs_to_load = [
            'draftbot.cogs.tournament',
        ]

        for cog in cogs_to_load:
            try:
                await self.load_extension(cog)
                self.logger.info(f"Loaded cog: {cog}")
            except Exception as e:
                self.logger.error(f"Failed to load cog {cog}: {e}", exc_info=True)

    async def _sync_commands(self):
        """Sync slash commands with Discord"""
        if not self.tree.get_commands():
            self.logger.warning("No application commands found to sync. Check for cog loading errors.")
            return

        try:
            guild_ids = Config.get_guild_ids()

            if guild_ids:
                # Guild-specific sync (instant updates, works in specified servers)
                self.logger.info(f"Attempting to sync commands to {len(guild_ids)} guild(s): {guild_ids}...")

                total_synced = 0
                for guild_id in guild_ids:
                    try:
                        guild = discord.Object(id=guild_id)
                        self.tree.copy_global_to(guild=guild)
                        synced = await self.tree.sync(guild=guild)
                        self.logger.info(f"Successfully synced {len(synced)} command(s) to guild {guild_id}")
                        total_synced += len(synced)
                    except discord.errors.Forbidden:
                        self.logger.error(f"Permission error syncing to guild {guild_id}. Ensure the bot has the 'application.commands' scope and is in the guild.", exc_info=True)
                    except discord.errors.HTTPException as e:
                        self.logger.error(f"HTTP error syncing to guild {guild_id}. Status: {e.status}, Response: {e.text}", exc_info=True)

                self.logger.info(f"Multi-guild sync complete: {total_synced} total command instances deployed")
            else:
                # Global sync (can take up to 1 hour, works everywhere)
                self.logger.info("Attempting to sync commands globally... (Note: This can take up to an hour to propagate)")
                synced = await self.tree.sync()
                self.logger.info(f"Successfully synced {len(synced)} command(s) globally")
        except Exception as e:
            self.logger.error(f"Failed to sync commands: {e}", exc_info=True)
            # Don't raise - bot should continue working with prefix commands

    async def on_ready(self):
        """Called when the bot is ready"""
        self.logger.info(f'{self.user} has connected to Discord!')
        self.logger.info(f'Bot is in {len(self.guilds)} guilds')

        await self.change_presence(
            activity=discord.Game(name="Draft Tournament | /standings")
        )

    async def on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        """Global error handler for slash commands"""
        command_name = interaction.command.name if interaction.command else 'Unknown'
        if isinstance(error, app_commands.CheckFailure):
            self.logger.info(f"Permission denied for command '{command_name}' by user {interaction.user}")
        else:
            self.logger.error(f"Error in app command '{command_name}': {error}", exc_info=True)

        if isinstance(error, app_commands.CheckFailure) and command_name.startswith('admin-'):
            error_embed = discord.Embed(
                title="❌ Administrative Privileges Required",
                description="This command is restricted to tournament administrators.",
                color=discord.Color.red()
            )
            error_embed.set_footer(text="Contact the bot owner if you believe you should have access.")
        elif isinstance(error, app_commands.CheckFailure):
            error_embed = discord.Embed(
                title="❌ Permission Denied",
                description="You don't have the required permissions to use this command.",
                color=discord.Color.red()
            )
        elif isinstance(error, app_commands.CommandOnCooldown):
            error_embed = discord.Embed(
                title=f"❌ Command is on cooldown. Try again in {error.retry_after:.2f} seconds.",
                color=discord.Color.red()
            )
        else:
            error_embed = discord.Embed(
                title="❌ An unexpected error occurred while processing your command.",
                color=discord.Color.red()
            )

        try:
            if interaction.response.is_done():
                await interaction.followup.send(embed=error_embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=error_embed, ephemeral=True)
        except discord.HTTPException as e:
            self.logger.error(f"Failed to send error response: {e}")

    async def on_command_error(self, ctx: commands.Context, error: Exception):
        """Global error handler for prefix commands"""
        if isinstance(error, commands.CommandNotFound):
            return

        if isinstance(error, commands.CheckFailure):
            self.logger.info(f"Permission denied for command '{ctx.command.name if ctx.command else 'Unknown'}' by user {ctx.author}")
            await ctx.send("❌ You don't have permission to use this command.")
            return

        if isinstance(error, commands.MissingRequiredArgument):
            await ctx.send(f"❌ Missing required argument: `{error.param.name}`")
            return

        if isinstance(error, commands.BadArgument):
            await ctx.send(f"❌ {error}")
            return

        self.logger.error(f"Unexpected error in command {ctx.command}: {error}")
        self.logger.error(traceback.format_exc())

        embed = discord.Embed(
            title="❌ An error occurred",
            description="An unexpected error occurred while processing your command. The developers have been notified.",
            color=discord.Color.red()
        )
        await ctx.send(embed=embed)

    async def close(self):
        """Cleanup when bot is shutting down"""
        self.logger.info("Shutting down Draft Tournament Bot...")

        if self.db:
            await self.db.close()

        await super().close()

async def main():
    """Main entry point"""
    Config.validate()

    bot = TournamentBot()

    try:
        await bot.start(Config.DISCORD_TOKEN)
    except KeyboardInterrupt:
        await bot.close()
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        traceback.print_exc()
    finally:
        await bot.close()

def run():
    asyncio.run(main())

if __name__ == "__main__":
    run()
