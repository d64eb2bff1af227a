import discord
from discord.ext import commands
from discord import app_commands
from typing import Optional

from draftbot.config import Config
from draftbot.data_models.context import RequestContext
from draftbot.database.models import BracketFormat, BracketStatus, RegularMatchRef, TournamentMatchRef
from draftbot.operations.admin_operations import AdminOperations
from draftbot.services.configuration import CONFIG_KEYS
from draftbot.services.finalization_service import STEPS
from draftbot.utils.datetime_utils import parse_iso
from draftbot.utils.error_embeds import ErrorEmbeds
from draftbot.utils.exceptions import TournamentError
from draftbot.utils.logger import setup_logger

logger = setup_logger(__name__)


def is_tournament_admin(user) -> bool:
    """Bot owner or a guild administrator"""
    if user.id == Config.OWNER_DISCORD_ID:
        return True
    permissions = getattr(user, 'guild_permissions', None)
    return bool(permissions and permissions.administrator)


def match_ref_for(match_id: int, regular: bool = False):
    return RegularMatchRef(match_id) if regular else TournamentMatchRef(match_id)


class TournamentCog(commands.Cog):
    """Bracket, result and finalization commands for draft tournaments"""

    def __init__(self, bot):
        self.bot = bot
        self.admin_ops: AdminOperations = bot.admin_ops
        self.logger = logger

    async def _context(self, ctx) -> Optional[RequestContext]:
        """Resolve the Discord author to a RequestContext; None if they have no player record"""
        player = await self.bot.db.get_player_by_discord_id(ctx.author.id)
        is_admin = is_tournament_admin(ctx.author)
        if player is None and not is_admin:
            await ctx.send(embed=ErrorEmbeds.player_not_found(ctx.author))
            return None
        return RequestContext(
            user_id=player.id if player else None,
            username=player.username if player else str(ctx.author),
            is_admin=is_admin,
        )

    async def _run(self, ctx, command_name: str, action):
        """Defer, resolve the caller, run the action and report engine errors as embeds"""
        if ctx.interaction:
            await ctx.defer(ephemeral=True)
        request = await self._context(ctx)
        if request is None:
            return
        try:
            embed = await action(request)
            await ctx.send(embed=embed)
        except TournamentError as e:
            self.logger.info(f"{command_name} refused for {ctx.author}: {e}")
            await ctx.send(embed=ErrorEmbeds.from_error(e))
        except Exception as e:
            self.logger.error(f"Error in {command_name} command: {e}", exc_info=True)
            await ctx.send(embed=ErrorEmbeds.command_error(str(e)))

    # ============================================================================
    # Brackets
    # ============================================================================

    @commands.hybrid_command(name='admin-create-bracket', description="Create the bracket for an event")
    @app_commands.describe(
        event_id="Event to create the bracket for",
        bracket_format="elimination or groups",
        max_group_size="Largest group size (groups only)",
        teams_advancing="Teams advancing per group (groups only)"
    )
    @app_commands.choices(bracket_format=[
        app_commands.Choice(name="Single elimination", value=BracketFormat.ELIMINATION.value),
        app_commands.Choice(name="Groups + knockout", value=BracketFormat.GROUPS.value),
    ])
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def create_bracket(self, ctx, event_id: int, bracket_format: str,
                             max_group_size: Optional[int] = None, teams_advancing: Optional[int] = None):
        """Create an elimination or group bracket for an event"""
        settings = {}
        if max_group_size is not None:
            settings['max_group_size'] = max_group_size
        if teams_advancing is not None:
            settings['teams_advancing'] = teams_advancing

        async def action(request):
            bracket = await self.admin_ops.create_bracket(request, event_id, bracket_format, settings)
            embed = discord.Embed(title="✅ Bracket Created", color=discord.Color.green())
            embed.add_field(name="Bracket", value=f"#{bracket.id}", inline=True)
            embed.add_field(name="Format", value=bracket.format.value.title(), inline=True)
            embed.add_field(name="Stage", value=bracket.stage.value.replace('_', ' ').title(), inline=True)
            embed.set_footer(text="Use /admin-generate-matches to create the first round")
            return embed

        await self._run(ctx, 'admin-create-bracket', action)

    @commands.hybrid_command(name='admin-generate-matches', description="Generate and schedule the opening matches")
    @app_commands.describe(
        bracket_id="Bracket to generate matches for",
        start_at="First kickoff in ISO format (e.g. 2025-06-01T18:00). Defaults to now"
    )
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def generate_matches(self, ctx, bracket_id: int, start_at: Optional[str] = None):
        """Generate first-round or group-stage matches"""
        async def action(request):
            try:
                start = parse_iso(start_at) if start_at else None
            except ValueError:
                return ErrorEmbeds.invalid_input(f"`{start_at}` is not a valid ISO date/time.")
            matches = await self.admin_ops.generate_initial_matches(request, bracket_id, start)
            playable = [m for m in matches if not m.is_bye]
            embed = discord.Embed(title="✅ Matches Generated", color=discord.Color.green())
            embed.add_field(name="Matches", value=len(playable), inline=True)
            embed.add_field(name="Byes", value=len(matches) - len(playable), inline=True)
            lines = [
                f"`#{m.id}` R{m.round}.{m.match_number} • team {m.team1_id} vs team {m.team2_id}"
                f" • {m.scheduled_at:%Y-%m-%d %H:%M}"
                for m in playable[:15]
            ]
            if lines:
                embed.add_field(name="Schedule", value="\n".join(lines), inline=False)
            if len(playable) > 15:
                embed.set_footer(text=f"Showing first 15 of {len(playable)} matches")
            return embed

        await self._run(ctx, 'admin-generate-matches', action)

    @commands.hybrid_command(name='admin-promote', description="Create the next knockout round")
    @app_commands.describe(
        bracket_id="Bracket to promote",
        from_round="Round you expect to promote from (repeat calls become no-ops)"
    )
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def promote(self, ctx, bracket_id: int, from_round: Optional[int] = None):
        """Advance winners of the latest round"""
        async def action(request):
            result = await self.admin_ops.promote_next_round(request, bracket_id, from_round)
            if result.bracket_completed:
                return discord.Embed(
                    title="🏆 Bracket Completed",
                    description=f"Champion: team {result.champion_team_id}",
                    color=discord.Color.gold()
                )
            if not result.created:
                return discord.Embed(
                    title="ℹ️ Nothing To Promote",
                    description=f"Round {result.round_number} already exists.",
                    color=discord.Color.blue()
                )
            return discord.Embed(
                title=f"✅ Round {result.round_number} Created",
                description=f"{len(result.match_ids)} match(es) scheduled.",
                color=discord.Color.green()
            )

        await self._run(ctx, 'admin-promote', action)

    @commands.hybrid_command(name='admin-knockout', description="Seed the knockout stage from group results")
    @app_commands.describe(bracket_id="Group bracket whose groups are complete")
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def knockout(self, ctx, bracket_id: int):
        """Generate the knockout stage of a group bracket"""
        async def action(request):
            result = await self.admin_ops.generate_knockout(request, bracket_id)
            if result.bracket_completed:
                return discord.Embed(
                    title="🏆 Bracket Completed",
                    description="Only one team qualified from the groups.",
                    color=discord.Color.gold()
                )
            if not result.created:
                return discord.Embed(
                    title="ℹ️ Knockout Already Generated",
                    color=discord.Color.blue()
                )
            return discord.Embed(
                title="✅ Knockout Stage Generated",
                description=f"Round {result.round_number}: {len(result.match_ids)} match(es).",
                color=discord.Color.green()
            )

        await self._run(ctx, 'admin-knockout', action)

    # ============================================================================
    # Results
    # ============================================================================

    @commands.hybrid_command(name='submit-result', description="Report your team's match result")
    @app_commands.describe(
        match_id="Match id",
        team_id="Your team id",
        team1_score="Goals scored by the first team listed",
        team2_score="Goals scored by the second team listed",
        screenshot_url="Link to the result screenshot",
        notes="Free text; may include a JSON object with a player_stats list",
        regular="Set for non-bracket matches"
    )
    async def submit_result(self, ctx, match_id: int, team_id: int, team1_score: int, team2_score: int,
                            screenshot_url: Optional[str] = None, notes: Optional[str] = None,
                            regular: bool = False):
        """Captains report results; admins may report for any team"""
        async def action(request):
            receipt = await self.admin_ops.submit_result(
                request, match_ref_for(match_id, regular), team_id, team1_score, team2_score,
                screenshot_url=screenshot_url, notes=notes
            )
            color = discord.Color.orange() if receipt.conflicting_submission_ids else discord.Color.green()
            embed = discord.Embed(
                title="📨 Result Submitted",
                description=f"Submission `#{receipt.submission_id}`: {team1_score}-{team2_score}",
                color=color
            )
            embed.add_field(name="Status", value=receipt.outcome.value.title(), inline=True)
            if receipt.conflicting_submission_ids:
                embed.add_field(
                    name="Conflict",
                    value="The other team reported a different score. An admin will review both.",
                    inline=False
                )
            for warning in receipt.warnings:
                embed.add_field(name="Warning", value=warning, inline=False)
            return embed

        await self._run(ctx, 'submit-result', action)

    @commands.hybrid_command(name='admin-approve', description="Approve a result submission")
    @app_commands.describe(submission_id="Submission to approve", notes="Optional admin notes")
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def approve(self, ctx, submission_id: int, *, notes: Optional[str] = None):
        """Approve a submission and complete its match"""
        async def action(request):
            submission = await self.admin_ops.approve_submission(request, submission_id, notes)
            return discord.Embed(
                title="✅ Result Approved",
                description=f"{submission.match_ref}: {submission.team1_score}-{submission.team2_score}",
                color=discord.Color.green()
            )

        await self._run(ctx, 'admin-approve', action)

    @commands.hybrid_command(name='admin-reject', description="Reject a result submission")
    @app_commands.describe(submission_id="Submission to reject", notes="Reason shown to the captain")
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def reject(self, ctx, submission_id: int, *, notes: Optional[str] = None):
        """Reject a submission"""
        async def action(request):
            submission = await self.admin_ops.reject_submission(request, submission_id, notes)
            return discord.Embed(
                title="🚫 Result Rejected",
                description=f"Submission `#{submission.id}` for {submission.match_ref}",
                color=discord.Color.orange()
            )

        await self._run(ctx, 'admin-reject', action)

    @commands.hybrid_command(name='admin-edit-score', description="Correct the score of a match")
    @app_commands.describe(
        match_id="Match id",
        team1_score="Corrected first team score",
        team2_score="Corrected second team score",
        notes="Why the score changed",
        regular="Set for non-bracket matches"
    )
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def edit_score(self, ctx, match_id: int, team1_score: int, team2_score: int,
                         notes: Optional[str] = None, regular: bool = False):
        """Overwrite a match score"""
        async def action(request):
            match = await self.admin_ops.edit_match_score(
                request, match_ref_for(match_id, regular), team1_score, team2_score, notes
            )
            return discord.Embed(
                title="✏️ Score Updated",
                description=f"{match.match_ref}: {match.team1_score}-{match.team2_score}",
                color=discord.Color.green()
            )

        await self._run(ctx, 'admin-edit-score', action)

    @commands.hybrid_command(name='admin-forfeit', description="Award a match by forfeit")
    @app_commands.describe(
        match_id="Match id",
        winning_team_id="Team that wins by forfeit",
        reason="Why the match was forfeited",
        regular="Set for non-bracket matches"
    )
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def forfeit(self, ctx, match_id: int, winning_team_id: int,
                      reason: Optional[str] = None, regular: bool = False):
        """Declare a forfeit with the configured walkover score"""
        async def action(request):
            match = await self.admin_ops.forfeit_match(
                request, match_ref_for(match_id, regular), winning_team_id, reason
            )
            return discord.Embed(
                title="🏳️ Forfeit Recorded",
                description=f"{match.match_ref}: {match.team1_score}-{match.team2_score}",
                color=discord.Color.green()
            )

        await self._run(ctx, 'admin-forfeit', action)

    # ============================================================================
    # Finalization
    # ============================================================================

    @commands.hybrid_command(name='admin-finalize', description="Compute stats, awards, rankings and rewards")
    @app_commands.describe(
        event_id="Event whose bracket is completed",
        recompute="Re-run statistics and awards for an already finalized event"
    )
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def finalize(self, ctx, event_id: int, recompute: bool = False):
        """Finalize a completed tournament"""
        async def action(request):
            report = await self.admin_ops.finalize_tournament(request, event_id, recompute=recompute)
            embed = discord.Embed(title="🏁 Tournament Finalized", color=discord.Color.gold())
            embed.add_field(name="Players", value=report.players_aggregated, inline=True)
            embed.add_field(name="Rankings Updated", value=report.rankings_updated, inline=True)
            embed.add_field(name="Credits Paid", value=report.credits_distributed, inline=True)
            if report.awards:
                embed.add_field(
                    name="Awards",
                    value="\n".join(f"**{a.award_type.replace('_', ' ').title()}**: {a.username} ({a.value})"
                                    for a in report.awards),
                    inline=False
                )
            if report.rewards_skipped_reason:
                embed.set_footer(text=report.rewards_skipped_reason)
            return embed

        await self._run(ctx, 'admin-finalize', action)

    @commands.hybrid_command(name='admin-finalize-step', description="Re-run one finalization step")
    @app_commands.describe(event_id="Event to repair", step="Finalization step to run")
    @app_commands.choices(step=[app_commands.Choice(name=s.replace('_', ' '), value=s) for s in STEPS])
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def finalize_step(self, ctx, event_id: int, step: str):
        """Re-run a single finalization step"""
        async def action(request):
            await self.admin_ops.run_finalization_step(request, event_id, step)
            return discord.Embed(
                title="✅ Step Completed",
                description=f"`{step}` ran for event {event_id}.",
                color=discord.Color.green()
            )

        await self._run(ctx, 'admin-finalize-step', action)

    @commands.hybrid_command(name='admin-rewards', description="Configure placement rewards for an event")
    @app_commands.describe(
        event_id="Event to configure",
        enabled="Turn rewards on or off",
        base_amount="Credits for first place",
        positions="Number of rewarded places",
        reduction="Reduction per place",
        reduction_type="percentage or fixed",
        only_captains="Pay captains only"
    )
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def rewards(self, ctx, event_id: int, enabled: Optional[bool] = None,
                      base_amount: Optional[int] = None, positions: Optional[int] = None,
                      reduction: Optional[int] = None, reduction_type: Optional[str] = None,
                      only_captains: Optional[bool] = None):
        """View or update an event's reward settings"""
        updates = {
            key: value for key, value in (
                ('enabled', enabled),
                ('base_reward_amount', base_amount),
                ('reward_positions', positions),
                ('reduction_per_position', reduction),
                ('reduction_type', reduction_type),
                ('only_captains', only_captains),
            ) if value is not None
        }

        async def action(request):
            if updates:
                settings = await self.admin_ops.update_reward_settings(request, event_id, **updates)
            else:
                settings = await self.admin_ops.get_reward_settings(event_id)
            embed = discord.Embed(title=f"💰 Reward Settings • Event {event_id}", color=discord.Color.blue())
            embed.add_field(name="Enabled", value="✅" if settings.enabled else "❌", inline=True)
            embed.add_field(name="Base", value=settings.base_reward_amount, inline=True)
            embed.add_field(name="Places", value=settings.reward_positions, inline=True)
            embed.add_field(
                name="Reduction",
                value=f"{settings.reduction_per_position} ({settings.reduction_type.value})",
                inline=True
            )
            embed.add_field(name="Captains Only", value="✅" if settings.only_captains else "❌", inline=True)
            return embed

        await self._run(ctx, 'admin-rewards', action)

    @commands.hybrid_command(name='admin-config', description="View or change scheduling and forfeit tunables")
    @app_commands.describe(key="Setting to change (omit to list all)", value="New whole-number value")
    @app_commands.choices(key=[app_commands.Choice(name=k, value=k) for k in CONFIG_KEYS])
    @app_commands.check(lambda interaction: is_tournament_admin(interaction.user))
    async def configure(self, ctx, key: Optional[str] = None, value: Optional[int] = None):
        async def action(request):
            if key is not None and value is not None:
                values = await self.admin_ops.update_configuration(request, key, value)
            else:
                values = self.admin_ops.get_configuration()
            embed = discord.Embed(title="⚙️ Tournament Configuration", color=discord.Color.blue())
            for name, current in values.items():
                marker = " ✏️" if name == key else ""
                embed.add_field(name=f"{name}{marker}", value=current, inline=False)
            return embed

        await self._run(ctx, 'admin-config', action)

    # ============================================================================
    # Public views
    # ============================================================================

    @commands.hybrid_command(name='standings', description="Show group tables or final standings")
    @app_commands.describe(event_id="Event to show")
    async def standings(self, ctx, event_id: int):
        """Group tables while groups run, final placings otherwise"""
        try:
            bracket = await self.admin_ops.bracket_ops.get_bracket_for_event(event_id)
            if not bracket:
                await ctx.send(embed=ErrorEmbeds.invalid_input("This event has no bracket yet."))
                return

            embed = discord.Embed(title=f"📊 Standings • Event {event_id}", color=discord.Color.blue())
            if bracket.format == BracketFormat.GROUPS:
                tables = await self.admin_ops.bracket_ops.get_group_standings(bracket.id)
                for group_number, rows in tables.items():
                    lines = [
                        f"{i}. team {row.team_id} • {row.points} pts ({row.wins}-{row.draws}-{row.losses}, "
                        f"GD {row.goal_difference:+d})"
                        for i, row in enumerate(rows, 1)
                    ]
                    embed.add_field(name=f"Group {chr(64 + group_number)}", value="\n".join(lines) or "-",
                                    inline=False)

            final = await self.admin_ops.bracket_ops.get_final_standings(event_id)
            if final and bracket.status == BracketStatus.COMPLETED:
                embed.add_field(
                    name="Final Placings",
                    value="\n".join(f"{s.position}. {s.team_name}" for s in final[:8]),
                    inline=False
                )
            await ctx.send(embed=embed)
        except TournamentError as e:
            await ctx.send(embed=ErrorEmbeds.from_error(e))

    @commands.hybrid_command(name='rankings', description="Show the all-time player rankings")
    @app_commands.describe(limit="Number of players to show (max 25)")
    async def rankings(self, ctx, limit: int = 10):
        """All-time ranking points leaderboard"""
        rows = await self.admin_ops.get_rankings(min(max(limit, 1), 25))
        if not rows:
            await ctx.send(embed=discord.Embed(
                title="🏅 Rankings",
                description="No finalized tournaments yet.",
                color=discord.Color.orange()
            ))
            return
        embed = discord.Embed(title="🏅 Rankings", color=discord.Color.blue())
        embed.description = "\n".join(
            f"**{i}.** {r.username} • {r.ranking_points} pts • {r.drafts_won} titles • {r.win_rate:.1f}% wins"
            for i, r in enumerate(rows, 1)
        )
        await ctx.send(embed=embed)

    @commands.hybrid_command(name='awards', description="Show an event's awards")
    @app_commands.describe(event_id="Finalized event")
    async def awards(self, ctx, event_id: int):
        awards = await self.admin_ops.get_event_awards(event_id)
        if not awards:
            await ctx.send(embed=discord.Embed(
                title="🎖️ Awards",
                description="This event has not been finalized yet.",
                color=discord.Color.orange()
            ))
            return
        embed = discord.Embed(title=f"🎖️ Awards • Event {event_id}", color=discord.Color.gold())
        for award in awards:
            embed.add_field(
                name=award.award_type.value.replace('_', ' ').title(),
                value=f"{award.username}\n{award.description}",
                inline=True
            )
        await ctx.send(embed=embed)

    @commands.hybrid_command(name='credits', description="Show your credit balance and recent payouts")
    async def credits(self, ctx):
        player = await self.bot.db.get_player_by_discord_id(ctx.author.id)
        if not player:
            await ctx.send(embed=ErrorEmbeds.player_not_found(ctx.author))
            return
        history = await self.admin_ops.get_credit_history(player.id, limit=10)
        embed = discord.Embed(
            title="💳 Credits",
            description=f"Balance: **{player.total_credits}**",
            color=discord.Color.blue()
        )
        if history:
            embed.add_field(
                name="Recent Payouts",
                value="\n".join(f"+{p.amount} • {p.reason} (balance {p.balance_after})" for p in history),
                inline=False
            )
        await ctx.send(embed=embed)


async def setup(bot):
    await bot.add_cog(TournamentCog(bot))
