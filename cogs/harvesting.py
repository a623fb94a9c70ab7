import discord
from discord.ext import commands
from discord import app_commands
from discord.app_commands import Choice
from discord.ui import View, Button, Select
from typing import Dict, List, Optional, Tuple
import logging

import config
from constants import HARVEST_DC_TABLES, SIZES
from harvest import HarvestContext, HarvestError, HarvestSession, PermissionPolicy, ValidationError
from harvest.broadcast import BroadcastChannel, OPEN_HARVEST, open_harvest_event
from harvest.dice import DiceRoller
from harvest.models import SessionState, Transcript
from harvest.store import SqliteDocumentStore, SqliteItemPiles

logger = logging.getLogger(__name__)

EMBED_LIMIT = 4096
MAX_OPTIONS = 25


def connected_user_ids(guild: Optional[discord.Guild]) -> set:
    """Members currently online in the guild (needs the presences intent)."""
    if guild is None:
        return set()
    return {str(m.id) for m in guild.members if not m.bot and m.status != discord.Status.offline}


def is_privileged(user) -> bool:
    permissions = getattr(user, "guild_permissions", None)
    return bool(permissions and permissions.administrator)


class ChannelPublisher:
    """Posts harvest transcripts to the channel the session lives in."""

    def __init__(self, channel):
        self.channel = channel

    async def publish(self, speaker_label: str, body: str):
        if len(body) > EMBED_LIMIT:
            body = body[:EMBED_LIMIT - 1] + "…"
        embed = discord.Embed(title=speaker_label, description=body, color=discord.Color.dark_red())
        await self.channel.send(embed=embed)


class HarvestView(View):
    """The harvest window: one per user per channel."""

    def __init__(self, cog: "HarvestingCog", session: HarvestSession, key: Tuple[int, int]):
        super().__init__(timeout=config.HARVEST_VIEW_TIMEOUT)
        self.cog = cog
        self.session = session
        self.key = key
        self.loot_page = 0
        self.build()

    def build(self):
        self.clear_items()
        model = self.session.get_view_model()
        busy = self.session.state is SessionState.EXECUTING

        candidates = model["available_harvesters"][:MAX_OPTIONS]
        if candidates:
            harvester_select = Select(
                placeholder="Add a harvester…",
                options=[
                    discord.SelectOption(label=c["name"][:100], value=c["id"], description=f"Owner: {c['owners']}"[:100])
                    for c in candidates
                ],
                disabled=busy,
                row=0,
            )
            harvester_select.callback = self.on_harvester_selected
            self.add_item(harvester_select)

        pages = self.loot_pages(model)
        loot = pages[self.loot_page]
        if loot:
            placeholder = "Choose materials to harvest…"
            if len(pages) > 1:
                placeholder += f" (page {self.loot_page + 1}/{len(pages)})"
            material_select = Select(
                placeholder=placeholder,
                min_values=0,
                max_values=len(loot),
                options=[
                    discord.SelectOption(label=m["name"][:100], value=m["id"], description=m["rarity"],
                                         default=m["selected"])
                    for m in loot
                ],
                disabled=busy,
                row=1,
            )
            material_select.callback = self.on_materials_selected
            self.add_item(material_select)

        if len(pages) > 1:
            previous_button = Button(label="◀ Materials", style=discord.ButtonStyle.secondary,
                                     disabled=busy or self.loot_page == 0, row=3)
            previous_button.callback = self.on_previous_materials
            self.add_item(previous_button)
            next_button = Button(label="Materials ▶", style=discord.ButtonStyle.secondary,
                                 disabled=busy or self.loot_page == len(pages) - 1, row=3)
            next_button.callback = self.on_next_materials
            self.add_item(next_button)

        assist_button = Button(label=f"Assist: {'on' if model['assist'] else 'off'}",
                               style=discord.ButtonStyle.secondary, disabled=busy, row=2)
        assist_button.callback = self.on_assist
        self.add_item(assist_button)

        start_button = Button(label="Start Harvest", style=discord.ButtonStyle.success,
                              disabled=busy or not model["has_target"], row=2)
        start_button.callback = self.on_start
        self.add_item(start_button)

        close_button = Button(label="Close", style=discord.ButtonStyle.danger, row=2)
        close_button.callback = self.on_close
        self.add_item(close_button)

    def loot_pages(self, model: Dict) -> List[List[Dict]]:
        """Selectable materials split into pages that fit one Select."""
        loot = [m for m in model["loot"] if not m["ruined"]]
        pages = [loot[i:i + MAX_OPTIONS] for i in range(0, len(loot), MAX_OPTIONS)] or [[]]
        self.loot_page = max(0, min(self.loot_page, len(pages) - 1))
        return pages

    def render_embed(self) -> discord.Embed:
        model = self.session.get_view_model()
        embed = discord.Embed(title="Harvest Materials", color=discord.Color.dark_grey())
        if model["has_target"]:
            essence = model["essence"]
            embed.description = (
                f"**{model['target_name']}** | Type: {model['type']}, CR: {model['cr']:g}, Size: {model['size']}\n"
                f"Remnant: {essence['name']} ({essence['rarity']}, DC {essence['dc']})"
            )
            if model["target_img"]:
                embed.set_thumbnail(url=model["target_img"])
        else:
            embed.description = "No target creature selected. Use `/harvest target`."

        harvesters = "\n".join(f"{h['index'] + 1}. {h['name']} ({h['owner']})" for h in model["harvesters"])
        embed.add_field(name="Harvesters", value=harvesters or "None yet", inline=False)
        selected = [m["name"] for m in model["loot"] if m["selected"]]
        embed.add_field(name="Selected materials", value="\n".join(selected)[:1024] or "None yet", inline=False)
        return embed

    async def refresh(self, interaction: discord.Interaction):
        self.session.connected_user_ids = connected_user_ids(interaction.guild)
        self.build()
        if interaction.response.is_done():
            await interaction.edit_original_response(embed=self.render_embed(), view=self)
        else:
            await interaction.response.edit_message(embed=self.render_embed(), view=self)

    async def on_harvester_selected(self, interaction: discord.Interaction):
        values = interaction.data.get("values", [])
        try:
            if values:
                self.session.add_harvester(values[0])
        except HarvestError as e:
            await self.cog.warn(interaction, str(e))
            return
        await self.refresh(interaction)

    async def on_materials_selected(self, interaction: discord.Interaction):
        wanted = set(interaction.data.get("values", []))
        shown = [m["id"] for m in self.loot_pages(self.session.get_view_model())[self.loot_page]]
        selected = set(self.session.selected_material_ids)
        try:
            for material_id in shown:
                if (material_id in wanted) != (material_id in selected):
                    self.session.toggle_material_selection(material_id)
        except HarvestError as e:
            await self.cog.warn(interaction, str(e))
            return
        await self.refresh(interaction)

    async def on_previous_materials(self, interaction: discord.Interaction):
        self.loot_page -= 1
        await self.refresh(interaction)

    async def on_next_materials(self, interaction: discord.Interaction):
        self.loot_page += 1
        await self.refresh(interaction)

    async def on_assist(self, interaction: discord.Interaction):
        try:
            self.session.set_assist(not self.session.assist)
        except HarvestError as e:
            await self.cog.warn(interaction, str(e))
            return
        await self.refresh(interaction)

    async def on_start(self, interaction: discord.Interaction):
        await interaction.response.defer()
        await self.cog.run_harvest(interaction, self.session)
        await self.refresh(interaction)

    async def on_close(self, interaction: discord.Interaction):
        self.cog.discard_session(self.key)
        self.stop()
        await interaction.response.edit_message(content="Harvest closed.", embed=None, view=None)

    async def on_timeout(self):
        self.cog.discard_session(self.key)


class JoinHarvestView(View):
    """Posted when someone opens a harvest so everyone can open their own copy."""

    def __init__(self, cog: "HarvestingCog", target_ref: Optional[str]):
        super().__init__(timeout=config.HARVEST_VIEW_TIMEOUT)
        self.cog = cog
        self.target_ref = target_ref

    @discord.ui.button(label="Open Harvest", style=discord.ButtonStyle.primary)
    async def join(self, interaction: discord.Interaction, button: Button):
        await self.cog.open_session(interaction, self.target_ref)


class HarvestingCog(commands.Cog):
    def __init__(self, bot, db_path: str | None = None):
        self.bot = bot
        self.store = SqliteDocumentStore(db_path)
        self.piles = SqliteItemPiles(db_path, enabled=config.ITEM_PILES_ENABLED)
        self.roller = DiceRoller()
        self.permissions = PermissionPolicy(players_can_open=config.PLAYERS_CAN_OPEN_HARVEST)
        self.broadcast = BroadcastChannel()
        self.broadcast.on_receive(self.on_broadcast)
        self.sessions: Dict[Tuple[int, int], HarvestSession] = {}

    # --- Sessions ---

    def discard_session(self, key: Tuple[int, int]):
        self.sessions.pop(key, None)

    def session_for(self, interaction: discord.Interaction) -> HarvestSession:
        session = self.sessions.get((interaction.channel_id, interaction.user.id))
        if session is None:
            raise ValidationError("Open a harvest first with `/harvest open`.")
        return session

    async def warn(self, interaction: discord.Interaction, message: str):
        if interaction.response.is_done():
            await interaction.followup.send(f"⚠️ {message}", ephemeral=True)
        else:
            await interaction.response.send_message(f"⚠️ {message}", ephemeral=True)

    async def open_session(self, interaction: discord.Interaction, target_ref: Optional[str]) -> Optional[HarvestSession]:
        privileged = is_privileged(interaction.user)
        if not self.permissions.can_open(privileged):
            await self.warn(interaction, "Only the GM can open the harvest menu.")
            return None

        context = HarvestContext(
            store=self.store,
            roller=self.roller,
            publisher=ChannelPublisher(interaction.channel),
            catalog_id=config.HARVEST_CATALOG_ID,
            piles=self.piles,
            permissions=self.permissions,
            scene_id=interaction.channel_id,
        )
        session = HarvestSession(context, user_id=interaction.user.id, privileged=privileged)
        warning = None
        if target_ref is not None:
            try:
                session.set_target(target_ref)
            except HarvestError as e:
                warning = f"⚠️ {e} Pick a target with `/harvest target`."
        session.connected_user_ids = connected_user_ids(interaction.guild)
        await session.load_loot()

        # Reopening replaces the old window instead of stacking a second one
        key = (interaction.channel_id, interaction.user.id)
        self.sessions[key] = session
        view = HarvestView(self, session, key)
        await interaction.response.send_message(warning, embed=view.render_embed(), view=view, ephemeral=True)
        return session

    async def run_harvest(self, interaction: discord.Interaction, session: HarvestSession) -> Optional[Transcript]:
        """Executes the session; returns the transcript, or None after warning the user."""
        try:
            transcript = await session.execute()
        except HarvestError as e:
            await self.warn(interaction, str(e))
            return None
        except Exception as e:
            logger.exception("Harvest failed in channel %s", interaction.channel_id)
            await self.warn(interaction, f"An error occurred during the harvest: {e}")
            return None
        logger.info("Harvest of %s finished with %d result(s), %d warning(s)",
                    transcript.target_name, len(transcript.records), len(transcript.warnings))
        return transcript

    async def on_broadcast(self, event: Dict):
        if event.get("action") != OPEN_HARVEST:
            return
        channel = self.bot.get_channel(event.get("sceneId")) if event.get("sceneId") else None
        if channel is None:
            logger.warning("openHarvest broadcast for unknown channel %r", event.get("sceneId"))
            return
        target = self.store.lookup_actor(event.get("targetRef")) if event.get("targetRef") else None
        opened_by = f"<@{event['openedBy']}>" if event.get("openedBy") else "Someone"
        await channel.send(
            f"{opened_by} opened a harvest" + (f" on **{target.name}**." if target else "."),
            view=JoinHarvestView(self, target.actor_id if target else None),
        )

    # --- Autocomplete ---

    async def creature_autocomplete(self, interaction: discord.Interaction, current: str) -> List[Choice[str]]:
        return [
            Choice(name=creature.title(), value=creature)
            for creature in HARVEST_DC_TABLES
            if current.lower() in creature.lower()
        ][:25]

    async def target_autocomplete(self, interaction: discord.Interaction, current: str) -> List[Choice[str]]:
        in_scene = set(self.store.scene_actor_ids(interaction.channel_id))
        actors = [a for a in self.store.list_actors() if current.lower() in a.name.lower()]
        actors.sort(key=lambda a: (a.actor_id not in in_scene, a.is_player_character, a.name))
        return [Choice(name=f"{a.name} ({a.creature_type or 'other'}, CR {a.challenge_rating or 0:g})", value=a.actor_id)
                for a in actors][:25]

    async def harvester_autocomplete(self, interaction: discord.Interaction, current: str) -> List[Choice[str]]:
        session = self.sessions.get((interaction.channel_id, interaction.user.id))
        if session is None:
            return []
        candidates = session.rank_candidate_harvesters(connected_user_ids(interaction.guild))
        return [Choice(name=c.name, value=c.actor_id) for c in candidates if current.lower() in c.name.lower()][:25]

    async def material_autocomplete(self, interaction: discord.Interaction, current: str) -> List[Choice[str]]:
        session = self.sessions.get((interaction.channel_id, interaction.user.id))
        if session is None:
            return []
        return [
            Choice(name=f"{m.name} ({m.rarity})", value=m.material_id)
            for m in session.materials_for_target()
            if current.lower() in m.name.lower() and m.material_id not in session.ruined_material_ids
        ][:25]

    # --- Commands ---

    harvest_group = app_commands.Group(name="harvest", description="Harvest materials from slain creatures")

    @harvest_group.command(name="list", description="List the harvestable components of a creature type")
    @app_commands.describe(creature="The creature type (autocomplete)")
    @app_commands.autocomplete(creature=creature_autocomplete)
    async def list_components(self, interaction: discord.Interaction, creature: str):
        catalog = self.store.lookup_material_catalog(config.HARVEST_CATALOG_ID) or []
        components = [m for m in catalog if m.creature_type == creature.lower()]
        if not components:
            await interaction.response.send_message(f"No harvesting data for creature type '{creature}'.", ephemeral=True)
            return

        by_dc: Dict[int, List[str]] = {}
        for material in components:
            by_dc.setdefault(material.base_dc, []).append(f"\t**{material.name}** ({material.rarity}, qty {material.qty})")
        dc_messages = [f"**Base DC {dc} Components:**\n" + "\n".join(lines) for dc, lines in sorted(by_dc.items())]
        combined_message = "\n-----------------------\n".join(dc_messages)
        await interaction.response.send_message(("--\n" + combined_message + "\n-----------------------")[:2000])

    @harvest_group.command(name="open", description="Open the harvest menu (shown to everyone in the channel)")
    @app_commands.describe(target="The slain creature (optional)")
    @app_commands.autocomplete(target=target_autocomplete)
    async def open_harvest(self, interaction: discord.Interaction, target: Optional[str] = None):
        session = await self.open_session(interaction, target)
        if session is None:
            return
        await self.broadcast.emit(open_harvest_event(session.target_ref, interaction.channel_id, interaction.user.id))

    @harvest_group.command(name="target", description="Set the creature being harvested")
    @app_commands.autocomplete(target=target_autocomplete)
    async def set_target(self, interaction: discord.Interaction, target: str):
        try:
            actor = self.session_for(interaction).set_target(target)
        except HarvestError as e:
            await self.warn(interaction, str(e))
            return
        await interaction.response.send_message(f"Target set to **{actor.name}**.", ephemeral=True)

    @harvest_group.command(name="add", description="Add a harvester")
    @app_commands.autocomplete(harvester=harvester_autocomplete)
    async def add_harvester(self, interaction: discord.Interaction, harvester: str):
        try:
            added = self.session_for(interaction).add_harvester(harvester)
        except HarvestError as e:
            await self.warn(interaction, str(e))
            return
        message = "Harvester added." if added else "That character is already harvesting or is the target."
        await interaction.response.send_message(message, ephemeral=True)

    @harvest_group.command(name="remove", description="Remove a harvester by position")
    @app_commands.describe(position="Position in the harvester list (1 = first)")
    async def remove_harvester(self, interaction: discord.Interaction, position: int):
        try:
            removed = self.session_for(interaction).remove_harvester(position - 1)
        except HarvestError as e:
            await self.warn(interaction, str(e))
            return
        message = f"Removed **{removed.name}**." if removed else "No harvester at that position."
        await interaction.response.send_message(message, ephemeral=True)

    @harvest_group.command(name="move", description="Move a harvester up or down the order")
    @app_commands.describe(position="Position in the harvester list (1 = first)")
    @app_commands.choices(direction=[Choice(name="Up", value="up"), Choice(name="Down", value="down")])
    async def move_harvester(self, interaction: discord.Interaction, position: int, direction: Choice[str]):
        try:
            moved = self.session_for(interaction).reorder_harvester(position - 1, direction.value)
        except HarvestError as e:
            await self.warn(interaction, str(e))
            return
        await interaction.response.send_message("Order updated." if moved else "Nothing to move.", ephemeral=True)

    @harvest_group.command(name="select", description="Select or deselect a material")
    @app_commands.autocomplete(material=material_autocomplete)
    async def select_material(self, interaction: discord.Interaction, material: str):
        try:
            selected = self.session_for(interaction).toggle_material_selection(material)
        except HarvestError as e:
            await self.warn(interaction, str(e))
            return
        await interaction.response.send_message("Selected." if selected else "Deselected.", ephemeral=True)

    @harvest_group.command(name="assist", description="Let the other harvesters help each check")
    async def toggle_assist(self, interaction: discord.Interaction, enabled: bool):
        try:
            self.session_for(interaction).set_assist(enabled)
        except HarvestError as e:
            await self.warn(interaction, str(e))
            return
        await interaction.response.send_message(f"Assist {'enabled' if enabled else 'disabled'}.", ephemeral=True)

    @harvest_group.command(name="start", description="Roll the harvest")
    async def start_harvest(self, interaction: discord.Interaction):
        try:
            session = self.session_for(interaction)
        except HarvestError as e:
            await self.warn(interaction, str(e))
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        transcript = await self.run_harvest(interaction, session)
        if transcript is not None:
            await interaction.followup.send("Harvest complete.", ephemeral=True)

    @harvest_group.command(name="encounter", description="Place a creature in this channel's encounter (Admin only)")
    @app_commands.checks.has_permissions(administrator=True)
    @app_commands.describe(name="Creature name", creature_type="Creature type", cr="Challenge rating", size="Size")
    @app_commands.autocomplete(creature_type=creature_autocomplete)
    @app_commands.choices(size=[Choice(name=s, value=s) for s in SIZES])
    async def add_encounter_creature(self, interaction: discord.Interaction, name: str, creature_type: str,
                                     cr: float = 0.0, size: Optional[Choice[str]] = None):
        actor_id = self.store.create_actor(
            name, actor_type="npc", creature_type=creature_type.lower(), cr=cr,
            size=size.value if size else "med", proficiency_bonus=2,
        )
        self.store.add_to_scene(interaction.channel_id, actor_id)
        await interaction.response.send_message(f"**{name}** ({creature_type}, CR {cr:g}) joins the encounter.")

    @harvest_group.command(name="piles", description="Show harvested piles lying in this channel")
    async def show_piles(self, interaction: discord.Interaction):
        piles = self.piles.piles_in(interaction.channel_id)
        if not piles:
            await interaction.response.send_message("Nothing is lying around here.", ephemeral=True)
            return
        lines = [
            f"- {item['data'].get('name')} ×{item['quantity']}"
            for pile in piles for item in pile["items"]
        ]
        await interaction.response.send_message("\n".join(lines)[:2000], ephemeral=True)


async def setup(bot):
    guild_id = int(config.TEST_SERVER_ID) if config.TEST_SERVER_ID else None
    if guild_id:
        await bot.add_cog(HarvestingCog(bot), guilds=[discord.Object(id=guild_id)])
    else:
        await bot.add_cog(HarvestingCog(bot))
    print("HarvestingCog loaded.")
