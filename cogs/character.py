import discord
from discord.ext import commands
from discord import app_commands
from discord.app_commands import Choice
import asyncio
import logging
from typing import List, Optional

import config
import database as db_utils
from constants import SIZES, SKILL_NAMES
from harvest.store import SqliteDocumentStore

logger = logging.getLogger(__name__)

MAX_CHARACTERS = 3


class CharacterCog(commands.Cog):
    def __init__(self, bot: commands.Bot, db_path: str | None = None):
        self.bot = bot
        self.db_path = db_path
        self.store = SqliteDocumentStore(db_path)

    character_group = app_commands.Group(name="character", description="Manage your characters")

    def active_character_id(self, user_id: int) -> str | None:
        conn = db_utils.get_db_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT active_character_id FROM members WHERE discord_id = ?", (str(user_id),)
            ).fetchone()
            return str(row["active_character_id"]) if row and row["active_character_id"] else None
        finally:
            conn.close()

    async def user_character_autocomplete(self, interaction: discord.Interaction, current: str) -> List[Choice[str]]:
        """Autocompletes character names owned by the user."""
        owned = [a for a in self.store.list_actors() if str(interaction.user.id) in a.owner_ids]
        return [Choice(name=a.name, value=a.actor_id) for a in owned if current.lower() in a.name.lower()][:25]

    async def skill_autocomplete(self, interaction: discord.Interaction, current: str) -> List[Choice[str]]:
        return [
            Choice(name=name, value=key)
            for key, name in SKILL_NAMES.items()
            if current.lower() in name.lower() or current.lower() in key
        ][:25]

    @character_group.command(name="create", description=f"Create a new character (max {MAX_CHARACTERS}).")
    @app_commands.describe(
        name="Your character's name.",
        class_name="Your character's class.",
        proficiency_bonus="Your proficiency bonus.",
        size="Your character's size.",
    )
    @app_commands.choices(size=[Choice(name=s, value=s) for s in SIZES])
    async def create_character(self, interaction: discord.Interaction, name: str, class_name: str,
                               proficiency_bonus: int = 2, size: Optional[Choice[str]] = None):
        owned = [a for a in self.store.list_actors() if str(interaction.user.id) in a.owner_ids]
        if len(owned) >= MAX_CHARACTERS:
            await interaction.response.send_message(f"You can only have up to {MAX_CHARACTERS} characters!", ephemeral=True)
            return

        is_spellcaster = class_name.lower() in config.SPELLCASTING_CLASSES

        approval_channel = discord.utils.get(interaction.guild.text_channels, name="character-approvals")
        if not approval_channel:
            await interaction.response.send_message("Configuration error: 'character-approvals' channel not found.", ephemeral=True)
            return

        await interaction.response.send_message(
            f"Your character creation request for '{name}' has been sent for admin approval in {approval_channel.mention}.",
            ephemeral=True
        )

        embed = discord.Embed(
            title="Character Approval Request",
            description=f"User {interaction.user.mention} wants to create character:",
            color=discord.Color.blue()
        )
        embed.add_field(name="Character Name", value=name, inline=False)
        embed.add_field(name="Class", value=class_name, inline=False)
        embed.add_field(name="Proficiency Bonus", value=f"+{proficiency_bonus}", inline=False)
        approval_msg = None

        try:
            approval_msg = await approval_channel.send(embed=embed)
            await approval_msg.add_reaction("✅")
            await approval_msg.add_reaction("❌")

            def check(reaction, user):
                if reaction.message.id != approval_msg.id or str(reaction.emoji) not in ("✅", "❌") or user.bot:
                    return False
                member = interaction.guild.get_member(user.id)
                return member is not None and member.guild_permissions.administrator

            reaction, user = await self.bot.wait_for('reaction_add', timeout=86400.0, check=check) # 24 hour timeout

            if str(reaction.emoji) == "✅":
                self.store.create_actor(
                    name, owner_id=str(interaction.user.id), actor_type="character",
                    **{"class": class_name, "spellcaster": is_spellcaster, "creature_type": "humanoid",
                       "proficiency_bonus": proficiency_bonus, "size": size.value if size else "med",
                       "img": interaction.user.display_avatar.url}
                )
                await interaction.followup.send(f"Character '{name}' ({class_name}) has been approved and created!", ephemeral=True)
                await approval_channel.send(f"{user.mention} approved character '{name}' for {interaction.user.mention}.")
            else:
                await interaction.followup.send(f"Character creation for '{name}' was denied by an admin.", ephemeral=True)
                await approval_channel.send(f"{user.mention} denied character '{name}' for {interaction.user.mention}.")

        except asyncio.TimeoutError:
            await interaction.followup.send(f"Character approval request for '{name}' timed out.", ephemeral=True)
            if approval_msg is not None:
                try:
                    await approval_msg.edit(content="This request has timed out.", embed=None, view=None)
                except discord.HTTPException:
                    pass
        except Exception as e:
            await interaction.followup.send("An error occurred during character creation.", ephemeral=True)
            logger.exception("Error in create_character: %s", e)

    @character_group.command(name="setactive", description="Set your active character.")
    @app_commands.describe(character="The character to set as active.")
    @app_commands.autocomplete(character=user_character_autocomplete)
    async def set_active_character(self, interaction: discord.Interaction, character: str):
        actor = self.store.lookup_actor(character)
        if actor is None or str(interaction.user.id) not in actor.owner_ids:
            await interaction.response.send_message("Invalid character selected or character not found.", ephemeral=True)
            return

        conn = db_utils.get_db_connection(self.db_path)
        cursor = conn.cursor()
        try:
            cursor.execute("UPDATE members SET active_character_id = ? WHERE discord_id = ?",
                           (int(actor.actor_id), str(interaction.user.id)))
            # The user may only have used slash commands so far
            if cursor.rowcount == 0:
                cursor.execute("INSERT INTO members (discord_id, discord_tag, active_character_id) VALUES (?, ?, ?)",
                               (str(interaction.user.id), str(interaction.user), int(actor.actor_id)))
            conn.commit()
            await interaction.response.send_message(f"'{actor.name}' is now your active character.", ephemeral=True)
        except Exception as e:
            await interaction.response.send_message(f"An error occurred: {e}", ephemeral=True)
            logger.exception("Error in set_active_character: %s", e)
        finally:
            conn.close()

    @character_group.command(name="viewactive", description="View your currently active character.")
    async def view_active_character(self, interaction: discord.Interaction):
        actor_id = self.active_character_id(interaction.user.id)
        actor = self.store.lookup_actor(actor_id) if actor_id else None
        if actor is None:
            await interaction.response.send_message("You do not have an active character set. Use `/character setactive`.", ephemeral=True)
            return

        embed = discord.Embed(title="Active Character", color=discord.Color.green())
        embed.set_thumbnail(url=actor.img)
        embed.add_field(name="Name", value=actor.name, inline=False)
        embed.add_field(name="Proficiency Bonus", value=f"+{actor.proficiency_bonus}", inline=True)
        embed.add_field(name="Size", value=actor.size, inline=True)
        skills = "\n".join(
            f"{SKILL_NAMES.get(key, key)}: {mod:+d}{' (proficient)' if key in actor.proficient_skills else ''}"
            for key, mod in sorted(actor.skill_modifiers.items())
        )
        embed.add_field(name="Skills", value=skills or "None recorded. Use `/character skill`.", inline=False)
        inventory = "\n".join(f"{row['name']} ×{row['quantity']}" for row in self.store.inventory_for(actor.actor_id))
        embed.add_field(name="Materials", value=inventory[:1024] or "Empty", inline=False)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @character_group.command(name="skill", description="Record a skill modifier for your active character.")
    @app_commands.describe(skill="The skill.", modifier="Your total modifier for it.", proficient="Are you proficient?")
    @app_commands.autocomplete(skill=skill_autocomplete)
    async def set_skill(self, interaction: discord.Interaction, skill: str, modifier: int, proficient: bool = False):
        if skill not in SKILL_NAMES:
            await interaction.response.send_message(f"Unknown skill '{skill}'.", ephemeral=True)
            return
        actor_id = self.active_character_id(interaction.user.id)
        if not actor_id or not self.store.set_skill(actor_id, skill, modifier, proficient):
            await interaction.response.send_message("You need to set an active character first using `/character setactive`.", ephemeral=True)
            return
        await interaction.response.send_message(f"{SKILL_NAMES[skill]} set to {modifier:+d}.", ephemeral=True)


async def setup(bot: commands.Bot):
    guild_id = int(config.TEST_SERVER_ID) if config.TEST_SERVER_ID else None
    if guild_id:
        await bot.add_cog(CharacterCog(bot), guilds=[discord.Object(id=guild_id)])
    else:
        await bot.add_cog(CharacterCog(bot))
    print("CharacterCog loaded.")
