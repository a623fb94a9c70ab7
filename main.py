# Standard library imports
import asyncio
import logging

import discord
from discord.ext import commands

# Import from local modules
import config # For TOKEN, TEST_SERVER_ID, HARVEST_CATALOG_ID
import database as db_utils

# --- Logging ---
handler = logging.FileHandler(filename='discord.log', encoding='utf-8', mode='w')
logger = logging.getLogger("harvestbot")


# --- Bot Class ---
class Client(commands.Bot):
    async def setup_hook(self):
        # Runs once after login, before on_ready: load cogs and sync commands here.
        db_utils.initialize_db()
        seeded = db_utils.seed_materials(config.HARVEST_CATALOG_ID)
        logger.info("Seeded %d harvest materials into %s", seeded, config.HARVEST_CATALOG_ID)

        await self.load_extension("cogs.harvesting")
        await self.load_extension("cogs.character")
        logger.info("Cogs loaded.")

        try:
            guild_id_int = int(config.TEST_SERVER_ID) if config.TEST_SERVER_ID else None
            if guild_id_int:
                guild = discord.Object(id=guild_id_int)
                synced = await self.tree.sync(guild=guild)
                logger.info("Synced %d commands to guild %s", len(synced), guild.id)
            else: # Sync globally if no test server ID
                synced = await self.tree.sync()
                logger.info("Synced %d commands globally.", len(synced))
        except discord.HTTPException as e:
            logger.error("Error syncing commands: %s", e)

    async def on_ready(self):
        logger.info("Logged on as %s (ID: %s)", self.user, self.user.id)
        print("HarvestingBot has logged on")

    async def on_message(self, message: discord.Message):
        if message.author == self.user:
            return

        conn = db_utils.get_db_connection()
        cursor = conn.cursor()
        try:
            # Members need a row so their tag shows up as the owner of their characters.
            cursor.execute('SELECT 1 FROM members WHERE discord_id = ?', (str(message.author.id),))
            if cursor.fetchone() is None:
                cursor.execute(
                    'INSERT INTO members (discord_id, discord_tag) VALUES (?, ?)',
                    (str(message.author.id), str(message.author))
                )
                conn.commit()
                creation_msg = await message.channel.send(f"Added {message.author.name} to the database (first message).")
                await asyncio.sleep(10)
                try:
                    await creation_msg.delete()
                except (discord.NotFound, discord.Forbidden): # Already gone, or no permission
                    pass
        finally:
            conn.close()

        await self.process_commands(message)


# --- Discord Bot Setup ---
intents = discord.Intents.default()
intents.message_content = True
intents.members = True # Needed for guild.get_member and owner lookups
intents.presences = True # Online owners rank first in the harvester picker
bot = Client(command_prefix='!', intents=intents)

# --- Run Bot ---
if __name__ == "__main__":
    bot.run(config.TOKEN, log_handler=handler, log_level=logging.DEBUG)
