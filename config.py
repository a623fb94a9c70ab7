import os
from dotenv import load_dotenv

from aws_utils import get_secret

load_dotenv()


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


AWS_SECRET_NAME = os.getenv('AWS_SECRET_NAME')
AWS_REGION = os.getenv('AWS_REGION', 'us-east-2')

TOKEN = os.getenv('DISCORD_TOKEN')
if not TOKEN and AWS_SECRET_NAME:
    # Deployed bots keep the token in Secrets Manager rather than .env
    TOKEN = get_secret(AWS_SECRET_NAME, AWS_REGION, key='DISCORD_TOKEN')

TEST_SERVER_ID = os.getenv('DEV_SERVER_ID')
DATABASE_NAME = os.getenv('DATABASE_NAME', 'database.db')

# World settings for the harvest menu
PLAYERS_CAN_OPEN_HARVEST = _env_flag('PLAYERS_CAN_OPEN_HARVEST', True)
ITEM_PILES_ENABLED = _env_flag('ITEM_PILES_ENABLED', False)
HARVEST_CATALOG_ID = os.getenv('HARVEST_CATALOG_ID', 'harvest-items')
HARVEST_VIEW_TIMEOUT = float(os.getenv('HARVEST_VIEW_TIMEOUT', '900'))

SPELLCASTING_CLASSES = [
    "bard", "cleric", "druid", "sorcerer", "wizard", "warlock",
    "paladin", "ranger", "artificer"
]
