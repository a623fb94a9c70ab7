import json
import re
import sqlite3

import config
from constants import CREATURE_TYPE_SKILLS, HARVEST_DC_TABLES, RARITY_BY_DC


def get_db_connection(db_path: str | None = None):
    conn = sqlite3.connect(db_path or config.DATABASE_NAME)
    conn.row_factory = sqlite3.Row # Access columns by name
    return conn


def initialize_db(db_path: str | None = None):
    conn = get_db_connection(db_path)
    cursor = conn.cursor()
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS members (
            discord_id TEXT UNIQUE,
            discord_tag TEXT,
            active_character_id INTEGER,
            FOREIGN KEY (active_character_id) REFERENCES characters(id)
        )'''
    )
    # Player characters and GM creatures share this table; actor_type tells them apart.
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS characters (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            discord_id TEXT, -- owning user, NULL for GM creatures
            name TEXT,
            class TEXT,
            spellcaster BOOLEAN,
            actor_type TEXT DEFAULT 'character', -- 'character' or 'npc'
            creature_type TEXT DEFAULT 'humanoid',
            cr REAL DEFAULT 0,
            size TEXT DEFAULT 'med',
            img TEXT,
            proficiency_bonus INTEGER DEFAULT 2,
            skills TEXT DEFAULT '{}', -- JSON map of skill key -> total modifier
            proficient_skills TEXT DEFAULT '[]' -- JSON list of skill keys
        )'''
    )
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS materials (
            id TEXT,
            catalog_id TEXT,
            name TEXT,
            img TEXT,
            creature_type TEXT, -- NULL means any creature
            skills TEXT DEFAULT '["sur"]',
            rarity TEXT DEFAULT 'common',
            base_dc INTEGER DEFAULT 10,
            qty TEXT DEFAULT '1', -- integer or dice formula, e.g. "1d4"
            PRIMARY KEY (catalog_id, id)
        )'''
    )
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS inventory (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            character_id INTEGER,
            material_id TEXT,
            name TEXT,
            quantity INTEGER,
            data TEXT,
            FOREIGN KEY (character_id) REFERENCES characters(id)
        )'''
    )
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS item_piles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            channel_id INTEGER,
            anchor_actor_id TEXT, -- the creature the pile was dropped beside
            items TEXT, -- JSON list of {"data": ..., "quantity": n}
            created_at INTEGER
        )'''
    )
    # Creatures placed in a channel's encounter (the "scene")
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS encounter_tokens (
            channel_id INTEGER,
            character_id INTEGER,
            UNIQUE (channel_id, character_id),
            FOREIGN KEY (character_id) REFERENCES characters(id)
        )'''
    )
    conn.commit()
    conn.close()


def material_slug(creature_type: str, name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", f"{creature_type} {name}".lower()).strip("-")


def seed_materials(catalog_id: str, db_path: str | None = None) -> int:
    """Fills the catalog from HARVEST_DC_TABLES. Existing rows are left alone.

    Returns the number of rows inserted.
    """
    conn = get_db_connection(db_path)
    cursor = conn.cursor()
    inserted = 0
    try:
        for creature_type, tiers in HARVEST_DC_TABLES.items():
            type_skill = CREATURE_TYPE_SKILLS.get(creature_type, "sur")
            skills = [type_skill] if type_skill == "sur" else [type_skill, "sur"]
            for dc, components in tiers.items():
                for component in components:
                    # Pouches and phials hold a handful, everything else is a single part
                    qty = "1d4" if component.lower().startswith(("pouch of", "phial of")) else "1"
                    cursor.execute(
                        """INSERT OR IGNORE INTO materials
                           (id, catalog_id, name, creature_type, skills, rarity, base_dc, qty)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                        (
                            material_slug(creature_type, component),
                            catalog_id,
                            f"{creature_type.title()} {component.lower()}",
                            creature_type,
                            json.dumps(skills),
                            RARITY_BY_DC.get(dc, "common"),
                            dc,
                            qty,
                        )
                    )
                    inserted += cursor.rowcount
        conn.commit()
    finally:
        conn.close()
    return inserted
