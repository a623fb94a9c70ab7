"""sqlite-backed document store and item piles."""
import json
import logging
import time
from typing import Dict, List, Optional

import database as db_utils
from constants import DEFAULT_PORTRAIT
from .models import ActorHandle, DropLocation, MaterialDefinition

logger = logging.getLogger(__name__)


def _json_field(raw, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed JSON column value %r", raw)
        return default


def _quantity(raw):
    text = str(raw if raw is not None else "1").strip()
    return int(text) if text.lstrip("-").isdigit() else text


class SqliteDocumentStore:
    def __init__(self, db_path: str | None = None):
        self.db_path = db_path

    def _connect(self):
        return db_utils.get_db_connection(self.db_path)

    # --- Actors ---

    _ACTOR_QUERY = """
        SELECT c.*, m.discord_tag AS owner_tag
        FROM characters c
        LEFT JOIN members m ON m.discord_id = c.discord_id
    """

    def _actor_from_row(self, row) -> ActorHandle:
        owner_ids = frozenset([row["discord_id"]]) if row["discord_id"] else frozenset()
        owner_names = [row["owner_tag"]] if row["owner_tag"] else []
        return ActorHandle(
            actor_id=str(row["id"]),
            name=row["name"],
            img=row["img"] or DEFAULT_PORTRAIT,
            actor_type=row["actor_type"] or "character",
            skill_modifiers=_json_field(row["skills"], {}),
            proficient_skills=frozenset(_json_field(row["proficient_skills"], [])),
            proficiency_bonus=row["proficiency_bonus"] if row["proficiency_bonus"] is not None else 2,
            owner_ids=owner_ids,
            owner_names=owner_names,
            creature_type=row["creature_type"],
            challenge_rating=row["cr"],
            size=row["size"] or "med",
        )

    def lookup_actor(self, actor_id) -> Optional[ActorHandle]:
        try:
            actor_pk = int(actor_id)
        except (TypeError, ValueError):
            return None
        conn = self._connect()
        try:
            row = conn.execute(self._ACTOR_QUERY + " WHERE c.id = ?", (actor_pk,)).fetchone()
            return self._actor_from_row(row) if row else None
        finally:
            conn.close()

    def list_actors(self) -> List[ActorHandle]:
        conn = self._connect()
        try:
            rows = conn.execute(self._ACTOR_QUERY + " ORDER BY c.id").fetchall()
            return [self._actor_from_row(row) for row in rows]
        finally:
            conn.close()

    def create_actor(self, name: str, owner_id: str | None = None, actor_type: str = "character", **fields) -> str:
        columns = ["name", "discord_id", "actor_type"]
        values = [name, owner_id, actor_type]
        for column in ("class", "spellcaster", "creature_type", "cr", "size", "img", "proficiency_bonus"):
            if column in fields:
                columns.append(column)
                values.append(fields[column])
        if "skills" in fields:
            columns.append("skills")
            values.append(json.dumps(fields["skills"]))
        if "proficient_skills" in fields:
            columns.append("proficient_skills")
            values.append(json.dumps(sorted(fields["proficient_skills"])))

        conn = self._connect()
        try:
            cursor = conn.execute(
                f"INSERT INTO characters ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                values,
            )
            conn.commit()
            return str(cursor.lastrowid)
        finally:
            conn.close()

    def set_skill(self, actor_id, skill_key: str, modifier: int, proficient: bool) -> bool:
        actor = self.lookup_actor(actor_id)
        if actor is None:
            return False
        skills = dict(actor.skill_modifiers)
        skills[skill_key] = modifier
        proficient_skills = set(actor.proficient_skills)
        if proficient:
            proficient_skills.add(skill_key)
        else:
            proficient_skills.discard(skill_key)

        conn = self._connect()
        try:
            conn.execute(
                "UPDATE characters SET skills = ?, proficient_skills = ? WHERE id = ?",
                (json.dumps(skills), json.dumps(sorted(proficient_skills)), int(actor_id)),
            )
            conn.commit()
            return True
        finally:
            conn.close()

    # --- Scene (channel encounter) ---

    def scene_actor_ids(self, scene_id) -> List[str]:
        if scene_id is None:
            return []
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT character_id FROM encounter_tokens WHERE channel_id = ?", (scene_id,)
            ).fetchall()
            return [str(row["character_id"]) for row in rows]
        finally:
            conn.close()

    def add_to_scene(self, scene_id, actor_id) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR IGNORE INTO encounter_tokens (channel_id, character_id) VALUES (?, ?)",
                (scene_id, int(actor_id)),
            )
            conn.commit()
        finally:
            conn.close()

    # --- Materials ---

    def _material_from_row(self, row) -> MaterialDefinition:
        return MaterialDefinition(
            material_id=row["id"],
            name=row["name"],
            skills=_json_field(row["skills"], None) or ["sur"],
            rarity=row["rarity"] or "common",
            base_dc=row["base_dc"] if row["base_dc"] is not None else 10,
            qty=_quantity(row["qty"]),
            img=row["img"],
            catalog_id=row["catalog_id"],
            creature_type=row["creature_type"],
        )

    def lookup_material_catalog(self, catalog_id: str) -> Optional[List[MaterialDefinition]]:
        """The catalog index, or None if no such catalog exists."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM materials WHERE catalog_id = ? ORDER BY name", (catalog_id,)
            ).fetchall()
        finally:
            conn.close()
        if not rows:
            return None
        return [self._material_from_row(row) for row in rows]

    def save_material(self, catalog_id: str, material: MaterialDefinition) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """INSERT OR REPLACE INTO materials
                   (id, catalog_id, name, img, creature_type, skills, rarity, base_dc, qty)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (material.material_id, catalog_id, material.name, material.img, material.creature_type,
                 json.dumps(list(material.skills)), material.rarity, material.base_dc, str(material.qty)),
            )
            conn.commit()
        finally:
            conn.close()

    def fetch_material_document(self, catalog_id: str, material_id: str) -> Optional[MaterialDefinition]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM materials WHERE catalog_id = ? AND id = ?", (catalog_id, material_id)
            ).fetchone()
            return self._material_from_row(row) if row else None
        finally:
            conn.close()

    # --- Inventory ---

    def add_to_inventory(self, actor_id, template_data: Dict, quantity: int) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO inventory (character_id, material_id, name, quantity, data) VALUES (?, ?, ?, ?, ?)",
                (int(actor_id), template_data.get("material_id"), template_data.get("name"), quantity,
                 json.dumps(template_data)),
            )
            conn.commit()
        finally:
            conn.close()

    def inventory_for(self, actor_id) -> List[Dict]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT name, material_id, SUM(quantity) AS quantity FROM inventory "
                "WHERE character_id = ? GROUP BY material_id, name ORDER BY name",
                (int(actor_id),),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()


class SqliteItemPiles:
    """Drops harvested materials on the ground instead of into a pack."""

    def __init__(self, db_path: str | None = None, enabled: bool = False):
        self.db_path = db_path
        self.enabled = enabled

    def is_active(self) -> bool:
        return self.enabled

    def create_pile_at(self, location: DropLocation, materials: List[Dict]) -> None:
        conn = db_utils.get_db_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO item_piles (channel_id, anchor_actor_id, items, created_at) VALUES (?, ?, ?, ?)",
                (location.scene_id, location.anchor_actor_id, json.dumps(materials), int(time.time())),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Dropped a pile of %d item(s) in channel %s", len(materials), location.scene_id)

    def piles_in(self, scene_id) -> List[Dict]:
        conn = db_utils.get_db_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT anchor_actor_id, items FROM item_piles WHERE channel_id = ? ORDER BY id", (scene_id,)
            ).fetchall()
            return [{"anchor_actor_id": row["anchor_actor_id"], "items": _json_field(row["items"], [])}
                    for row in rows]
        finally:
            conn.close()
