"""The harvest session: who is carving what out of which creature.

A session is plain state plus logic. The Discord view in cogs/harvesting.py
renders :meth:`HarvestSession.get_view_model` and forwards clicks to
:meth:`HarvestSession.on_user_action`.
"""
import abc
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Union

from constants import HARVEST_SPEAKER, SKILL_NAMES
from .errors import ExternalCapabilityFailure, LookupFailure, MalformedInput, ValidationError
from .models import (
    ActorHandle,
    Assignment,
    CreatureDescriptor,
    DropLocation,
    HarvesterEntry,
    MaterialDefinition,
    OutcomeCategory,
    OutcomeRecord,
    SessionState,
    Transcript,
)
from .resolution import (
    classify_outcome,
    compute_difficulty,
    compute_helper_bonus,
    double_quantity,
    essence_for_cr,
    grant_material,
    resolve_quantity,
    select_best_skill,
)

logger = logging.getLogger(__name__)

SKILL_CHECK_FORMULA = "1d20 + @mod"
ASSISTED_CHECK_FORMULA = "1d20 + @mod + @help"


class PermissionPolicy:
    """Who may open the harvest menu at all."""

    def __init__(self, players_can_open: bool = True):
        self.players_can_open = players_can_open

    def can_open(self, privileged: bool) -> bool:
        return privileged or self.players_can_open


@dataclass
class HarvestContext:
    """Everything a session talks to outside itself."""
    store: object
    roller: object
    publisher: object
    catalog_id: str
    piles: object = None
    permissions: PermissionPolicy = None
    scene_id: Optional[int] = None


class Renderable(abc.ABC):
    @abc.abstractmethod
    def get_view_model(self) -> Dict:
        ...

    @abc.abstractmethod
    async def on_user_action(self, action: str, payload: Optional[Dict] = None):
        ...


class HarvestSession(Renderable):
    def __init__(self, context: HarvestContext, target_ref=None, *, user_id=None, privileged: bool = False):
        self.context = context
        self.user_id = str(user_id) if user_id is not None else None
        self.privileged = privileged
        self.connected_user_ids: Set[str] = set()
        self.assist = False

        self.target_ref: Optional[str] = None
        self.harvesters: List[HarvesterEntry] = []
        self.available_loot: List[MaterialDefinition] = []
        self._loot_loaded = False
        # dict keys as an ordered set: execution follows selection order
        self._selected: Dict[str, None] = {}
        self.ruined_material_ids: Set[str] = set()
        self._executing = False

        if target_ref is not None:
            try:
                self.set_target(target_ref)
            except MalformedInput as e:
                logger.warning("Opening harvest without a target: %s", e)

    # --- State ---

    @property
    def state(self) -> SessionState:
        if self._executing:
            return SessionState.EXECUTING
        return SessionState.TARGETED if self.target_ref is not None else SessionState.EMPTY

    @property
    def selected_material_ids(self) -> List[str]:
        return list(self._selected)

    @property
    def target_actor(self) -> Optional[ActorHandle]:
        if self.target_ref is None:
            return None
        return self.context.store.lookup_actor(self.target_ref)

    def creature(self) -> CreatureDescriptor:
        actor = self.target_actor
        return actor.describe() if actor else CreatureDescriptor()

    def _ensure_idle(self):
        if self._executing:
            raise ValidationError("A harvest is already in progress.")

    # --- Mutations ---

    def set_target(self, target_ref) -> ActorHandle:
        self._ensure_idle()
        actor = self.context.store.lookup_actor(target_ref)
        if actor is None:
            raise MalformedInput(f"{target_ref!r} is not a creature.")
        self.target_ref = actor.actor_id
        # the corpse can't carve itself
        self.harvesters = [h for h in self.harvesters if h.actor_id != actor.actor_id]
        return actor

    def add_harvester(self, candidate: Union[HarvesterEntry, ActorHandle, str]) -> bool:
        self._ensure_idle()
        if isinstance(candidate, ActorHandle):
            candidate = HarvesterEntry.from_actor(candidate)
        elif not isinstance(candidate, HarvesterEntry):
            actor = self.context.store.lookup_actor(candidate)
            if actor is None:
                logger.warning("No actor %r to add as harvester", candidate)
                return False
            candidate = HarvesterEntry.from_actor(actor)

        if candidate.actor_id == self.target_ref:
            return False
        if any(h.actor_id == candidate.actor_id for h in self.harvesters):
            return False
        self.harvesters.append(candidate)
        return True

    def reorder_harvester(self, index: int, direction: str) -> bool:
        self._ensure_idle()
        if direction not in ("up", "down"):
            raise MalformedInput(f"unknown direction {direction!r}")
        if not 0 <= index < len(self.harvesters):
            return False
        other = index - 1 if direction == "up" else index + 1
        if not 0 <= other < len(self.harvesters):
            return False
        self.harvesters[index], self.harvesters[other] = self.harvesters[other], self.harvesters[index]
        return True

    def remove_harvester(self, index: int) -> Optional[HarvesterEntry]:
        self._ensure_idle()
        if not 0 <= index < len(self.harvesters):
            return None
        return self.harvesters.pop(index)

    def toggle_material_selection(self, material_id: str) -> bool:
        """Flips the selection of one material; returns whether it is now selected."""
        self._ensure_idle()
        if material_id in self._selected:
            del self._selected[material_id]
            return False
        if material_id in self.ruined_material_ids:
            raise ValidationError("That material was ruined and can't be harvested again.")
        self._selected[material_id] = None
        return True

    def set_assist(self, enabled: bool) -> None:
        self._ensure_idle()
        self.assist = bool(enabled)

    # --- Catalog & candidates ---

    async def load_loot(self) -> List[MaterialDefinition]:
        if self._loot_loaded:
            return self.available_loot
        catalog = self.context.store.lookup_material_catalog(self.context.catalog_id)
        if catalog is None:
            logger.warning("Harvest catalog %r not found", self.context.catalog_id)
            return self.available_loot
        self.available_loot = list(catalog)
        self._loot_loaded = True
        return self.available_loot

    def materials_for_target(self) -> List[MaterialDefinition]:
        """Catalog entries this creature can yield, creature-specific ones first."""
        creature_type = self.creature().creature_type
        own = [m for m in self.available_loot if m.creature_type == creature_type]
        generic = [m for m in self.available_loot if not m.creature_type]
        return own + generic

    def rank_candidate_harvesters(self, connected_user_ids: Optional[Iterable[str]] = None) -> List[HarvesterEntry]:
        """Actors to offer as harvesters, most likely picks first.

        1: player character with an owner online, 2: player character with
        any owner, 3: creature in this channel's encounter, 4: anyone else.
        """
        connected = set(connected_user_ids if connected_user_ids is not None else self.connected_user_ids)
        in_scene = set(self.context.store.scene_actor_ids(self.context.scene_id))
        taken = {h.actor_id for h in self.harvesters}

        weighted = []
        for actor in self.context.store.list_actors():
            if actor.actor_id in taken or actor.actor_id == self.target_ref:
                continue
            if not self.privileged and self.user_id not in actor.owner_ids:
                continue
            if actor.is_player_character and actor.is_owned_and_connected(connected):
                weight = 1
            elif actor.is_player_character and actor.owner_ids:
                weight = 2
            elif actor.actor_id in in_scene:
                weight = 3
            else:
                weight = 4
            weighted.append((weight, actor.name, actor))

        weighted.sort(key=lambda w: (w[0], w[1]))
        return [HarvesterEntry.from_actor(actor) for _, _, actor in weighted]

    # --- Execution ---

    def assignments(self) -> List[Assignment]:
        return [
            Assignment(material_id=material_id, harvester=self.harvesters[i % len(self.harvesters)])
            for i, material_id in enumerate(self._selected)
        ]

    def _check_ready(self):
        self._ensure_idle()
        if self.target_ref is None:
            raise ValidationError("No target creature selected.")
        if not self.harvesters:
            raise ValidationError("Select at least one harvester.")
        if not self._selected:
            raise ValidationError("Select at least one material to harvest.")

    def _drop_location(self) -> Optional[DropLocation]:
        if self.context.scene_id is None:
            return None
        return DropLocation(scene_id=self.context.scene_id, anchor_actor_id=self.target_ref)

    async def execute(self) -> Transcript:
        self._check_ready()
        await self.load_loot()
        if not self._loot_loaded:
            raise ValidationError("Harvest Items catalog not found.")
        target = self.target_actor
        if target is None:
            raise ValidationError("The target creature no longer exists.")

        creature = target.describe()
        transcript = Transcript(target_name=target.name, creature=creature)
        loot_names = {m.material_id: m.name for m in self.available_loot}
        self._executing = True
        try:
            for assignment in self.assignments():
                try:
                    record = await self._resolve_assignment(assignment, creature)
                except (LookupFailure, ExternalCapabilityFailure) as e:
                    record = OutcomeRecord.failed(
                        str(e),
                        material_name=loot_names.get(assignment.material_id, assignment.material_id),
                        harvester_name=assignment.harvester.name,
                    )
                transcript.records.append(record)
            await self._publish(transcript)
        finally:
            self._executing = False
        return transcript

    async def _publish(self, transcript: Transcript):
        try:
            await self.context.publisher.publish(HARVEST_SPEAKER, transcript.render())
        except Exception:
            logger.exception("Could not publish harvest results for %s", transcript.target_name)

    def _helpers_for(self, harvester: HarvesterEntry) -> List[ActorHandle]:
        helpers = []
        for entry in self.harvesters:
            if entry.actor_id == harvester.actor_id:
                continue
            actor = self.context.store.lookup_actor(entry.actor_id)
            if actor is not None:
                helpers.append(actor)
        return helpers

    async def _resolve_assignment(self, assignment: Assignment, creature: CreatureDescriptor) -> OutcomeRecord:
        material_id = assignment.material_id
        if material_id in self.ruined_material_ids:
            raise LookupFailure(f"{material_id} was already ruined")
        material = self.context.store.fetch_material_document(self.context.catalog_id, material_id)
        if material is None:
            raise LookupFailure(f"Unknown item (id: {material_id})")
        actor = self.context.store.lookup_actor(assignment.harvester.actor_id)
        if actor is None:
            raise LookupFailure(f"Harvester not found for {material.name}")

        skill_key, _ = select_best_skill(actor.skill_modifiers, material.skills or ["sur"])
        difficulty = compute_difficulty(
            cr=creature.challenge_rating,
            creature_type=creature.creature_type,
            rarity=material.rarity,
            base_dc=material.base_dc,
        )

        formula = SKILL_CHECK_FORMULA
        bindings = {"mod": actor.skill_modifiers.get(skill_key, 0)}
        if self.assist:
            bonus = compute_helper_bonus(self._helpers_for(assignment.harvester), skill_key, creature.size)
            formula = ASSISTED_CHECK_FORMULA
            bindings["help"] = bonus.total

        try:
            roll = await self.context.roller.roll_formula(formula, bindings)
        except Exception as e:
            raise ExternalCapabilityFailure(
                f"{SKILL_NAMES.get(skill_key, skill_key)} check for {material.name} by {actor.name} failed: {e}"
            ) from e

        category = classify_outcome(roll.total, difficulty)
        record = OutcomeRecord(
            material_name=material.name,
            harvester_name=actor.name,
            category=category,
            difficulty=difficulty,
            roll_total=roll.total,
            skill_key=skill_key,
        )

        if category is OutcomeCategory.CRITICAL_FAILURE:
            self.ruined_material_ids.add(material_id)
            self._selected.pop(material_id, None)
        elif category.grants:
            qty_spec = double_quantity(material.qty) if category is OutcomeCategory.CRITICAL_SUCCESS else material.qty
            quantity = await resolve_quantity(qty_spec, self.context.roller)
            try:
                grant_material(material, quantity, actor, self._drop_location(), self.context.store, self.context.piles)
            except Exception as e:
                raise ExternalCapabilityFailure(f"Could not hand {material.name} to {actor.name}: {e}") from e
            record.granted_qty = quantity
        return record

    # --- Rendering seam ---

    def get_view_model(self) -> Dict:
        target = self.target_actor
        creature = target.describe() if target else CreatureDescriptor()
        essence = essence_for_cr(creature.challenge_rating)
        return {
            "state": self.state.value,
            "has_target": target is not None,
            "target_name": target.name if target else "Unknown Target",
            "target_img": target.img if target else None,
            "type": creature.creature_type,
            "cr": creature.challenge_rating,
            "size": creature.size,
            "essence": {"name": essence.name, "rarity": essence.rarity, "dc": essence.dc},
            "assist": self.assist,
            "loot": [
                {
                    "id": m.material_id,
                    "name": m.name,
                    "rarity": m.rarity,
                    "selected": m.material_id in self._selected,
                    "ruined": m.material_id in self.ruined_material_ids,
                }
                for m in self.materials_for_target()
            ],
            "selected_loot": self.selected_material_ids,
            "harvesters": [
                {"index": i, "actor_id": h.actor_id, "name": h.name, "img": h.img, "owner": h.owner_label}
                for i, h in enumerate(self.harvesters)
            ],
            "available_harvesters": [
                {"id": h.actor_id, "name": h.name, "img": h.img, "owners": h.owner_label}
                for h in self.rank_candidate_harvesters()
            ],
        }

    async def on_user_action(self, action: str, payload: Optional[Dict] = None):
        payload = payload or {}
        if action == "set-target":
            return self.set_target(payload.get("target_ref"))
        if action == "add-harvester":
            return self.add_harvester(payload.get("actor_id"))
        if action in ("move-up", "move-down"):
            return self.reorder_harvester(int(payload.get("index", -1)), action[len("move-"):])
        if action == "remove-harvester":
            return self.remove_harvester(int(payload.get("index", -1)))
        if action == "toggle-material":
            return self.toggle_material_selection(payload.get("material_id"))
        if action == "toggle-assist":
            return self.set_assist(not self.assist)
        if action == "start-harvest":
            return await self.execute()
        raise MalformedInput(f"unknown harvest action {action!r}")
