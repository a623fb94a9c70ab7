from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from constants import DEFAULT_PORTRAIT

Quantity = Union[int, str]


class OutcomeCategory(str, Enum):
    CRITICAL_SUCCESS = "critical-success"
    SUCCESS = "success"
    FAILURE = "failure"
    CRITICAL_FAILURE = "critical-failure"

    @property
    def grants(self) -> bool:
        return self in (OutcomeCategory.SUCCESS, OutcomeCategory.CRITICAL_SUCCESS)


class SessionState(str, Enum):
    EMPTY = "empty"
    TARGETED = "targeted"
    EXECUTING = "executing"


@dataclass(frozen=True)
class CreatureDescriptor:
    challenge_rating: float = 0
    creature_type: str = "other"
    size: str = "med"


@dataclass(frozen=True)
class MaterialDefinition:
    material_id: str
    name: str
    skills: List[str] = field(default_factory=lambda: ["sur"])
    rarity: str = "common"
    base_dc: int = 10
    qty: Quantity = 1
    img: Optional[str] = None
    catalog_id: Optional[str] = None
    creature_type: Optional[str] = None

    def template_data(self) -> Dict:
        """What gets copied onto the actor or into a pile."""
        return {
            "material_id": self.material_id,
            "name": self.name,
            "img": self.img,
            "rarity": self.rarity,
        }


@dataclass(frozen=True)
class ActorHandle:
    actor_id: str
    name: str
    img: str = DEFAULT_PORTRAIT
    actor_type: str = "character"
    skill_modifiers: Dict[str, int] = field(default_factory=dict)
    proficient_skills: FrozenSet[str] = frozenset()
    proficiency_bonus: int = 2
    owner_ids: FrozenSet[str] = frozenset()
    owner_names: List[str] = field(default_factory=list)
    creature_type: Optional[str] = None
    challenge_rating: Optional[float] = None
    size: str = "med"

    @property
    def is_player_character(self) -> bool:
        return self.actor_type == "character"

    @property
    def owner_label(self) -> str:
        return ", ".join(self.owner_names) or "—"

    def is_owned_and_connected(self, connected_user_ids) -> bool:
        return any(owner in connected_user_ids for owner in self.owner_ids)

    def describe(self) -> CreatureDescriptor:
        return CreatureDescriptor(
            challenge_rating=self.challenge_rating or 0,
            creature_type=(self.creature_type or "other").lower(),
            size=(self.size or "med").lower(),
        )


@dataclass(frozen=True)
class HarvesterEntry:
    actor_id: str
    name: str
    img: str = DEFAULT_PORTRAIT
    owner_label: str = "—"

    @classmethod
    def from_actor(cls, actor: ActorHandle) -> "HarvesterEntry":
        return cls(actor_id=actor.actor_id, name=actor.name, img=actor.img, owner_label=actor.owner_label)


@dataclass(frozen=True)
class DropLocation:
    scene_id: int
    anchor_actor_id: Optional[str] = None


@dataclass(frozen=True)
class Assignment:
    material_id: str
    harvester: HarvesterEntry


@dataclass(frozen=True)
class HelperContribution:
    name: str
    contribution: int
    proficient: bool


@dataclass(frozen=True)
class HelperBonus:
    total: int = 0
    breakdown: List[HelperContribution] = field(default_factory=list)
    cap: int = 0


@dataclass(frozen=True)
class EssenceEntry:
    name: str
    rarity: str
    dc: int


@dataclass
class OutcomeRecord:
    material_name: str
    harvester_name: str
    category: Optional[OutcomeCategory] = None
    granted_qty: int = 0
    difficulty: Optional[int] = None
    roll_total: Optional[int] = None
    skill_key: Optional[str] = None
    warning: Optional[str] = None

    @classmethod
    def failed(cls, message: str, material_name: str = "", harvester_name: str = "") -> "OutcomeRecord":
        return cls(material_name=material_name, harvester_name=harvester_name, warning=message)

    def render(self) -> str:
        if self.warning:
            return f"⚠️ {self.warning}"
        check = f" ({self.roll_total} vs DC {self.difficulty})" if self.roll_total is not None else ""
        if self.category is OutcomeCategory.CRITICAL_SUCCESS:
            return f"**{self.harvester_name}** crit success: gained **{self.material_name}** ×{self.granted_qty}{check}"
        if self.category is OutcomeCategory.SUCCESS:
            return f"**{self.harvester_name}** success: gained **{self.material_name}** ×{self.granted_qty}{check}"
        if self.category is OutcomeCategory.FAILURE:
            return f"**{self.harvester_name}** failure: no **{self.material_name}**{check}"
        return f"**{self.harvester_name}** crit failure: ruined **{self.material_name}**{check}"


@dataclass
class Transcript:
    target_name: str
    creature: CreatureDescriptor
    records: List[OutcomeRecord] = field(default_factory=list)

    @property
    def warnings(self) -> List[OutcomeRecord]:
        return [r for r in self.records if r.warning]

    def render(self) -> str:
        """Discord-flavoured markdown body for the results post."""
        lines = [
            f"**Target:** {self.target_name} "
            f"(Type: {self.creature.creature_type}, CR: {self.creature.challenge_rating:g})",
        ]
        lines.extend(f"- {record.render()}" for record in self.records)
        lines.append("*Results broadcast by Runes & Remnants.*")
        return "\n".join(lines)
