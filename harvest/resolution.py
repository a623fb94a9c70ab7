"""Harvest resolution: difficulty, skill choice, helpers, outcome bands, granting.

Everything here is pure except :func:`resolve_quantity`, which calls the
roller, and :func:`grant_material`, which writes through the store.
"""
import logging
import math
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from constants import (
    CREATURE_TYPE_SKILLS,
    DEFAULT_ESSENCE,
    DEFAULT_HELPER_CAP,
    ESSENCE_TABLE,
    MIN_HARVEST_DC,
    RARITY_MOD,
    SIZE_HELPER_CAP,
    TYPE_MOD,
)
from .models import (
    ActorHandle,
    DropLocation,
    EssenceEntry,
    HelperBonus,
    HelperContribution,
    MaterialDefinition,
    OutcomeCategory,
    Quantity,
)

logger = logging.getLogger(__name__)

# Scores a candidate skill the actor doesn't have; loses to any real modifier.
MISSING_SKILL = -math.inf


def _finite_number(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def type_modifier(creature_type: Optional[str]) -> int:
    return TYPE_MOD.get(str(creature_type or "other").lower(), TYPE_MOD["other"])


def rarity_modifier(rarity: Optional[str]) -> int:
    return RARITY_MOD.get(str(rarity or "common").lower(), 0)


def compute_difficulty(
    cr=0,
    creature_type: Optional[str] = "other",
    rarity: Optional[str] = "common",
    rarity_override=None,
    base_dc=10,
) -> int:
    """DC for harvesting one material from one creature.

    ``rarity_override`` replaces the rarity table lookup when it is a finite
    number. The result never drops below MIN_HARVEST_DC.
    """
    override = _finite_number(rarity_override)
    rarity_mod = override if override is not None else rarity_modifier(rarity)
    cr_mod = math.floor((_finite_number(cr) or 0) / 2)
    base = _finite_number(base_dc)
    if base is None:
        base = 10
    return int(max(MIN_HARVEST_DC, base + cr_mod + type_modifier(creature_type) + rarity_mod))


def select_best_skill(skill_modifiers: Dict[str, float], candidate_keys: Sequence[str]) -> Tuple[str, float]:
    """Returns (key, modifier) of the best candidate; ties keep the first listed."""
    if not candidate_keys:
        raise ValueError("at least one candidate skill is required")
    skill_modifiers = skill_modifiers or {}
    best_key, best_mod = candidate_keys[0], MISSING_SKILL
    for key in candidate_keys:
        mod = skill_modifiers.get(key, MISSING_SKILL)
        if mod > best_mod:
            best_key, best_mod = key, mod
    return best_key, best_mod


def classify_outcome(roll_total, difficulty) -> OutcomeCategory:
    # Order matters: a crit success also clears the plain success band.
    if roll_total >= difficulty + 10:
        return OutcomeCategory.CRITICAL_SUCCESS
    if roll_total >= difficulty:
        return OutcomeCategory.SUCCESS
    if roll_total <= difficulty - 10:
        return OutcomeCategory.CRITICAL_FAILURE
    return OutcomeCategory.FAILURE


def helper_cap(size_key: Optional[str]) -> int:
    return SIZE_HELPER_CAP.get(str(size_key or "").lower(), DEFAULT_HELPER_CAP)


def compute_helper_bonus(helpers: Iterable[ActorHandle], skill_key: str, size_key: Optional[str] = "med") -> HelperBonus:
    """Bonus the assisting characters add to a harvest check.

    Only the first ``cap`` helpers count, where the cap comes from the
    creature's size. Proficient helpers add their full proficiency bonus,
    the rest add half of it, rounded down.
    """
    cap = helper_cap(size_key)
    breakdown: List[HelperContribution] = []
    total = 0
    for helper in list(helpers)[:cap]:
        proficient = skill_key in helper.proficient_skills
        contribution = helper.proficiency_bonus if proficient else helper.proficiency_bonus // 2
        total += contribution
        breakdown.append(HelperContribution(name=helper.name, contribution=contribution, proficient=proficient))
    return HelperBonus(total=total, breakdown=breakdown, cap=cap)


def harvest_skill_for_type(creature_type: Optional[str]) -> str:
    return CREATURE_TYPE_SKILLS.get(str(creature_type or "other").lower(), CREATURE_TYPE_SKILLS["other"])


def essence_for_cr(cr) -> EssenceEntry:
    cr = _finite_number(cr) or 0
    for entry in ESSENCE_TABLE:
        if entry["cr_min"] <= cr <= entry["cr_max"]:
            return EssenceEntry(name=entry["name"], rarity=entry["rarity"], dc=entry["dc"])
    return EssenceEntry(**DEFAULT_ESSENCE)


def numeric_quantity(qty_spec: Quantity) -> Optional[float]:
    """The quantity as a number, or None if it is a dice formula."""
    if isinstance(qty_spec, str):
        qty_spec = qty_spec.strip()
    return _finite_number(qty_spec)


def double_quantity(qty_spec: Quantity) -> Quantity:
    """Quantity for a critical success.

    Numbers are doubled directly; formulas are rolled once and the result
    doubled, i.e. ``1d4`` becomes ``(1d4)*2``.
    """
    number = numeric_quantity(qty_spec)
    if number is not None:
        return int(number * 2) or 2
    return f"({qty_spec})*2"


async def resolve_quantity(qty_spec: Quantity, roller) -> int:
    number = numeric_quantity(qty_spec)
    if number is None:
        try:
            number = (await roller.roll_formula(str(qty_spec), {})).total
        except Exception as e:
            logger.warning("Quantity formula %r failed (%s), granting 1", qty_spec, e)
            number = 1
    return max(1, math.floor(number))


def grant_material(
    material: MaterialDefinition,
    quantity: int,
    recipient: Optional[ActorHandle],
    drop_location: Optional[DropLocation],
    store,
    piles=None,
) -> None:
    """Puts ``quantity`` of ``material`` into the world or into an inventory.

    A drop location wins when the item pile capability is active; otherwise
    the recipient gets it. With neither there is nothing to do.
    """
    if drop_location is not None and piles is not None and piles.is_active():
        piles.create_pile_at(drop_location, [{"data": material.template_data(), "quantity": quantity}])
        return
    if recipient is not None:
        store.add_to_inventory(recipient.actor_id, material.template_data(), quantity)
