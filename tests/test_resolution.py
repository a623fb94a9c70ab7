import pytest

from harvest.dice import DiceError, RollResult
from harvest.models import ActorHandle, DropLocation, MaterialDefinition, OutcomeCategory
from harvest.resolution import (
    MISSING_SKILL,
    classify_outcome,
    compute_difficulty,
    compute_helper_bonus,
    double_quantity,
    essence_for_cr,
    grant_material,
    harvest_skill_for_type,
    resolve_quantity,
    select_best_skill,
)


class FixedRoller:
    def __init__(self, total=None, error=None):
        self.total = total
        self.error = error
        self.formulas = []

    async def roll_formula(self, formula, bindings=None):
        self.formulas.append(formula)
        if self.error:
            raise self.error
        return RollResult(formula=formula, total=self.total)


class FakeStore:
    def __init__(self):
        self.added = []

    def add_to_inventory(self, actor_id, template_data, quantity):
        self.added.append((actor_id, template_data["name"], quantity))


class FakePiles:
    def __init__(self, active):
        self.active = active
        self.piles = []

    def is_active(self):
        return self.active

    def create_pile_at(self, location, materials):
        self.piles.append((location, materials))


def test_difficulty_scales_with_cr():
    assert compute_difficulty(cr=0) == 10
    assert compute_difficulty(cr=5) == 12
    assert compute_difficulty(cr=20) == 20


def test_difficulty_rarity_override():
    assert compute_difficulty(cr=10, rarity_override=5) == 20
    # override wins over the table even when it is zero
    assert compute_difficulty(cr=0, rarity="legendary", rarity_override=0) == 10


def test_difficulty_non_finite_override_uses_table():
    assert compute_difficulty(cr=0, rarity="rare", rarity_override=float("nan")) == 15
    assert compute_difficulty(cr=0, rarity="rare", rarity_override="lots") == 15


def test_difficulty_type_and_rarity_tables():
    assert compute_difficulty(cr=5, creature_type="dragon", rarity="rare", base_dc=10) == 21
    assert compute_difficulty(creature_type="UNDEAD", rarity="Very-Rare") == 10 + 3 + 8
    assert compute_difficulty(creature_type="slaad", rarity="mythic") == 10


def test_difficulty_defaults_for_missing_inputs():
    assert compute_difficulty(cr=None, creature_type=None, rarity=None, base_dc=None) == 10


@pytest.mark.parametrize("base_dc", [-50, -5, 0, 3])
def test_difficulty_never_below_five(base_dc):
    assert compute_difficulty(cr=0, base_dc=base_dc, rarity_override=-20) == 5


def test_best_skill_picks_highest():
    assert select_best_skill({"sur": 2, "med": 5}, ["sur", "med"]) == ("med", 5)


def test_best_skill_ignores_missing_keys():
    assert select_best_skill({"sur": 2, "med": 5}, ["sur", "arc"]) == ("sur", 2)


def test_best_skill_tie_keeps_first_listed():
    assert select_best_skill({"nat": 3, "sur": 3}, ["nat", "sur"]) == ("nat", 3)
    assert select_best_skill({"nat": 3, "sur": 3}, ["sur", "nat"]) == ("sur", 3)


def test_best_skill_all_missing_returns_first_with_sentinel():
    key, mod = select_best_skill({}, ["arc", "rel"])
    assert key == "arc"
    assert mod == MISSING_SKILL


def test_best_skill_negative_modifier_beats_missing():
    assert select_best_skill({"rel": -1}, ["arc", "rel"]) == ("rel", -1)


@pytest.mark.parametrize(
    "total, expected",
    [
        (26, OutcomeCategory.CRITICAL_SUCCESS),
        (25, OutcomeCategory.CRITICAL_SUCCESS),
        (24, OutcomeCategory.SUCCESS),
        (15, OutcomeCategory.SUCCESS),
        (14, OutcomeCategory.FAILURE),
        (6, OutcomeCategory.FAILURE),
        (5, OutcomeCategory.CRITICAL_FAILURE),
        (-3, OutcomeCategory.CRITICAL_FAILURE),
    ],
)
def test_outcome_bands(total, expected):
    assert classify_outcome(total, 15) is expected


def _helper(name, proficient_in=(), bonus=4):
    return ActorHandle(actor_id=name, name=name, proficient_skills=frozenset(proficient_in), proficiency_bonus=bonus)


def test_helper_bonus_full_and_half():
    helpers = [_helper("Ash", ["sur"]), _helper("Birch", bonus=3)]
    bonus = compute_helper_bonus(helpers, "sur", "med")
    assert bonus.total == 4 + 1
    assert bonus.cap == 2
    assert [(h.name, h.contribution, h.proficient) for h in bonus.breakdown] == [
        ("Ash", 4, True),
        ("Birch", 1, False),
    ]


def test_helper_bonus_respects_size_cap():
    helpers = [_helper(f"h{i}", ["med"]) for i in range(5)]
    assert compute_helper_bonus(helpers, "med", "sm").total == 4
    assert compute_helper_bonus(helpers, "med", "tiny").total == 0
    assert len(compute_helper_bonus(helpers, "med", "GRG").breakdown) == 5


def test_helper_bonus_unknown_size_and_no_helpers():
    assert compute_helper_bonus([], "sur", "med").total == 0
    assert compute_helper_bonus([_helper(f"h{i}") for i in range(5)], "sur", "colossal").cap == 3


def test_harvest_skill_for_type():
    assert harvest_skill_for_type("Construct") == "inv"
    assert harvest_skill_for_type(None) == "sur"


def test_essence_for_cr():
    assert essence_for_cr(5).name == "Frail Remnant"
    assert essence_for_cr(12).rarity == "very-rare"
    assert essence_for_cr(30).dc == 50
    assert essence_for_cr(1).dc == 20


def test_double_quantity():
    assert double_quantity(3) == 6
    assert double_quantity("2") == 4
    assert double_quantity(0) == 2
    assert double_quantity("1d4") == "(1d4)*2"


@pytest.mark.asyncio
async def test_resolve_quantity_numeric_is_floored_and_clamped():
    roller = FixedRoller(total=99)
    assert await resolve_quantity(2.7, roller) == 2
    assert await resolve_quantity(0, roller) == 1
    assert await resolve_quantity("-4", roller) == 1
    assert roller.formulas == []


@pytest.mark.asyncio
async def test_resolve_quantity_formula_uses_roller():
    assert await resolve_quantity("2d6", FixedRoller(total=7)) == 7
    assert await resolve_quantity("1d4-5", FixedRoller(total=-2)) == 1


@pytest.mark.asyncio
async def test_resolve_quantity_falls_back_to_one_on_failure():
    assert await resolve_quantity("banana", FixedRoller(error=DiceError("bad"))) == 1


def test_grant_to_inventory_without_piles():
    store = FakeStore()
    material = MaterialDefinition(material_id="fang", name="Fang")
    recipient = ActorHandle(actor_id="7", name="Ash")
    grant_material(material, 3, recipient, DropLocation(scene_id=1), store, FakePiles(active=False))
    assert store.added == [("7", "Fang", 3)]


def test_grant_drops_pile_when_active():
    store, piles = FakeStore(), FakePiles(active=True)
    material = MaterialDefinition(material_id="fang", name="Fang")
    grant_material(material, 2, ActorHandle(actor_id="7", name="Ash"), DropLocation(scene_id=1), store, piles)
    assert store.added == []
    location, items = piles.piles[0]
    assert location.scene_id == 1
    assert items == [{"data": material.template_data(), "quantity": 2}]


def test_grant_with_nowhere_to_go_is_a_no_op():
    store, piles = FakeStore(), FakePiles(active=True)
    grant_material(MaterialDefinition(material_id="fang", name="Fang"), 1, None, None, store, piles)
    assert store.added == [] and piles.piles == []
