import pytest

import database as db_utils
from harvest.dice import RollResult
from harvest.errors import MalformedInput, ValidationError
from harvest.models import OutcomeCategory, SessionState
from harvest.session import HarvestSession


@pytest.fixture
def scale(add_material):
    return add_material("dragon-scale", "Dragon scale", skills=["sur"], rarity="rare", base_dc=10, qty=1,
                        creature_type="dragon")


def test_initial_state_depends_on_target(context, dragon):
    assert HarvestSession(context).state is SessionState.EMPTY
    assert HarvestSession(context, dragon).state is SessionState.TARGETED


def test_invalid_initial_target_leaves_session_empty(context):
    assert HarvestSession(context, "not-a-creature").state is SessionState.EMPTY


def test_set_target_rejects_non_creatures(session, dragon):
    with pytest.raises(MalformedInput):
        session.set_target("9999")
    assert session.target_ref == dragon


def test_toggle_twice_restores_selection(session):
    session.toggle_material_selection("dragon-heart")
    before = session.selected_material_ids
    assert session.toggle_material_selection("dragon-scale") is True
    assert session.toggle_material_selection("dragon-scale") is False
    assert session.selected_material_ids == before


def test_add_harvester_is_idempotent(session, make_pc):
    ash = make_pc("Ash")
    assert session.add_harvester(ash) is True
    assert session.add_harvester(ash) is False
    assert len(session.harvesters) == 1
    assert session.harvesters[0].name == "Ash"


def test_target_cannot_harvest_itself(session, dragon):
    assert session.add_harvester(dragon) is False
    assert session.harvesters == []


def test_retargeting_drops_the_new_target_from_harvesters(session, make_pc):
    ash, birch = make_pc("Ash"), make_pc("Birch")
    session.add_harvester(ash)
    session.add_harvester(birch)
    session.set_target(ash)
    assert [h.name for h in session.harvesters] == ["Birch"]


def test_reorder_and_boundaries(session, make_pc):
    for name in ("Ash", "Birch", "Cedar"):
        session.add_harvester(make_pc(name))

    assert session.reorder_harvester(0, "up") is False
    assert session.reorder_harvester(2, "down") is False
    assert [h.name for h in session.harvesters] == ["Ash", "Birch", "Cedar"]

    assert session.reorder_harvester(0, "down") is True
    assert [h.name for h in session.harvesters] == ["Birch", "Ash", "Cedar"]
    assert session.reorder_harvester(2, "up") is True
    assert [h.name for h in session.harvesters] == ["Birch", "Cedar", "Ash"]


def test_remove_shifts_indices(session, make_pc):
    for name in ("Ash", "Birch", "Cedar"):
        session.add_harvester(make_pc(name))
    assert session.remove_harvester(0).name == "Ash"
    assert [h.name for h in session.harvesters] == ["Birch", "Cedar"]
    assert session.remove_harvester(5) is None


def test_round_robin_assignment(session, make_pc):
    first, second = make_pc("Ash"), make_pc("Birch")
    session.add_harvester(first)
    session.add_harvester(second)
    for material_id in ("a", "b", "c"):
        session.toggle_material_selection(material_id)
    assert [a.harvester.actor_id for a in session.assignments()] == [first, second, first]


def test_candidate_ranking(session, store, make_pc):
    make_pc("Zed", owner="200")
    make_pc("Amy", owner="300")
    goblin = store.create_actor("Goblin", actor_type="npc", creature_type="humanoid")
    store.create_actor("Wolf", actor_type="npc", creature_type="beast")
    store.add_to_scene(session.context.scene_id, goblin)

    ranked = session.rank_candidate_harvesters(connected_user_ids={"200"})
    assert [c.name for c in ranked] == ["Zed", "Amy", "Goblin", "Wolf"]


def test_candidate_ranking_ties_sort_case_sensitively(session, make_pc):
    make_pc("alice", owner="200")
    make_pc("Bob", owner="300")
    assert [c.name for c in session.rank_candidate_harvesters(connected_user_ids=set())] == ["Bob", "alice"]


def test_candidate_ranking_excludes_taken_and_unowned(context, dragon, store, make_pc):
    mine = make_pc("Mine", owner="300")
    make_pc("Theirs", owner="200")
    store.create_actor("Goblin", actor_type="npc")

    player_session = HarvestSession(context, dragon, user_id="300", privileged=False)
    assert [c.name for c in player_session.rank_candidate_harvesters()] == ["Mine"]
    player_session.add_harvester(mine)
    assert player_session.rank_candidate_harvesters() == []


@pytest.mark.asyncio
async def test_loot_is_loaded_once(session, store, scale, monkeypatch):
    calls = []
    original = store.lookup_material_catalog

    def counting(catalog_id):
        calls.append(catalog_id)
        return original(catalog_id)

    monkeypatch.setattr(store, "lookup_material_catalog", counting)
    await session.load_loot()
    await session.load_loot()
    assert len(calls) == 1
    assert [m.material_id for m in session.available_loot] == ["dragon-scale"]


@pytest.mark.asyncio
async def test_dragon_scale_success(session, store, roller, publisher, make_pc, scale):
    hunter = make_pc("Hunter", skills={"sur": 10, "med": 1})
    session.add_harvester(hunter)
    session.toggle_material_selection("dragon-scale")
    roller.totals = [25]

    transcript = await session.execute()

    record = transcript.records[0]
    assert record.difficulty == 21
    assert record.category is OutcomeCategory.SUCCESS
    assert record.granted_qty == 1
    assert roller.calls == [("1d20 + @mod", {"mod": 10})]
    assert store.inventory_for(hunter) == [{"name": "Dragon scale", "material_id": "dragon-scale", "quantity": 1}]
    speaker, body = publisher.messages[0]
    assert speaker == "Runes & Remnants"
    assert "Young Red Dragon" in body and "Dragon scale" in body
    assert session.state is SessionState.TARGETED


@pytest.mark.asyncio
async def test_critical_success_doubles_numeric_quantity(session, store, roller, make_pc, add_material):
    add_material("dragon-tooth", qty=2)
    hunter = make_pc("Hunter", skills={"sur": 10})
    session.add_harvester(hunter)
    session.toggle_material_selection("dragon-tooth")
    roller.totals = [40]

    transcript = await session.execute()

    assert transcript.records[0].category is OutcomeCategory.CRITICAL_SUCCESS
    assert transcript.records[0].granted_qty == 4
    assert store.inventory_for(hunter)[0]["quantity"] == 4


@pytest.mark.asyncio
async def test_critical_success_doubles_formula_by_rolling_once(session, roller, make_pc, add_material):
    add_material("dragon-claws", qty="1d4")
    session.add_harvester(make_pc("Hunter"))
    session.toggle_material_selection("dragon-claws")
    roller.totals = [40]

    transcript = await session.execute()

    assert roller.calls[1][0] == "(1d4)*2"
    granted = transcript.records[0].granted_qty
    assert granted % 2 == 0 and 2 <= granted <= 8


@pytest.mark.asyncio
async def test_critical_failure_ruins_material(session, store, roller, make_pc, add_material):
    add_material("dragon-heart", name="Dragon heart")
    hunter = make_pc("Hunter")
    session.add_harvester(hunter)
    session.toggle_material_selection("dragon-heart")
    roller.totals = [6]  # DC 16

    transcript = await session.execute()

    assert transcript.records[0].category is OutcomeCategory.CRITICAL_FAILURE
    assert "ruined" in transcript.render()
    assert "dragon-heart" in session.ruined_material_ids
    assert session.selected_material_ids == []
    assert store.inventory_for(hunter) == []
    with pytest.raises(ValidationError):
        session.toggle_material_selection("dragon-heart")


@pytest.mark.asyncio
async def test_plain_failure_grants_nothing(session, store, roller, make_pc, add_material):
    add_material("dragon-eye")
    hunter = make_pc("Hunter")
    session.add_harvester(hunter)
    session.toggle_material_selection("dragon-eye")
    roller.totals = [12]

    transcript = await session.execute()

    assert transcript.records[0].category is OutcomeCategory.FAILURE
    assert transcript.records[0].granted_qty == 0
    assert session.selected_material_ids == ["dragon-eye"]
    assert store.inventory_for(hunter) == []


@pytest.mark.asyncio
async def test_partial_failures_become_warning_lines(session, db_path, roller, make_pc, add_material):
    add_material("dragon-eye")
    add_material("dragon-bone")
    ash, birch = make_pc("Ash"), make_pc("Birch")
    session.add_harvester(ash)
    session.add_harvester(birch)
    for material_id in ("ghost", "dragon-eye", "dragon-bone"):
        session.toggle_material_selection(material_id)

    # Birch leaves the game before the harvest is rolled
    conn = db_utils.get_db_connection(db_path)
    conn.execute("DELETE FROM characters WHERE id = ?", (int(birch),))
    conn.commit()
    conn.close()
    roller.totals = [20]

    transcript = await session.execute()

    warnings = [r.warning for r in transcript.records]
    assert warnings[0] == "Unknown item (id: ghost)"
    assert warnings[1] == "Harvester not found for Dragon-Eye"
    assert transcript.records[2].category is OutcomeCategory.SUCCESS
    assert len(transcript.warnings) == 2


@pytest.mark.asyncio
async def test_failed_skill_roll_only_aborts_that_assignment(session, roller, make_pc, add_material, publisher):
    add_material("dragon-eye")
    session.add_harvester(make_pc("Ash"))
    session.toggle_material_selection("dragon-eye")
    roller.fail_skill_checks = True

    transcript = await session.execute()

    assert "dice tower fell over" in transcript.records[0].warning
    assert len(publisher.messages) == 1
    assert session.state is SessionState.TARGETED


@pytest.mark.asyncio
async def test_execute_preconditions(context, dragon, make_pc, scale):
    empty = HarvestSession(context)
    with pytest.raises(ValidationError, match="target"):
        await empty.execute()

    session = HarvestSession(context, dragon)
    with pytest.raises(ValidationError, match="harvester"):
        await session.execute()

    session.add_harvester(make_pc("Ash"))
    with pytest.raises(ValidationError, match="material"):
        await session.execute()
    assert session.state is SessionState.TARGETED


@pytest.mark.asyncio
async def test_execute_requires_catalog(session, make_pc):
    session.add_harvester(make_pc("Ash"))
    session.toggle_material_selection("dragon-scale")
    with pytest.raises(ValidationError, match="catalog"):
        await session.execute()
    assert session.selected_material_ids == ["dragon-scale"]


@pytest.mark.asyncio
async def test_no_mutation_while_executing(session, context, make_pc, scale):
    blocked = []

    class MeddlingRoller:
        async def roll_formula(self, formula, bindings=None):
            try:
                session.add_harvester(make_pc("Late"))
            except ValidationError as e:
                blocked.append(str(e))
            assert session.state is SessionState.EXECUTING
            return RollResult(formula=formula, total=1)

    context.roller = MeddlingRoller()
    session.add_harvester(make_pc("Ash"))
    session.toggle_material_selection("dragon-scale")

    await session.execute()

    assert blocked
    assert [h.name for h in session.harvesters] == ["Ash"]


@pytest.mark.asyncio
async def test_item_piles_take_the_drop(session, context, store, roller, make_pc, scale, piles):
    piles.enabled = True
    hunter = make_pc("Hunter", skills={"sur": 10})
    session.add_harvester(hunter)
    session.toggle_material_selection("dragon-scale")
    roller.totals = [25]

    await session.execute()

    assert store.inventory_for(hunter) == []
    dropped = piles.piles_in(context.scene_id)
    assert dropped[0]["anchor_actor_id"] == session.target_ref
    assert dropped[0]["items"][0]["quantity"] == 1


@pytest.mark.asyncio
async def test_assist_adds_helper_bonus(session, roller, make_pc, scale):
    session.add_harvester(make_pc("Hunter", skills={"sur": 3}))
    session.add_harvester(make_pc("Helper", proficient=["sur"], proficiency_bonus=3))
    session.set_assist(True)
    session.toggle_material_selection("dragon-scale")
    roller.totals = [10]

    await session.execute()

    assert roller.calls[0] == ("1d20 + @mod + @help", {"mod": 3, "help": 3})


@pytest.mark.asyncio
async def test_user_actions_dispatch(session, roller, make_pc, scale):
    ash = make_pc("Ash", skills={"sur": 4})
    assert await session.on_user_action("add-harvester", {"actor_id": ash}) is True
    await session.on_user_action("toggle-material", {"material_id": "dragon-scale"})
    await session.on_user_action("move-up", {"index": 0})
    roller.totals = [22]

    transcript = await session.on_user_action("start-harvest")

    assert transcript.records[0].category is OutcomeCategory.SUCCESS
    with pytest.raises(MalformedInput):
        await session.on_user_action("juggle")


@pytest.mark.asyncio
async def test_view_model(session, make_pc, scale, add_material):
    add_material("beast-pelt", creature_type="beast")
    session.add_harvester(make_pc("Ash", owner="200"))
    session.toggle_material_selection("dragon-scale")
    await session.load_loot()

    model = session.get_view_model()

    assert model["has_target"] and model["type"] == "dragon" and model["cr"] == 5
    assert model["essence"]["name"] == "Frail Remnant"
    assert [m["id"] for m in model["loot"]] == ["dragon-scale"]
    assert model["loot"][0]["selected"] is True
    assert model["harvesters"][0]["index"] == 0


@pytest.mark.asyncio
async def test_warning_records_name_the_material(session, roller, make_pc, add_material):
    add_material("dragon-eye", name="Dragon eye")
    session.add_harvester(make_pc("Ash"))
    session.toggle_material_selection("dragon-eye")
    session.toggle_material_selection("ghost")
    roller.fail_skill_checks = True

    transcript = await session.execute()

    assert [(r.material_name, r.harvester_name) for r in transcript.warnings] == [
        ("Dragon eye", "Ash"),
        ("ghost", "Ash"),
    ]
