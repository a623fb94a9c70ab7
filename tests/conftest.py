import random

import pytest

import database as db_utils
from harvest.dice import RollResult, evaluate
from harvest.models import MaterialDefinition
from harvest.session import HarvestContext, HarvestSession, PermissionPolicy
from harvest.store import SqliteDocumentStore, SqliteItemPiles

CATALOG = "test-items"
SCENE = 4242


class ScriptedRoller:
    """Skill checks return scripted totals; quantity formulas are rolled with a fixed seed."""

    def __init__(self, totals=()):
        self.totals = list(totals)
        self.calls = []
        self.fail_skill_checks = False

    async def roll_formula(self, formula, bindings=None):
        self.calls.append((formula, dict(bindings or {})))
        if formula.startswith("1d20"):
            if self.fail_skill_checks:
                raise RuntimeError("dice tower fell over")
            return RollResult(formula=formula, total=self.totals.pop(0))
        return evaluate(formula, bindings, random.Random(0))


class RecordingPublisher:
    def __init__(self):
        self.messages = []

    async def publish(self, speaker_label, body):
        self.messages.append((speaker_label, body))


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "harvest.db")
    db_utils.initialize_db(path)
    return path


@pytest.fixture
def store(db_path):
    return SqliteDocumentStore(db_path)


@pytest.fixture
def roller():
    return ScriptedRoller()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def piles(db_path):
    return SqliteItemPiles(db_path, enabled=False)


@pytest.fixture
def context(store, roller, publisher, piles):
    return HarvestContext(
        store=store,
        roller=roller,
        publisher=publisher,
        catalog_id=CATALOG,
        piles=piles,
        permissions=PermissionPolicy(players_can_open=True),
        scene_id=SCENE,
    )


@pytest.fixture
def dragon(store):
    return store.create_actor("Young Red Dragon", actor_type="npc", creature_type="dragon", cr=5, size="lg")


@pytest.fixture
def make_pc(store):
    def _make(name, owner="100", skills=None, proficient=(), proficiency_bonus=2):
        return store.create_actor(
            name, owner_id=owner, actor_type="character", creature_type="humanoid",
            skills=skills or {}, proficient_skills=set(proficient), proficiency_bonus=proficiency_bonus,
        )
    return _make


@pytest.fixture
def add_material(store):
    def _add(material_id, name=None, **fields):
        material = MaterialDefinition(material_id=material_id, name=name or material_id.title(), **fields)
        store.save_material(CATALOG, material)
        return material
    return _add


@pytest.fixture
def session(context, dragon):
    return HarvestSession(context, dragon, user_id="100", privileged=True)
