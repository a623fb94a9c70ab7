HARVEST_DC_TABLES = {
    "aberration": {
        5: ["Antenna", "eye", "flesh", "phial of blood"],
        10: ["Bone", "egg", "fat", "pouch of claws", "pouch of teeth", "tentacle"],
        15: ["Heart", "phial of mucus", "liver", "stinger"],
        20: ["Brain", "chitin", "hide", "main eye"],
    },
    "beast": {
        5: ["Antenna", "eye", "flesh", "hair", "phial of blood"],
        10: ["Antler", "beak", "bone", "egg", "fat", "fin", "horn", "pincer", "pouch of claws", "pouch of teeth", "talon", "tusk"],
        15: ["Heart", "liver", "poison gland", "pouch of feathers", "pouch of scales", "stinger", "tentacle"],
        20: ["Chitin", "pelt"],
    },
    "celestial": {
        5: ["Eye", "flesh", "hair", "phial of blood", "pouch of dust"],
        10: ["Bone", "fat", "horn", "pouch of teeth"],
        15: ["Heart", "liver", "pouch of feathers", "pouch of scales"],
        20: ["Brain", "skin"],
        25: ["Soul"],
    },
    "construct": {
        5: ["Phial of blood", "phial of oil"],
        10: ["Flesh", "plating", "stone"],
        15: ["Bone", "heart", "liver", "gears"],
        20: ["Brain", "instructions"],
        25: ["Lifespark"],
    },
    "dragon": {
        5: ["Eye", "flesh", "phial of blood"],
        10: ["Bone", "egg", "fat", "pouch of claws", "pouch of teeth"],
        15: ["Horn", "liver", "pouch of scales"],
        20: ["Heart"],
        25: ["Breath sac"],
    },
    "elemental": {
        5: ["Eye", "primordial dust"],
        10: ["Bone"],
        15: [
            "Volatile mote of air",
            "Volatile mote of earth",
            "Volatile mote of fire",
            "Volatile mote of water"
        ],
        25: [
            "Core of air",
            "Core of earth",
            "Core of fire",
            "Core of water"
        ],
    },
    "fey": {
        5: ["Antenna", "eye", "flesh", "hair", "phial of blood"],
        10: ["Antler", "beak", "bone", "egg", "horn", "pouch of claws", "pouch of teeth", "talon", "tusk"],
        15: ["Heart", "fat", "liver", "poison gland", "pouch of feathers", "pouch of scales", "tentacle", "tongue"],
        20: ["Brain", "skin", "pelt"],
        25: ["Psyche"],
    },
    "fiend": {
        5: ["Eye", "flesh", "hair", "phial of blood", "pouch of dust"],
        10: ["Beak", "bone", "horn", "pouch of claws", "pouch of teeth"],
        15: ["Heart", "fat", "liver", "poison gland", "pouch of feathers", "pouch of scales"],
        20: ["Brain", "skin"],
        25: ["Soul"],
    },
    "giant": {
        5: ["Flesh", "hair", "nail", "phial of blood"],
        10: ["Bone", "fat", "tooth"],
        15: ["Heart", "liver"],
        20: ["Skin"],
    },
    "humanoid": {
        5: ["Eye", "phial of blood"],
        10: ["Bone", "egg", "pouch of teeth"],
        15: ["Heart", "liver", "pouch of feathers", "pouch of scales"],
        20: ["Brain", "skin"],
    },
    "monstrosity": {
        5: ["Antenna", "eye", "flesh", "hair", "phial of blood"],
        10: ["Antler", "beak", "bone", "egg", "fat", "fin", "horn", "pincer", "pouch of claws", "pouch of teeth", "talon", "tusk"],
        15: ["Heart", "liver", "poison gland", "pouch of feathers", "pouch of scales", "stinger", "tentacle"],
        20: ["Chitin", "pelt"],
    },
    "ooze": {
        5: ["Phial of acid"],
        10: ["Phial of mucus"],
        15: ["Vesicle"],
        20: ["Membrane"],
    },
    "plant": {
        5: ["Phial of sap", "tuber"],
        10: ["Bundle of roots", "phial of wax", "pouch of hyphae", "pouch of leaves", "pouch of seeds"],
        15: ["Poison gland", "pouch of pollen", "pouch of spores"],
        20: ["Bark", "membrane"],
    },
    "undead": {
        5: ["Eye", "bone", "phial of congealed blood"],
        10: ["Marrow", "pouch of teeth", "rancid fat"],
        15: ["Ethereal ichor", "undying flesh"],
        20: ["Undying heart"],
    },
}

# Canonical harvesting skill per creature type (dnd5e skill keys).
CREATURE_TYPE_SKILLS = {
    "aberration": "arc",
    "beast": "sur",
    "celestial": "rel",
    "construct": "inv",
    "dragon": "sur",
    "elemental": "arc",
    "fey": "arc",
    "fiend": "rel",
    "giant": "med",
    "humanoid": "med",
    "monstrosity": "sur",
    "ooze": "nat",
    "plant": "nat",
    "undead": "med",
    "other": "sur",
}

SKILL_NAMES = {
    "acr": "Acrobatics", "ani": "Animal Handling", "arc": "Arcana", "ath": "Athletics",
    "dec": "Deception", "his": "History", "ins": "Insight", "itm": "Intimidation",
    "inv": "Investigation", "med": "Medicine", "nat": "Nature", "prc": "Perception",
    "prf": "Performance", "per": "Persuasion", "rel": "Religion", "slt": "Sleight of Hand",
    "ste": "Stealth", "sur": "Survival",
}

# --- Difficulty modifiers ---
TYPE_MOD = {
    "aberration": 2, "beast": 0, "celestial": 2, "construct": 3, "dragon": 4, "elemental": 2,
    "fey": 2, "fiend": 3, "giant": 1, "humanoid": 0, "monstrosity": 2, "ooze": 1, "plant": 1,
    "undead": 3, "other": 0,
}

RARITY_MOD = {
    "common": 0, "uncommon": 2, "rare": 5, "very-rare": 8, "legendary": 10,
}

# Rarity assigned to seeded components by the tier they sit in above.
RARITY_BY_DC = {5: "common", 10: "common", 15: "uncommon", 20: "rare", 25: "very-rare"}

MIN_HARVEST_DC = 5

# How many helpers a creature of each size has room for.
SIZE_HELPER_CAP = {"tiny": 0, "sm": 1, "med": 2, "lg": 4, "huge": 6, "grg": 10}
DEFAULT_HELPER_CAP = 3

SIZES = list(SIZE_HELPER_CAP)

# Remnants: the essence a slain creature leaves behind, by challenge rating.
ESSENCE_TABLE = [
    {"cr_min": 3, "cr_max": 6, "dc": 25, "name": "Frail Remnant", "rarity": "uncommon"},
    {"cr_min": 7, "cr_max": 11, "dc": 30, "name": "Robust Remnant", "rarity": "rare"},
    {"cr_min": 12, "cr_max": 17, "dc": 35, "name": "Potent Remnant", "rarity": "very-rare"},
    {"cr_min": 18, "cr_max": 24, "dc": 40, "name": "Mythic Remnant", "rarity": "legendary"},
    {"cr_min": 25, "cr_max": 99, "dc": 50, "name": "Deific Remnant", "rarity": "artifact"},
]
DEFAULT_ESSENCE = {"name": "Frail Remnant", "rarity": "uncommon", "dc": 20}

DEFAULT_PORTRAIT = "https://cdn.discordapp.com/embed/avatars/0.png"
HARVEST_SPEAKER = "Runes & Remnants"
