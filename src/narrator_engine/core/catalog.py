"""Item catalog, merchant stock generation and loot tables.

Prices are integer copper. Pools follow the Player's Handbook price list plus
a handful of potions, magic items, gems and trade goods merchants commonly
carry.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, replace
from typing import Any, Optional

from .normalize import normalize_name


@dataclass(frozen=True)
class CatalogItem:
    name: str
    price_cp: int
    category: str
    rarity: str = "common"
    description: str = ""

    def as_line(self, quantity: int = 1) -> dict[str, Any]:
        return {
            "name": self.name,
            "quantity": quantity,
            "price_cp": self.price_cp,
            "category": self.category,
            "rarity": self.rarity,
            "description": self.description,
        }


@dataclass(frozen=True)
class ProsperityTier:
    price_multiplier: float
    max_rarity: str
    item_range: tuple[int, int]
    purse_gp: int


def _gp(gp: float) -> int:
    return int(round(gp * 100))


def _items(category: str, rows: list[tuple], rarity_from_gp: Optional[int] = None) -> list[CatalogItem]:
    out = []
    for row in rows:
        name, price_cp = row[0], row[1]
        description = row[2] if len(row) > 2 else ""
        rarity = row[3] if len(row) > 3 else "common"
        if rarity_from_gp is not None and price_cp >= rarity_from_gp * 100:
            rarity = "uncommon"
        out.append(CatalogItem(name, price_cp, category, rarity, description))
    return out


WEAPONS = _items(
    "weapon",
    [
        ("Club", 10, "1d4 bludgeoning (light)"),
        ("Dagger", _gp(2), "1d4 piercing (finesse, light, thrown)"),
        ("Greatclub", 20, "1d8 bludgeoning (two-handed)"),
        ("Handaxe", _gp(5), "1d6 slashing (light, thrown)"),
        ("Javelin", 50, "1d6 piercing (thrown)"),
        ("Light Hammer", _gp(2), "1d4 bludgeoning (light, thrown)"),
        ("Mace", _gp(5), "1d6 bludgeoning"),
        ("Quarterstaff", 20, "1d6 bludgeoning (versatile)"),
        ("Sickle", _gp(1), "1d4 slashing (light)"),
        ("Spear", _gp(1), "1d6 piercing (thrown, versatile)"),
        ("Light Crossbow", _gp(25), "1d8 piercing (ammunition, loading)"),
        ("Shortbow", _gp(25), "1d6 piercing (ammunition, two-handed)"),
        ("Sling", 10, "1d4 bludgeoning (ammunition)"),
        ("Battleaxe", _gp(10), "1d8 slashing (versatile)"),
        ("Flail", _gp(10), "1d8 bludgeoning"),
        ("Glaive", _gp(20), "1d10 slashing (heavy, reach, two-handed)"),
        ("Greataxe", _gp(30), "1d12 slashing (heavy, two-handed)"),
        ("Greatsword", _gp(50), "2d6 slashing (heavy, two-handed)"),
        ("Halberd", _gp(20), "1d10 slashing (heavy, reach, two-handed)"),
        ("Longsword", _gp(15), "1d8 slashing (versatile)"),
        ("Maul", _gp(10), "2d6 bludgeoning (heavy, two-handed)"),
        ("Morningstar", _gp(15), "1d8 piercing"),
        ("Rapier", _gp(25), "1d8 piercing (finesse)"),
        ("Scimitar", _gp(25), "1d6 slashing (finesse, light)"),
        ("Shortsword", _gp(10), "1d6 piercing (finesse, light)"),
        ("Warhammer", _gp(15), "1d8 bludgeoning (versatile)"),
        ("Hand Crossbow", _gp(75), "1d6 piercing (ammunition, light, loading)"),
        ("Heavy Crossbow", _gp(50), "1d10 piercing (ammunition, heavy, loading)"),
        ("Longbow", _gp(50), "1d8 piercing (ammunition, heavy, two-handed)"),
    ],
    rarity_from_gp=50,
)

ARMOR = _items(
    "armor",
    [
        ("Padded Armor", _gp(5), "AC 11 (light)"),
        ("Leather Armor", _gp(10), "AC 11 (light)"),
        ("Studded Leather", _gp(45), "AC 12 (light)"),
        ("Hide Armor", _gp(10), "AC 12 (medium)"),
        ("Chain Shirt", _gp(50), "AC 13 (medium)"),
        ("Scale Mail", _gp(50), "AC 14 (medium)"),
        ("Breastplate", _gp(400), "AC 14 (medium)"),
        ("Half Plate", _gp(750), "AC 15 (medium)"),
        ("Ring Mail", _gp(30), "AC 14 (heavy)"),
        ("Chain Mail", _gp(75), "AC 16 (heavy)"),
        ("Splint Armor", _gp(200), "AC 17 (heavy)"),
        ("Plate Armor", _gp(1500), "AC 18 (heavy)"),
        ("Shield", _gp(10), "+2 AC"),
    ],
    rarity_from_gp=200,
)

ADVENTURING_GEAR = _items(
    "adventuring_gear",
    [
        ("Backpack", _gp(2)),
        ("Bedroll", _gp(1)),
        ("Blanket", 50),
        ("Candle", 1),
        ("Chalk (1 piece)", 1),
        ("Crowbar", _gp(2)),
        ("Grappling Hook", _gp(2)),
        ("Hammer", _gp(1)),
        ("Healer's Kit", _gp(5)),
        ("Hooded Lantern", _gp(5)),
        ("Lamp Oil (flask)", 10),
        ("Manacles", _gp(2)),
        ("Mess Kit", 20),
        ("Piton", 5),
        ("Rations (1 day)", 50),
        ("Rope, Hempen (50 feet)", _gp(1)),
        ("Rope, Silk (50 feet)", _gp(10)),
        ("Tinderbox", 50),
        ("Torch", 1),
        ("Waterskin", 20),
        ("Whetstone", 1),
        ("Climber's Kit", _gp(25)),
        ("Spyglass", _gp(1000), "", "uncommon"),
    ],
)

AMMUNITION = _items(
    "ammunition",
    [
        ("Arrows (20)", _gp(1)),
        ("Crossbow Bolts (20)", _gp(1)),
        ("Sling Bullets (20)", 4),
        ("Blowgun Needles (50)", _gp(1)),
    ],
)

TOOLS = _items(
    "tools",
    [
        ("Thieves' Tools", _gp(25)),
        ("Smith's Tools", _gp(20)),
        ("Carpenter's Tools", _gp(8)),
        ("Cook's Utensils", _gp(1)),
        ("Herbalism Kit", _gp(5)),
        ("Navigator's Tools", _gp(25)),
        ("Disguise Kit", _gp(25)),
        ("Forgery Kit", _gp(15)),
        ("Dice Set", 10),
        ("Playing Card Set", 50),
    ],
)

POTIONS_CONSUMABLES = _items(
    "potion",
    [
        ("Potion of Healing", _gp(50), "Heals 2d4+2 HP"),
        ("Potion of Greater Healing", _gp(150), "Heals 4d4+4 HP", "uncommon"),
        ("Potion of Superior Healing", _gp(450), "Heals 8d4+8 HP", "rare"),
        ("Antitoxin", _gp(50), "Advantage on saves vs poison for 1 hour"),
        ("Potion of Climbing", _gp(75), "Climbing speed equal to walking for 1 hour"),
        ("Potion of Fire Breath", _gp(150), "Exhale fire, 4d6 damage (DEX save)", "uncommon"),
        ("Potion of Resistance", _gp(300), "Resistance to one damage type for 1 hour", "uncommon"),
        ("Potion of Water Breathing", _gp(100), "Breathe underwater for 1 hour", "uncommon"),
        ("Oil of Slipperiness", _gp(200), "Freedom of Movement for 8 hours", "uncommon"),
        ("Potion of Growth", _gp(250), "Enlarge effect for 1d4 hours", "uncommon"),
    ],
) + _items(
    "alchemical",
    [
        ("Acid (vial)", _gp(25), "2d6 acid damage as improvised weapon"),
        ("Alchemist's Fire (flask)", _gp(50), "1d4 fire damage per turn until extinguished"),
        ("Holy Water (flask)", _gp(25), "2d6 radiant to undead and fiends"),
        ("Basic Poison (vial)", _gp(100), "1d4 extra poison damage, coat one weapon"),
        ("Smokestick", _gp(25), "Creates 10ft cube of smoke for 1 round"),
        ("Tanglefoot Bag", _gp(50), "Target restrained, DC 11 STR to escape"),
    ],
)

MAGIC_ITEMS = [
    CatalogItem("Spell Scroll (Cantrip)", _gp(25), "scroll", "common", "Single-use cantrip"),
    CatalogItem("Spell Scroll (1st Level)", _gp(75), "scroll", "common", "Single-use 1st level spell"),
    CatalogItem("Driftglobe", _gp(75), "wondrous", "common", "Casts Light or Daylight"),
    CatalogItem("Candle of the Deep", _gp(25), "wondrous", "common", "Burns underwater, 5ft bright light"),
    CatalogItem("Spell Scroll (2nd Level)", _gp(150), "scroll", "uncommon", "Single-use 2nd level spell"),
    CatalogItem("Spell Scroll (3rd Level)", _gp(300), "scroll", "uncommon", "Single-use 3rd level spell"),
    CatalogItem("Wand of Magic Detection", _gp(200), "wand", "uncommon", "Detect Magic, 3 charges"),
    CatalogItem("Bag of Holding", _gp(500), "wondrous", "uncommon", "Holds 500 lbs in extradimensional space"),
    CatalogItem("Cloak of Protection", _gp(500), "wondrous", "uncommon", "+1 to AC and saving throws"),
    CatalogItem("Goggles of Night", _gp(300), "wondrous", "uncommon", "Darkvision 60ft"),
    CatalogItem("Boots of Elvenkind", _gp(400), "wondrous", "uncommon", "Advantage on Stealth checks"),
    CatalogItem("Pearl of Power", _gp(500), "wondrous", "uncommon", "Recover one expended spell slot"),
    CatalogItem("Spell Scroll (4th Level)", _gp(500), "scroll", "rare", "Single-use 4th level spell"),
    CatalogItem("+1 Weapon", _gp(1000), "weapon", "rare", "+1 to attack and damage rolls"),
    CatalogItem("+1 Shield", _gp(1500), "armor", "rare", "+1 AC on top of shield bonus"),
    CatalogItem("Ring of Protection", _gp(1500), "wondrous", "rare", "+1 to AC and saving throws"),
]

GEMS_JEWELRY = _items(
    "gem",
    [
        ("Agate", _gp(10), "Banded, eye, or moss variety"),
        ("Quartz", _gp(10), "Blue, smoky, or rose crystal"),
        ("Turquoise", _gp(10), "Opaque blue-green stone"),
        ("Moonstone", _gp(50), "Translucent white with pale blue shimmer"),
        ("Jade", _gp(50), "Translucent deep green"),
        ("Onyx", _gp(50), "Opaque black bands"),
        ("Pearl", _gp(100), "Lustrous white, pink, or silver orb", "uncommon"),
        ("Garnet", _gp(100), "Transparent red, brown-green, or violet", "uncommon"),
        ("Topaz", _gp(500), "Transparent golden yellow", "rare"),
        ("Sapphire", _gp(500), "Transparent deep blue", "rare"),
    ],
) + _items(
    "jewelry",
    [
        ("Silver Ring", _gp(25), "Simple silver band"),
        ("Gold Ring", _gp(75), "Polished gold band"),
        ("Silver Brooch", _gp(50), "Ornate silver pin with filigree"),
        ("Gold Necklace", _gp(150), "Fine gold chain", "uncommon"),
        ("Gem-Studded Bracelet", _gp(250), "Gold bracelet set with small gems", "uncommon"),
    ],
)

LEATHER_GOODS = [item for item in ARMOR if item.name in ("Padded Armor", "Leather Armor", "Studded Leather", "Hide Armor")] + _items(
    "leather",
    [
        ("Leather Satchel", _gp(1), "Durable leather messenger bag"),
        ("Belt Pouch", 50, "Small leather pouch for coins"),
        ("Quiver", _gp(1), "Holds 20 arrows or bolts"),
        ("Leather Gloves", 50, "Sturdy work gloves"),
        ("Leather Boots", _gp(1), "Travel-worn leather boots"),
        ("Saddlebags", _gp(4), "Leather bags that drape over a mount"),
        ("Scroll Case (leather)", _gp(1), "Waterproof tube for maps and scrolls"),
    ],
)

CLOTHING = _items(
    "clothing",
    [
        ("Traveler's Clothes", _gp(2), "Practical road-worn attire"),
        ("Common Clothes", 50, "Simple everyday garments"),
        ("Fine Clothes", _gp(15), "Elegant attire for social occasions"),
        ("Costume Clothes", _gp(5), "Theatrical costume with accessories"),
        ("Cloak", _gp(1), "Standard hooded traveling cloak"),
        ("Fur Cloak", _gp(10), "Heavy fur-lined cloak for cold weather"),
        ("Silk Robes", _gp(30), "Flowing robes of fine silk", "uncommon"),
        ("Vestments", _gp(5), "Religious ceremonial garments"),
        ("Noble's Outfit", _gp(75), "Expensive ensemble fit for court", "uncommon"),
        ("Hat, Wide-Brimmed", 50, "Keeps sun and rain off your face"),
    ],
)

POOLS: dict[str, list[CatalogItem]] = {
    "adventuring_gear": ADVENTURING_GEAR,
    "weapons": WEAPONS,
    "armor": ARMOR,
    "ammunition": AMMUNITION,
    "tools": TOOLS,
    "potions_consumables": POTIONS_CONSUMABLES,
    "magic_items": MAGIC_ITEMS,
    "gems_jewelry": GEMS_JEWELRY,
    "leather_goods": LEATHER_GOODS,
    "clothing": CLOTHING,
}

MERCHANT_TYPE_POOLS: dict[str, tuple[str, ...]] = {
    "general": ("adventuring_gear", "tools", "ammunition"),
    "blacksmith": ("weapons", "armor", "ammunition"),
    "alchemist": ("potions_consumables",),
    "magic": ("magic_items", "potions_consumables"),
    "jeweler": ("gems_jewelry",),
    "tanner": ("leather_goods",),
    "tailor": ("clothing",),
}

PROSPERITY: dict[str, ProsperityTier] = {
    "poor": ProsperityTier(0.80, "common", (5, 8), 200),
    "modest": ProsperityTier(0.90, "uncommon", (8, 12), 350),
    "comfortable": ProsperityTier(1.00, "uncommon", (10, 15), 500),
    "wealthy": ProsperityTier(1.10, "rare", (12, 18), 800),
    "aristocratic": ProsperityTier(1.20, "rare", (15, 20), 1200),
}
DEFAULT_PROSPERITY = "comfortable"

QUALITY_TIERS: dict[str, tuple[float, str]] = {
    "standard": (1.0, "Standard"),
    "fine": (1.5, "Fine"),
    "superior": (2.0, "Superior"),
    "masterwork": (3.0, "Masterwork"),
}

RARITY_ORDER = {"common": 0, "uncommon": 1, "rare": 2, "very rare": 3, "legendary": 4}
RARITY_WEIGHT = {"common": 6, "uncommon": 3, "rare": 1}

LOOT_BY_LEVEL: dict[int, tuple[str, ...]] = {
    1: (
        "Potion of Healing",
        "Torch",
        "Rope, Hempen (50 feet)",
        "Rations (1 day)",
        "Leather Armor",
        "Dagger",
        "Healer's Kit",
        "Agate",
        "Silver Ring",
        "Spell Scroll (Cantrip)",
    ),
    5: (
        "Potion of Greater Healing",
        "+1 Weapon",
        "Ring of Protection",
        "Cloak of Elvenkind",
        "Bag of Holding",
        "Boots of Elvenkind",
        "Goggles of Night",
        "Pearl of Power",
        "Spell Scroll (2nd Level)",
        "Gem-Studded Bracelet",
    ),
    10: (
        "Potion of Superior Healing",
        "+2 Weapon",
        "Belt of Giant Strength",
        "Boots of Speed",
        "Amulet of Health",
        "Flame Tongue",
        "Cloak of Displacement",
        "Ring of Evasion",
        "Spell Scroll (5th Level)",
        "Sapphire",
    ),
    15: (
        "Potion of Supreme Healing",
        "+3 Weapon",
        "Ring of Spell Storing",
        "Headband of Intellect",
        "Staff of Power",
        "Robe of the Archmagi",
        "Ring of Regeneration",
        "Mantle of Spell Resistance",
        "Spell Scroll (7th Level)",
        "Star Ruby",
    ),
}

LOOT_DROP_RATES = {"high": 0.25, "medium": 0.10, "low": 0.05}

_KNOWN: dict[str, CatalogItem] = {}
for _pool in POOLS.values():
    for _item in _pool:
        _KNOWN.setdefault(_item.name.lower(), _item)


def lookup_item(name: str) -> CatalogItem | None:
    """Exact case-insensitive match, then the first partial match either way round."""
    needle = (name or "").strip().lower()
    if not needle:
        return None
    hit = _KNOWN.get(needle)
    if hit is not None:
        return hit
    for key, item in _KNOWN.items():
        if needle in key or key in needle:
            return item
    return None


def build_custom_item(
    name: str,
    price_cp: int = 0,
    quality: str = "standard",
    category: str = "adventuring_gear",
    description: str = "",
) -> dict[str, Any]:
    """A priced inventory line for a narrative item; known items keep catalog pricing."""
    multiplier, label = QUALITY_TIERS.get((quality or "").lower(), QUALITY_TIERS["standard"])
    known = lookup_item(name)
    base_cp = known.price_cp if known else max(0, int(price_cp))
    line = {
        "name": name,
        "quantity": 1,
        "price_cp": int(round(base_cp * multiplier)),
        "category": known.category if known else category,
        "rarity": known.rarity if known else ("uncommon" if multiplier >= 2 else "common"),
        "description": description or (known.description if known else ""),
    }
    if label != "Standard":
        line["quality"] = label
    return line


def prosperity_tier(prosperity: str | None) -> ProsperityTier:
    return PROSPERITY.get((prosperity or "").lower(), PROSPERITY[DEFAULT_PROSPERITY])


def merchant_seed(campaign_id: str, merchant_name: str, merchant_type: str, level: int) -> str:
    return f"{campaign_id}:{normalize_name(merchant_name)}:{merchant_type}:{level}"


def _weighted_pick(rng: random.Random, items: list[CatalogItem], count: int) -> list[CatalogItem]:
    if len(items) <= count:
        return list(items)
    available = list(items)
    selected: list[CatalogItem] = []
    while len(selected) < count and available:
        weights = [RARITY_WEIGHT.get(item.rarity, 1) for item in available]
        index = rng.choices(range(len(available)), weights=weights, k=1)[0]
        selected.append(available.pop(index))
    return selected


def _quantity_for(rng: random.Random, rarity: str) -> int:
    if rarity == "rare":
        return 1
    if rarity == "uncommon":
        return rng.randint(1, 2)
    return rng.randint(1, 5)


def generate_inventory(
    merchant_type: str,
    prosperity: str,
    level: int,
    rng: random.Random,
) -> list[dict[str, Any]]:
    tier = prosperity_tier(prosperity)
    pool_keys = MERCHANT_TYPE_POOLS.get(merchant_type, MERCHANT_TYPE_POOLS["general"])
    max_rank = RARITY_ORDER[tier.max_rarity]

    eligible: list[CatalogItem] = []
    for key in pool_keys:
        for item in POOLS[key]:
            if RARITY_ORDER.get(item.rarity, 0) > max_rank:
                continue
            if item.rarity == "rare" and level < 5:
                continue
            if item.rarity == "uncommon" and level < 3:
                continue
            eligible.append(item)

    low, high = tier.item_range
    chosen = _weighted_pick(rng, eligible, rng.randint(low, high))
    lines = []
    for item in chosen:
        priced = replace(item, price_cp=max(1, int(round(item.price_cp * tier.price_multiplier))))
        lines.append(priced.as_line(_quantity_for(rng, item.rarity)))
    return lines


def buyback_price_cp(name: str) -> int:
    """Half the catalog value, floored in copper; unknown items fetch a flat 1 gp."""
    known = lookup_item(name)
    if known is None:
        return 100
    if known.price_cp <= 0:
        return 0
    return max(1, known.price_cp // 2)


def loot_table_for_level(level: int) -> tuple[str, ...]:
    if level >= 15:
        return LOOT_BY_LEVEL[15]
    if level >= 10:
        return LOOT_BY_LEVEL[10]
    if level >= 5:
        return LOOT_BY_LEVEL[5]
    return LOOT_BY_LEVEL[1]


def generate_loot(level: int, danger_level: str, rng: random.Random) -> str | None:
    rate = LOOT_DROP_RATES.get(danger_level)
    if rate is None or rng.random() >= rate:
        return None
    return rng.choice(loot_table_for_level(level))


def merchant_types_for_category(category: str) -> list[str]:
    types = []
    for merchant_type, pool_keys in MERCHANT_TYPE_POOLS.items():
        if any(item.category == category for key in pool_keys for item in POOLS[key]):
            types.append(merchant_type)
    return types
