from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Optional, Union


@dataclass
class RecruitmentDirective:
    kind: ClassVar[str] = "recruitment"
    name: str
    race: str = "Human"
    gender: Optional[str] = None
    occupation: Optional[str] = None
    personality: Optional[str] = None
    reason: Optional[str] = None
    full_attributes: bool = False


@dataclass
class ItemGrantDirective:
    kind: ClassVar[str] = "item_grant"
    name: str
    price_gp: float = 0.0
    quality: str = "standard"
    category: str = "adventuring_gear"
    description: str = ""
    merchant: Optional[str] = None
    quantity: int = 1


@dataclass
class MerchantOpenDirective:
    kind: ClassVar[str] = "merchant_open"
    merchant: str
    merchant_type: str = "general"
    location: str = "Unknown shop"


@dataclass
class MerchantReferralDirective:
    kind: ClassVar[str] = "merchant_referral"
    to_merchant: str
    item: str
    from_merchant: Optional[str] = None


@dataclass
class LootDropDirective:
    kind: ClassVar[str] = "loot_drop"
    item: str
    source: str = "found"
    quantity: int = 1


@dataclass
class CombatStartDirective:
    kind: ClassVar[str] = "combat_start"
    enemies: list[str] = field(default_factory=list)


@dataclass
class CombatEndDirective:
    kind: ClassVar[str] = "combat_end"


Directive = Union[
    RecruitmentDirective,
    ItemGrantDirective,
    MerchantOpenDirective,
    MerchantReferralDirective,
    LootDropDirective,
    CombatStartDirective,
    CombatEndDirective,
]


@dataclass
class MarkerRejection:
    tag: str
    reason: str
    raw: str


@dataclass
class ParsedMarkers:
    clean_text: str
    directives: list[Directive] = field(default_factory=list)
    rejected: list[MarkerRejection] = field(default_factory=list)

    def of_kind(self, kind: str) -> list[Directive]:
        return [d for d in self.directives if d.kind == kind]


@dataclass
class TurnOrderEntry:
    name: str
    type: str
    roll: int
    modifier: int
    total: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "roll": self.roll,
            "modifier": self.modifier,
            "total": self.total,
        }


@dataclass
class CombatState:
    turn_order: list[TurnOrderEntry]
    current_turn: int = 0
    round: int = 1

    @property
    def current_actor(self) -> Optional[TurnOrderEntry]:
        if not self.turn_order:
            return None
        return self.turn_order[self.current_turn]

    def as_dict(self) -> dict[str, Any]:
        return {
            "turn_order": [entry.as_dict() for entry in self.turn_order],
            "current_turn": self.current_turn,
            "round": self.round,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CombatState":
        entries = [
            TurnOrderEntry(
                name=str(raw["name"]),
                type=str(raw["type"]),
                roll=int(raw["roll"]),
                modifier=int(raw["modifier"]),
                total=int(raw["total"]),
            )
            for raw in data.get("turn_order") or []
        ]
        return cls(turn_order=entries, current_turn=int(data.get("current_turn", 0)), round=int(data.get("round", 1)))


@dataclass
class ActivityScores:
    combat: int = 0
    exploration: int = 0
    quests: int = 0
    discovery: int = 0
    social: int = 0
    danger: int = 0

    @property
    def total_activity(self) -> int:
        return self.combat + self.exploration + self.quests + self.discovery + self.social


@dataclass
class SessionAnalysis:
    summary: str
    scores: ActivityScores
    items_consumed: list[str] = field(default_factory=list)
    items_gained: list[str] = field(default_factory=list)
    gold_spent: dict[str, int] = field(default_factory=lambda: {"gp": 0, "sp": 0, "cp": 0})


@dataclass
class RewardBreakdown:
    base_xp: int
    category_xp: dict[str, int]
    subtotal: int
    danger_xp: int
    time_multiplier: float


@dataclass
class SessionRewards:
    xp: int = 0
    gold: dict[str, int] = field(default_factory=lambda: {"gp": 0, "sp": 0, "cp": 0})
    loot: Optional[str] = None
    breakdown: Optional[RewardBreakdown] = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"xp": self.xp, "gold": dict(self.gold), "loot": self.loot}
        if self.breakdown is not None:
            payload["breakdown"] = {
                "base_xp": self.breakdown.base_xp,
                "categories": dict(self.breakdown.category_xp),
                "subtotal": self.breakdown.subtotal,
                "danger_xp": self.breakdown.danger_xp,
                "time_multiplier": round(self.breakdown.time_multiplier, 2),
            }
        else:
            payload["breakdown"] = None
        return payload


@dataclass
class RecruitmentOffer:
    name: str
    status: str
    npc_id: Optional[str] = None
    created: bool = False
    reason: Optional[str] = None


@dataclass
class MerchantView:
    merchant_id: str
    name: str
    merchant_type: str
    location: str
    inventory: list[dict[str, Any]]
    purse_cp: int
    created: bool = False


@dataclass
class AppliedEffects:
    recruitment: list[RecruitmentOffer] = field(default_factory=list)
    merchants: list[MerchantView] = field(default_factory=list)
    items_granted: list[dict[str, Any]] = field(default_factory=list)
    loot: list[dict[str, Any]] = field(default_factory=list)
    referrals: list[dict[str, Any]] = field(default_factory=list)
    combat: Optional[CombatState] = None
    combat_ended: bool = False
    system_notes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class GenerationResult:
    text: str
    provider: str


@dataclass
class StartSessionInput:
    character_id: str
    title: Optional[str] = None
    second_character_id: Optional[str] = None
    campaign_id: Optional[str] = None
    provider: Optional[str] = None
    system_context: Optional[str] = None
    opening_prompt: Optional[str] = None


@dataclass
class TurnView:
    seq: int
    role: str
    content: str
    synthetic: bool = False


@dataclass
class SessionView:
    id: str
    character_id: str
    second_character_id: Optional[str]
    campaign_id: Optional[str]
    title: str
    status: str
    rewards_claimed: bool
    rewards: Optional[dict[str, Any]]
    summary: Optional[str]
    recap: Optional[str]
    hp_change: int
    started_at: datetime
    ended_at: Optional[datetime]
    game_start: dict[str, int]
    game_end: Optional[dict[str, int]]
    combat: Optional[CombatState]
    active_merchant: Optional[str]
    turns: list[TurnView] = field(default_factory=list)


@dataclass
class MessageResult:
    session_id: str
    narrative: str
    provider: str
    effects: AppliedEffects
    turn_seq: int


@dataclass
class StartSessionResult:
    session: SessionView
    narrative: str
    provider: str
    effects: AppliedEffects


@dataclass
class EndSessionResult:
    session: SessionView
    summary: str
    rewards: SessionRewards
    hp_change: int
    days_elapsed: int
    analysis: Optional[SessionAnalysis] = None


@dataclass
class ClaimResult:
    session_id: str
    character_id: str
    xp_awarded: int
    gold_awarded: dict[str, int]
    loot: Optional[str]
    hp_change: int
    new_experience: int
    new_gold: dict[str, int]
    new_hp: int
    companions_awarded: list[str] = field(default_factory=list)


@dataclass
class InventoryChangeResult:
    removed: list[str]
    added: list[str]
    not_found: list[str]
    gold_spent_cp: int
    new_gold: dict[str, int]
    inventory: list[dict[str, Any]]


@dataclass
class TradeResult:
    item: str
    quantity: int
    price_cp: int
    character_gold: dict[str, int]
    merchant_purse_cp: int


@dataclass
class RecruitmentResult:
    companion_id: str
    npc_id: str
    name: str
    progression_type: str


@dataclass
class SessionContext:
    session_id: str
    character_id: str
    status: str
    system_context: str
    transcript: list[dict[str, Any]]
    provider_preference: Optional[str]
    recap: Optional[str]
    turn_count: int
    participant_turns: int
    start_row_version: int
    now: datetime
    inventory: str = ""
    gold: str = ""
