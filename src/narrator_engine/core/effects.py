from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from itertools import groupby
from typing import Any, Callable

from ..persistence.interfaces import UnitOfWork
from .catalog import (
    DEFAULT_PROSPERITY,
    MERCHANT_TYPE_POOLS,
    build_custom_item,
    generate_inventory,
    lookup_item,
    merchant_seed,
    merchant_types_for_category,
    prosperity_tier,
)
from .currency import CP_PER_GP, gp_to_copper
from .errors import PreconditionError
from .initiative import Combatant, adversaries, describe_order, dex_modifier, roll_initiative
from .inventory import add_line, find_line, load_lines
from .markers import in_application_order
from .normalize import dump_json, normalize_name
from .prompts import combat_order_note, merchant_stock_note
from .types import (
    AppliedEffects,
    CombatStartDirective,
    Directive,
    ItemGrantDirective,
    LootDropDirective,
    MerchantOpenDirective,
    MerchantReferralDirective,
    MerchantView,
    ParsedMarkers,
    RecruitmentDirective,
    RecruitmentOffer,
)

REFERRAL_FALLBACK_PRICE_CP = 10 * CP_PER_GP


@dataclass
class ApplyContext:
    """Everything an applier may read or write during one message cycle.

    ``state`` is the session's JSON state blob; appliers mutate it in place and
    the engine writes it back with the row-version compare-and-set.
    """

    uow: UnitOfWork
    session_id: str
    turn_seq: int
    character: Any
    second_character: Any | None
    campaign_id: str | None
    state: dict[str, Any] = field(default_factory=dict)
    merchant_opened_this_turn: MerchantOpenDirective | None = None
    merchants_created: set[str] = field(default_factory=set)

    @property
    def level(self) -> int:
        return int(self.character.level or 1)


def _merchant_view(merchant: Any, created: bool = False) -> MerchantView:
    return MerchantView(
        merchant_id=merchant.id,
        name=merchant.merchant_name,
        merchant_type=merchant.merchant_type,
        location=merchant.location,
        inventory=load_lines(merchant.inventory_json),
        purse_cp=int(merchant.purse_cp or 0),
        created=created,
    )


class EffectApplier:
    """Applies parsed directives against persisted state, one savepoint per kind."""

    def __init__(
        self,
        rng_factory: Callable[[], random.Random] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._rng_factory = rng_factory or random.Random
        self._logger = logger or logging.getLogger(__name__)
        self._handlers: dict[str, Callable[[ApplyContext, list[Any], AppliedEffects], None]] = {
            "recruitment": self._apply_recruitment,
            "item_grant": self._apply_item_grants,
            "merchant_open": self._apply_merchant_open,
            "merchant_referral": self._apply_referrals,
            "loot_drop": self._apply_loot,
            "combat_start": self._apply_combat_start,
            "combat_end": self._apply_combat_end,
        }

    def apply(self, ctx: ApplyContext, parsed: ParsedMarkers) -> AppliedEffects:
        effects = AppliedEffects()

        for index, rejection in enumerate(parsed.rejected):
            effects.warnings.append(f"{rejection.tag}: {rejection.reason}")
            ctx.uow.outbox.add(
                session_id=ctx.session_id,
                character_id=ctx.character.id,
                event_type="directive_rejected",
                idempotency_key=f"directive_rejected:{ctx.turn_seq}:{index}",
                payload_json=dump_json(
                    {
                        "session_id": ctx.session_id,
                        "turn_seq": ctx.turn_seq,
                        "tag": rejection.tag,
                        "reason": rejection.reason,
                        "raw": rejection.raw,
                    }
                ),
            )

        merchant_open = parsed.of_kind("merchant_open")
        if merchant_open:
            ctx.merchant_opened_this_turn = merchant_open[0]

        for kind, group in groupby(in_application_order(parsed.directives), key=lambda d: d.kind):
            directives = list(group)
            state_before = dict(ctx.state)
            try:
                with ctx.uow.savepoint():
                    self._handlers[kind](ctx, directives, effects)
            except Exception as exc:
                ctx.state.clear()
                ctx.state.update(state_before)
                self._record_failure(ctx, kind, directives, exc, effects)
        return effects

    def _record_failure(
        self,
        ctx: ApplyContext,
        kind: str,
        directives: list[Directive],
        exc: Exception,
        effects: AppliedEffects,
    ) -> None:
        self._logger.warning(
            "directive %s failed for session %s turn %s: %s",
            kind,
            ctx.session_id,
            ctx.turn_seq,
            exc,
        )
        effects.warnings.append(f"{kind}: {exc}")
        ctx.uow.outbox.add(
            session_id=ctx.session_id,
            character_id=ctx.character.id,
            event_type="directive_failed",
            idempotency_key=f"directive_failed:{ctx.turn_seq}:{kind}",
            payload_json=dump_json(
                {
                    "session_id": ctx.session_id,
                    "turn_seq": ctx.turn_seq,
                    "kind": kind,
                    "count": len(directives),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                }
            ),
        )

    # -- recruitment ------------------------------------------------------

    def _apply_recruitment(
        self,
        ctx: ApplyContext,
        directives: list[RecruitmentDirective],
        effects: AppliedEffects,
    ) -> None:
        pending = list(ctx.state.get("pending_recruitment") or [])
        for directive in directives:
            candidates = ctx.uow.npcs.search_recruitable(directive.name, ctx.campaign_id)
            npc = None
            already_companion = False
            for candidate in candidates:
                if ctx.uow.companions.get_active_for_npc(candidate.id) is not None:
                    already_companion = True
                    continue
                npc = candidate
                break

            if npc is None and already_companion:
                self._logger.debug("recruitment of %s skipped: already a companion", directive.name)
                continue

            created = False
            if npc is None and directive.full_attributes:
                npc = ctx.uow.npcs.create(
                    name=directive.name,
                    campaign_id=ctx.campaign_id,
                    race=directive.race,
                    gender=directive.gender,
                    occupation=directive.occupation,
                    personality=directive.personality,
                    recruitable=True,
                )
                created = True

            if npc is None:
                effects.recruitment.append(
                    RecruitmentOffer(name=directive.name, status="npc_not_found", reason=directive.reason)
                )
                continue

            if npc.id not in pending:
                pending.append(npc.id)
            effects.recruitment.append(
                RecruitmentOffer(
                    name=npc.name,
                    status="pending",
                    npc_id=npc.id,
                    created=created,
                    reason=directive.reason,
                )
            )
        if pending:
            ctx.state["pending_recruitment"] = pending

    # -- merchants --------------------------------------------------------

    def find_or_create_merchant(
        self,
        ctx: ApplyContext,
        name: str,
        merchant_type: str = "general",
        location: str = "Unknown shop",
    ) -> tuple[Any, bool]:
        if not ctx.campaign_id:
            raise PreconditionError(f"merchant '{name}' needs a campaign")
        key = normalize_name(name)
        if not key:
            raise PreconditionError("merchant name is empty")
        merchant = ctx.uow.merchants.get_by_name(ctx.campaign_id, key)
        if merchant is not None:
            return merchant, False

        merchant_type = (merchant_type or "general").strip().lower()
        if merchant_type not in MERCHANT_TYPE_POOLS:
            merchant_type = "general"
        rng = random.Random(merchant_seed(ctx.campaign_id, name, merchant_type, ctx.level))
        lines = generate_inventory(merchant_type, DEFAULT_PROSPERITY, ctx.level, rng)
        merchant = ctx.uow.merchants.create(
            campaign_id=ctx.campaign_id,
            merchant_name=name.strip(),
            merchant_name_normalized=key,
            merchant_type=merchant_type,
            location=location or "Unknown shop",
            prosperity=DEFAULT_PROSPERITY,
            inventory_json=dump_json(lines),
            purse_cp=prosperity_tier(DEFAULT_PROSPERITY).purse_gp * CP_PER_GP,
        )
        ctx.merchants_created.add(key)
        self._logger.info("merchant %s (%s) stocked with %s lines", merchant.merchant_name, merchant_type, len(lines))
        return merchant, True

    def _apply_item_grants(
        self,
        ctx: ApplyContext,
        directives: list[ItemGrantDirective],
        effects: AppliedEffects,
    ) -> None:
        for directive in directives:
            line = build_custom_item(
                directive.name,
                price_cp=gp_to_copper(directive.price_gp),
                quality=directive.quality,
                category=directive.category,
                description=directive.description,
            )
            opened = ctx.merchant_opened_this_turn
            merchant_name = (
                directive.merchant
                or (opened.merchant if opened is not None else None)
                or ctx.state.get("active_merchant")
            )
            if merchant_name:
                if opened is not None and normalize_name(merchant_name) == normalize_name(opened.merchant):
                    # The shop tag of this turn has not been applied yet; create it as described there.
                    merchant, _ = self.find_or_create_merchant(
                        ctx, merchant_name, merchant_type=opened.merchant_type, location=opened.location
                    )
                else:
                    merchant, _ = self.find_or_create_merchant(ctx, merchant_name)
                lines = load_lines(merchant.inventory_json)
                merged = add_line(lines, line, directive.quantity)
                merchant.inventory_json = dump_json(lines)
                recipient = merchant.merchant_name
            else:
                lines = load_lines(ctx.character.inventory_json)
                merged = add_line(lines, line, directive.quantity)
                ctx.character.inventory_json = dump_json(lines)
                recipient = ctx.character.name
            effects.items_granted.append(
                {
                    "item": merged["name"],
                    "quantity": directive.quantity,
                    "price_cp": merged.get("price_cp", 0),
                    "recipient": recipient,
                }
            )

    def _apply_merchant_open(
        self,
        ctx: ApplyContext,
        directives: list[MerchantOpenDirective],
        effects: AppliedEffects,
    ) -> None:
        for directive in directives:
            merchant, created = self.find_or_create_merchant(
                ctx,
                directive.merchant,
                merchant_type=directive.merchant_type,
                location=directive.location,
            )
            ctx.state["active_merchant"] = merchant.merchant_name
            created = created or normalize_name(directive.merchant) in ctx.merchants_created
            view = _merchant_view(merchant, created=created)
            effects.merchants.append(view)
            effects.system_notes.append(
                merchant_stock_note(view.name, view.merchant_type, view.location, view.inventory)
            )

    def _apply_referrals(
        self,
        ctx: ApplyContext,
        directives: list[MerchantReferralDirective],
        effects: AppliedEffects,
    ) -> None:
        for directive in directives:
            known = lookup_item(directive.item)
            merchant_type = "general"
            if known is not None:
                merchant_type = (merchant_types_for_category(known.category) or ["general"])[0]
            merchant, _ = self.find_or_create_merchant(ctx, directive.to_merchant, merchant_type=merchant_type)
            lines = load_lines(merchant.inventory_json)
            added = False
            if find_line(lines, directive.item, partial=True) is None:
                add_line(lines, build_custom_item(directive.item, price_cp=REFERRAL_FALLBACK_PRICE_CP), 1)
                merchant.inventory_json = dump_json(lines)
                added = True
            effects.referrals.append(
                {
                    "from": directive.from_merchant,
                    "to": merchant.merchant_name,
                    "merchant_id": merchant.id,
                    "item": directive.item,
                    "added": added,
                }
            )

    # -- loot and combat --------------------------------------------------

    def _apply_loot(
        self,
        ctx: ApplyContext,
        directives: list[LootDropDirective],
        effects: AppliedEffects,
    ) -> None:
        lines = load_lines(ctx.character.inventory_json)
        for directive in directives:
            merged = add_line(lines, build_custom_item(directive.item), directive.quantity)
            effects.loot.append(
                {"item": merged["name"], "quantity": directive.quantity, "source": directive.source}
            )
        ctx.character.inventory_json = dump_json(lines)

    def _apply_combat_start(
        self,
        ctx: ApplyContext,
        directives: list[CombatStartDirective],
        effects: AppliedEffects,
    ) -> None:
        if len(directives) > 1:
            self._logger.debug("session %s: %s COMBAT_START tags, using the first", ctx.session_id, len(directives))
        directive = directives[0]

        combatants = [Combatant(ctx.character.name, "participant", dex_modifier(ctx.character.dexterity))]
        if ctx.second_character is not None:
            combatants.append(
                Combatant(ctx.second_character.name, "participant", dex_modifier(ctx.second_character.dexterity))
            )
        for companion in ctx.uow.companions.list_active_for_character(ctx.character.id):
            npc = ctx.uow.npcs.get(companion.npc_id)
            if npc is None:
                continue
            combatants.append(Combatant(npc.name, "companion", dex_modifier(companion.dexterity)))
        combatants.extend(adversaries(directive.enemies))

        combat = roll_initiative(combatants, self._rng_factory())
        ctx.state["combat"] = combat.as_dict()
        effects.combat = combat
        effects.system_notes.append(combat_order_note(describe_order(combat)))

    def _apply_combat_end(self, ctx: ApplyContext, directives: list[Any], effects: AppliedEffects) -> None:
        effects.combat_ended = True
