from __future__ import annotations

import asyncio
import logging
import random
import uuid
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Callable

from ..persistence.interfaces import UnitOfWork
from . import markers
from .catalog import build_custom_item
from .currency import Currency, purse_of, store_purse
from .effects import ApplyContext, EffectApplier
from .errors import (
    GenerationError,
    GenerationTimeoutError,
    InvalidSessionState,
    NotFoundError,
    PreconditionError,
    RewardsAlreadyClaimedError,
    SessionBusyError,
    SessionConflictError,
    StaleClaimError,
)
from .inventory import add_line, describe, load_lines, parse_item_quantity, remove_quantity
from .normalize import dump_json, parse_json_dict
from .ports import ActivityCheckPort, GenerationPort
from .prompts import RECAP_PROMPT, analysis_prompt, build_system_context, opening_prompt
from .rewards import (
    DEFAULT_SUMMARY,
    EMPTY_SESSION_SUMMARY,
    advance_date,
    calculate_rewards,
    days_elapsed,
    hp_change,
    parse_analysis,
    zero_rewards,
)
from .types import (
    ActivityScores,
    AppliedEffects,
    ClaimResult,
    CombatState,
    EndSessionResult,
    GenerationResult,
    InventoryChangeResult,
    MessageResult,
    RecruitmentResult,
    SessionAnalysis,
    SessionContext,
    SessionView,
    StartSessionInput,
    StartSessionResult,
    TurnView,
)

EMPTY_NARRATIVE = "The world holds its breath, waiting for what you do next."
RECAP_MIN_TURNS = 3


class SessionEngine:
    """Drives the session lifecycle around an untrusted text generator.

    Generation always runs outside a database transaction. A per-session lease
    row serialises requests for one session; the session row's ``row_version``
    is re-checked and bumped with a compare-and-set when results are applied.
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        gateway: GenerationPort,
        activity_checker: ActivityCheckPort | None = None,
        clock: Callable[[], datetime] | None = None,
        rng_factory: Callable[[], random.Random] | None = None,
        lease_ttl_seconds: int = 90,
        max_conflict_retries: int = 1,
        generation_timeout_seconds: float | None = None,
        max_transcript_turns: int = 40,
        applier: EffectApplier | None = None,
        logger: logging.Logger | None = None,
    ):
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._activity_checker = activity_checker
        self._clock = clock or datetime.utcnow
        self._rng_factory = rng_factory or random.Random
        self._lease_ttl_seconds = lease_ttl_seconds
        self._max_conflict_retries = max_conflict_retries
        self._generation_timeout_seconds = generation_timeout_seconds
        self._max_transcript_turns = max_transcript_turns
        self._logger = logger or logging.getLogger(__name__)
        self._applier = applier or EffectApplier(rng_factory=self._rng_factory, logger=self._logger)

    # -- start ------------------------------------------------------------

    async def start_session(self, request: StartSessionInput) -> StartSessionResult:
        claim_token = uuid.uuid4().hex
        now = self._clock()

        with self._uow_factory() as uow:
            character = uow.characters.get(request.character_id)
            if character is None:
                raise NotFoundError("character", request.character_id)
            second = None
            if request.second_character_id:
                if request.second_character_id == request.character_id:
                    raise PreconditionError("second participant must be a different character")
                second = uow.characters.get(request.second_character_id)
                if second is None:
                    raise NotFoundError("character", request.second_character_id)

            for participant_id in filter(None, (request.character_id, request.second_character_id)):
                self._check_can_start(uow, participant_id)

            campaign_id = request.campaign_id or character.campaign_id
            campaign = uow.campaigns.get(campaign_id) if campaign_id else None
            if campaign_id and campaign is None:
                raise NotFoundError("campaign", campaign_id)

            companion_names = []
            for companion in uow.companions.list_active_for_character(character.id):
                npc = uow.npcs.get(companion.npc_id)
                if npc is not None:
                    companion_names.append(npc.name)
            system_context = build_system_context(
                character,
                companions=companion_names,
                second_character=second,
                campaign=campaign,
                extra=request.system_context,
            )

            game_session = uow.sessions.reserve(
                character_id=character.id,
                second_character_id=second.id if second is not None else None,
                campaign_id=campaign_id,
                title=(request.title or "").strip() or f"{character.name}'s adventure",
                provider_preference=request.provider,
                system_context=system_context,
                started_at=now,
                game_start_day=character.game_day,
                game_start_year=character.game_year,
                state_json="{}",
            )
            if game_session is None:
                existing = None
                for participant_id in filter(None, (character.id, request.second_character_id)):
                    existing = existing or uow.sessions.find_open_for_character(participant_id)
                raise SessionConflictError(existing.id if existing else None, "open_session_exists")

            session_id = game_session.id
            self._acquire_lease(uow, session_id, claim_token, now)
            context = SessionContext(
                session_id=session_id,
                character_id=character.id,
                status=game_session.status,
                system_context=system_context,
                transcript=[],
                provider_preference=request.provider,
                recap=None,
                turn_count=0,
                participant_turns=0,
                start_row_version=game_session.row_version,
                now=now,
            )
            opening = (request.opening_prompt or "").strip() or opening_prompt(character.name)
            uow.commit()

        self._logger.info("session %s reserved for character %s", session_id, request.character_id)
        try:
            output = await self._generate(system_context, [], opening, request.provider)
            return self._phase_c_start(context, claim_token, opening, output)
        except StaleClaimError:
            self._discard_reservation(session_id)
            raise SessionConflictError(session_id, "stale_claim_or_row_version") from None
        except (Exception, asyncio.CancelledError):
            self._discard_reservation(session_id)
            raise

    def _check_can_start(self, uow: Any, character_id: str) -> None:
        open_session = uow.sessions.find_open_for_character(character_id)
        if open_session is not None:
            raise SessionConflictError(open_session.id, "open_session_exists")
        unclaimed = uow.sessions.find_unclaimed_for_character(character_id)
        if unclaimed is not None:
            raise SessionConflictError(unclaimed.id, "unclaimed_rewards")
        if self._activity_checker is not None:
            activity_id = self._activity_checker.find_conflicting_activity(character_id)
            if activity_id:
                raise SessionConflictError(activity_id, "conflicting_activity")

    def _phase_c_start(
        self,
        context: SessionContext,
        claim_token: str,
        opening: str,
        output: GenerationResult,
    ) -> StartSessionResult:
        with self._uow_factory() as uow:
            game_session = self._validate_claim(uow, context, claim_token)
            uow.turns.add(context.session_id, "system", opening, meta_json=dump_json({"synthetic": True}))
            narrative, effects, _ = self._record_generation(uow, game_session, output)
            uow.leases.release(context.session_id, claim_token)
            uow.commit()
            view = self._view(uow, context.session_id)

        self._logger.info("session %s started via %s", context.session_id, output.provider)
        return StartSessionResult(session=view, narrative=narrative, provider=output.provider, effects=effects)

    def _discard_reservation(self, session_id: str) -> None:
        try:
            with self._uow_factory() as uow:
                uow.sessions.delete(session_id)
                uow.commit()
        except Exception:
            self._logger.exception("could not discard reserved session %s", session_id)
            return
        self._logger.warning("session %s discarded after failed opening", session_id)

    # -- messages ---------------------------------------------------------

    async def post_action(self, session_id: str, action: str, provider: str | None = None) -> MessageResult:
        action = (action or "").strip()
        if not action:
            raise PreconditionError("action text is empty")

        for attempt in range(self._max_conflict_retries + 1):
            claim_token = uuid.uuid4().hex
            context = self._phase_a(session_id, claim_token, expected=("active",))
            try:
                output = await self._generate(
                    context.system_context,
                    context.transcript,
                    action,
                    provider or context.provider_preference,
                )
                return self._phase_c_message(context, claim_token, action, output)
            except StaleClaimError:
                self._release_claim_best_effort(session_id, claim_token)
                if attempt < self._max_conflict_retries:
                    self._logger.info("session %s changed during generation, retrying", session_id)
                    continue
                raise SessionConflictError(session_id, "stale_claim_or_row_version") from None
            except (Exception, asyncio.CancelledError):
                self._release_claim_best_effort(session_id, claim_token)
                raise

        raise SessionConflictError(session_id, "max_retries_exhausted")

    def _phase_c_message(
        self,
        context: SessionContext,
        claim_token: str,
        action: str,
        output: GenerationResult,
    ) -> MessageResult:
        with self._uow_factory() as uow:
            game_session = self._validate_claim(uow, context, claim_token)
            uow.turns.add(context.session_id, "participant", action)
            narrative, effects, turn_seq = self._record_generation(uow, game_session, output)
            uow.leases.release(context.session_id, claim_token)
            uow.commit()

        return MessageResult(
            session_id=context.session_id,
            narrative=narrative,
            provider=output.provider,
            effects=effects,
            turn_seq=turn_seq,
        )

    def _record_generation(
        self,
        uow: Any,
        game_session: Any,
        output: GenerationResult,
    ) -> tuple[str, AppliedEffects, int]:
        """Append the generator turn, apply its directives and CAS the session row."""
        parsed = markers.parse(output.text)
        narrative = parsed.clean_text or EMPTY_NARRATIVE
        meta: dict[str, Any] = {"provider": output.provider}
        if narrative != output.text:
            meta["raw"] = output.text
        generator_turn = uow.turns.add(game_session.id, "generator", narrative, meta_json=dump_json(meta))

        character = uow.characters.get(game_session.character_id)
        second = uow.characters.get(game_session.second_character_id) if game_session.second_character_id else None
        state = parse_json_dict(game_session.state_json)
        ctx = ApplyContext(
            uow=uow,
            session_id=game_session.id,
            turn_seq=generator_turn.seq,
            character=character,
            second_character=second,
            campaign_id=game_session.campaign_id or character.campaign_id,
            state=state,
        )
        effects = self._applier.apply(ctx, parsed)
        for note in effects.system_notes:
            uow.turns.add(game_session.id, "system", note, meta_json=dump_json({"synthetic": True}))

        ok = uow.sessions.cas_apply_update(
            session_id=game_session.id,
            expected_row_version=game_session.row_version,
            values={"state_json": dump_json(ctx.state), "last_provider": output.provider},
        )
        if not ok:
            raise StaleClaimError("cas_failed")
        return narrative, effects, generator_turn.seq

    # -- end --------------------------------------------------------------

    async def end_session(self, session_id: str, provider: str | None = None) -> EndSessionResult:
        for attempt in range(self._max_conflict_retries + 1):
            claim_token = uuid.uuid4().hex
            context = self._phase_a(session_id, claim_token, expected=("active",))
            try:
                analysis: SessionAnalysis | None = None
                analysis_error: str | None = None
                if context.participant_turns > 0:
                    try:
                        output = await self._generate(
                            context.system_context,
                            context.transcript,
                            analysis_prompt(context.inventory, context.gold),
                            provider or context.provider_preference,
                        )
                        analysis = parse_analysis(output.text)
                    except GenerationError as exc:
                        self._logger.warning("analysis for session %s failed: %s", session_id, exc)
                        analysis = SessionAnalysis(summary=DEFAULT_SUMMARY, scores=ActivityScores())
                        analysis_error = str(exc)
                return self._phase_c_end(context, claim_token, analysis, analysis_error)
            except StaleClaimError:
                self._release_claim_best_effort(session_id, claim_token)
                if attempt < self._max_conflict_retries:
                    continue
                raise SessionConflictError(session_id, "stale_claim_or_row_version") from None
            except (Exception, asyncio.CancelledError):
                self._release_claim_best_effort(session_id, claim_token)
                raise

        raise SessionConflictError(session_id, "max_retries_exhausted")

    def _phase_c_end(
        self,
        context: SessionContext,
        claim_token: str,
        analysis: SessionAnalysis | None,
        analysis_error: str | None,
    ) -> EndSessionResult:
        now = self._clock()
        with self._uow_factory() as uow:
            game_session = self._validate_claim(uow, context, claim_token)
            character = uow.characters.get(game_session.character_id)

            if analysis is None:
                summary = EMPTY_SESSION_SUMMARY
                rewards = zero_rewards()
                change = 0
                days = 0
            else:
                hours = max(0.0, (now - game_session.started_at).total_seconds() / 3600)
                summary = analysis.summary
                rewards = calculate_rewards(character.level, hours, analysis.scores, self._rng_factory())
                change = hp_change(character.max_hp, character.current_hp, analysis.scores)
                days = days_elapsed(analysis.scores)

            end_day, end_year = advance_date(game_session.game_start_day, game_session.game_start_year, days)
            if days:
                character.game_day = end_day
                character.game_year = end_year

            values: dict[str, Any] = {
                "status": "completed",
                "summary": summary,
                "rewards_json": dump_json(rewards.as_dict()),
                "hp_change": change,
                "ended_at": now,
                "game_end_day": end_day,
                "game_end_year": end_year,
            }
            if analysis is not None:
                values["analysis_json"] = dump_json(
                    {
                        "scores": asdict(analysis.scores),
                        "items_consumed": analysis.items_consumed,
                        "items_gained": analysis.items_gained,
                        "gold_spent": analysis.gold_spent,
                    }
                )
            if not uow.sessions.cas_apply_update(context.session_id, context.start_row_version, values):
                raise StaleClaimError("cas_failed")
            uow.sessions.release_participants(context.session_id)

            if analysis_error is not None:
                uow.outbox.add(
                    session_id=context.session_id,
                    character_id=character.id,
                    event_type="analysis_failed",
                    idempotency_key=f"analysis_failed:{context.start_row_version}",
                    payload_json=dump_json({"session_id": context.session_id, "error": analysis_error}),
                )
            uow.outbox.add(
                session_id=context.session_id,
                character_id=character.id,
                event_type="session_completed",
                idempotency_key="session_completed",
                payload_json=dump_json(
                    {
                        "session_id": context.session_id,
                        "character_id": character.id,
                        "rewards": rewards.as_dict(),
                        "hp_change": change,
                        "days_elapsed": days,
                    }
                ),
            )
            uow.leases.release(context.session_id, claim_token)
            uow.commit()
            view = self._view(uow, context.session_id, include_turns=False)

        self._logger.info("session %s completed (xp=%s, days=%s)", context.session_id, rewards.xp, days)
        return EndSessionResult(
            session=view,
            summary=summary,
            rewards=rewards,
            hp_change=change,
            days_elapsed=days,
            analysis=analysis,
        )

    # -- pause / resume / abort -------------------------------------------

    def pause_session(self, session_id: str) -> SessionView:
        def pause(uow: Any, game_session: Any) -> None:
            self._require_status(game_session, ("active",))
            self._cas_or_conflict(uow, game_session, {"status": "paused"})

        self._guarded(session_id, pause)
        self._logger.info("session %s paused", session_id)
        return self.get_session(session_id)

    async def resume_session(self, session_id: str, provider: str | None = None) -> SessionView:
        claim_token = uuid.uuid4().hex
        context = self._phase_a(session_id, claim_token, expected=("paused",))
        try:
            recap = context.recap
            if not recap and context.turn_count > RECAP_MIN_TURNS:
                try:
                    output = await self._generate(
                        context.system_context,
                        context.transcript,
                        RECAP_PROMPT,
                        provider or context.provider_preference,
                    )
                    recap = markers.clean_text(output.text) or None
                except GenerationError as exc:
                    self._logger.warning("recap for session %s failed: %s", session_id, exc)

            with self._uow_factory() as uow:
                game_session = self._validate_claim(uow, context, claim_token)
                values: dict[str, Any] = {"status": "active"}
                if recap and recap != game_session.recap:
                    values["recap"] = recap
                if not uow.sessions.cas_apply_update(session_id, context.start_row_version, values):
                    raise StaleClaimError("cas_failed")
                uow.leases.release(session_id, claim_token)
                uow.commit()
        except StaleClaimError:
            self._release_claim_best_effort(session_id, claim_token)
            raise SessionConflictError(session_id, "stale_claim_or_row_version") from None
        except (Exception, asyncio.CancelledError):
            self._release_claim_best_effort(session_id, claim_token)
            raise

        self._logger.info("session %s resumed", session_id)
        return self.get_session(session_id)

    def abort_session(self, session_id: str) -> None:
        def abort(uow: Any, game_session: Any) -> None:
            self._require_status(game_session, ("active", "paused"))
            uow.outbox.add(
                session_id=session_id,
                character_id=game_session.character_id,
                event_type="session_aborted",
                idempotency_key="session_aborted",
                payload_json=dump_json({"session_id": session_id, "character_id": game_session.character_id}),
            )
            uow.sessions.delete(session_id)

        self._guarded(session_id, abort)
        self._logger.info("session %s aborted", session_id)

    # -- rewards and wrap-up ----------------------------------------------

    def claim_rewards(self, session_id: str) -> ClaimResult:
        def claim(uow: Any, game_session: Any) -> ClaimResult:
            self._require_status(game_session, ("completed",))
            if game_session.rewards_claimed or not uow.sessions.mark_rewards_claimed(session_id):
                raise RewardsAlreadyClaimedError(session_id)

            character = uow.characters.get(game_session.character_id)
            rewards = parse_json_dict(game_session.rewards_json)
            xp = max(0, int(rewards.get("xp") or 0))
            gold = Currency.from_dict(rewards.get("gold"))
            loot = rewards.get("loot") or None
            change = int(game_session.hp_change or 0)

            character.experience = int(character.experience or 0) + xp
            store_purse(character, purse_of(character).earn(gold.to_copper()))
            character.current_hp = max(1, min(character.max_hp, character.current_hp + change))
            if loot:
                lines = load_lines(character.inventory_json)
                add_line(lines, build_custom_item(loot), 1)
                character.inventory_json = dump_json(lines)

            awarded = []
            if xp > 0:
                for companion in uow.companions.list_active_for_character(character.id):
                    if companion.progression_type != "class_based":
                        continue
                    companion.experience = int(companion.experience or 0) + xp
                    npc = uow.npcs.get(companion.npc_id)
                    awarded.append(npc.name if npc is not None else companion.id)

            uow.outbox.add(
                session_id=session_id,
                character_id=character.id,
                event_type="rewards_claimed",
                idempotency_key="rewards_claimed",
                payload_json=dump_json({"session_id": session_id, "xp": xp, "gold": gold.to_dict(), "loot": loot}),
            )
            return ClaimResult(
                session_id=session_id,
                character_id=character.id,
                xp_awarded=xp,
                gold_awarded=gold.to_dict(),
                loot=loot,
                hp_change=change,
                new_experience=character.experience,
                new_gold=purse_of(character).to_dict(),
                new_hp=character.current_hp,
                companions_awarded=awarded,
            )

        result = self._guarded(session_id, claim)
        self._logger.info("rewards for session %s claimed (xp=%s)", session_id, result.xp_awarded)
        return result

    def apply_inventory_changes(
        self,
        session_id: str,
        consumed: list[str] | None = None,
        gained: list[str] | None = None,
        gold_spent: dict[str, int] | None = None,
    ) -> InventoryChangeResult:
        def apply(uow: Any, game_session: Any) -> InventoryChangeResult:
            self._require_status(game_session, ("completed",))
            state = parse_json_dict(game_session.state_json)
            if state.get("inventory_changes_applied"):
                raise PreconditionError(f"inventory changes for session {session_id} were already applied")

            character = uow.characters.get(game_session.character_id)
            lines = load_lines(character.inventory_json)
            removed, added, not_found = [], [], []
            for entry in consumed or []:
                name, quantity = parse_item_quantity(entry)
                if not name:
                    continue
                if remove_quantity(lines, name, quantity, partial=True) is None:
                    not_found.append(name)
                else:
                    removed.append(f"{name} x{quantity}" if quantity > 1 else name)
            for entry in gained or []:
                name, quantity = parse_item_quantity(entry)
                if not name:
                    continue
                add_line(lines, build_custom_item(name), quantity)
                added.append(f"{name} x{quantity}" if quantity > 1 else name)
            character.inventory_json = dump_json(lines)

            before = purse_of(character)
            after = before.spend_clamped(Currency.from_dict(gold_spent).to_copper())
            store_purse(character, after)

            state["inventory_changes_applied"] = True
            self._cas_or_conflict(uow, game_session, {"state_json": dump_json(state)})
            return InventoryChangeResult(
                removed=removed,
                added=added,
                not_found=not_found,
                gold_spent_cp=before.to_copper() - after.to_copper(),
                new_gold=after.to_dict(),
                inventory=lines,
            )

        return self._guarded(session_id, apply)

    def confirm_recruitment(
        self,
        session_id: str,
        npc_id: str,
        progression_type: str = "npc_stats",
        companion_class: str | None = None,
    ) -> RecruitmentResult:
        if progression_type not in ("npc_stats", "class_based"):
            raise PreconditionError(f"unknown progression type: {progression_type}")

        def confirm(uow: Any, game_session: Any) -> RecruitmentResult:
            self._require_status(game_session, ("active", "paused"))
            state = parse_json_dict(game_session.state_json)
            pending = list(state.get("pending_recruitment") or [])
            if npc_id not in pending:
                raise PreconditionError(f"no pending recruitment offer for npc {npc_id}")
            npc = uow.npcs.get(npc_id)
            if npc is None:
                raise NotFoundError("npc", npc_id)
            if uow.companions.get_active_for_npc(npc_id) is not None:
                raise PreconditionError(f"{npc.name} is already a companion")

            companion = uow.companions.create(
                npc_id=npc_id,
                character_id=game_session.character_id,
                progression_type=progression_type,
                companion_class=companion_class,
                dexterity=npc.dexterity,
                session_id=session_id,
            )
            pending.remove(npc_id)
            state["pending_recruitment"] = pending
            self._cas_or_conflict(uow, game_session, {"state_json": dump_json(state)})
            uow.outbox.add(
                session_id=session_id,
                character_id=game_session.character_id,
                event_type="companion_recruited",
                idempotency_key=f"companion_recruited:{npc_id}",
                payload_json=dump_json({"session_id": session_id, "npc_id": npc_id, "companion_id": companion.id}),
            )
            return RecruitmentResult(
                companion_id=companion.id,
                npc_id=npc_id,
                name=npc.name,
                progression_type=progression_type,
            )

        result = self._guarded(session_id, confirm)
        self._logger.info("session %s: %s joined the party", session_id, result.name)
        return result

    # -- reads ------------------------------------------------------------

    def get_session(self, session_id: str, include_turns: bool = True) -> SessionView:
        with self._uow_factory() as uow:
            return self._view(uow, session_id, include_turns=include_turns)

    def get_active_session(self, character_id: str) -> SessionView | None:
        with self._uow_factory() as uow:
            game_session = uow.sessions.find_open_for_character(character_id)
            if game_session is None:
                game_session = uow.sessions.find_unclaimed_for_character(character_id)
            if game_session is None:
                return None
            return self._view(uow, game_session.id)

    def _view(self, uow: Any, session_id: str, include_turns: bool = True) -> SessionView:
        game_session = uow.sessions.get(session_id)
        if game_session is None:
            raise NotFoundError("session", session_id)
        state = parse_json_dict(game_session.state_json)
        turns = []
        if include_turns:
            for turn in uow.turns.list_for_session(session_id):
                meta = parse_json_dict(turn.meta_json)
                turns.append(
                    TurnView(seq=turn.seq, role=turn.role, content=turn.content, synthetic=bool(meta.get("synthetic")))
                )
        game_end = None
        if game_session.game_end_day is not None:
            game_end = {"day": game_session.game_end_day, "year": game_session.game_end_year}
        rewards = parse_json_dict(game_session.rewards_json) if game_session.rewards_json else None
        return SessionView(
            id=game_session.id,
            character_id=game_session.character_id,
            second_character_id=game_session.second_character_id,
            campaign_id=game_session.campaign_id,
            title=game_session.title,
            status=game_session.status,
            rewards_claimed=bool(game_session.rewards_claimed),
            rewards=rewards,
            summary=game_session.summary,
            recap=game_session.recap,
            hp_change=int(game_session.hp_change or 0),
            started_at=game_session.started_at,
            ended_at=game_session.ended_at,
            game_start={"day": game_session.game_start_day, "year": game_session.game_start_year},
            game_end=game_end,
            combat=CombatState.from_dict(state["combat"]) if state.get("combat") else None,
            active_merchant=state.get("active_merchant"),
            turns=turns,
        )

    # -- claims and helpers -----------------------------------------------

    def _phase_a(self, session_id: str, claim_token: str, expected: tuple[str, ...]) -> SessionContext:
        now = self._clock()
        with self._uow_factory() as uow:
            game_session = uow.sessions.get(session_id)
            if game_session is None:
                raise NotFoundError("session", session_id)
            self._require_status(game_session, expected)
            self._acquire_lease(uow, session_id, claim_token, now)

            character = uow.characters.get(game_session.character_id)
            turns = uow.turns.recent(session_id, limit=self._max_transcript_turns)
            context = SessionContext(
                session_id=session_id,
                character_id=game_session.character_id,
                status=game_session.status,
                system_context=game_session.system_context,
                transcript=[{"role": turn.role, "content": turn.content} for turn in turns],
                provider_preference=game_session.provider_preference,
                recap=game_session.recap,
                turn_count=uow.turns.count(session_id),
                participant_turns=uow.turns.count(session_id, role="participant"),
                start_row_version=game_session.row_version,
                now=now,
                inventory=describe(load_lines(character.inventory_json)) if character is not None else "",
                gold=str(purse_of(character)) if character is not None else "",
            )
            uow.commit()
            return context

    def _validate_claim(self, uow: Any, context: SessionContext, claim_token: str) -> Any:
        if not uow.leases.validate_token(context.session_id, claim_token, self._clock()):
            raise StaleClaimError("claim_invalid")
        game_session = uow.sessions.get(context.session_id)
        if game_session is None:
            raise StaleClaimError("session_missing")
        if game_session.row_version != context.start_row_version:
            raise StaleClaimError("row_version_changed")
        return game_session

    def _acquire_lease(self, uow: Any, session_id: str, claim_token: str, now: datetime) -> None:
        expires_at = now + timedelta(seconds=self._lease_ttl_seconds)
        if not uow.leases.acquire_or_steal(session_id, claim_token, now=now, expires_at=expires_at):
            raise SessionBusyError(session_id)

    def _guarded(self, session_id: str, operation: Callable[[Any, Any], Any]) -> Any:
        """Run a short operation under the session lease within a single transaction."""
        claim_token = uuid.uuid4().hex
        with self._uow_factory() as uow:
            game_session = uow.sessions.get(session_id)
            if game_session is None:
                raise NotFoundError("session", session_id)
            self._acquire_lease(uow, session_id, claim_token, self._clock())
            result = operation(uow, game_session)
            uow.leases.release(session_id, claim_token)
            uow.commit()
            return result

    def _cas_or_conflict(self, uow: Any, game_session: Any, values: dict[str, Any]) -> None:
        if not uow.sessions.cas_apply_update(game_session.id, game_session.row_version, values):
            raise SessionConflictError(game_session.id, "row_version_conflict")

    @staticmethod
    def _require_status(game_session: Any, expected: tuple[str, ...]) -> None:
        if game_session.status not in expected:
            raise InvalidSessionState(game_session.id, game_session.status, expected)

    def _release_claim_best_effort(self, session_id: str, claim_token: str) -> None:
        try:
            with self._uow_factory() as uow:
                uow.leases.release(session_id, claim_token)
                uow.commit()
        except Exception:
            return

    async def _generate(
        self,
        system_context: str,
        transcript: list[dict[str, Any]],
        text: str,
        preferred: str | None,
    ) -> GenerationResult:
        call = self._gateway.invoke(system_context, transcript, text, preferred=preferred)
        if self._generation_timeout_seconds is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._generation_timeout_seconds)
        except asyncio.TimeoutError:
            raise GenerationTimeoutError(self._generation_timeout_seconds) from None
