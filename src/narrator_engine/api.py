"""HTTP surface for the session engine and merchant trades."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import EngineSettings, build_default_gateway
from .core.engine import SessionEngine
from .core.errors import (
    GenerationError,
    GenerationTimeoutError,
    ItemNotAvailableError,
    NarratorEngineError,
    NoProviderAvailableError,
    NotFoundError,
    PersistenceError,
    PreconditionError,
    ProviderUnavailableError,
    SessionBusyError,
    SessionConflictError,
    StaleClaimError,
)
from .core.trade import TradeService
from .core.types import StartSessionInput
from .persistence.sqlalchemy import open_database, unit_of_work_factory
from .providers import ProviderGateway


class StartSessionBody(BaseModel):
    character_id: str
    title: Optional[str] = None
    second_character_id: Optional[str] = None
    campaign_id: Optional[str] = None
    provider: Optional[str] = None
    system_context: Optional[str] = None
    opening_prompt: Optional[str] = None


class MessageBody(BaseModel):
    action: str
    provider: Optional[str] = None


class ProviderBody(BaseModel):
    provider: Optional[str] = None


class RecruitmentBody(BaseModel):
    npc_id: str
    progression_type: str = "npc_stats"
    companion_class: Optional[str] = None


class InventoryBody(BaseModel):
    consumed: list[str] = Field(default_factory=list)
    gained: list[str] = Field(default_factory=list)
    gold_spent: dict[str, int] = Field(default_factory=dict)


class TradeBody(BaseModel):
    character_id: str
    item_name: str
    quantity: int = Field(default=1, ge=1)


def error_status(exc: NarratorEngineError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (SessionConflictError, SessionBusyError, StaleClaimError)):
        return 409
    if isinstance(exc, PreconditionError):
        return 400
    if isinstance(exc, (NoProviderAvailableError, ProviderUnavailableError)):
        return 503
    if isinstance(exc, GenerationTimeoutError):
        return 504
    if isinstance(exc, GenerationError):
        return 502
    if isinstance(exc, PersistenceError):
        return 500
    return 500


async def _engine_error_handler(request: Request, exc: NarratorEngineError) -> JSONResponse:
    content: dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, SessionConflictError):
        content["conflicting_id"] = exc.existing_session_id
        content["reason"] = exc.reason
    elif isinstance(exc, SessionBusyError):
        content["conflicting_id"] = exc.session_id
    elif isinstance(exc, (NoProviderAvailableError, ProviderUnavailableError)):
        content["reason"] = exc.reason
    elif isinstance(exc, ItemNotAvailableError):
        content["candidates"] = exc.candidates
    return JSONResponse(status_code=error_status(exc), content=content)


def build_router(engine: SessionEngine, trade: TradeService, gateway: ProviderGateway) -> APIRouter:
    router = APIRouter()

    @router.post("/sessions", status_code=201)
    async def start_session(body: StartSessionBody):
        return await engine.start_session(StartSessionInput(**body.model_dump()))

    @router.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        return engine.get_session(session_id)

    @router.post("/sessions/{session_id}/messages")
    async def post_message(session_id: str, body: MessageBody):
        return await engine.post_action(session_id, body.action, provider=body.provider)

    @router.post("/sessions/{session_id}/end")
    async def end_session(session_id: str, body: Optional[ProviderBody] = None):
        return await engine.end_session(session_id, provider=body.provider if body else None)

    @router.post("/sessions/{session_id}/pause")
    async def pause_session(session_id: str):
        return engine.pause_session(session_id)

    @router.post("/sessions/{session_id}/resume")
    async def resume_session(session_id: str, body: Optional[ProviderBody] = None):
        return await engine.resume_session(session_id, provider=body.provider if body else None)

    @router.post("/sessions/{session_id}/abort")
    async def abort_session(session_id: str):
        engine.abort_session(session_id)
        return {"ok": True, "session_id": session_id}

    @router.post("/sessions/{session_id}/claim")
    async def claim_rewards(session_id: str):
        return engine.claim_rewards(session_id)

    @router.post("/sessions/{session_id}/recruitment")
    async def confirm_recruitment(session_id: str, body: RecruitmentBody):
        return engine.confirm_recruitment(
            session_id,
            body.npc_id,
            progression_type=body.progression_type,
            companion_class=body.companion_class,
        )

    @router.post("/sessions/{session_id}/inventory")
    async def apply_inventory(session_id: str, body: InventoryBody):
        return engine.apply_inventory_changes(
            session_id,
            consumed=body.consumed,
            gained=body.gained,
            gold_spent=body.gold_spent,
        )

    @router.get("/characters/{character_id}/active-session")
    async def active_session(character_id: str):
        return {"session": engine.get_active_session(character_id)}

    @router.post("/merchants/{merchant_id}/buy")
    async def buy(merchant_id: str, body: TradeBody):
        return trade.buy_item(merchant_id, body.character_id, body.item_name, body.quantity)

    @router.post("/merchants/{merchant_id}/sell")
    async def sell(merchant_id: str, body: TradeBody):
        return trade.sell_item(merchant_id, body.character_id, body.item_name, body.quantity)

    @router.get("/providers/status")
    async def provider_status():
        return {"providers": await gateway.status()}

    return router


def create_app(engine: SessionEngine, trade: TradeService, gateway: ProviderGateway) -> FastAPI:
    app = FastAPI(title="narrator-engine")
    app.include_router(build_router(engine, trade, gateway))
    app.add_exception_handler(NarratorEngineError, _engine_error_handler)
    return app


def build_app(settings: EngineSettings | None = None) -> FastAPI:
    settings = settings or EngineSettings.from_env()
    uow_factory = unit_of_work_factory(open_database(settings.database_url))

    gateway = build_default_gateway(settings)
    engine = SessionEngine(
        uow_factory=uow_factory,
        gateway=gateway,
        lease_ttl_seconds=settings.lease_ttl_seconds,
        generation_timeout_seconds=settings.generation_timeout_seconds,
        max_transcript_turns=settings.max_transcript_turns,
    )
    return create_app(engine, TradeService(uow_factory), gateway)
