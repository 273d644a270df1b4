"""
FastAPI routes for the stake engine.
Session lifecycle, event/RSVP and UI collaborators call the engine through here.
"""

import time
import traceback
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.gzip import GZipMiddleware

from ..db.database import close_db, init_db, is_initialized
from ..db.models import StakeAgreement, StakeStatus, StakingInvite
from ..services.agreements import stake_store
from ..services.base import (
    EventMetadata,
    ManualStaker,
    OperationResult,
    RegisteredStaker,
    SessionMetadata,
    StakeEngineError,
    StakerIdentity,
    StakerTerm,
    ValidationError,
)
from ..services.directory import staker_directory
from ..services.identity import SessionIdentityResolver
from ..services.invites import invite_coordinator
from ..services.kv_store import KeyValueStore, create_kv_store
from ..services.reconciler import ConfigurationReconciler, StakeDraft
from ..services.settlement import format_settlement
from ..utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Stake Engine API"])

# Engine error code -> HTTP status
ERROR_STATUS = {
    "validation_error": 422,
    "not_found": 404,
    "invalid_state_transition": 409,
    "already_answered": 409,
    "transient_io": 503,
}


# ===================
# Pydantic Models
# ===================

class StakerFields(BaseModel):
    """Staker identity as sent by clients: a user id, or a manual name."""
    staker_user_id: Optional[str] = None
    manual_staker_name: Optional[str] = None
    manual_staker_id: Optional[str] = None

    def to_identity(self) -> StakerIdentity:
        if self.staker_user_id:
            return RegisteredStaker(user_id=self.staker_user_id)
        if self.manual_staker_name or self.manual_staker_id:
            return ManualStaker(name=self.manual_staker_name or "", directory_id=self.manual_staker_id)
        raise ValidationError("Missing staker identity")


class SessionMetadataFields(BaseModel):
    game_name: str = ""
    stakes: str = ""
    session_date: Optional[datetime] = None
    is_tournament: bool = False

    def to_metadata(self) -> SessionMetadata:
        return SessionMetadata(
            game_name=self.game_name,
            stakes=self.stakes,
            session_date=self.session_date,
            is_tournament=self.is_tournament,
        )


class UpsertStakeRequest(StakerFields, SessionMetadataFields):
    """Create or update one staker's terms on a session."""
    staked_player_id: str
    percentage: Decimal
    markup: Decimal = Decimal("1")


class SettleSessionRequest(BaseModel):
    buy_in: Decimal
    cashout: Decimal
    require_confirmation: Optional[bool] = None


class SettlementRequest(SettleSessionRequest):
    initiator_user_id: Optional[str] = None


class ConfirmSettlementRequest(BaseModel):
    confirming_user_id: str


class ReconcileRequest(SessionMetadataFields):
    staked_player_id: str
    temporary_session_ids: list[str] = Field(default_factory=list)


class InviteTerm(StakerFields):
    percentage: Decimal
    markup: Decimal = Decimal("1")
    amount_bought: Optional[Decimal] = None


class CreateInvitesRequest(BaseModel):
    staked_player_id: str
    event_name: str
    event_date: Optional[datetime] = None
    max_bullets: int = Field(default=1, ge=1)
    terms: list[InviteTerm]


class EventResultsRequest(BaseModel):
    staked_player_id: str
    buy_in: Decimal
    cashout: Decimal
    completed_at: Optional[datetime] = None


class ResolveIdentityRequest(BaseModel):
    owner_id: str


class StakeResponse(BaseModel):
    """Stake agreement response."""
    id: str
    session_id: str
    staked_player_id: str
    staker_user_id: Optional[str]
    manual_staker_name: Optional[str]
    manual_staker_id: Optional[str]
    is_off_platform_stake: bool
    stake_percentage: Decimal
    markup: Decimal
    total_buy_in: Decimal
    cashout: Decimal
    settlement_amount: Optional[Decimal]
    settlement_summary: Optional[str]
    status: str
    is_tournament: bool
    session_game_name: str
    session_stakes: str
    session_date: Optional[datetime]
    proposed_at: datetime
    settled_at: Optional[datetime]
    last_updated_at: datetime

    @classmethod
    def from_agreement(cls, agreement: StakeAgreement) -> "StakeResponse":
        amount = agreement.settlement_amount
        return cls(
            id=agreement.id,
            session_id=agreement.session_id,
            staked_player_id=agreement.staked_player_id,
            staker_user_id=agreement.staker_user_id,
            manual_staker_name=agreement.manual_staker_name,
            manual_staker_id=agreement.manual_staker_id,
            is_off_platform_stake=agreement.is_off_platform_stake,
            stake_percentage=agreement.stake_percentage,
            markup=agreement.markup,
            total_buy_in=agreement.total_buy_in,
            cashout=agreement.cashout,
            settlement_amount=amount,
            settlement_summary=format_settlement(amount) if amount is not None else None,
            status=agreement.status.value,
            is_tournament=agreement.is_tournament,
            session_game_name=agreement.session_game_name,
            session_stakes=agreement.session_stakes,
            session_date=agreement.session_date,
            proposed_at=agreement.proposed_at,
            settled_at=agreement.settled_at,
            last_updated_at=agreement.last_updated_at,
        )


class InviteResponse(BaseModel):
    """Staking invite response."""
    id: str
    event_id: str
    event_name: str
    event_date: Optional[datetime]
    staked_player_id: str
    staker_user_id: Optional[str]
    manual_staker_name: Optional[str]
    manual_staker_id: Optional[str]
    percentage: Decimal
    markup: Decimal
    max_bullets: int
    amount_bought: Optional[Decimal]
    session_buy_in: Optional[Decimal]
    session_cashout: Optional[Decimal]
    session_completed_at: Optional[datetime]
    status: str
    stake_id: Optional[str]
    created_at: datetime
    responded_at: Optional[datetime]

    @classmethod
    def from_invite(cls, invite: StakingInvite) -> "InviteResponse":
        return cls(
            id=invite.id,
            event_id=invite.event_id,
            event_name=invite.event_name,
            event_date=invite.event_date,
            staked_player_id=invite.staked_player_id,
            staker_user_id=invite.staker_user_id,
            manual_staker_name=invite.manual_staker_name,
            manual_staker_id=invite.manual_staker_id,
            percentage=invite.percentage,
            markup=invite.markup,
            max_bullets=invite.max_bullets,
            amount_bought=invite.amount_bought,
            session_buy_in=invite.session_buy_in,
            session_cashout=invite.session_cashout,
            session_completed_at=invite.session_completed_at,
            status=invite.status.value,
            stake_id=invite.stake_id,
            created_at=invite.created_at,
            responded_at=invite.responded_at,
        )


class ReconcileResponse(BaseModel):
    drafts: list[StakeDraft]
    created_stake_ids: list[str]
    migrated_stake_ids: list[str]
    removed_stake_ids: list[str]
    conflicts: list[str]
    error: Optional[str] = None


class IdentityResponse(BaseModel):
    runtime_key: str
    session_id: str


# ===================
# Helpers
# ===================

def _unwrap(result: OperationResult):
    """Return the value of a successful result; raise its error otherwise."""
    if not result.success:
        raise result.error
    return result.value


def _kv_store(request: Request) -> KeyValueStore:
    store = request.app.state.kv_store
    if store is None:
        raise HTTPException(status_code=503, detail="Local store not ready")
    return store


# ===================
# Sessions
# ===================

@router.put("/sessions/{session_id}/stakes", response_model=StakeResponse)
async def upsert_session_stake(session_id: str, payload: UpsertStakeRequest):
    """Create or update a staker's agreement on a session."""
    agreement = await stake_store.upsert(
        session_id,
        payload.to_identity(),
        payload.staked_player_id,
        payload.percentage,
        payload.markup,
        payload.to_metadata(),
    )
    return StakeResponse.from_agreement(agreement)


@router.get("/sessions/{session_id}/stakes", response_model=list[StakeResponse])
async def list_session_stakes(session_id: str):
    agreements = await stake_store.list_by_session(session_id)
    return [StakeResponse.from_agreement(a) for a in agreements]


@router.post("/sessions/{session_id}/settle")
async def settle_session(session_id: str, payload: SettleSessionRequest, request: Request):
    """Finalize a session: attach results to every active agreement and drop its drafts."""
    results = await stake_store.settle_session(
        session_id, payload.buy_in, payload.cashout, payload.require_confirmation,
    )
    kv_store = request.app.state.kv_store
    if kv_store is not None:
        await ConfigurationReconciler(kv_store, stake_store).clear_drafts(session_id)
    settled = [StakeResponse.from_agreement(r.value) for r in results if r.success]
    failed = [r.error_message for r in results if not r.success]
    return {"settled": settled, "failed": failed}


@router.post("/sessions/{session_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_session(session_id: str, payload: ReconcileRequest, request: Request):
    """Merge the cached drafts of a session with its persisted agreements."""
    reconciler = ConfigurationReconciler(_kv_store(request), stake_store, staker_directory)
    result = await reconciler.sync_session(
        session_id,
        payload.staked_player_id,
        payload.to_metadata(),
        payload.temporary_session_ids,
    )
    return ReconcileResponse(
        drafts=result.drafts,
        created_stake_ids=result.created_stake_ids,
        migrated_stake_ids=result.migrated_stake_ids,
        removed_stake_ids=result.removed_stake_ids,
        conflicts=result.conflicts,
        error=result.error.code if result.error else None,
    )


# ===================
# Stakes
# ===================

@router.post("/stakes/{stake_id}/settlement", response_model=StakeResponse)
async def attach_settlement(stake_id: str, payload: SettlementRequest):
    result = await stake_store.attach_settlement(
        stake_id,
        payload.buy_in,
        payload.cashout,
        payload.require_confirmation,
        payload.initiator_user_id,
    )
    return StakeResponse.from_agreement(_unwrap(result))


@router.post("/stakes/{stake_id}/confirm", response_model=StakeResponse)
async def confirm_settlement(stake_id: str, payload: ConfirmSettlementRequest):
    result = await stake_store.confirm_settlement(stake_id, payload.confirming_user_id)
    return StakeResponse.from_agreement(_unwrap(result))


@router.post("/stakes/{stake_id}/accept", response_model=StakeResponse)
async def accept_stake(stake_id: str):
    result = await stake_store.accept(stake_id)
    return StakeResponse.from_agreement(_unwrap(result))


@router.post("/stakes/{stake_id}/decline", response_model=StakeResponse)
async def decline_stake(stake_id: str):
    result = await stake_store.decline(stake_id)
    return StakeResponse.from_agreement(_unwrap(result))


@router.get("/players/{player_id}/stakes", response_model=list[StakeResponse])
async def list_player_stakes(player_id: str, status: Optional[StakeStatus] = Query(default=None)):
    agreements = await stake_store.list_by_player(player_id, status)
    return [StakeResponse.from_agreement(a) for a in agreements]


@router.get("/stakers/{staker_id}/stakes", response_model=list[StakeResponse])
async def list_staker_stakes(staker_id: str, status: Optional[StakeStatus] = Query(default=None)):
    agreements = await stake_store.list_by_staker(staker_id, status)
    return [StakeResponse.from_agreement(a) for a in agreements]


# ===================
# Events and invites
# ===================

@router.post("/events/{event_id}/invites", response_model=list[InviteResponse], status_code=201)
async def create_event_invites(event_id: str, payload: CreateInvitesRequest):
    invites = await invite_coordinator.create_invites(
        event_id,
        EventMetadata(
            name=payload.event_name,
            event_date=payload.event_date,
            max_bullets=payload.max_bullets,
        ),
        payload.staked_player_id,
        [
            StakerTerm(
                staker=term.to_identity(),
                percentage=term.percentage,
                markup=term.markup,
                amount_bought=term.amount_bought,
            )
            for term in payload.terms
        ],
    )
    return [InviteResponse.from_invite(i) for i in invites]


@router.post("/events/{event_id}/results")
async def attach_event_results(event_id: str, payload: EventResultsRequest):
    """Record session results on the pending invites of an event."""
    updated = await invite_coordinator.attach_session_results(
        event_id,
        payload.staked_player_id,
        payload.buy_in,
        payload.cashout,
        payload.completed_at,
    )
    return {"updated": updated}


@router.post("/invites/{invite_id}/accept", response_model=StakeResponse)
async def accept_invite(invite_id: str):
    result = await invite_coordinator.accept(invite_id)
    return StakeResponse.from_agreement(_unwrap(result))


@router.post("/invites/{invite_id}/decline", response_model=InviteResponse)
async def decline_invite(invite_id: str):
    result = await invite_coordinator.decline(invite_id)
    return InviteResponse.from_invite(_unwrap(result))


@router.get("/stakers/{staker_id}/invites", response_model=list[InviteResponse])
async def list_staker_invites(staker_id: str):
    invites = await invite_coordinator.list_for_staker(staker_id)
    return [InviteResponse.from_invite(i) for i in invites]


# ===================
# Session identities
# ===================

@router.post("/identities/{runtime_key}", response_model=IdentityResponse)
async def resolve_identity(runtime_key: str, payload: ResolveIdentityRequest, request: Request):
    resolver = SessionIdentityResolver(_kv_store(request))
    session_id = await resolver.resolve(runtime_key, payload.owner_id)
    return IdentityResponse(runtime_key=runtime_key, session_id=session_id)


@router.delete("/identities/{runtime_key}")
async def release_identity(runtime_key: str, request: Request):
    """Release a finalized session's identity along with its cached drafts."""
    kv_store = _kv_store(request)
    resolver = SessionIdentityResolver(kv_store)
    session_id = await resolver.peek(runtime_key)
    released = await resolver.release(runtime_key)
    if session_id is not None:
        await ConfigurationReconciler(kv_store, stake_store).clear_drafts(session_id)
    return {"released": released}


# ===================
# App factory
# ===================

def create_api_app(kv_store: Optional[KeyValueStore] = None) -> FastAPI:
    """Create the FastAPI application for the stake engine."""
    app = FastAPI(
        title="Stake Ledger API",
        description="Stake settlement and reconciliation engine",
        version="1.0.0",
    )
    app.state.kv_store = kv_store

    # GZip compression for large stake and invite listings
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Timing middleware: logs duration and adds X-Response-Time header
    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(elapsed_ms, 1),
        )
        return response

    @app.exception_handler(StakeEngineError)
    async def engine_error_handler(request: Request, exc: StakeEngineError):
        status_code = ERROR_STATUS.get(exc.code, 400)
        log = logger.warning if status_code >= 500 else logger.info
        log(
            "engine_error",
            path=str(request.url.path),
            method=request.method,
            error_code=exc.code,
            error=exc.message,
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.code, "detail": exc.message},
        )

    # Global exception handler: catches unhandled errors, returns clean JSON
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        if isinstance(exc, HTTPException):
            raise exc
        logger.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
            traceback=traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "detail": "An unexpected error occurred. Please try again.",
            },
        )

    app.include_router(router)

    @app.on_event("startup")
    async def startup():
        if not is_initialized():
            await init_db()
        if app.state.kv_store is None:
            app.state.kv_store = await create_kv_store()

    @app.on_event("shutdown")
    async def shutdown():
        close = getattr(app.state.kv_store, "close", None)
        if close is not None:
            await close()
        await close_db()

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "stakeledger-api"}

    return app
