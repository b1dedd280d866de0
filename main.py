from __future__ import annotations

import asyncio
import json
import logging
from functools import lru_cache
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import config
import payments
import replies
from auth import verify_token, verify_webhook_signature
from errors import QuotaExceeded, Unauthorized, UpstreamFailure
from events import BalanceBroker
from ledger import CreditAccount, CreditLedger
from replies import Analysis, ProfileDossier

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("kue")


class BalanceResponse(BaseModel):
    credits_remaining: int | None
    unlimited: bool
    is_pro: bool
    next_refill_at: str
    refill_in_seconds: int
    version: int


class ProfileCreateRequest(BaseModel):
    name: str
    category: str
    role_title: str | None = None
    context: str | None = None
    screenshot_url: str | None = None


class ProfileResponse(BaseModel):
    id: str
    name: str
    category: str
    role_title: str | None = None
    context: str | None = None
    screenshot_url: str | None = None
    created_at: str | None = None


class GenerateRequest(BaseModel):
    message_text: str
    profile_id: str | None = None
    profile: ProfileDossier | None = None
    tone: str = "casual"
    is_regeneration: bool = False


class GenerateResponse(BaseModel):
    replies: list[str]
    analysis: Analysis | None = None
    billed: bool
    credits: BalanceResponse


class OrderRequest(BaseModel):
    plan: str = Field(default=payments.PLAN_PRO)


class OrderResponse(BaseModel):
    order_id: str
    amount: int
    currency: str
    key_id: str


app = FastAPI(title="Kue Backend")

config.validate_env()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def _get_ledger() -> CreditLedger:
    if config.credit_store_backend() == "memory":
        from memstore import MemoryStore

        store = MemoryStore()
    else:
        from db import PostgresStore

        store = PostgresStore()
    return CreditLedger(store, BalanceBroker())


@app.exception_handler(QuotaExceeded)
async def quota_exceeded_handler(request: Request, exc: QuotaExceeded) -> JSONResponse:
    return JSONResponse(status_code=402, content={"detail": exc.to_detail()})


@app.exception_handler(Unauthorized)
async def unauthorized_handler(request: Request, exc: Unauthorized) -> JSONResponse:
    return JSONResponse(status_code=401, content={"detail": exc.message})


@app.exception_handler(UpstreamFailure)
async def upstream_failure_handler(request: Request, exc: UpstreamFailure) -> JSONResponse:
    return JSONResponse(status_code=502, content={"detail": exc.message})


def _read_access_token(headers: Any) -> str | None:
    header = headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip()
    return None


def _user_from_token(token: str | None) -> dict[str, Any]:
    if not token:
        raise Unauthorized("Missing auth token.")
    try:
        payload = verify_token(token, config.auth_secret())
    except ValueError as exc:
        raise Unauthorized(str(exc)) from exc
    user_id = payload.get("sub")
    if not user_id:
        raise Unauthorized("Invalid auth token.")
    email = payload.get("email")
    return {"id": str(user_id), "email": str(email).strip().lower() if email else None}


def _require_user(request: Request) -> dict[str, Any]:
    return _user_from_token(_read_access_token(request.headers))


def _balance_response(account: CreditAccount, ledger: CreditLedger) -> BalanceResponse:
    event = account.to_event()
    return BalanceResponse(
        credits_remaining=event["credits_remaining"],
        unlimited=event["unlimited"],
        is_pro=event["is_pro"],
        next_refill_at=event["next_refill_at"],
        refill_in_seconds=account.refill_in_seconds(ledger.now()),
        version=event["version"],
    )


def _profile_response(row: dict[str, Any]) -> ProfileResponse:
    created_at = row.get("created_at")
    return ProfileResponse(
        id=row["id"],
        name=row["name"],
        category=row["category"],
        role_title=row.get("role_title"),
        context=row.get("context"),
        screenshot_url=row.get("screenshot_url"),
        created_at=created_at.isoformat() if created_at else None,
    )


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/credits", response_model=BalanceResponse)
def get_credits(raw_request: Request) -> BalanceResponse:
    user = _require_user(raw_request)
    ledger = _get_ledger()
    account = ledger.get_balance(user["id"], email=user["email"])
    return _balance_response(account, ledger)


@app.websocket("/api/credits/stream")
async def credits_stream(websocket: WebSocket) -> None:
    token = websocket.query_params.get("token") or _read_access_token(websocket.headers)
    try:
        user = _user_from_token(token)
    except Unauthorized:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    ledger = _get_ledger()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    def forward(event: dict[str, Any]) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    async def watch_disconnect() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                queue.put_nowait(None)
                return

    unsubscribe = ledger.broker.subscribe(user["id"], forward)
    watcher = asyncio.create_task(watch_disconnect())
    try:
        account = await run_in_threadpool(ledger.get_balance, user["id"], user["email"])
        await websocket.send_json(account.to_event())
        while True:
            event = await queue.get()
            if event is None:
                break
            await websocket.send_json(event)
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        watcher.cancel()


@app.post("/api/profiles", response_model=ProfileResponse)
def create_profile(payload: ProfileCreateRequest, raw_request: Request) -> ProfileResponse:
    user = _require_user(raw_request)
    name = payload.name.strip()
    category = payload.category.strip()
    if not name or not category:
        raise HTTPException(status_code=400, detail="Name and relationship are required.")
    row = _get_ledger().store.create_profile(
        user_id=user["id"],
        name=name,
        category=category,
        role_title=(payload.role_title or "").strip() or None,
        context=(payload.context or "").strip() or None,
        screenshot_url=(payload.screenshot_url or "").strip() or None,
    )
    return _profile_response(row)


@app.get("/api/profiles")
def list_profiles(raw_request: Request) -> dict[str, Any]:
    user = _require_user(raw_request)
    rows = _get_ledger().store.list_profiles(user["id"])
    return {"profiles": [_profile_response(row).model_dump() for row in rows]}


@app.get("/api/profiles/{profile_id}", response_model=ProfileResponse)
def get_profile(profile_id: str, raw_request: Request) -> ProfileResponse:
    user = _require_user(raw_request)
    row = _get_ledger().store.get_profile(user["id"], profile_id)
    if not row:
        raise HTTPException(status_code=404, detail="Profile not found.")
    return _profile_response(row)


@app.delete("/api/profiles/{profile_id}")
def delete_profile(profile_id: str, raw_request: Request) -> dict[str, bool]:
    user = _require_user(raw_request)
    if not _get_ledger().store.delete_profile(user["id"], profile_id):
        raise HTTPException(status_code=404, detail="Profile not found.")
    return {"deleted": True}


def _resolve_dossier(request: GenerateRequest, user_id: str, ledger: CreditLedger) -> ProfileDossier:
    if request.profile_id:
        row = ledger.store.get_profile(user_id, request.profile_id)
        if not row:
            raise HTTPException(status_code=404, detail="Profile not found.")
        return ProfileDossier(
            name=row["name"],
            category=row["category"],
            role_title=row.get("role_title"),
            context=row.get("context"),
            screenshot_url=row.get("screenshot_url"),
        )
    if request.profile:
        return request.profile
    raise HTTPException(status_code=400, detail="A profile is required.")


@app.post("/api/replies", response_model=GenerateResponse)
def generate_replies(request: GenerateRequest, raw_request: Request) -> GenerateResponse:
    user = _require_user(raw_request)
    ledger = _get_ledger()

    text = request.message_text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Missing input text.")
    dossier = _resolve_dossier(request, user["id"], ledger)

    decision = ledger.authorize_and_bill(
        user["id"],
        request.is_regeneration,
        email=user["email"],
    )
    result = replies.generate_replies(
        text,
        dossier,
        request.tone,
        is_regeneration=request.is_regeneration,
    )
    return GenerateResponse(
        replies=result.replies,
        analysis=result.analysis,
        billed=decision.billed,
        credits=_balance_response(decision.account, ledger),
    )


@app.post("/api/payments/order", response_model=OrderResponse)
def create_payment_order(payload: OrderRequest, raw_request: Request) -> OrderResponse:
    if not config.payments_enabled():
        raise HTTPException(status_code=503, detail="Payments are disabled.")
    user = _require_user(raw_request)
    plan = payload.plan.strip().lower()
    try:
        payments.plan_price(plan)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Unsupported plan.") from exc
    ledger = _get_ledger()
    account = ledger.get_balance(user["id"], email=user["email"])
    if account.is_pro:
        raise HTTPException(status_code=409, detail="Already on Pro.")
    order = payments.create_order(plan, user["id"])
    return OrderResponse(**order)


@app.post("/api/payments/razorpay/webhook")
async def razorpay_webhook(request: Request) -> dict[str, Any]:
    if not config.payments_enabled():
        return {"received": False}
    raw_body = await request.body()
    signature = request.headers.get("x-razorpay-signature")
    if not verify_webhook_signature(raw_body, signature, config.razorpay_webhook_secret()):
        logger.warning("Rejected Razorpay webhook with invalid signature.")
        raise Unauthorized("Invalid webhook signature.")

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload.") from exc

    payment = payments.captured_payment(payload)
    if payment is None:
        return {"received": True, "upgraded": False}

    ledger = _get_ledger()
    user_id = None
    if payment["user_id"]:
        account = await run_in_threadpool(ledger.get_account, payment["user_id"])
        user_id = account.user_id if account else None
    if not user_id and payment["email"]:
        user_id = await run_in_threadpool(ledger.find_user_by_email, payment["email"])
    if not user_id:
        logger.warning(
            "Captured payment %s could not be matched to a user.", payment["payment_id"]
        )
        return {"received": True, "upgraded": False}

    await run_in_threadpool(ledger.grant_pro, user_id)
    return {"received": True, "upgraded": True}
