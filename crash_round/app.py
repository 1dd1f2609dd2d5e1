# app.py
"""
Crash Round – Service Entry Point

Responsibilities:
- FastAPI HTTP server + WebSocket event stream
- Request Validation (Pydantic)
- Saga Pattern (Debit -> Try Bet -> Refund if rejected)
- Ledger-safe payouts on cash-out, loss records at crash
- Durable round history

Integration:
- Uses engine.py (RoundEngine, explicit ActionResults)
- Uses db.py (Atomic Transactions, RoundRecord)
"""

from __future__ import annotations

import os
import asyncio
import logging
from decimal import Decimal
from contextlib import asynccontextmanager
from typing import Dict, Any, List, Optional, Set

from fastapi import (
    FastAPI,
    HTTPException,
    Depends,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from crash_round.engine import (
    RoundEngine,
    Bet,
    EngineEvent,
    HistoryEntry,
    Outcome,
    StateError,
    BetError,
)
from crash_round.db import (
    AsyncSessionLocal,
    init_db,
    close_db,
    get_session,
    get_or_create_user,
    debit,
    credit,
    refund,
    register_loss,
    get_round,
    save_round,
    list_rounds,
)
from crash_round.utils import format_balance, format_multiplier, log

# =====================================================
# LOGGING & CONFIG
# =====================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]
PERSIST_HISTORY_LIMIT = int(os.getenv("PERSIST_HISTORY_LIMIT", "100"))

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("crash_round.app")

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class UserInitRequest(BaseModel):
    user_id: str = Field(..., min_length=1)

class BetRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)  # Input is float, converted to Decimal internally

class CashoutRequest(BaseModel):
    user_id: str = Field(..., min_length=1)

# =====================================================
# SETTLEMENT RECORDER
# =====================================================

class SettlementRecorder:
    """
    Engine listener that turns each crash into durable facts:
    the round record plus a loss entry per losing bet.
    Also owns payouts whose first credit attempt failed.
    Writes run as tasks so the timer callback never awaits I/O.
    """

    PAYOUT_ATTEMPTS = 3
    PAYOUT_RETRY_DELAY_SEC = 0.5

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def __call__(self, event: EngineEvent) -> None:
        if event.kind != "crashed" or event.entry is None:
            return
        self._spawn(self.record(event.entry))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Settlement write failed", exc_info=task.exception())

    async def record(self, entry: HistoryEntry) -> None:
        """Round row and loss rows land in one commit, or not at all."""
        losers = [b for b in entry.bets if b.cash_out_at is None]
        async with AsyncSessionLocal() as session:
            if await get_round(session, entry.round_id) is not None:
                return

            # Account creation commits on its own, so do it before the batch
            users = {}
            for bet in losers:
                users[bet.user_id] = await get_or_create_user(session, bet.user_id)

            await save_round(session, entry, commit=False)
            for bet in losers:
                await register_loss(
                    session,
                    users[bet.user_id],
                    round_id=entry.round_id,
                    reference=f"crash_{format_multiplier(entry.multiplier)}",
                    commit=False,
                )
            await session.commit()
        log(f"Round {entry.round_id} persisted ({len(entry.bets)} bet(s))", "debug", logger.name)

    def queue_payout(self, user_id: str, amount: Decimal, round_id: str, reference: str) -> None:
        self._spawn(self.pay(user_id, amount, round_id, reference))

    async def pay(self, user_id: str, amount: Decimal, round_id: str, reference: str) -> None:
        for attempt in range(1, self.PAYOUT_ATTEMPTS + 1):
            try:
                async with AsyncSessionLocal() as session:
                    user = await get_or_create_user(session, user_id)
                    await credit(session=session, user=user, amount=amount, round_id=round_id, reference=reference)
                logger.info(f"Pending payout {format_balance(amount)} to {user_id} for round {round_id} credited")
                return
            except Exception:
                if attempt == self.PAYOUT_ATTEMPTS:
                    logger.error(
                        f"Payout {format_balance(amount)} to {user_id} for round {round_id} "
                        f"({reference}) abandoned after {attempt} attempts"
                    )
                    raise
                logger.warning(f"Payout to {user_id} for round {round_id} failed (attempt {attempt}), retrying")
                await asyncio.sleep(self.PAYOUT_RETRY_DELAY_SEC * attempt)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

# =====================================================
# WEBSOCKET BROADCAST
# =====================================================

class EventStream:
    """Fan-out of engine events to connected sockets, one bounded queue each."""

    QUEUE_SIZE = 256

    def __init__(self) -> None:
        self._queues: List[asyncio.Queue] = []

    def __call__(self, event: EngineEvent) -> None:
        message = event.to_dict()
        for queue in self._queues:
            if queue.full():
                # Slow consumer: drop its oldest frame
                queue.get_nowait()
            queue.put_nowait(message)

    def open(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.QUEUE_SIZE)
        self._queues.append(queue)
        return queue

    def close(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

# =====================================================
# LIFECYCLE
# =====================================================

engine: Optional[RoundEngine] = None
recorder = SettlementRecorder()
stream = EventStream()

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages startup and shutdown events.
    """
    global engine

    logger.info("Startup: Initializing Database...")
    await init_db()

    logger.info("Startup: Starting round engine...")
    engine = RoundEngine()
    engine.subscribe(recorder)
    engine.subscribe(stream)

    yield

    logger.info("Shutdown: Flushing settlements...")
    engine.unsubscribe(stream)
    engine.unsubscribe(recorder)
    await recorder.drain()
    await close_db()


def get_engine() -> RoundEngine:
    if engine is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Engine not started")
    return engine

# =====================================================
# APP INIT
# =====================================================

app = FastAPI(
    title="Crash Round API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =====================================================
# ERROR HANDLERS
# =====================================================

@app.exception_handler(StateError)
async def state_error_handler(_, exc: StateError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"error": "Game State Conflict", "detail": str(exc)},
    )

@app.exception_handler(BetError)
async def bet_error_handler(_, exc: BetError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid Bet", "detail": str(exc)},
    )

@app.exception_handler(ValueError)
async def value_error_handler(_, exc: ValueError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Value Error", "detail": str(exc)},
    )

# =====================================================
# API – USER
# =====================================================

@app.post("/api/init")
async def api_init(
    payload: UserInitRequest,
    session: AsyncSession = Depends(get_session),
):
    """
    Initialize user session and fetch balance.
    """
    user = await get_or_create_user(session, payload.user_id)
    return {
        "user_id": user.external_id,
        "balance": float(user.balance),
    }

# =====================================================
# API – OBSERVATION
# =====================================================

@app.get("/api/state")
async def api_state(game: RoundEngine = Depends(get_engine)) -> Dict[str, Any]:
    """
    Polling endpoint for round state. Crash point stays hidden until crash.
    """
    return game.snapshot()

@app.get("/api/history")
async def api_history(game: RoundEngine = Depends(get_engine)):
    """Last settled rounds, newest first."""
    return [entry.to_dict() for entry in game.history]

@app.get("/api/rounds")
async def api_rounds(
    limit: int = Query(20, ge=1, le=PERSIST_HISTORY_LIMIT),
    session: AsyncSession = Depends(get_session),
):
    records = await list_rounds(session, limit)
    return [r.to_dict() for r in records]

@app.get("/api/bets")
async def api_bets(game: RoundEngine = Depends(get_engine)):
    return {
        "round_id": game.round.round_id,
        "bets": [b.to_dict() for b in game.active_bets],
    }

# =====================================================
# API – BETTING & CASHOUT
# =====================================================

@app.post("/api/place-bet")
async def api_place_bet(
    payload: BetRequest,
    session: AsyncSession = Depends(get_session),
    game: RoundEngine = Depends(get_engine),
):
    """
    Places a bet with SAGA pattern consistency:
    1. DB Debit (User pays)
    2. Engine Bet (Register bet)
    3. If Engine rejects -> DB Refund (Compensating Transaction)
    """
    bet = Bet(user_id=payload.user_id, bet_amount=payload.amount)
    user = await get_or_create_user(session, payload.user_id)
    round_id = game.round.round_id

    # 1. DB DEBIT
    try:
        await debit(
            session=session,
            user=user,
            amount=bet.bet_amount,
            round_id=round_id,
            reference="bet_entry",
        )
    except ValueError:
        raise HTTPException(status.HTTP_402_PAYMENT_REQUIRED, "Insufficient funds")

    # 2. ENGINE REGISTRATION
    result = game.place_bet(bet)
    if not result.accepted:
        # SAGA ROLLBACK: the round left WAITING while we were debiting
        logger.warning(f"Bet rejected by engine ({result.outcome.value}). Refunding {payload.user_id}.")
        await refund(
            session=session,
            user=user,
            amount=bet.bet_amount,
            round_id=round_id,
            reference=f"bet_refund_{result.outcome.value}",
        )
        raise StateError(f"Bet rejected: {result.outcome.value}")

    # 3. SUCCESS
    await session.refresh(user)
    return {
        "status": result.outcome.value,
        "new_balance": float(user.balance),
        "round_id": result.round_id,
    }


@app.post("/api/cashout")
async def api_cashout(
    payload: CashoutRequest,
    session: AsyncSession = Depends(get_session),
    game: RoundEngine = Depends(get_engine),
):
    """
    Processes cashout.
    Engine is the authority on the multiplier; we only pay what it settled.
    """
    # 1. ENGINE CASHOUT
    # Engine first: a late request touches nothing in the DB.
    result = game.cash_out(payload.user_id)
    if result.outcome == Outcome.ROUND_NOT_FLYING:
        raise StateError("Too late, round is not flying")
    if result.outcome == Outcome.NO_ACTIVE_BET:
        raise BetError("No active bet for this user")

    # 2. DB CREDIT
    # The engine has already settled these bets, so a ledger failure must not
    # lose them: whatever is unpaid goes to the recorder for retry.
    paid = 0
    unpaid: tuple = ()
    user = None
    try:
        user = await get_or_create_user(session, payload.user_id)
        for bet in result.bets:
            user = await credit(
                session=session,
                user=user,
                amount=bet.payout,
                round_id=result.round_id,
                reference=_cashout_reference(bet),
            )
            paid += 1
            logger.info(
                f"{payload.user_id} cashed out {format_balance(bet.payout)} "
                f"at {format_multiplier(bet.cash_out_at)} in round {result.round_id}"
            )
    except Exception:
        unpaid = result.bets[paid:]
        logger.exception(
            f"Credit failed for {payload.user_id} in round {result.round_id}; queueing "
            + ", ".join(
                f"{format_balance(b.bet_amount)} at {format_multiplier(b.cash_out_at)} -> {format_balance(b.payout)}"
                for b in unpaid
            )
        )
        for bet in unpaid:
            recorder.queue_payout(payload.user_id, bet.payout, result.round_id, _cashout_reference(bet))

    return {
        "status": result.outcome.value,
        "round_id": result.round_id,
        "bets": [b.to_dict() for b in result.bets],
        "payout": float(sum(b.payout for b in result.bets)),
        "payout_pending": float(sum(b.payout for b in unpaid)),
        "balance": float(user.balance) if not unpaid else None,
    }


def _cashout_reference(bet: Bet) -> str:
    return f"cashout_{format_multiplier(bet.cash_out_at)}"

# =====================================================
# WEBSOCKET – LIVE ROUND FEED
# =====================================================

@app.websocket("/ws")
async def ws_feed(websocket: WebSocket):
    """
    Pushes every engine event (round_started, flight_started, tick, crashed).
    Sends the current snapshot first so late joiners can render immediately.
    """
    game = get_engine()
    await websocket.accept()
    queue = stream.open()

    async def pump() -> None:
        while True:
            await websocket.send_json(await queue.get())

    sender: Optional[asyncio.Task] = None
    try:
        await websocket.send_json({"type": "snapshot", "data": game.snapshot(), "round": None})
        sender = asyncio.create_task(pump())
        # Inbound frames are ignored; reading is how we notice the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected")
    finally:
        if sender is not None:
            _reap(sender)
        stream.close(queue)


def _reap(sender: asyncio.Task) -> None:
    """Stop the push task, surfacing why it died if it already has."""
    if not sender.done():
        sender.cancel()
        return
    if not sender.cancelled() and sender.exception() is not None:
        logger.warning("WebSocket push failed", exc_info=sender.exception())
