# engine.py
"""
Crash Round Engine

Responsibilities:
- Tiered crash-point generation (house-edge curve)
- Strict State Machine (WAITING -> FLYING -> CRASHED -> WAITING)
- Timer-driven multiplier growth on the asyncio event loop
- Bet admission / cash-out with explicit results
- Bounded in-memory round history
"""

from __future__ import annotations

import time
import asyncio
import logging
import secrets
import random
from enum import Enum
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from crash_round.utils import generate_unique_id, format_multiplier, safe_decimal, clamp

logger = logging.getLogger("crash_round.engine")

# =========================
# CONFIGURATION
# =========================

class GameConfig:
    # --- PHASE TIMING (seconds) ---
    WAITING_DELAY_SEC = 3.0
    CRASHED_DELAY_SEC = 3.0
    TICK_INTERVAL_SEC = 0.05

    # --- GROWTH ---
    # Multiplier = 1 + elapsed^2 * GROWTH_COEFFICIENT
    # 0.08 reaches 2.00x after ~3.54 seconds
    GROWTH_COEFFICIENT = 0.08

    # --- HISTORY ---
    HISTORY_LIMIT = 20

    # --- PROBABILITY SETTINGS ---
    # First draw splits early (90%) from high (10%) crashes.
    PROB_EARLY = 0.90

    # Second draw picks the sub-bucket: (threshold, base, span).
    # Last entry is the catch-all.
    EARLY_BUCKETS = (
        (0.4, 1.0, 0.5),    # 36% -> [1.0, 1.5)
        (0.7, 1.5, 0.5),    # 27% -> [1.5, 2.0)
        (1.0, 2.0, 1.0),    # 27% -> [2.0, 3.0)
    )
    HIGH_BUCKETS = (
        (0.6, 3.0, 7.0),    # 6% -> [3.0, 10.0)
        (0.9, 10.0, 40.0),  # 3% -> [10.0, 50.0)
        (1.0, 50.0, 150.0), # 1% -> [50.0, 200.0)
    )

CENT = Decimal("0.01")

# =========================
# ENUMS & EXCEPTIONS
# =========================

class RoundStatus(str, Enum):
    WAITING = "waiting"  # Accepting bets
    FLYING = "flying"    # Multiplier rising
    CRASHED = "crashed"  # Round settled

class Outcome(str, Enum):
    ACCEPTED = "accepted"
    ROUND_NOT_WAITING = "round-not-waiting"
    ROUND_NOT_FLYING = "round-not-flying"
    NO_ACTIVE_BET = "no-active-bet"

class EngineError(Exception):
    """Base engine error"""

class StateError(EngineError):
    """Action performed in invalid state"""

class BetError(EngineError):
    """Invalid bet parameters"""

# =========================
# DOMAIN MODELS
# =========================

@dataclass
class Bet:
    user_id: str
    bet_amount: Decimal
    active: bool = True
    cash_out_at: Optional[float] = None
    profit: Optional[Decimal] = None
    placed_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        amount = safe_decimal(self.bet_amount)
        if amount <= 0:
            raise BetError(f"Bet must be positive (got {self.bet_amount!r})")
        # Ledger stores whole cents
        try:
            whole_cents = amount == amount.quantize(CENT)
        except InvalidOperation:
            whole_cents = False
        if not whole_cents:
            raise BetError(f"Bet must be a whole number of cents (got {self.bet_amount!r})")
        self.bet_amount = amount

    def cash_out(self, multiplier: float) -> None:
        """Lock in `multiplier` as this bet's exit point. Only ever called once."""
        self.active = False
        self.cash_out_at = multiplier
        self.profit = self.bet_amount * (Decimal(str(multiplier)) - 1)

    def settle_loss(self) -> None:
        self.active = False
        self.profit = -self.bet_amount

    @property
    def payout(self) -> Decimal:
        """Amount to credit back: stake plus profit, zero for a loss."""
        if self.profit is None or self.cash_out_at is None:
            return Decimal("0")
        return self.bet_amount + self.profit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "bet_amount": float(self.bet_amount),
            "active": self.active,
            "cash_out_at": self.cash_out_at,
            "profit": float(self.profit) if self.profit is not None else None,
        }

@dataclass
class GameRound:
    round_id: str
    crash_point: float
    status: RoundStatus = RoundStatus.WAITING
    start_time: Optional[float] = None
    current_multiplier: float = 1.0
    bets: List[Bet] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        # Crash point stays secret until the round is settled
        show = self.status == RoundStatus.CRASHED
        return {
            "status": self.status.value,
            "round_id": self.round_id,
            "multiplier": self.current_multiplier,
            "crash_point": self.crash_point if show else None,
            "start_time": self.start_time,
        }

@dataclass(frozen=True)
class HistoryEntry:
    """Immutable record of a completed round."""
    round_id: str
    multiplier: float
    timestamp: float
    bets: Tuple[Bet, ...] = ()
    crashed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "multiplier": self.multiplier,
            "crashed": self.crashed,
            "timestamp": self.timestamp,
            "bets": [b.to_dict() for b in self.bets],
        }

@dataclass(frozen=True)
class ActionResult:
    outcome: Outcome
    round_id: str
    bets: Tuple[Bet, ...] = ()

    @property
    def accepted(self) -> bool:
        return self.outcome == Outcome.ACCEPTED

@dataclass(frozen=True)
class EngineEvent:
    kind: str  # round_started | flight_started | tick | crashed
    snapshot: Dict[str, Any]
    entry: Optional[HistoryEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "data": self.snapshot,
            "round": self.entry.to_dict() if self.entry else None,
        }

# =====================================================
# MATH & PROBABILITY (CORE LOGIC)
# =====================================================

_system_rng = secrets.SystemRandom()

def generate_crash_point(rng: Optional[random.Random] = None) -> float:
    """
    Samples one crash multiplier from the tiered house-edge curve:
    1. 90% -> early crash, sub-bucket by a second draw (36/27/27 of total)
    2. 10% -> high crash, sub-bucket by a second draw (6/3/1 of total)
    Each bucket then draws its own uniform value across [base, base + span).
    """
    rng = rng or _system_rng

    if rng.random() < GameConfig.PROB_EARLY:
        buckets = GameConfig.EARLY_BUCKETS
    else:
        buckets = GameConfig.HIGH_BUCKETS

    sub_roll = rng.random()
    for threshold, base, span in buckets[:-1]:
        if sub_roll < threshold:
            return base + rng.random() * span

    _, base, span = buckets[-1]
    return base + rng.random() * span


def multiplier_at(elapsed: float) -> float:
    """Pure function: seconds in flight -> multiplier."""
    return max(1.0, 1 + elapsed * elapsed * GameConfig.GROWTH_COEFFICIENT)

# =========================
# ENGINE CLASS
# =========================

Listener = Callable[[EngineEvent], None]

class RoundEngine:
    """
    Self-scheduling round state machine.

    Runs forever from construction: every transition is a timer callback on
    `loop`, and the engine only ever holds one pending handle. Actions from
    callers are synchronous and return an `ActionResult`.
    """

    def __init__(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        crash_point_fn: Callable[[], float] = generate_crash_point,
        history_limit: int = GameConfig.HISTORY_LIMIT,
    ) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._crash_point_fn = crash_point_fn
        self._history_limit = history_limit
        self._history: List[HistoryEntry] = []
        self._listeners: List[Listener] = []
        self._handle: Optional[asyncio.TimerHandle] = None
        self._flight_started_at: Optional[float] = None  # loop clock
        self._round: GameRound = self._new_round()
        self._handle = self._loop.call_later(GameConfig.WAITING_DELAY_SEC, self._start_flight)

    # =====================================================
    # OBSERVATION
    # =====================================================

    @property
    def round(self) -> GameRound:
        return self._round

    @property
    def history(self) -> Tuple[HistoryEntry, ...]:
        return tuple(self._history)

    @property
    def active_bets(self) -> Tuple[Bet, ...]:
        return tuple(self._round.bets)

    def snapshot(self) -> Dict[str, Any]:
        return self._round.to_dict()

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: str, entry: Optional[HistoryEntry] = None) -> None:
        event = EngineEvent(kind=kind, snapshot=self.snapshot(), entry=entry)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # A broken renderer must never stall the round loop
                logger.exception(f"Listener failed on {kind} event")

    # =====================================================
    # LIFECYCLE (TIMER CALLBACKS)
    # =====================================================

    def _new_round(self) -> GameRound:
        game_round = GameRound(
            round_id=generate_unique_id(),
            crash_point=self._crash_point_fn(),
        )
        logger.debug(f"Round {game_round.round_id} created, crash at {format_multiplier(game_round.crash_point)}")
        return game_round

    def _start_flight(self) -> None:
        """WAITING -> FLYING."""
        self._round.status = RoundStatus.FLYING
        self._round.start_time = time.time()
        self._flight_started_at = self._loop.time()
        logger.info(f"Round {self._round.round_id} flying with {len(self._round.bets)} bet(s)")
        self._handle = self._loop.call_later(GameConfig.TICK_INTERVAL_SEC, self._tick)
        self._emit("flight_started")

    def _tick(self) -> None:
        """Recompute the multiplier; crash check runs before publishing."""
        elapsed = self._loop.time() - self._flight_started_at
        multiplier = multiplier_at(elapsed)

        if multiplier >= self._round.crash_point:
            self._crash()
            return

        # Never let the live value step backwards within a round
        self._round.current_multiplier = clamp(multiplier, self._round.current_multiplier, self._round.crash_point)
        self._handle = self._loop.call_later(GameConfig.TICK_INTERVAL_SEC, self._tick)
        self._emit("tick")

    def _crash(self) -> None:
        """FLYING -> CRASHED. Settles every open bet as a loss."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

        game_round = self._round
        game_round.status = RoundStatus.CRASHED
        game_round.current_multiplier = game_round.crash_point

        for bet in game_round.bets:
            if bet.active:
                bet.settle_loss()

        entry = HistoryEntry(
            round_id=game_round.round_id,
            multiplier=game_round.crash_point,
            timestamp=time.time(),
            bets=tuple(replace(b) for b in game_round.bets),
        )
        self._history.insert(0, entry)
        del self._history[self._history_limit:]

        logger.info(
            f"Round {game_round.round_id} crashed at {format_multiplier(game_round.crash_point)} "
            f"({len(game_round.bets)} bet(s))"
        )
        self._handle = self._loop.call_later(GameConfig.CRASHED_DELAY_SEC, self._next_round)
        self._emit("crashed", entry)

    def _next_round(self) -> None:
        """CRASHED -> WAITING with a fresh round and an empty bet set."""
        self._round = self._new_round()
        self._flight_started_at = None
        self._handle = self._loop.call_later(GameConfig.WAITING_DELAY_SEC, self._start_flight)
        self._emit("round_started")

    # =====================================================
    # BETTING ACTIONS
    # =====================================================

    def place_bet(self, bet: Bet) -> ActionResult:
        """Admit `bet` into the current round. Only open while WAITING."""
        round_id = self._round.round_id
        if self._round.status != RoundStatus.WAITING:
            logger.debug(f"Bet from {bet.user_id} rejected: round {round_id} is {self._round.status.value}")
            return ActionResult(Outcome.ROUND_NOT_WAITING, round_id)

        self._round.bets.append(bet)
        return ActionResult(Outcome.ACCEPTED, round_id, (bet,))

    def cash_out(self, user_id: str) -> ActionResult:
        """Exit every active bet of `user_id` at the current multiplier."""
        round_id = self._round.round_id
        if self._round.status != RoundStatus.FLYING:
            logger.debug(f"Cash-out from {user_id} rejected: round {round_id} is {self._round.status.value}")
            return ActionResult(Outcome.ROUND_NOT_FLYING, round_id)

        bets = [b for b in self._round.bets if b.user_id == user_id and b.active]
        if not bets:
            return ActionResult(Outcome.NO_ACTIVE_BET, round_id)

        multiplier = self._round.current_multiplier
        for bet in bets:
            bet.cash_out(multiplier)

        return ActionResult(Outcome.ACCEPTED, round_id, tuple(bets))
