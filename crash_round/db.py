# db.py
"""
Database Layer – Ledger & Round History

Responsibilities:
- Async database engine & session lifecycle
- User account persistence
- Ledger-safe balance management (Decimal arithmetic)
- Durable copy of settled rounds (the engine only keeps the last 20)

Alignment with Engine:
- Uses Decimal for all financial values
- Links transactions to engine round_ids
- Stores HistoryEntry records verbatim, keyed by round_id
"""

from __future__ import annotations

import os
import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator

from sqlalchemy import (
    JSON,
    Boolean,
    String,
    DateTime,
    Float,
    Integer,
    Enum,
    ForeignKey,
    func,
    Numeric,
    select,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.exc import IntegrityError

from crash_round.engine import CENT, HistoryEntry

# =====================================================
# CONFIG
# =====================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./crash_round.db"
)

# Opening balance for accounts created on first contact
STARTING_BALANCE = Decimal(os.getenv("STARTING_BALANCE", "1000.00"))

DB_ECHO = os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes")


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# ENUMS
# =====================================================

class TransactionType(str, enum.Enum):
    BET = "bet"
    WIN = "win"
    REFUND = "refund"
    LOSS = "loss"  # Zero-amount audit record, the stake was debited at placement


# =====================================================
# MODELS
# =====================================================

class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    external_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )

    balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=STARTING_BALANCE,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class Transaction(Base):
    """
    One balance movement. Rows are only ever appended; balance_after lets
    an auditor replay a user's balance without summing the whole table.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type"),
        nullable=False,
    )

    # Signed amount: -10.00 for bet, +18.00 for win, 0.00 for loss
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    balance_after: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    round_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )

    # Extra metadata (e.g. "cashout_x1.80")
    reference: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    user: Mapped[User] = relationship(back_populates="transactions")


class RoundRecord(Base):
    """
    Durable History Entry. Written once per crashed round.
    """

    __tablename__ = "rounds"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    round_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )

    crash_point: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )

    crashed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    crashed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    bets: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    def to_dict(self) -> dict[str, Any]:
        crashed_at = self.crashed_at
        # SQLite hands back naive datetimes
        if crashed_at.tzinfo is None:
            crashed_at = crashed_at.replace(tzinfo=timezone.utc)
        return {
            "round_id": self.round_id,
            "multiplier": self.crash_point,
            "crashed": self.crashed,
            "timestamp": crashed_at.timestamp(),
            "bets": self.bets,
        }


# =====================================================
# ENGINE & SESSION
# =====================================================

engine = create_async_engine(
    DATABASE_URL,
    echo=DB_ECHO,
    connect_args={"ssl": "require"} if "postgresql" in DATABASE_URL else {},
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """
    Releases pooled connections. Called on shutdown.
    """
    await engine.dispose()


# =====================================================
# USERS & LEDGER
# =====================================================

async def get_or_create_user(
    session: AsyncSession,
    external_id: str,
) -> User:
    """
    Look up a player by external id, opening an account with
    STARTING_BALANCE on first sight. Commits only when it creates one.
    """
    result = await session.execute(
        select(User).where(User.external_id == external_id)
    )
    user = result.scalar_one_or_none()
    if user:
        return user

    session.add(User(external_id=external_id, balance=STARTING_BALANCE))
    try:
        await session.commit()
    except IntegrityError:
        # Lost the race to a concurrent request; theirs wins
        await session.rollback()
    return await get_or_create_user(session, external_id)


async def apply_transaction(
    session: AsyncSession,
    user: User,
    amount: Decimal,
    tx_type: TransactionType,
    round_id: str | None = None,
    reference: str | None = None,
    commit: bool = True,
) -> User:
    """
    Move `amount` (signed, cents) on the user's balance and append the
    matching ledger row.

    With commit=False the change is only flushed, so a caller can group
    several ledger rows (and other writes) into one transaction.
    Raises ValueError("Insufficient balance") if the balance would go negative.
    """
    result = await session.execute(
        select(User).where(User.id == user.id).with_for_update()
    )
    account = result.scalar_one()

    delta = amount.quantize(CENT)
    balance_after = account.balance + delta
    if balance_after < 0:
        raise ValueError("Insufficient balance")

    account.balance = balance_after
    account.updated_at = datetime.now(timezone.utc)
    session.add(Transaction(
        user_id=account.id,
        type=tx_type,
        amount=delta,
        balance_after=balance_after,
        round_id=round_id,
        reference=reference,
    ))

    if commit:
        await session.commit()
        await session.refresh(account)
    else:
        await session.flush()
    return account


def _to_decimal(amount: Decimal | float) -> Decimal:
    return Decimal(str(amount)) if isinstance(amount, float) else amount


async def debit(
    session: AsyncSession,
    user: User,
    amount: Decimal | float,
    round_id: str | None = None,
    reference: str | None = None,
) -> User:
    """Takes the stake at bet placement."""
    return await apply_transaction(
        session, user, -abs(_to_decimal(amount)), TransactionType.BET, round_id, reference,
    )


async def credit(
    session: AsyncSession,
    user: User,
    amount: Decimal | float,
    round_id: str | None = None,
    reference: str | None = None,
) -> User:
    """Pays a winning cash-out (stake + profit)."""
    return await apply_transaction(
        session, user, abs(_to_decimal(amount)), TransactionType.WIN, round_id, reference,
    )


async def refund(
    session: AsyncSession,
    user: User,
    amount: Decimal | float,
    round_id: str | None = None,
    reference: str | None = None,
) -> User:
    """Gives back a stake the engine did not admit."""
    return await apply_transaction(
        session, user, abs(_to_decimal(amount)), TransactionType.REFUND, round_id, reference,
    )


async def register_loss(
    session: AsyncSession,
    user: User,
    round_id: str | None = None,
    reference: str | None = None,
    commit: bool = True,
) -> User:
    """Audit row for a lost bet. Balance is untouched: the stake left at placement."""
    return await apply_transaction(
        session, user, Decimal("0"), TransactionType.LOSS, round_id, reference, commit=commit,
    )


# =====================================================
# ROUND HISTORY
# =====================================================

async def get_round(session: AsyncSession, round_id: str) -> RoundRecord | None:
    result = await session.execute(
        select(RoundRecord).where(RoundRecord.round_id == round_id)
    )
    return result.scalar_one_or_none()


async def save_round(
    session: AsyncSession,
    entry: HistoryEntry,
    commit: bool = True,
) -> RoundRecord:
    """
    Persists a settled round. Idempotent on round_id.
    """
    existing = await get_round(session, entry.round_id)
    if existing:
        return existing

    record = RoundRecord(
        round_id=entry.round_id,
        crash_point=entry.multiplier,
        crashed=entry.crashed,
        crashed_at=datetime.fromtimestamp(entry.timestamp, tz=timezone.utc),
        bets=[b.to_dict() for b in entry.bets],
    )
    session.add(record)
    if commit:
        await session.commit()
        await session.refresh(record)
    else:
        await session.flush()
    return record


async def list_rounds(session: AsyncSession, limit: int = 20) -> list[RoundRecord]:
    """
    Most recent rounds first.
    """
    result = await session.execute(
        select(RoundRecord).order_by(RoundRecord.crashed_at.desc(), RoundRecord.id.desc()).limit(limit)
    )
    return list(result.scalars().all())
