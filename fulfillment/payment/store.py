"""
Payment Service: payment attempt persistence

One row per gateway checkout session. The session id is the idempotency
key for gateway notifications: a terminal status is written with a
conditional update (WHERE status = 'INITIATED'), so of several deliveries of
the same outcome exactly one is APPLIED and the rest are DUPLICATE.
"""

import logging
from enum import Enum

from pydantic import BaseModel
from sqlalchemy import Boolean, Column, Float, MetaData, String, Table, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..db import utcnow

logger = logging.getLogger(__name__)

INITIATED = "INITIATED"
SUCCESS = "SUCCESS"
FAILED = "FAILED"

metadata = MetaData()

payment_attempts = Table(
    "payment_attempts",
    metadata,
    Column("session_id", String(255), primary_key=True),
    Column("order_id", String(36), nullable=False, index=True),
    Column("user_id", String(64)),
    Column("amount", Float, nullable=False),
    Column("currency", String(8), nullable=False),
    Column("status", String(16), nullable=False),
    Column("checkout_url", String(1024)),
    Column("reconciliation_required", Boolean, nullable=False, default=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_SELECT = """
    SELECT session_id, order_id, user_id, amount, currency, status,
           checkout_url, reconciliation_required, created_at, updated_at
    FROM payment_attempts
"""


class Outcome(str, Enum):
    APPLIED = "APPLIED"      # this delivery moved the attempt to the target status
    DUPLICATE = "DUPLICATE"  # the attempt already had the target status
    ANOMALY = "ANOMALY"      # the attempt already had the opposite terminal status


class PaymentAttempt(BaseModel):
    session_id: str
    order_id: str
    user_id: str | None = None
    amount: float
    currency: str
    status: str = INITIATED
    checkout_url: str | None = None
    reconciliation_required: bool = False
    created_at: str | None = None
    updated_at: str | None = None


def classify(recorded: str, target: str) -> Outcome:
    """What an incoming terminal status means given the status already recorded."""
    if recorded == target:
        return Outcome.DUPLICATE
    if recorded == INITIATED:
        return Outcome.APPLIED
    return Outcome.ANOMALY


def _row_to_attempt(row) -> PaymentAttempt:
    return PaymentAttempt(
        session_id=row.session_id,
        order_id=row.order_id,
        user_id=row.user_id,
        amount=float(row.amount),
        currency=row.currency,
        status=row.status,
        checkout_url=row.checkout_url,
        reconciliation_required=bool(row.reconciliation_required),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class PaymentAttemptStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def create(self, attempt: PaymentAttempt) -> PaymentAttempt:
        return await self._insert(attempt)

    async def get(self, session_id: str) -> PaymentAttempt | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"{_SELECT} WHERE session_id = :session_id"),
                {"session_id": session_id},
            )
            row = result.fetchone()
        return _row_to_attempt(row) if row else None

    async def latest_for_order(self, order_id: str) -> PaymentAttempt | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"{_SELECT} WHERE order_id = :order_id ORDER BY created_at DESC LIMIT 1"),
                {"order_id": order_id},
            )
            row = result.fetchone()
        return _row_to_attempt(row) if row else None

    async def find_open(self, order_id: str) -> PaymentAttempt | None:
        """An INITIATED or SUCCESS attempt for the order, if any."""
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"""
                    {_SELECT}
                    WHERE order_id = :order_id AND status IN (:initiated, :success)
                    ORDER BY created_at DESC
                    LIMIT 1
                """),
                {"order_id": order_id, "initiated": INITIATED, "success": SUCCESS},
            )
            row = result.fetchone()
        return _row_to_attempt(row) if row else None

    async def record_outcome(
        self,
        session_id: str,
        target: str,
        *,
        order_id: str,
        amount: float = 0.0,
        currency: str = "usd",
        user_id: str | None = None,
    ) -> Outcome:
        """
        Atomically move an attempt to SUCCESS or FAILED.

        An attempt the gateway reports on but that was never recorded here is
        inserted directly in the target status; the unique session id makes a
        concurrent duplicate insert lose and fall back to the normal path.
        """
        if await self._update_if_initiated(session_id, target):
            return Outcome.APPLIED

        existing = await self.get(session_id)
        if existing is None:
            try:
                await self._insert(
                    PaymentAttempt(
                        session_id=session_id,
                        order_id=order_id,
                        user_id=user_id,
                        amount=amount,
                        currency=currency,
                        status=target,
                    )
                )
                return Outcome.APPLIED
            except IntegrityError:
                logger.info("Attempt %s was recorded concurrently", session_id)
            if await self._update_if_initiated(session_id, target):
                return Outcome.APPLIED
            existing = await self.get(session_id)

        outcome = classify(existing.status, target)
        if outcome is Outcome.ANOMALY:
            await self.flag_reconciliation(session_id)
        return outcome

    async def flag_reconciliation(self, session_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    UPDATE payment_attempts
                    SET reconciliation_required = :flag, updated_at = :now
                    WHERE session_id = :session_id
                """),
                {"flag": True, "now": utcnow(), "session_id": session_id},
            )
            await session.commit()

    async def _update_if_initiated(self, session_id: str, target: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE payment_attempts
                    SET status = :target, updated_at = :now
                    WHERE session_id = :session_id AND status = :initiated
                """),
                {"target": target, "now": utcnow(), "session_id": session_id, "initiated": INITIATED},
            )
            await session.commit()
            return result.rowcount == 1

    async def _insert(self, attempt: PaymentAttempt) -> PaymentAttempt:
        now = utcnow()
        stored = attempt.model_copy(update={"created_at": now, "updated_at": now})
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO payment_attempts
                        (session_id, order_id, user_id, amount, currency, status,
                         checkout_url, reconciliation_required, created_at, updated_at)
                    VALUES
                        (:session_id, :order_id, :user_id, :amount, :currency, :status,
                         :checkout_url, :reconciliation_required, :created_at, :updated_at)
                """),
                stored.model_dump(),
            )
            await session.commit()
        return stored
