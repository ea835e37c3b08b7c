"""
Inventory Service: stock audit trail

Append-only record of every ledger mutation. The Redis counter is the
source of truth for stock; the audit trail is advisory, so the ledger writes
it best-effort after the mutation has already happened.
"""

from pydantic import BaseModel
from sqlalchemy import Column, Integer, MetaData, String, Table, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import utcnow

metadata = MetaData()

stock_audit = Table(
    "stock_audit",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", String(64), nullable=False, index=True),
    Column("change", Integer, nullable=False),
    Column("reason", String(64), nullable=False),
    Column("performed_by", String(64), nullable=False),
    Column("created_at", String(40), nullable=False),
)


class StockAuditEntry(BaseModel):
    """One ledger mutation. change is signed: negative for reserve."""

    product_id: str
    change: int
    reason: str
    performed_by: str
    created_at: str


async def append_entry(
    session: AsyncSession,
    product_id: str,
    change: int,
    reason: str,
    performed_by: str,
) -> StockAuditEntry:
    entry = StockAuditEntry(
        product_id=product_id,
        change=change,
        reason=reason,
        performed_by=performed_by,
        created_at=utcnow(),
    )
    await session.execute(
        text("""
            INSERT INTO stock_audit
                (product_id, change, reason, performed_by, created_at)
            VALUES
                (:product_id, :change, :reason, :performed_by, :created_at)
        """),
        entry.model_dump(),
    )
    await session.commit()
    return entry


async def load_entries(
    session: AsyncSession,
    product_id: str,
    limit: int = 100,
) -> list[StockAuditEntry]:
    """Audit trail of one product, newest first."""
    result = await session.execute(
        text("""
            SELECT product_id, change, reason, performed_by, created_at
            FROM stock_audit
            WHERE product_id = :product_id
            ORDER BY id DESC
            LIMIT :limit
        """),
        {"product_id": product_id, "limit": limit},
    )
    return [
        StockAuditEntry(
            product_id=row.product_id,
            change=row.change,
            reason=row.reason,
            performed_by=row.performed_by,
            created_at=row.created_at,
        )
        for row in result.fetchall()
    ]
