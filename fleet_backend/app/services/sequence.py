"""
Reference code generator.

Codes look like BK26100007: a two-letter prefix, the year and month, and a
4-digit sequence that restarts every month. Each code comes from one atomic
upsert on the sequence_counters row for that prefix and period, so two
concurrent submissions can never draw the same number.
"""

from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.dialects import postgresql, sqlite

from fleet_backend.app.models.sequence_counter import SequenceCounter
from fleet_backend.app.models.fleet_enums import RequestKind

REFERENCE_PREFIXES = {
    RequestKind.PICKUP: "PU",
    RequestKind.BOOKING: "BK",
}


def period_key(prefix: str, moment: datetime) -> str:
    return f"{prefix}{moment:%y%m}"


async def next_value(db: AsyncSession, key: str) -> int:
    """Increment and return the counter for `key`, creating it at 1."""
    dialect = db.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert

    stmt = insert(SequenceCounter).values(key=key, value=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=[SequenceCounter.key],
        set_={"value": SequenceCounter.value + 1},
    ).returning(SequenceCounter.value)

    result = await db.execute(stmt)
    return result.scalar_one()


async def next_reference_code(db: AsyncSession, kind: RequestKind, moment: datetime) -> str:
    key = period_key(REFERENCE_PREFIXES[kind], moment)
    value = await next_value(db, key)
    return f"{key}{value:04d}"
