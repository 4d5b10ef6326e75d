"""Per-tenant mutual exclusion around validate-then-write."""
import asyncio
import hashlib
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_tenant_locks: defaultdict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)


def _advisory_key(org_id: uuid.UUID) -> int:
    # pg advisory locks take a signed bigint
    digest = hashlib.blake2b(b"booking:" + org_id.bytes, digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


@asynccontextmanager
async def booking_lock(session: AsyncSession, org_id: uuid.UUID):
    """Serialize booking mutations for one tenant.

    The in-process lock covers concurrent requests and the worker inside one
    process; on PostgreSQL a transaction-scoped advisory lock extends the
    guarantee across processes and is released by the caller's commit or
    rollback. Callers must commit before leaving the block, and a caller that
    keeps using the session after a failure must roll back first.
    """
    lock = _tenant_locks[org_id]
    async with lock:
        bind = session.bind
        if bind is not None and bind.dialect.name == "postgresql":
            await session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": _advisory_key(org_id)})
        logger.debug("booking lock acquired for org %s", org_id)
        yield
