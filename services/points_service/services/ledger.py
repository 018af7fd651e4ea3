"""Points ledger: the only code allowed to change a balance.

Every debit or credit is one conditional UPDATE on the balance row plus one
history insert, and a period renewal is one UPDATE plus up to three inserts.
Nothing here commits: operations join the caller's transaction so a debit
can be made atomic with whatever it pays for, and the caller commits or rolls
back both together.
"""

import uuid
from typing import Optional

from libs.common.logging import get_logger
from services.points_service.exceptions import (
    BalanceConflict,
    InsufficientPoints,
    InvalidAmount,
)
from services.points_service.models import (
    DEBIT_TYPES,
    HistoryType,
    PointsBalance,
    PointsHistoryEntry,
)
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Counter bumped by each credit type.
_CREDIT_COUNTERS = {
    HistoryType.PURCHASE: PointsBalance.total_purchased,
    HistoryType.REFUND: PointsBalance.total_refunded,
    HistoryType.BONUS: PointsBalance.total_granted,
    HistoryType.ROLLOVER: PointsBalance.total_granted,
}

# Compare-and-set attempts before a renewal gives up on a busy balance.
_RENEWAL_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Balance rows
# ---------------------------------------------------------------------------


async def ensure_balance(db: AsyncSession, user_id: str) -> PointsBalance:
    """Return the user's balance row, inserting an empty one if missing.

    Safe under concurrent first use: the insert is ON CONFLICT DO NOTHING
    where the engine supports it.
    """
    balance = await _load_balance(db, user_id)
    if balance is not None:
        return balance

    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        db.add(PointsBalance(user_id=user_id))
        await db.flush()
        return await _load_balance(db, user_id)

    await db.execute(
        insert(PointsBalance)
        .values(user_id=user_id)
        .on_conflict_do_nothing(index_elements=["user_id"])
    )
    return await _load_balance(db, user_id)


async def _load_balance(db: AsyncSession, user_id: str) -> Optional[PointsBalance]:
    result = await db.execute(
        select(PointsBalance)
        .where(PointsBalance.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def balance_of(db: AsyncSession, user_id: str) -> int:
    """Current spendable points; 0 for a user with no balance row."""
    result = await db.execute(
        select(PointsBalance.current_points).where(PointsBalance.user_id == user_id)
    )
    return result.scalar_one_or_none() or 0


# ---------------------------------------------------------------------------
# Debit / credit
# ---------------------------------------------------------------------------


async def debit_points(
    db: AsyncSession,
    *,
    user_id: str,
    amount: int,
    description: str,
    related_order_id: Optional[uuid.UUID] = None,
    idempotency_key: Optional[str] = None,
) -> PointsHistoryEntry:
    """Spend ``amount`` points as a single compare-and-decrement.

    The UPDATE only matches while ``current_points >= amount``, so concurrent
    debits serialize on the row and can never overdraw it.

    Raises:
        InsufficientPoints: balance too low (or no balance row at all).
    """
    _require_positive(amount)
    replay = await _find_replay(db, idempotency_key)
    if replay is not None:
        return replay

    result = await db.execute(
        update(PointsBalance)
        .where(
            PointsBalance.user_id == user_id,
            PointsBalance.current_points >= amount,
        )
        .values(
            current_points=PointsBalance.current_points - amount,
            total_used=PointsBalance.total_used + amount,
        )
        .returning(PointsBalance.current_points)
        .execution_options(synchronize_session=False)
    )
    balance_after = result.scalar_one_or_none()
    if balance_after is None:
        available = await balance_of(db, user_id)
        logger.info(
            "Debit of %d refused for user %s (available=%d)",
            amount,
            user_id,
            available,
        )
        raise InsufficientPoints(user_id, amount, available)

    entry = await _append(
        db,
        user_id=user_id,
        entry_type=HistoryType.USAGE,
        amount=-amount,
        balance_after=balance_after,
        description=description,
        related_order_id=related_order_id,
        idempotency_key=idempotency_key,
    )
    logger.info(
        "Debit %d from user %s (order=%s), balance %d->%d",
        amount,
        user_id,
        related_order_id,
        balance_after + amount,
        balance_after,
    )
    return entry


async def credit_points(
    db: AsyncSession,
    *,
    user_id: str,
    amount: int,
    entry_type: HistoryType,
    description: str,
    related_order_id: Optional[uuid.UUID] = None,
    idempotency_key: Optional[str] = None,
) -> PointsHistoryEntry:
    """Add ``amount`` points. Structurally always succeeds.

    Idempotency across retries is the caller's job; pass ``idempotency_key``
    to have a replay return the original entry instead of crediting twice.
    """
    _require_positive(amount)
    if entry_type in DEBIT_TYPES:
        raise InvalidAmount(f"{entry_type.value} is not a credit entry type")
    counter = _CREDIT_COUNTERS[entry_type]

    replay = await _find_replay(db, idempotency_key)
    if replay is not None:
        return replay

    stmt = (
        update(PointsBalance)
        .where(PointsBalance.user_id == user_id)
        .values(
            {
                PointsBalance.current_points: PointsBalance.current_points + amount,
                counter: counter + amount,
            }
        )
        .returning(PointsBalance.current_points)
        .execution_options(synchronize_session=False)
    )
    balance_after = (await db.execute(stmt)).scalar_one_or_none()
    if balance_after is None:
        await ensure_balance(db, user_id)
        balance_after = (await db.execute(stmt)).scalar_one()

    entry = await _append(
        db,
        user_id=user_id,
        entry_type=entry_type,
        amount=amount,
        balance_after=balance_after,
        description=description,
        related_order_id=related_order_id,
        idempotency_key=idempotency_key,
    )
    logger.info(
        "Credit %d (%s) to user %s (order=%s), balance %d->%d",
        amount,
        entry_type.value,
        user_id,
        related_order_id,
        balance_after - amount,
        balance_after,
    )
    return entry


# ---------------------------------------------------------------------------
# Subscription renewal
# ---------------------------------------------------------------------------


async def renew_period(
    db: AsyncSession,
    *,
    user_id: str,
    new_points: int,
    rollover_cap: int,
    description: str = "Subscription renewal",
    idempotency_key: Optional[str] = None,
) -> list[PointsHistoryEntry]:
    """Start a new subscription period for ``user_id``.

    Up to ``rollover_cap`` unspent points carry over and the rest expire, so
    the balance ends at ``new_points + min(current, rollover_cap)``. The old
    balance is closed out with one EXPIRY entry, the carried part comes back
    as a ROLLOVER entry and the period's allowance is a PURCHASE entry, which
    keeps every counter and the history sum in step with the balance.

    The balance is swapped with a compare-and-set on the value that was read,
    so a debit landing mid-renewal forces a re-read instead of being lost.

    Returns:
        The appended entries, oldest first. Replaying ``idempotency_key``
        returns the first renewal's entries without touching the balance.

    Raises:
        InvalidAmount: ``new_points`` not positive or ``rollover_cap`` negative.
        BalanceConflict: the balance changed on every attempt.
    """
    _require_positive(new_points)
    if rollover_cap < 0:
        raise InvalidAmount(f"Rollover cap must not be negative, got {rollover_cap}")

    keys = _renewal_keys(idempotency_key)
    replays = [await _find_replay(db, key) for key in keys.values()]
    if any(replays):
        return [entry for entry in replays if entry is not None]

    await ensure_balance(db, user_id)
    for _ in range(_RENEWAL_ATTEMPTS):
        previous = await balance_of(db, user_id)
        carried = min(previous, rollover_cap)
        result = await db.execute(
            update(PointsBalance)
            .where(
                PointsBalance.user_id == user_id,
                PointsBalance.current_points == previous,
            )
            .values(
                current_points=new_points + carried,
                total_expired=PointsBalance.total_expired + previous,
                total_granted=PointsBalance.total_granted + carried,
                total_purchased=PointsBalance.total_purchased + new_points,
            )
            .returning(PointsBalance.current_points)
            .execution_options(synchronize_session=False)
        )
        if result.scalar_one_or_none() is not None:
            break
    else:
        logger.warning("Renewal for user %s lost every compare-and-set", user_id)
        raise BalanceConflict(user_id)

    entries = []
    if previous > 0:
        entries.append(
            await _append(
                db,
                user_id=user_id,
                entry_type=HistoryType.EXPIRY,
                amount=-previous,
                balance_after=0,
                description=f"{description}: previous period closed",
                idempotency_key=keys["expiry"],
            )
        )
    if carried > 0:
        entries.append(
            await _append(
                db,
                user_id=user_id,
                entry_type=HistoryType.ROLLOVER,
                amount=carried,
                balance_after=carried,
                description=f"{description}: {carried} points rolled over",
                idempotency_key=keys["rollover"],
            )
        )
    entries.append(
        await _append(
            db,
            user_id=user_id,
            entry_type=HistoryType.PURCHASE,
            amount=new_points,
            balance_after=carried + new_points,
            description=description,
            idempotency_key=keys["purchase"],
        )
    )
    logger.info(
        "Renewed user %s: %d expired, %d rolled over, %d new, balance %d->%d",
        user_id,
        previous - carried,
        carried,
        new_points,
        previous,
        carried + new_points,
    )
    return entries


def _renewal_keys(idempotency_key: Optional[str]) -> dict[str, Optional[str]]:
    parts = ("expiry", "rollover", "purchase")
    if not idempotency_key:
        return dict.fromkeys(parts)
    return {part: f"{idempotency_key}:{part}" for part in parts}


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


async def list_history(
    db: AsyncSession,
    user_id: str,
    *,
    entry_type: Optional[HistoryType] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[PointsHistoryEntry]:
    """History entries for a user, newest first, optionally of one type."""
    stmt = select(PointsHistoryEntry).where(PointsHistoryEntry.user_id == user_id)
    if entry_type is not None:
        stmt = stmt.where(PointsHistoryEntry.entry_type == entry_type)
    result = await db.execute(
        stmt.order_by(PointsHistoryEntry.created_at.desc(), PointsHistoryEntry.id)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def entries_for_order(
    db: AsyncSession, order_id: uuid.UUID, entry_type: Optional[HistoryType] = None
) -> list[PointsHistoryEntry]:
    stmt = select(PointsHistoryEntry).where(
        PointsHistoryEntry.related_order_id == order_id
    )
    if entry_type is not None:
        stmt = stmt.where(PointsHistoryEntry.entry_type == entry_type)
    result = await db.execute(stmt.order_by(PointsHistoryEntry.created_at))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")


async def _find_replay(
    db: AsyncSession, idempotency_key: Optional[str]
) -> Optional[PointsHistoryEntry]:
    if not idempotency_key:
        return None
    result = await db.execute(
        select(PointsHistoryEntry).where(
            PointsHistoryEntry.idempotency_key == idempotency_key
        )
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        logger.info(
            "Idempotent replay for key=%s -> entry=%s", idempotency_key, existing.id
        )
    return existing


async def _append(db: AsyncSession, **fields) -> PointsHistoryEntry:
    entry = PointsHistoryEntry(**fields)
    db.add(entry)
    await db.flush()
    return entry
