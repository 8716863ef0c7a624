"""
Rider cash ledger and settlements.

A rider's balance is never stored: it is the sum of their ledger entries.
Entries are only appended. Settlement verification is the one place an
adjustment entry is written.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.config.config import settings
from dispatch_hub.models.models import (
    Manifest,
    ManifestItem,
    Order,
    RiderLedgerEntry,
    Settlement,
    User,
)
from dispatch_hub.schemas.status_schema import (
    LedgerEntryType,
    ManifestKind,
    ManifestOutcome,
    ManifestStatus,
    SettlementStatus,
    UserRole,
)
from dispatch_hub.utils.exceptions import (
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationFailed,
)
from dispatch_hub.utils.logger_config import setup_logger
from dispatch_hub.utils.utils import settlement_prefix, to_money

logger = setup_logger()


async def get_rider(db: AsyncSession, rider_id: UUID, for_update: bool = False) -> User:
    stmt = select(User).where(User.id == rider_id)
    if for_update:
        # Serialises appends for one rider so balance snapshots stay ordered.
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    rider = result.scalar_one_or_none()
    if rider is None or rider.role != UserRole.RIDER:
        raise NotFound(f"Rider {rider_id} not found")
    return rider


async def current_balance(db: AsyncSession, rider_id: UUID) -> Decimal:
    result = await db.execute(
        select(func.coalesce(func.sum(RiderLedgerEntry.amount), 0)).where(
            RiderLedgerEntry.rider_id == rider_id
        )
    )
    return to_money(result.scalar_one())


async def _append_entry(
    db: AsyncSession,
    rider_id: UUID,
    entry_type: LedgerEntryType,
    amount: Decimal,
    *,
    actor: Optional[User] = None,
    order_id: Optional[UUID] = None,
    settlement_id: Optional[UUID] = None,
    note: Optional[str] = None,
) -> RiderLedgerEntry:
    await get_rider(db, rider_id, for_update=True)
    amount = to_money(amount)
    balance = await current_balance(db, rider_id)
    entry = RiderLedgerEntry(
        rider_id=rider_id,
        entry_type=entry_type,
        amount=amount,
        balance_after=balance + amount,
        order_id=order_id,
        settlement_id=settlement_id,
        actor_id=actor.id if actor is not None else None,
        note=note,
    )
    db.add(entry)
    await db.flush()
    logger.info(
        f"Ledger {entry_type.value} for rider {rider_id}: {amount:+} (balance {entry.balance_after})"
    )
    return entry


async def record_collection(
    db: AsyncSession,
    rider_id: UUID,
    order_id: UUID,
    amount: Decimal,
    actor: Optional[User] = None,
    commit: bool = True,
) -> RiderLedgerEntry:
    """
    COD collected at the door. One collection per order; a repeat call
    returns the existing entry.
    """
    if to_money(amount) <= 0:
        raise ValidationFailed("Collected amount must be positive")
    existing = await db.execute(
        select(RiderLedgerEntry).where(
            RiderLedgerEntry.order_id == order_id,
            RiderLedgerEntry.entry_type == LedgerEntryType.COD_COLLECTION,
        )
    )
    entry = existing.scalar_one_or_none()
    if entry is not None:
        logger.info(f"COD for order {order_id} already recorded; skipping")
        return entry
    try:
        entry = await _append_entry(
            db, rider_id, LedgerEntryType.COD_COLLECTION, amount,
            actor=actor, order_id=order_id, note="COD collected",
        )
        if commit:
            await db.commit()
        return entry
    except Exception:
        await db.rollback()
        raise


async def record_handover(
    db: AsyncSession,
    rider_id: UUID,
    amount: Decimal,
    actor: Optional[User] = None,
    note: Optional[str] = None,
) -> RiderLedgerEntry:
    """Cash physically reached the hub."""
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationFailed("Handover amount must be positive")
    try:
        await get_rider(db, rider_id, for_update=True)
        balance = await current_balance(db, rider_id)
        if amount > balance:
            raise ValidationFailed(
                f"Handover of {amount} exceeds the rider's outstanding balance of {balance}"
            )
        entry = await _append_entry(
            db, rider_id, LedgerEntryType.CASH_HANDOVER, -amount,
            actor=actor, note=note or "Cash handed over at hub",
        )
        await db.commit()
        return entry
    except Exception:
        await db.rollback()
        raise


async def ledger_history(
    db: AsyncSession, rider_id: UUID, skip: int = 0, limit: int = 50
) -> list[RiderLedgerEntry]:
    await get_rider(db, rider_id)
    result = await db.execute(
        select(RiderLedgerEntry)
        .where(RiderLedgerEntry.rider_id == rider_id)
        .order_by(RiderLedgerEntry.created_at.desc())
        .offset(skip)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_settlement(db: AsyncSession, settlement_id: UUID, for_update: bool = False) -> Settlement:
    stmt = select(Settlement).where(Settlement.id == settlement_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    settlement = result.scalar_one_or_none()
    if settlement is None:
        raise NotFound(f"Settlement {settlement_id} not found")
    return settlement


async def pending_settlement(db: AsyncSession, rider_id: UUID) -> Optional[Settlement]:
    result = await db.execute(
        select(Settlement).where(
            Settlement.rider_id == rider_id,
            Settlement.status == SettlementStatus.PENDING,
        )
    )
    return result.scalars().first()


async def list_settlements(
    db: AsyncSession,
    *,
    rider_id: Optional[UUID] = None,
    status: Optional[SettlementStatus] = None,
    skip: int = 0,
    limit: int = 20,
) -> list[Settlement]:
    stmt = select(Settlement)
    if rider_id is not None:
        stmt = stmt.where(Settlement.rider_id == rider_id)
    if status is not None:
        stmt = stmt.where(Settlement.status == status)
    stmt = stmt.order_by(Settlement.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _next_settlement_number(db: AsyncSession, party_code: str) -> str:
    prefix = settlement_prefix(party_code)
    result = await db.execute(
        select(func.count(Settlement.id)).where(Settlement.settlement_number.like(f"{prefix}%"))
    )
    taken = result.scalar_one()
    return prefix if taken == 0 else f"{prefix}-{taken + 1}"


def _flag_variance(expected: Decimal, declared: Decimal) -> bool:
    return abs(declared - expected) > Decimal("0.00")


async def request_settlement(
    db: AsyncSession,
    rider_id: UUID,
    declared_amount: Decimal,
    actor: Optional[User] = None,
    notes: Optional[str] = None,
) -> Settlement:
    """Open a settlement with expected = the rider's current balance."""
    declared = to_money(declared_amount)
    try:
        rider = await get_rider(db, rider_id, for_update=True)
        if await pending_settlement(db, rider_id) is not None:
            raise InvalidTransition(f"Rider {rider.full_name} already has a pending settlement")
        expected = await current_balance(db, rider_id)
        settlement = Settlement(
            settlement_number=await _next_settlement_number(db, rider.rider_code or str(rider.id)[:8]),
            rider_id=rider_id,
            expected_amount=expected,
            declared_amount=declared,
            variance_flagged=_flag_variance(expected, declared),
            status=SettlementStatus.PENDING,
            notes=notes,
            requested_by=actor.id if actor is not None else None,
        )
        db.add(settlement)
        await db.commit()
        if settlement.variance_flagged:
            logger.warning(
                f"Settlement {settlement.settlement_number} flagged: declared {declared} vs expected {expected}"
            )
        return settlement
    except Exception:
        await db.rollback()
        raise


async def courier_cod_expected(db: AsyncSession, manifest_id: UUID) -> Decimal:
    result = await db.execute(
        select(func.coalesce(func.sum(Order.cod_due), 0))
        .join(ManifestItem, ManifestItem.order_id == Order.id)
        .where(
            ManifestItem.manifest_id == manifest_id,
            ManifestItem.removed_at.is_(None),
            ManifestItem.outcome == ManifestOutcome.DELIVERED,
        )
    )
    return to_money(result.scalar_one())


async def request_courier_settlement(
    db: AsyncSession,
    manifest_id: UUID,
    declared_amount: Decimal,
    actor: Optional[User] = None,
    notes: Optional[str] = None,
) -> Settlement:
    """Open a settlement for a courier manifest whose lines all have outcomes."""
    declared = to_money(declared_amount)
    try:
        result = await db.execute(select(Manifest).where(Manifest.id == manifest_id))
        manifest = result.scalar_one_or_none()
        if manifest is None:
            raise NotFound(f"Manifest {manifest_id} not found")
        if manifest.kind != ManifestKind.COURIER or manifest.status != ManifestStatus.DISPATCHED:
            raise InvalidTransition("Only dispatched courier manifests can be settled")
        if any(
            line.outcome == ManifestOutcome.PENDING
            for line in manifest.items
            if line.removed_at is None
        ):
            raise InvalidTransition(
                f"Manifest {manifest.manifest_number} still has orders without an outcome"
            )
        existing = await db.execute(
            select(Settlement).where(
                Settlement.manifest_id == manifest_id,
                Settlement.status == SettlementStatus.PENDING,
            )
        )
        if existing.scalars().first() is not None:
            raise InvalidTransition(f"Manifest {manifest.manifest_number} already has a pending settlement")

        expected = await courier_cod_expected(db, manifest_id)
        settlement = Settlement(
            settlement_number=await _next_settlement_number(db, manifest.courier_code.value),
            manifest_id=manifest_id,
            courier_code=manifest.courier_code,
            expected_amount=expected,
            declared_amount=declared,
            variance_flagged=_flag_variance(expected, declared),
            status=SettlementStatus.PENDING,
            notes=notes,
            requested_by=actor.id if actor is not None else None,
        )
        db.add(settlement)
        await db.commit()
        return settlement
    except Exception:
        await db.rollback()
        raise


async def verify_settlement(
    db: AsyncSession,
    settlement_id: UUID,
    actual_amount: Decimal,
    verifier: User,
    notes: Optional[str] = None,
) -> Settlement:
    """
    Admin closes a settlement. variance = actual - expected; a non-zero
    variance for a rider posts one adjustment entry so the ledger balance
    equals the verified amount. The settlement close and the entry commit
    together.
    """
    if verifier.role != UserRole.ADMIN:
        raise PermissionDenied("Only an admin can verify settlements")
    actual = to_money(actual_amount)
    try:
        settlement = await get_settlement(db, settlement_id, for_update=True)
        if settlement.status != SettlementStatus.PENDING:
            raise InvalidTransition(
                f"Settlement {settlement.settlement_number} is already {settlement.status.value}"
            )
        variance = actual - settlement.expected_amount
        now = datetime.now(timezone.utc)
        result = await db.execute(
            update(Settlement)
            .where(Settlement.id == settlement.id, Settlement.status == SettlementStatus.PENDING)
            .values(
                actual_amount=actual,
                variance=variance,
                variance_flagged=settlement.variance_flagged or variance != 0,
                status=(
                    SettlementStatus.VERIFIED
                    if abs(variance) <= settings.SETTLEMENT_VARIANCE_TOLERANCE
                    else SettlementStatus.DISPUTED
                ),
                verified_by=verifier.id,
                verified_at=now,
                notes=notes or settlement.notes,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidTransition(f"Settlement {settlement.settlement_number} was closed concurrently")

        if settlement.rider_id is not None and variance != 0:
            await _append_entry(
                db,
                settlement.rider_id,
                LedgerEntryType.SETTLEMENT_ADJUSTMENT,
                variance,
                actor=verifier,
                settlement_id=settlement.id,
                note=f"Settlement {settlement.settlement_number} variance",
            )
        if settlement.manifest_id is not None:
            await db.execute(
                update(Manifest)
                .where(
                    Manifest.id == settlement.manifest_id,
                    Manifest.status == ManifestStatus.DISPATCHED,
                )
                .values(status=ManifestStatus.SETTLED, settled_at=now)
                .execution_options(synchronize_session=False)
            )
        await db.commit()
        await db.refresh(settlement)
        logger.info(
            f"Settlement {settlement.settlement_number} {settlement.status.value} by {verifier.email}: "
            f"expected {settlement.expected_amount}, actual {actual}, variance {variance}"
        )
        return settlement
    except Exception:
        await db.rollback()
        raise
