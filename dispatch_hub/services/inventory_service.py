from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.models.models import ProductVariant, User
from dispatch_hub.schemas.inventory_schema import StockAdjust, VariantCreate
from dispatch_hub.services.order_service import adjust_stock
from dispatch_hub.utils.exceptions import NotFound, ValidationFailed
from dispatch_hub.utils.logger_config import setup_logger

logger = setup_logger()


async def get_variant(db: AsyncSession, variant_id: UUID) -> ProductVariant:
    result = await db.execute(select(ProductVariant).where(ProductVariant.id == variant_id))
    variant = result.scalar_one_or_none()
    if variant is None:
        raise NotFound(f"Product variant {variant_id} not found")
    return variant


async def list_variants(db: AsyncSession, skip: int = 0, limit: int = 50) -> list[ProductVariant]:
    result = await db.execute(
        select(ProductVariant).order_by(ProductVariant.sku).offset(skip).limit(limit)
    )
    return list(result.scalars().all())


async def create_variant(db: AsyncSession, data: VariantCreate) -> ProductVariant:
    sku = data.sku.strip().upper()
    variant = ProductVariant(sku=sku, name=data.name, stock=data.stock)
    db.add(variant)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ValidationFailed(f"SKU {sku} already exists") from e
    await db.refresh(variant)
    return variant


async def restock(db: AsyncSession, variant_id: UUID, data: StockAdjust, actor: User) -> ProductVariant:
    """Manual stock correction (receiving, cycle counts). Never goes below zero."""
    variant = await get_variant(db, variant_id)
    try:
        await adjust_stock(db, variant_id, data.delta)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(variant)
    logger.info(
        f"Stock for {variant.sku} adjusted by {data.delta:+} by {actor.email}: {data.reason} (now {variant.stock})"
    )
    return variant
