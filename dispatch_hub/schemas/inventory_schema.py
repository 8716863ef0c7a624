from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class VariantCreate(BaseModel):
    sku: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=200)
    stock: int = Field(0, ge=0)


class StockAdjust(BaseModel):
    delta: int
    reason: str = Field(..., min_length=1)


class VariantResponse(BaseModel):
    id: UUID
    sku: str
    name: str
    stock: int
    damaged_stock: int
    updated_at: datetime

    class Config:
        from_attributes = True
