from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, model_validator

from dispatch_hub.schemas.status_schema import UserRole


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    full_name: str = Field(..., min_length=1, max_length=120)
    phone_number: Optional[str] = None
    role: UserRole = UserRole.OPERATOR
    rider_code: Optional[str] = Field(None, max_length=20)

    @model_validator(mode="after")
    def rider_needs_code(self):
        if self.role == UserRole.RIDER and not self.rider_code:
            raise ValueError("rider_code is required for riders")
        return self


class UserResponse(BaseModel):
    id: UUID
    email: str
    full_name: str
    phone_number: Optional[str] = None
    role: UserRole
    rider_code: Optional[str] = None
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: UserRole
    email: Optional[str] = None
