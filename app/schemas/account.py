"""Account Pydantic schemas for request/response validation."""

from datetime import datetime

from pydantic import BaseModel, field_validator

from app.models.enums import AccountStatus


class AccountCreate(BaseModel):
    """Schema for creating an account."""

    account_number: str
    name: str

    @field_validator("account_number", "name")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Value cannot be empty")
        return v.strip()


class AccountStatusUpdate(BaseModel):
    """Schema for changing an account's status."""

    status: AccountStatus


class AccountResponse(BaseModel):
    """Schema for account response."""

    id: int
    account_number: str
    name: str
    status: AccountStatus
    created_at: datetime

    model_config = {"from_attributes": True}
