"""Pydantic schemas for stakeholder endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class StakeholderCreate(BaseModel):
    wallet_address: str = Field(..., min_length=42, max_length=42)
    name: str = Field(..., min_length=1, max_length=255)
    role: str = Field(..., min_length=1)
    license_number: str = Field(default="", max_length=100)


class StakeholderUpdate(BaseModel):
    role: Optional[str] = None
    is_active: Optional[bool] = None
    license_number: Optional[str] = Field(default=None, max_length=100)


class StakeholderResponse(BaseModel):
    wallet_address: str
    name: str
    role: str
    license_number: str
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class StakeholderCreateResponse(StakeholderResponse):
    """Includes the raw credential — only returned once at registration."""
    credential: str
