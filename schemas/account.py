"""Connected account and calendar schemas."""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Provider = Literal["google", "microsoft"]


class AccountCreateSchema(BaseModel):
    """Schema for registering a connected account."""

    owner_id: str = Field(..., description="User who owns the account")
    provider: Provider = Field(..., description="Calendar provider behind the grant")
    email_address: Optional[str] = Field(None, max_length=255)
    grant_id: Optional[str] = Field(None, description="Nylas grant id")
    is_active: bool = True


class AccountSchema(AccountCreateSchema):
    """Complete account schema."""

    id: str
    last_calendar_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CalendarSchema(BaseModel):
    """Local calendar, possibly mirrored from a provider."""

    id: str
    owner_id: str
    account_id: Optional[str] = None
    provider: str = "local"
    provider_calendar_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    timezone: str = "UTC"
    color: str = "blue"
    is_primary: bool = False
    is_read_only: bool = False
    sync_enabled: bool = True
    last_synced_at: Optional[datetime] = None
    sync_status: str = "idle"
    sync_error: Optional[str] = None
    provider_data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_mirrored(self) -> bool:
        return self.account_id is not None and self.provider_calendar_id is not None
