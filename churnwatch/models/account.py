"""ChurnWatch — Account Registry Model."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlmodel import SQLModel, Field


class AccountStatus(str, Enum):
    LAUNCHED = "LAUNCHED"
    PAUSED = "PAUSED"
    FROZEN = "FROZEN"
    ARCHIVED = "ARCHIVED"


class Account(SQLModel, table=True):
    """A tracked account and its denormalized lifecycle fields.

    Upserted by account_id on every registry sync; never hard-deleted.
    """

    __tablename__ = "accounts"

    account_id: str = Field(primary_key=True)
    account_name: str = Field(default="")
    status: str = Field(default=AccountStatus.LAUNCHED.value, index=True)
    launched_at: Optional[date] = Field(default=None, index=True)
    archived_at: Optional[date] = Field(default=None)
    earliest_unit_archived_at: Optional[date] = Field(
        default=None, description="Fallback archive signal from the account's units"
    )
    owner: str = Field(default="Unassigned", description="Owning agent")
    account_name_protected: bool = Field(
        default=False, description="Keep account_name on upstream refresh"
    )
    owner_protected: bool = Field(
        default=False, description="Keep owner on upstream refresh"
    )
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_archived(self) -> bool:
        return self.status == AccountStatus.ARCHIVED.value or self.archived_at is not None

    @property
    def lifecycle_end(self) -> Optional[date]:
        """Earliest archive signal; the authoritative "alive until" date."""
        if not self.is_archived:
            return None
        signals = [d for d in (self.archived_at, self.earliest_unit_archived_at) if d]
        return min(signals) if signals else None

    @property
    def display_archived_at(self) -> Optional[date]:
        """Archive date shown in risk reasons: archived_at, else the unit fallback."""
        if not self.is_archived:
            return None
        return self.archived_at or self.earliest_unit_archived_at


class AccountRecord(BaseModel):
    """One row of the upstream accounts feed, after parsing."""

    account_id: str
    account_name: str = ""
    status: AccountStatus
    launched_at: Optional[date] = None
    archived_at: Optional[date] = None
    earliest_unit_archived_at: Optional[date] = None
    owner: str = "Unassigned"
