from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ACCOUNT_ROLES = ("farmer", "buyer", "admin")
DEFAULT_ROLE = "farmer"

# Fields a profile update may touch; everything else is identity or credential data
MUTABLE_PROFILE_FIELDS = ("name", "phone", "location", "profile_image")
LOCATION_FIELDS = ("address", "city", "country")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Location:
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.address or self.city or self.country)


@dataclass
class Account:
    id: str
    email: str
    name: str
    role: str = DEFAULT_ROLE
    phone: Optional[str] = None
    location: Optional[Location] = None
    profile_image: Optional[str] = None
    date_joined: datetime = field(default_factory=_utcnow)


@dataclass
class AccountCredential:
    account_id: str
    password_hash: str
    password_algo: str
    created_at: datetime = field(default_factory=_utcnow)
    last_updated_at: Optional[datetime] = None
