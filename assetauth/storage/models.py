from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple


@dataclass(frozen=True)
class CredentialRecord:
    user_id: str
    password_hash: str
    role: str = "user"


@dataclass(frozen=True)
class Identity:
    """Resolved caller for a single request."""

    subject: str
    device_id: str
    roles: Tuple[str, ...] = ()


@dataclass
class SessionRecord:
    user_id: str
    device_id: str
    access_token: str
    refresh_token: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    def to_json(self, *, access_fp: str, refresh_fp: str) -> str:
        """Serialize for the cache, carrying fingerprints the store scripts index on."""
        return json.dumps(
            {
                "user_id": self.user_id,
                "device_id": self.device_id,
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "created_at": self.created_at.isoformat(),
                "updated_at": self.updated_at.isoformat() if self.updated_at else None,
                "access_fp": access_fp,
                "refresh_fp": refresh_fp,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        updated_raw = data.get("updated_at")
        return cls(
            user_id=data["user_id"],
            device_id=data["device_id"],
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(updated_raw) if updated_raw else None,
        )
