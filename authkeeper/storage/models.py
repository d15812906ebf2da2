from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Identity:
    """Verified identity claims from the external provider (never persisted)."""

    subject_id: str
    email: str
    name: Optional[str] = None
    picture_url: Optional[str] = None
    email_verified: bool = True
    hosted_domain: Optional[str] = None


@dataclass
class User:
    id: str
    external_id: str
    email: str
    name: Optional[str] = None
    picture_url: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    version: int = 1

    @classmethod
    def new(
        cls,
        external_id: str,
        email: str,
        *,
        name: Optional[str] = None,
        picture_url: Optional[str] = None,
        role: str = "user",
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            external_id=external_id,
            email=email,
            name=name,
            picture_url=picture_url,
            role=role,
        )


@dataclass(frozen=True)
class SessionRecord:
    """Server-side state bound to one refresh token value."""

    subject: str
    generation: int
    family_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, subject: str, ttl_seconds: int, *, now: Optional[datetime] = None) -> "SessionRecord":
        issued = now or utcnow()
        return cls(
            subject=subject,
            generation=1,
            family_id=uuid.uuid4().hex,
            created_at=issued,
            expires_at=issued + timedelta(seconds=ttl_seconds),
        )

    def rotated(self, ttl_seconds: int, *, now: Optional[datetime] = None) -> "SessionRecord":
        issued = now or utcnow()
        return SessionRecord(
            subject=self.subject,
            generation=self.generation + 1,
            family_id=self.family_id,
            created_at=issued,
            expires_at=issued + timedelta(seconds=ttl_seconds),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub": self.subject,
            "gen": self.generation,
            "fam": self.family_id,
            "iat": self.created_at.isoformat(),
            "exp": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            subject=str(data["sub"]),
            generation=int(data["gen"]),
            family_id=str(data["fam"]),
            created_at=datetime.fromisoformat(data["iat"]),
            expires_at=datetime.fromisoformat(data["exp"]),
        )


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    role: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    token_id: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AccessClaims":
        return cls(
            subject=str(payload["sub"]),
            role=str(payload["role"]),
            token_type=str(payload["token_type"]),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            token_id=str(payload["jti"]),
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> Dict[str, str]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat()
        data["refresh_expires_at"] = self.refresh_expires_at.isoformat()
        return data


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: TokenPair


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0
