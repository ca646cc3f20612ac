"""
OAuth credential state for one tenant's Bling connection.

TokenState is immutable. Every change (code exchange, refresh, admin
deactivation) produces a new value, so a refresh that lost a race against
another task is visible as two distinct states instead of a half-updated
shared object.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from blingsync.clock import as_utc, utcnow


class TokenState(BaseModel):
    model_config = ConfigDict(frozen=True)

    company_id: str
    client_id: str
    client_secret: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def is_authenticated(self) -> bool:
        """True once a code exchange has produced at least one token."""
        return bool(self.access_token or self.refresh_token)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """A missing access token or expiry counts as expired."""
        if not self.access_token or self.expires_at is None:
            return True
        return self.expires_at <= as_utc(now or utcnow())

    def with_token_response(
        self, payload: Dict[str, Any], now: Optional[datetime] = None
    ) -> "TokenState":
        """Return the state produced by a token endpoint response.

        Raises:
            ValueError: if the payload lacks access_token or a numeric expires_in.
        """
        access_token = payload.get("access_token")
        if not access_token:
            raise ValueError("Token response has no access_token")
        try:
            expires_in = int(payload["expires_in"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError("Token response has no valid expires_in") from exc

        issued_at = as_utc(now or utcnow())
        return self.model_copy(
            update={
                "access_token": access_token,
                # Bling rotates refresh tokens; keep the old one only if none came back
                "refresh_token": payload.get("refresh_token") or self.refresh_token,
                "expires_at": issued_at + timedelta(seconds=expires_in),
            }
        )

    def invalidated(self) -> "TokenState":
        """Same credentials with the access token marked expired."""
        return self.model_copy(update={"expires_at": None})

    def redacted(self) -> Dict[str, Any]:
        """Dict view without the client secret or token values."""
        return {
            "company_id": self.company_id,
            "client_id": self.client_id,
            "is_active": self.is_active,
            "is_authenticated": self.is_authenticated,
            "expires_at": self.expires_at,
        }
