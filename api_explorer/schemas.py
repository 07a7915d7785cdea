from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from api_explorer.credentials import CredentialSnapshot, CredentialStatus, Validity


class TokenUpdate(BaseModel):
    token: str = Field(max_length=4096)


class CredentialStatusRead(BaseModel):
    status: CredentialStatus
    token: str
    validity: Validity
    is_token_valid: bool
    validating: bool
    error: str | None
    validated_at: datetime | None

    @classmethod
    def from_snapshot(cls, snapshot: CredentialSnapshot) -> "CredentialStatusRead":
        validated_at = (
            datetime.fromtimestamp(snapshot.validated_at, tz=UTC) if snapshot.validated_at is not None else None
        )
        return cls(
            status=snapshot.status,
            token=snapshot.token,
            validity=snapshot.validity,
            is_token_valid=snapshot.is_trusted,
            validating=snapshot.validating,
            error=snapshot.error,
            validated_at=validated_at,
        )
