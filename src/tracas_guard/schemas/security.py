"""Admin security-control schemas."""

from typing import Any

from pydantic import BaseModel, Field, field_validator


class BanRequest(BaseModel):
    """Manual ban of a network address."""

    address: str = Field(..., min_length=2, max_length=64)
    reason: str = Field("Manual ban", max_length=255)


class BanEntryResponse(BaseModel):
    address: str
    reason: str
    timestamp: float
    details: dict[str, Any] = Field(default_factory=dict)


class WafRuleRequest(BaseModel):
    enabled: bool


class AllowedCountriesRequest(BaseModel):
    """ISO 3166-1 alpha-2 country codes; an empty list allows every country."""

    countries: list[str] = Field(default_factory=list)

    @field_validator("countries")
    @classmethod
    def validate_codes(cls, value: list[str]) -> list[str]:
        codes = [code.strip().upper() for code in value]
        for code in codes:
            if len(code) != 2 or not code.isalpha():
                raise ValueError(f"Invalid country code: {code!r}")
        return codes


class KeyRotationRequest(BaseModel):
    role: str | None = Field(None, description="Rotate a single key role; all roles when omitted")


class KeyRotationResponse(BaseModel):
    rotated: dict[str, str] = Field(..., description="Key role -> new key id")
