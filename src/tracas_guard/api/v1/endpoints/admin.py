# src/tracas_guard/api/v1/endpoints/admin.py
"""Administrative security controls: bans, WAF rules, countries and key rotation."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from tracas_guard.api.dependencies import GuardDep, require_role, require_two_factor
from tracas_guard.schemas.security import (
    AllowedCountriesRequest,
    BanEntryResponse,
    BanRequest,
    KeyRotationRequest,
    KeyRotationResponse,
    WafRuleRequest,
)

ADMIN_ROLE = "admin"

# Role check runs before the second-factor gate; both share one token verification.
router = APIRouter(
    prefix="/admin/security",
    tags=["admin", "security"],
    dependencies=[Depends(require_role(ADMIN_ROLE)), Depends(require_two_factor())],
)


@router.get("/status")
async def security_status(guard: GuardDep) -> dict[str, Any]:
    """Return key ages, WAF state and limiter backend; never key material."""
    return guard.status()


@router.get("/bans", response_model=list[BanEntryResponse])
async def list_bans(guard: GuardDep) -> list[BanEntryResponse]:
    return [BanEntryResponse(**entry) for entry in guard.list_bans()]


@router.post("/bans", status_code=status.HTTP_201_CREATED)
async def ban_address(payload: BanRequest, guard: GuardDep) -> dict[str, Any]:
    """Ban an address; loopback addresses are refused."""
    if not guard.ban(payload.address, payload.reason):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Address cannot be banned",
        )
    return {"banned": payload.address}


@router.delete("/bans/{address}")
async def unban_address(address: str, guard: GuardDep) -> dict[str, Any]:
    if not guard.unban(address):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Address is not banned")
    return {"unbanned": address}


@router.put("/waf/rules/{rule}")
async def set_waf_rule(rule: str, payload: WafRuleRequest, guard: GuardDep) -> dict[str, Any]:
    try:
        guard.set_waf_rule(rule, payload.enabled)
    except ValueError as err:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(err)) from err
    return {"rule": rule, "enabled": payload.enabled}


@router.put("/waf/enabled")
async def set_waf_enabled(payload: WafRuleRequest, guard: GuardDep) -> dict[str, Any]:
    guard.set_waf_enabled(payload.enabled)
    return {"enabled": payload.enabled}


@router.put("/waf/countries")
async def set_allowed_countries(
    payload: AllowedCountriesRequest, guard: GuardDep
) -> dict[str, Any]:
    return {"allowed_countries": guard.set_allowed_countries(payload.countries)}


@router.post("/keys/rotate", response_model=KeyRotationResponse)
def rotate_keys(payload: KeyRotationRequest, guard: GuardDep) -> KeyRotationResponse:
    """Rotate one key role, or all of them, immediately."""
    try:
        rotated = guard.rotate_keys(payload.role)
    except ValueError as err:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(err)) from err
    return KeyRotationResponse(rotated=rotated)
