"""
V1 API router aggregator — wires all endpoint modules together.
"""

from fastapi import APIRouter

from ledgerguard.api.v1.endpoints import (auth, health, kiosk, sessions, team,
                                          two_factor)

api_router = APIRouter()

# Password login, refresh, logout, profile, tenant switch
api_router.include_router(auth.router)

# TOTP setup / verification, backup codes
api_router.include_router(two_factor.router)

# Caller-scoped session listing and revocation
api_router.include_router(sessions.router)

# Employee PIN login, manager overrides, employee profiles
api_router.include_router(kiosk.router)

# Company members and roles
api_router.include_router(team.router)

# Public health check
api_router.include_router(health.router)
