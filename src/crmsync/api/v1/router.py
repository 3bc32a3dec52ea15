"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.crmsync.api.v1 import integrations, recipients, webhooks

router = APIRouter(prefix="/api/v1")

router.include_router(integrations.router)
router.include_router(webhooks.router)
router.include_router(recipients.router)
