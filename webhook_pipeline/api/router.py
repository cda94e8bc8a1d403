"""Корневой роутер API."""

from fastapi import APIRouter

from webhook_pipeline.api.routes import health, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
