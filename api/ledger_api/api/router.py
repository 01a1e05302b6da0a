from fastapi import APIRouter

from ledger_api.api.routes import admin, events, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(events.router, prefix="/events", tags=["producer"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
