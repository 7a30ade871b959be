from fastapi import APIRouter

from jobchat.api.routes import conversations, health, messages, notifications

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(conversations.router, prefix="/conversations", tags=["messaging"])
api_router.include_router(messages.router, prefix="/messages", tags=["messaging"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
