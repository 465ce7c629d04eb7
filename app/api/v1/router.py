from fastapi import APIRouter

from app.api.v1 import billing, health, transcriptions, upload, users, webhooks

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(upload.router)
api_router.include_router(transcriptions.router)
api_router.include_router(users.router)
api_router.include_router(billing.router)
api_router.include_router(webhooks.router)
