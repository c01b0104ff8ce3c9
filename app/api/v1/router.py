from fastapi import APIRouter

from app.api.v1.endpoints import integrations

api_router = APIRouter()

api_router.include_router(integrations.router, prefix="/integrations", tags=["integrations"])
