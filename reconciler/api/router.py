from fastapi import APIRouter

from reconciler.api.v1 import billing

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(billing.router)
