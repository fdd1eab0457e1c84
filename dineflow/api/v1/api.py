from fastapi import APIRouter

from dineflow.api.v1 import billing, subscriptions, webhooks

api_router = APIRouter()

api_router.include_router(subscriptions.router)
api_router.include_router(billing.router)
api_router.include_router(webhooks.router)
