from fastapi import APIRouter

from obitwatch.api.routes import health, posts, records, runs, telegram, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(runs.router, tags=["pipeline"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(telegram.router, prefix="/webhooks", tags=["telegram"])
api_router.include_router(records.router, prefix="/records", tags=["records"])
api_router.include_router(posts.router, prefix="/posts", tags=["feed"])
