from fastapi import APIRouter
from app.api.v1 import queue, credits

api_router = APIRouter()

api_router.include_router(queue.router, prefix="/queue", tags=["Queue"])
api_router.include_router(credits.router, prefix="/credits", tags=["Credits"])
