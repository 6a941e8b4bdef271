"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import sync, dead_letter

api_router = APIRouter()

api_router.include_router(
    sync.router,
    prefix="/sync",
    tags=["sync"]
)

api_router.include_router(
    dead_letter.router,
    prefix="/dead-letter",
    tags=["dead-letter"]
)
