from fastapi import APIRouter
from app.modules.sessions.router import router as sessions_router
from app.modules.directory.router import router as rooms_router
from app.modules.reschedule.router import router as reschedule_router

api_router = APIRouter()
api_router.include_router(sessions_router, tags=["sessions"])
api_router.include_router(rooms_router, tags=["rooms"])
api_router.include_router(reschedule_router, tags=["reschedule"])

@api_router.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
