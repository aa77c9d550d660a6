from fastapi import APIRouter

from app.api.announcements import router as announcements_router
from app.api.chats import router as chats_router
from app.api.messages import router as messages_router

router = APIRouter()

router.include_router(chats_router)
router.include_router(messages_router)
router.include_router(announcements_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Portal Chat API"}
