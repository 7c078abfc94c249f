from fastapi import APIRouter

from app.api.friends import router as friends_router

router = APIRouter()

router.include_router(friends_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Soundwave API"}
