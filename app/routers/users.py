# app/routers/users.py
from fastapi import APIRouter, Depends, HTTPException
from motor.motor_asyncio import AsyncIOMotorDatabase

from ..db import get_db
from ..security import get_current_user
from ..utils import to_id, to_object_id
from ..schemas.user import UserOut, UserSummary

router = APIRouter()

@router.get("/me", response_model=UserOut)
async def get_me(current=Depends(get_current_user)):
    return current

@router.get("/{user_id}", response_model=UserSummary)
async def get_user(
    user_id: str,
    db: AsyncIOMotorDatabase = Depends(get_db),
    current=Depends(get_current_user),
):
    """Datos públicos de otro usuario (nombre, email, tipo)"""
    doc = await db.users.find_one({"_id": to_object_id(user_id, "user_id")})
    if not doc:
        raise HTTPException(404, "User not found")
    return to_id(doc)
