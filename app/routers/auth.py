from fastapi import APIRouter, Depends, HTTPException, status, Request
from pydantic import BaseModel, EmailStr, Field, field_validator
from motor.motor_asyncio import AsyncIOMotorDatabase
from ..db import get_db
from ..schemas.user import UserOut, UserType
from ..security import hash_password, verify_password, create_access_token
from ..utils import to_id, utcnow
from ..middleware.rate_limit import apply_rate_limit
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

def validate_password_strength(password: str) -> str:
    """Valida que la contraseña tenga al menos 6 caracteres"""
    if len(password) < 6:
        raise ValueError("Password must be at least 6 characters")
    if len(password.encode("utf-8")) > 72:  # Límite de bcrypt
        raise ValueError("Password cannot exceed 72 bytes")
    if password.isdigit() or password.isalpha():
        logger.warning("Weak password on signup (only digits or only letters)")
    return password

class Signup(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)
    user_type: UserType

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)

class Login(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

@router.post("/signup", response_model=UserOut, status_code=status.HTTP_201_CREATED)
async def signup(request: Request, payload: Signup, db: AsyncIOMotorDatabase = Depends(get_db)):
    # Rate limiting: máximo 5 registros por minuto por IP
    apply_rate_limit(request, "5/minute")

    exists = await db.users.find_one({"email": payload.email})
    if exists:
        raise HTTPException(409, "Email already registered")

    doc = payload.model_dump()
    doc["password_hash"] = hash_password(doc.pop("password"))
    doc["profile_picture"] = None
    doc["created_at"] = utcnow()

    res = await db.users.insert_one(doc)
    logger.info("New %s account %s", payload.user_type, res.inserted_id)
    return to_id(await db.users.find_one({"_id": res.inserted_id}))

@router.post("/login")
async def login(request: Request, payload: Login, db: AsyncIOMotorDatabase = Depends(get_db)):
    # Rate limiting: máximo 10 intentos de login por minuto por IP
    apply_rate_limit(request, "10/minute")

    user = await db.users.find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(401, "Invalid credentials")
    token = create_access_token(str(user["_id"]))
    return {"access_token": token, "token_type": "bearer", "user_id": str(user["_id"])}
