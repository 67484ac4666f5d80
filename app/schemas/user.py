from pydantic import BaseModel, EmailStr
from typing import Literal, Optional

UserType = Literal["patient", "researcher", "health_expert"]

class UserOut(BaseModel):
    id: str
    name: str
    email: EmailStr
    user_type: UserType
    profile_picture: Optional[str] = None
    created_at: Optional[str] = None

class UserSummary(BaseModel):
    """Datos públicos de un usuario (p.ej. el otro participante de una conversación)."""
    id: str
    name: str
    email: Optional[str] = None
    user_type: Optional[UserType] = None
