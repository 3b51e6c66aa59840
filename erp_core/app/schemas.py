from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from .models import UserRole


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str = UserRole.VIEWER.value


class UserCreate(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    username: str = Field(..., min_length=3, max_length=50)
    password: str
    role: UserRole = UserRole.VIEWER


class UserOut(BaseModel):
    id: int
    full_name: str
    email: EmailStr
    username: str
    role: str
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class UserActiveIn(BaseModel):
    is_active: bool


class ChangePasswordIn(BaseModel):
    old_password: str
    new_password: str
