"""
Auth API routes.

- POST /api/auth/register
- POST /api/auth/login
- POST /api/auth/logout
- GET  /api/auth/me
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request

from resume_rewriter.api.schemas import CamelModel, CamelRequest
from resume_rewriter.core.auth import bearer_token, get_current_user_id
from resume_rewriter.core.errors import NotFoundError
from resume_rewriter.features.users import service as users
from resume_rewriter.models.user import User


router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterRequest(CamelRequest):
    email: str
    password: str
    name: Optional[str] = None


class LoginRequest(CamelRequest):
    email: str
    password: str


class UserOut(CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(id=user.user_id, email=user.email, name=user.name, created_at=user.created_at)


class SessionResponse(CamelModel):
    token: str
    user: UserOut


class MeResponse(CamelModel):
    user: UserOut


@router.post("/register", response_model=SessionResponse, status_code=201)
def register(body: RegisterRequest):
    user, token = users.register(body.email, body.password, body.name)
    return SessionResponse(token=token, user=UserOut.from_user(user))


@router.post("/login", response_model=SessionResponse)
def login(body: LoginRequest):
    user, token = users.login(body.email, body.password)
    return SessionResponse(token=token, user=UserOut.from_user(user))


@router.post("/logout")
def logout(request: Request, user_id: str = Depends(get_current_user_id)):
    users.logout(bearer_token(request))
    return {"success": True}


@router.get("/me", response_model=MeResponse)
def me(user_id: str = Depends(get_current_user_id)):
    user = users.get_user(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return MeResponse(user=UserOut.from_user(user))
