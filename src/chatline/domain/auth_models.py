from __future__ import annotations

from typing import Optional
from pydantic import BaseModel, Field


class UserRecord(BaseModel):
    id: int
    username: str
    password_hash: str
    fullname: Optional[str] = None
    email: Optional[str] = None
    created_at: str
    last_login_at: Optional[str] = None


class UserPublic(BaseModel):
    id: int
    username: str
    fullname: Optional[str] = None


class LoginLog(BaseModel):
    id: int
    user_id: Optional[int] = None
    username: Optional[str] = None
    fullname: Optional[str] = None
    session_id: Optional[str] = None
    login_time: str
    logout_time: Optional[str] = None
    ip_address: Optional[str] = None


class ResetToken(BaseModel):
    token_hash: str
    user_id: int
    username: str
    expires_at: str
    consumed_at: Optional[str] = None


class SignupRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str
    fullname: Optional[str] = None
    email: Optional[str] = None


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class ForgotPasswordRequest(BaseModel):
    username: str = Field(min_length=1)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    newPassword: str


class UserResponse(BaseModel):
    user: UserPublic
