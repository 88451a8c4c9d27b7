from pydantic import BaseModel, Field
from typing import List, Optional

from hivegate.schemas.keystroke import KeystrokeEvent, KeystrokePattern


class SendOtpRequest(BaseModel):
    email: str
    username: str
    # Optional: when supplied it is hashed and staged until the OTP is confirmed
    password: Optional[str] = None


class SendOtpResponse(BaseModel):
    issued: bool
    expiresInSeconds: int
    message: str = "OTP sent successfully to your email"
    demoOtp: Optional[str] = None


class VerifyOtpRequest(BaseModel):
    email: str
    code: str = Field(alias="otp")

    class Config:
        populate_by_name = True


class VerifyOtpResponse(BaseModel):
    verified: bool
    message: str = "OTP verified successfully!"


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: Optional[str] = None
    keystrokePattern: Optional[KeystrokePattern] = None
    # Raw events may be sent instead of a reduced pattern
    keystrokeEvents: Optional[List[KeystrokeEvent]] = None


class RegisterResponse(BaseModel):
    userId: int
    username: str
    email: str
    role: str


class LoginRequest(BaseModel):
    identifier: str = Field(alias="username")
    password: str
    keystrokePattern: Optional[KeystrokePattern] = None
    keystrokeEvents: Optional[List[KeystrokeEvent]] = None

    class Config:
        populate_by_name = True


class LoginResponse(BaseModel):
    userId: int
    username: str
    role: str
    sessionEstablished: bool
    message: str = "Login successful!"


class SessionStatusResponse(BaseModel):
    authenticated: bool
    user: Optional[dict] = None
