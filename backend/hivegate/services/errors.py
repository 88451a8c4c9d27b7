"""
Error taxonomy for the authentication core.

Every error is an expected, user-facing condition except StoreUnavailable,
which reports that a backing store could not be reached.
"""
from typing import Any, Dict, Optional


class AuthError(Exception):
    kind = "AuthError"
    status_code = 400
    default_message = "Authentication error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class ValidationError(AuthError):
    kind = "ValidationError"
    status_code = 400
    default_message = "Invalid input"


class InvalidTransition(ValidationError):
    default_message = "Operation not allowed in the current authentication state"


class Conflict(AuthError):
    kind = "Conflict"
    status_code = 409
    default_message = "User with this email or username already exists"


class EmailAlreadyRegistered(Conflict):
    default_message = "This email is already registered. Please use a different email or login instead."


class UsernameTaken(Conflict):
    default_message = "This username is already taken. Please choose a different username."


class OtpNotFound(AuthError):
    kind = "NotFound"
    status_code = 404
    default_message = "No valid OTP found for this email. Please request a new one."


class OtpExpired(AuthError):
    kind = "Expired"
    status_code = 410
    default_message = "OTP has expired. Please request a new one."


class OtpAttemptsExhausted(AuthError):
    kind = "AttemptsExhausted"
    status_code = 429
    default_message = "Too many failed attempts. Please request a new OTP."


class OtpMismatch(AuthError):
    kind = "Mismatch"
    status_code = 400

    def __init__(self, remaining: int):
        self.remaining = remaining
        super().__init__(f"Invalid OTP. You have {remaining} attempts remaining.")

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["remaining"] = self.remaining
        return detail


class InvalidCredentials(AuthError):
    kind = "InvalidCredentials"
    status_code = 401
    default_message = "Invalid username or password"


class BiometricMismatch(AuthError):
    kind = "BiometricMismatch"
    status_code = 401
    default_message = "Keystroke pattern does not match. Authentication failed."


class StoreUnavailable(AuthError):
    kind = "Unavailable"
    status_code = 503
    default_message = "Authentication store is temporarily unavailable"
