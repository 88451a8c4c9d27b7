from fastapi import HTTPException, status, Request
from hivegate.services.token_service import verify_session_token

SESSION_COOKIE = "access_token"


def _extract_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization")
    if auth and auth.startswith("Bearer "):
        return auth.split(" ", 1)[1]
    # Cookie fallback: the login endpoint sets the session as an HttpOnly cookie
    cookie_token = request.cookies.get(SESSION_COOKIE)
    if cookie_token:
        return cookie_token
    return None


def get_optional_claims(request: Request) -> dict | None:
    token = _extract_bearer_token(request)
    if not token:
        return None
    return verify_session_token(token)


# Dependency to extract full session claims
def get_current_claims(request: Request) -> dict:
    token = _extract_bearer_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid token.")
    payload = verify_session_token(token)
    if payload is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token.")
    return payload
