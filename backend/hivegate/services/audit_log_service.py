from hivegate.models.audit_log import AuditLog
from datetime import datetime, timezone
import inspect


async def _persist(db, log: AuditLog) -> AuditLog:
    db.add(log)
    # Works with both AsyncSession and a plain Session
    result = db.commit()
    if inspect.isawaitable(result):
        await result
    return log


async def log_audit_event(db, user_id: int | None, action: str, details: str | None = None):
    log = AuditLog(
        user_id=user_id,
        action=action,
        details=details,
        timestamp=datetime.now(timezone.utc)
    )
    return await _persist(db, log)


async def log_login_attempt(db, user_id: int | None, identifier: str, status: str, details: str | None = None):
    combined_details = f"Identifier: {identifier}"
    if details:
        combined_details = f"{details}. {combined_details}"
    return await log_audit_event(db, user_id, f"login_{status}", combined_details)


async def log_registration(db, user_id: int, email: str):
    return await log_audit_event(db, user_id, "register", f"Email: {email}")
