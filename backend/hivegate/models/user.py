from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone

from hivegate.schemas.keystroke import load_pattern

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(30), unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    # Null for federated-only accounts
    password_hash = Column(String, nullable=True)
    provider = Column(String, default="local", nullable=False)
    role = Column(String, default="user", nullable=False)
    keystroke_pattern = Column(JSON, nullable=True)
    email_verified = Column(Boolean, default=False, nullable=False)
    last_login = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    @property
    def enrolled_pattern(self):
        return load_pattern(self.keystroke_pattern)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
