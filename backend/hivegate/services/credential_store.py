"""
Credential store: user identity, bcrypt password hash and enrolled keystroke pattern.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.future import select

from hivegate.models.user import User
from hivegate.schemas.keystroke import dump_pattern
from hivegate.services.errors import EmailAlreadyRegistered, StoreUnavailable, UsernameTaken, ValidationError
from hivegate.services.otp_ledger import normalize_email
from hivegate.services.password_hasher import check_password_async, hash_password_async

logger = logging.getLogger(__name__)


class CredentialStore:
    def __init__(self, db):
        self.db = db

    async def _first(self, stmt) -> Optional[User]:
        try:
            result = await self.db.execute(stmt)
        except (OperationalError, DBAPIError) as e:
            logger.error(f"[CredentialStore] Query failed: {e}")
            raise StoreUnavailable() from e
        return result.scalars().first()

    async def get_user(self, identifier: str) -> Optional[User]:
        """Look a user up by (normalized) email when the identifier has an '@', else by username."""
        if not identifier:
            return None
        identifier = identifier.strip()
        if "@" in identifier:
            return await self._first(select(User).where(User.email == normalize_email(identifier)))
        return await self._first(select(User).where(User.username == identifier))

    async def get_by_id(self, user_id: int) -> Optional[User]:
        return await self._first(select(User).where(User.id == user_id))

    # Usernames and emails share one identifier namespace, so both checks span both columns
    async def email_exists(self, email: str) -> bool:
        email = normalize_email(email)
        return await self._first(select(User).where(or_(User.email == email, User.username == email))) is not None

    async def username_exists(self, username: str) -> bool:
        username = (username or "").strip()
        return await self._first(
            select(User).where(or_(User.username == username, User.email == normalize_email(username)))
        ) is not None

    async def register(self, username: str, email: str, password: Optional[str], enrolled_pattern=None, *,
                       password_hash: Optional[str] = None, role: str = "user",
                       email_verified: bool = True) -> User:
        username = (username or "").strip()
        email = normalize_email(email)

        if "@" in username:
            raise ValidationError("Username cannot contain '@'")
        if await self.email_exists(email):
            raise EmailAlreadyRegistered()
        if await self.username_exists(username):
            raise UsernameTaken()

        if password_hash is None and password is not None:
            password_hash = await hash_password_async(password)

        user = User(
            username=username,
            email=email,
            password_hash=password_hash,
            provider="local",
            role=role,
            keystroke_pattern=dump_pattern(enrolled_pattern),
            email_verified=email_verified,
        )
        self.db.add(user)
        try:
            await self.db.commit()
        except IntegrityError as e:
            # Lost a race with a concurrent registration for the same identity
            await self.db.rollback()
            logger.info(f"[CredentialStore] Duplicate identity on commit: {username} / {email}")
            if await self.email_exists(email):
                raise EmailAlreadyRegistered() from e
            raise UsernameTaken() from e
        except (OperationalError, DBAPIError) as e:
            await self.db.rollback()
            logger.error(f"[CredentialStore] Commit failed: {e}")
            raise StoreUnavailable() from e
        await self.db.refresh(user)
        logger.info(f"[CredentialStore] Registered user {user.username} (id={user.id})")
        return user

    async def verify_password(self, identifier: str, password: str) -> bool:
        user = await self.get_user(identifier)
        if user is None or not user.password_hash:
            return False
        return await check_password_async(password, user.password_hash)

    async def get_enrolled_pattern(self, identifier: str):
        user = await self.get_user(identifier)
        if user is None:
            return None
        return user.enrolled_pattern

    async def touch_last_login(self, user: User) -> None:
        user.last_login = datetime.now(timezone.utc)
        try:
            await self.db.commit()
        except (OperationalError, DBAPIError) as e:
            await self.db.rollback()
            logger.error(f"[CredentialStore] Could not record last login: {e}")
            raise StoreUnavailable() from e
