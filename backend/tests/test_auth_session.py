"""
Tests for the authentication session manager: registration and login flows.
"""
from datetime import datetime, timedelta, timezone

import pytest

from hivegate.models.user import User
from hivegate.schemas.keystroke import TimingPattern
from hivegate.services.auth_session import AuthSessionManager, AuthState, AuthTransaction
from hivegate.services.errors import (
    BiometricMismatch, EmailAlreadyRegistered, InvalidCredentials, InvalidTransition, OtpMismatch,
    UsernameTaken, ValidationError,
)
from hivegate.services.keystroke import extract_pattern
from hivegate.services.otp_ledger import OtpLedger
from hivegate.services.password_hasher import hash_password
from hivegate.services.pending_registration import MemoryPendingRegistrations
from hivegate.services.token_service import establish_session, verify_session_token

from conftest import typed


def sent_code(mailer):
    """The OTP handed to the mailer on its most recent call."""
    return mailer.call_args.args[1]


async def register_user(manager, mailer, username="newuser", email="new@x.com", password="pass1234", pattern=None):
    await manager.start_registration(username, email, password)
    return await manager.confirm_registration(email, sent_code(mailer), username, enrolled_pattern=pattern)


class TestRegistration:
    """Test cases for the OTP-gated registration flow."""

    @pytest.mark.asyncio
    async def test_full_registration(self, manager, mailer, sample_user_data):
        issue = await manager.start_registration(**sample_user_data)

        assert issue.delivered is True
        assert issue.code is None
        assert issue.expires_in_seconds == 300
        assert issue.transaction.state == AuthState.OTP_PENDING
        mailer.assert_called_once()
        assert mailer.call_args.args[0] == "new@x.com"

        txn = AuthTransaction(state=AuthState.OTP_PENDING)
        user = await manager.confirm_registration(
            "new@x.com", sent_code(mailer), "newuser", transaction=txn,
        )

        assert user.username == "newuser"
        assert user.role == "user"
        assert txn.state == AuthState.REGISTERED
        assert txn.terminal is True

    @pytest.mark.asyncio
    async def test_registration_consumes_otp_and_staging(self, manager, mailer, pending_store, ledger):
        await register_user(manager, mailer)

        assert await pending_store.get("new@x.com") is None
        assert await ledger.discard("new@x.com") == 0

    @pytest.mark.asyncio
    async def test_register_requires_verified_email(self, manager):
        with pytest.raises(ValidationError):
            await manager.register("newuser", "new@x.com", "pass1234")

    @pytest.mark.asyncio
    async def test_register_rejects_other_username(self, manager, mailer):
        await manager.start_registration("newuser", "new@x.com", "pass1234")
        await manager.verify_email("new@x.com", sent_code(mailer))

        with pytest.raises(ValidationError):
            await manager.register("someoneelse", "new@x.com", "pass1234")

    @pytest.mark.asyncio
    async def test_password_supplied_at_register(self, manager, mailer):
        await manager.start_registration("newuser", "new@x.com")
        await manager.verify_email("new@x.com", sent_code(mailer))

        with pytest.raises(ValidationError):
            await manager.register("newuser", "new@x.com")

        user = await manager.register("newuser", "new@x.com", "later-pass")
        assert user.id is not None
        assert (await manager.login("newuser", "later-pass")).user.id == user.id

    @pytest.mark.asyncio
    async def test_wrong_otp_leaves_transaction_pending(self, manager, mailer):
        await manager.start_registration("newuser", "new@x.com", "pass1234")
        code = sent_code(mailer)
        txn = AuthTransaction(state=AuthState.OTP_PENDING)

        with pytest.raises(OtpMismatch) as exc:
            await manager.verify_email("new@x.com", "000000" if code != "000000" else "111111", transaction=txn)
        assert exc.value.remaining == 2
        assert txn.state == AuthState.OTP_PENDING

        await manager.verify_email("new@x.com", code, transaction=txn)
        assert txn.state == AuthState.OTP_PENDING

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected_before_otp(self, manager, mailer):
        await register_user(manager, mailer)
        mailer.reset_mock()

        with pytest.raises(EmailAlreadyRegistered):
            await manager.start_registration("another", "NEW@x.com", "pass1234")
        mailer.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_username_rejected(self, manager, mailer):
        await register_user(manager, mailer)

        with pytest.raises(UsernameTaken):
            await manager.start_registration("newuser", "second@x.com", "pass1234")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("username,email,password", [
        ("newuser", "not-an-email", "pass1234"),
        ("nu", "new@x.com", "pass1234"),
        ("x" * 31, "new@x.com", "pass1234"),
        ("newuser", "new@x.com", "abc"),
        ("newuser", "new@x.com", "p" * 73),
        ("v@x.com", "new@x.com", "pass1234"),
    ])
    async def test_input_validation(self, manager, mailer, username, email, password):
        with pytest.raises(ValidationError):
            await manager.start_registration(username, email, password)
        mailer.assert_not_called()

    @pytest.mark.asyncio
    async def test_demo_mode_returns_code(self, manager, mailer):
        mailer.return_value = False

        issue = await manager.start_registration("newuser", "new@x.com", "pass1234")

        assert issue.delivered is False
        assert issue.code == sent_code(mailer)

    @pytest.mark.asyncio
    async def test_no_demo_code_in_production(self, manager, mailer, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        mailer.return_value = False

        issue = await manager.start_registration("newuser", "new@x.com", "pass1234")

        assert issue.delivered is False
        assert issue.code is None


class SteppedClock:
    """Wall clock for the OTP ledger and monotonic clock for staging, moved together."""

    def __init__(self):
        self.wall = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.mono = 1000.0

    def now(self):
        return self.wall

    def monotonic(self):
        return self.mono

    def advance(self, seconds):
        self.wall += timedelta(seconds=seconds)
        self.mono += seconds


class TestRegistrationWindow:
    """Timing between OTP verification and account creation."""

    @pytest.fixture
    def clock(self):
        return SteppedClock()

    @pytest.fixture
    def timed_pending(self, clock):
        return MemoryPendingRegistrations(clock=clock.monotonic)

    @pytest.fixture
    def timed_manager(self, otp_store, credential_store, timed_pending, mailer, clock):
        return AuthSessionManager(
            ledger=OtpLedger(otp_store, clock=clock.now),
            credentials=credential_store,
            pending=timed_pending,
            mailer=mailer,
            session_issuer=establish_session,
            require_pattern=False,
        )

    @pytest.mark.asyncio
    async def test_late_verification_still_leaves_time_to_register(self, timed_manager, mailer, clock):
        await timed_manager.start_registration("newuser", "new@x.com", "pass1234")

        clock.advance(290)
        await timed_manager.verify_email("new@x.com", sent_code(mailer))
        clock.advance(15)

        user = await timed_manager.register("newuser", "new@x.com")
        assert user.username == "newuser"

    @pytest.mark.asyncio
    async def test_registration_window_closes(self, timed_manager, mailer, clock):
        await timed_manager.start_registration("newuser", "new@x.com", "pass1234")
        await timed_manager.verify_email("new@x.com", sent_code(mailer))

        clock.advance(301)
        with pytest.raises(ValidationError):
            await timed_manager.register("newuser", "new@x.com")

    @pytest.mark.asyncio
    async def test_verified_marker_keeps_challenge_username(self, timed_manager, timed_pending, mailer):
        await timed_manager.start_registration("newuser", "new@x.com", "pass1234")
        # Staging record lost (evicted or expired) while the challenge is still live
        await timed_pending.discard("new@x.com")

        await timed_manager.verify_email("new@x.com", sent_code(mailer))

        marker = await timed_pending.get("new@x.com")
        assert marker.verified is True
        assert marker.username == "newuser"
        with pytest.raises(ValidationError):
            await timed_manager.register("intruder", "new@x.com", "pass1234")
        user = await timed_manager.register("newuser", "new@x.com", "pass1234")
        assert user.email == "new@x.com"


class TestLogin:
    """Test cases for password plus keystroke login."""

    @pytest.mark.asyncio
    async def test_login_without_pattern(self, manager, mailer):
        await register_user(manager, mailer, pattern=extract_pattern(typed("pass1234")))

        result = await manager.login("newuser", "pass1234")

        assert result.transaction.state == AuthState.AUTHENTICATED
        assert result.pattern_checked is False
        claims = verify_session_token(result.session_token)
        assert claims["username"] == "newuser"
        assert claims["role"] == "user"

    @pytest.mark.asyncio
    async def test_login_with_matching_pattern(self, manager, mailer):
        await register_user(manager, mailer, pattern=extract_pattern(typed("pass1234")))

        result = await manager.login("new@x.com", "pass1234", extract_pattern(typed("pass1234", gap=140, hold=90)))

        assert result.pattern_checked is True
        assert result.user.last_login is not None
        assert result.transaction.history == [AuthState.ANONYMOUS, AuthState.CREDENTIALS_CHECKED]

    @pytest.mark.asyncio
    async def test_email_shaped_username_cannot_take_over_email_login(self, manager, mailer, test_db_session):
        await register_user(manager, mailer, username="victim", email="v@x.com", password="victimpw")

        with pytest.raises(ValidationError):
            await manager.start_registration("v@x.com", "attacker@x.com", "attackpw")

        # Even a row stored before usernames were restricted does not shadow the email owner
        test_db_session.add(User(username="v@x.com", email="attacker@x.com", password_hash=hash_password("attackpw")))
        test_db_session.commit()

        result = await manager.login("v@x.com", "victimpw")
        assert result.user.username == "victim"
        with pytest.raises(InvalidCredentials):
            await manager.login("v@x.com", "attackpw")

    @pytest.mark.asyncio
    async def test_scrambled_pattern_is_rejected(self, manager, mailer):
        await register_user(manager, mailer, pattern=extract_pattern(typed("pass1234")))
        txn = AuthTransaction()

        with pytest.raises(BiometricMismatch) as exc:
            await manager.login("newuser", "pass1234", extract_pattern(typed("pass1243")), transaction=txn)
        assert exc.value.status_code == 401
        assert txn.state == AuthState.REJECTED

    @pytest.mark.asyncio
    async def test_pattern_of_other_kind_is_rejected(self, manager, mailer):
        await register_user(manager, mailer, pattern=extract_pattern(typed("pass1234")))

        with pytest.raises(BiometricMismatch):
            await manager.login("newuser", "pass1234", TimingPattern(length=8, timings=[100] * 8))

    @pytest.mark.asyncio
    async def test_wrong_password(self, manager, mailer):
        await register_user(manager, mailer)
        txn = AuthTransaction()

        with pytest.raises(InvalidCredentials):
            await manager.login("newuser", "wrong-pass", transaction=txn)
        assert txn.state == AuthState.REJECTED

    @pytest.mark.asyncio
    async def test_unknown_user(self, manager):
        with pytest.raises(InvalidCredentials):
            await manager.login("ghost", "pass1234")

    @pytest.mark.asyncio
    async def test_empty_credentials(self, manager):
        with pytest.raises(InvalidCredentials):
            await manager.login("", "")

    @pytest.mark.asyncio
    async def test_required_pattern_missing(self, manager, mailer):
        await register_user(manager, mailer, pattern=extract_pattern(typed("pass1234")))
        manager.require_pattern = True

        with pytest.raises(BiometricMismatch):
            await manager.login("newuser", "pass1234")

        result = await manager.login("newuser", "pass1234", extract_pattern(typed("pass1234")))
        assert result.pattern_checked is True

    @pytest.mark.asyncio
    async def test_account_without_enrolled_pattern(self, manager, mailer):
        await register_user(manager, mailer)

        result = await manager.login("newuser", "pass1234", extract_pattern(typed("anything")))

        assert result.pattern_checked is False
        assert result.transaction.state == AuthState.AUTHENTICATED


class TestAuthTransaction:
    def test_terminal_states_cannot_advance(self):
        for state in (AuthState.REGISTERED, AuthState.AUTHENTICATED, AuthState.REJECTED):
            txn = AuthTransaction(state=state)
            assert txn.terminal is True
            with pytest.raises(InvalidTransition):
                txn.advance(AuthState.OTP_PENDING)

    def test_login_cannot_skip_credentials(self):
        txn = AuthTransaction()

        with pytest.raises(InvalidTransition):
            txn.advance(AuthState.AUTHENTICATED)
        assert txn.state == AuthState.ANONYMOUS

    def test_history_records_path(self):
        txn = AuthTransaction()
        txn.advance(AuthState.OTP_PENDING)
        txn.advance(AuthState.OTP_PENDING)
        txn.advance(AuthState.REGISTERED)

        assert txn.history == [AuthState.ANONYMOUS, AuthState.OTP_PENDING, AuthState.OTP_PENDING]
