"""
Session and identity management.

``AuthenticationManager`` tracks who is signed in and keeps ``users/{id}``
documents in step with the external identity provider. The provider itself
(email/password, OAuth, platform SSO) is consumed through the
``IdentityProvider`` protocol.
"""

import hashlib
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from pydantic import ValidationError

from db.store import DocumentStore, StoreError
from schemas.user import EmailCredentials, User
from services.codec import deserialize_user, serialize_user
from services.invitations import InvitationService
from services.sync import TRIPS, USERS, SyncService
from utils.logging import get_sync_logger

logger = get_sync_logger("auth")


class AuthErrorCode(str, Enum):
    """Error codes reported by the identity provider."""

    EMAIL_ALREADY_IN_USE = "email-already-in-use"
    INVALID_EMAIL = "invalid-email"
    WEAK_PASSWORD = "weak-password"
    WRONG_PASSWORD = "wrong-password"
    USER_NOT_FOUND = "user-not-found"
    USER_DISABLED = "user-disabled"
    TOO_MANY_REQUESTS = "too-many-requests"
    NETWORK_ERROR = "network-request-failed"
    OPERATION_NOT_ALLOWED = "operation-not-allowed"


AUTH_ERROR_MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.EMAIL_ALREADY_IN_USE: "This email is already registered. Please try signing in instead.",
    AuthErrorCode.INVALID_EMAIL: "Please enter a valid email address.",
    AuthErrorCode.WEAK_PASSWORD: "Password is too weak. Please choose a stronger password.",
    AuthErrorCode.WRONG_PASSWORD: "Incorrect password. Please try again.",
    AuthErrorCode.USER_NOT_FOUND: "No account found with this email. Please check your email or create a new account.",
    AuthErrorCode.USER_DISABLED: "This account has been disabled. Please contact support.",
    AuthErrorCode.TOO_MANY_REQUESTS: "Too many failed attempts. Please try again later.",
    AuthErrorCode.NETWORK_ERROR: "Network error. Please check your internet connection and try again.",
    AuthErrorCode.OPERATION_NOT_ALLOWED: "Email/password sign-in is not enabled. Please contact support.",
}

DEFAULT_AUTH_ERROR_MESSAGE = "An error occurred. Please try again."

NONCE_CHARSET = "0123456789ABCDEFGHIJKLMNOPQRSTUVXYZabcdefghijklmnopqrstuvwxyz-._"
PLATFORM_PROVIDER = "apple.com"


class IdentityError(Exception):
    """Failure reported by the identity provider."""

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code
        self.message = message or code


def user_friendly_message(error: IdentityError) -> str:
    """Map a provider error to the message shown to the user."""
    try:
        return AUTH_ERROR_MESSAGES[AuthErrorCode(error.code)]
    except ValueError:
        return DEFAULT_AUTH_ERROR_MESSAGE


@dataclass
class ProviderUser:
    """Account as reported by the identity provider."""

    uid: str
    email: str | None = None
    display_name: str | None = None


class IdentityProvider(Protocol):
    """External authentication backend."""

    async def create_user(self, email: str, password: str) -> ProviderUser: ...

    async def sign_in(self, email: str, password: str) -> ProviderUser: ...

    async def sign_in_with_credential(
        self,
        provider: str,
        id_token: str,
        access_token: str | None = None,
        nonce: str | None = None,
    ) -> ProviderUser: ...

    async def sign_out(self) -> None: ...

    async def delete_user(self) -> None: ...

    def current_user(self) -> ProviderUser | None: ...


def random_nonce(length: int = 32) -> str:
    """Random string for platform sign-in requests."""
    if length <= 0:
        raise ValueError("Nonce length must be positive")
    return "".join(secrets.choice(NONCE_CHARSET) for _ in range(length))


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class AuthenticationManager:
    """
    Sign-in state for one client.

    Attributes:
        is_authenticated: Whether a user (possibly a guest) is signed in
        current_user: The signed-in user
        is_loading: True while a provider call is in progress
        error_message: User-facing message of the last failure, if any
    """

    def __init__(
        self,
        provider: IdentityProvider,
        store: DocumentStore,
        sync: SyncService | None = None,
        invitations: InvitationService | None = None,
    ):
        self.provider = provider
        self.store = store
        self.sync = sync
        self.invitations = invitations or InvitationService(store, sync)

        self.is_authenticated = False
        self.current_user: User | None = None
        self.is_loading = False
        self.error_message: str | None = None

        self._current_nonce: str | None = None
        self._subscribers: list[Callable[["AuthenticationManager"], Any]] = []

    def subscribe(self, callback: Callable[["AuthenticationManager"], Any]) -> Callable[[], None]:
        """Call ``callback(manager)`` whenever the sign-in state changes."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            callback(self)

    # --- State helpers ---

    def _start(self) -> None:
        self.is_loading = True
        self.error_message = None
        self._notify()

    def _fail(self, message: str) -> None:
        self.is_loading = False
        self.error_message = message
        self._notify()

    def _signed_in(self, user: User) -> User:
        self.current_user = user
        self.is_authenticated = True
        self.is_loading = False
        self._notify()
        logger.operation("signed_in", user_id=user.id, is_temporary=user.is_temporary)
        return user

    def _signed_out(self) -> None:
        self.current_user = None
        self.is_authenticated = False
        self.is_loading = False
        if self.sync is not None:
            self.sync.stop_listening()
        self._notify()

    async def _save_user(self, user: User) -> None:
        try:
            await self.store.set(USERS, user.id, serialize_user(user))
        except StoreError as e:
            logger.error(e, context="save_user", user_id=user.id)

    async def _load_user(self, account: ProviderUser, fallback_username: str) -> User:
        """Stored profile for ``account``; created and saved on first sign-in."""
        try:
            snapshot = await self.store.get(USERS, account.uid)
        except StoreError as e:
            logger.error(e, context="load_user", user_id=account.uid)
            snapshot = None

        if snapshot is not None and snapshot.exists:
            return deserialize_user(snapshot.data, account.uid)

        user = User(id=account.uid, username=fallback_username, email=account.email)
        await self._save_user(user)
        return user

    # --- Email / password ---

    async def sign_up(self, email: str, password: str) -> User | None:
        """Create an email/password account named after the email's local part."""
        return await self._create_account(email, password, username=None)

    async def sign_up_with_invite_code(
        self, email: str, password: str, username: str, invite_code: str
    ) -> User | None:
        """Create an account and join the trip behind ``invite_code``."""
        self._start()
        trip_id = await self.invitations.validate_invite_code(invite_code)
        if trip_id is None:
            self._fail("Invalid or expired invite code")
            return None

        user = await self._create_account(email, password, username=username)
        if user is not None:
            await self.invitations.add_participant(trip_id, user.id)
        return user

    async def _create_account(self, email: str, password: str, username: str | None) -> User | None:
        self._start()
        try:
            credentials = EmailCredentials(email=email, password=password)
        except ValidationError:
            self._fail(AUTH_ERROR_MESSAGES[AuthErrorCode.INVALID_EMAIL])
            return None

        try:
            account = await self.provider.create_user(credentials.email, credentials.password)
        except IdentityError as e:
            logger.error(e, context="sign_up")
            self._fail(user_friendly_message(e))
            return None

        user = User(
            id=account.uid,
            username=username or credentials.username_hint,
            email=credentials.email,
        )
        await self._save_user(user)
        return self._signed_in(user)

    async def sign_in(self, email: str, password: str) -> User | None:
        self._start()
        try:
            account = await self.provider.sign_in(email, password)
        except IdentityError as e:
            logger.error(e, context="sign_in")
            self._fail(user_friendly_message(e))
            return None

        user = await self._load_user(account, email.split("@", 1)[0])
        return self._signed_in(user)

    # --- OAuth and platform sign-in ---

    async def sign_in_with_provider(
        self, provider: str, id_token: str, access_token: str | None = None
    ) -> User | None:
        """Sign in with an OAuth credential (e.g. ``google.com``)."""
        self._start()
        try:
            account = await self.provider.sign_in_with_credential(
                provider, id_token, access_token=access_token
            )
        except IdentityError as e:
            logger.error(e, context="sign_in_with_provider", provider=provider)
            self._fail(f"Sign-in with {provider} failed: {e.message}")
            return None

        fallback = account.display_name or (account.email or "").split("@", 1)[0] or "User"
        user = await self._load_user(account, fallback)
        return self._signed_in(user)

    def start_platform_sign_in(self) -> str:
        """
        Begin a platform SSO request.

        Returns:
            SHA-256 hex digest of a fresh nonce, to send with the request.
            The raw nonce is kept for ``complete_platform_sign_in``.
        """
        self._current_nonce = random_nonce()
        return sha256_hex(self._current_nonce)

    async def complete_platform_sign_in(
        self, id_token: str, full_name: str | None = None
    ) -> User | None:
        """Finish platform SSO with the identity token the platform returned."""
        self._start()
        nonce = self._current_nonce
        if nonce is None:
            self._fail("Invalid state: No nonce found")
            return None
        if not id_token:
            self._fail("Unable to fetch identity token")
            return None

        try:
            account = await self.provider.sign_in_with_credential(
                PLATFORM_PROVIDER, id_token, nonce=nonce
            )
        except IdentityError as e:
            logger.error(e, context="complete_platform_sign_in")
            self._fail(f"Apple Sign-In failed: {e.message}")
            return None
        finally:
            self._current_nonce = None

        user = User(
            id=account.uid,
            username=(full_name or "").strip() or "Apple User",
            email=account.email,
        )
        await self._save_user(user)
        return self._signed_in(user)

    # --- Guests ---

    async def sign_in_with_invite_code(self, code: str, username: str) -> User | None:
        """Sign in as a guest and join the trip behind ``code``."""
        self._start()
        trip_id = await self.invitations.validate_invite_code(code)
        if trip_id is None:
            self._fail("Invalid or expired invite code")
            return None

        user = User(username=username, is_temporary=True)
        self._signed_in(user)
        await self.invitations.add_participant(trip_id, user.id)
        return user

    async def join_trip_without_account(self) -> User:
        """
        Sign in as a one-time guest.

        The guest is saved for session tracking but not added to the trip's
        participants.
        """
        self._start()
        user = User(id=f"temp_{uuid.uuid4()}", username="Guest User", is_temporary=True)
        await self._save_user(user)
        return self._signed_in(user)

    # --- Session ---

    async def sign_out(self) -> bool:
        try:
            await self.provider.sign_out()
        except IdentityError as e:
            logger.error(e, context="sign_out")
            self._fail(e.message)
            return False
        self._signed_out()
        return True

    async def delete_account(self) -> bool:
        """
        Delete the user document, the trips the user owns, then the provider
        account. Store failures are logged and do not stop the deletion.
        """
        account = self.provider.current_user()
        if account is None:
            self._fail("No account found. Please sign in first.")
            return False

        self._start()
        logger.operation("delete_account", user_id=account.uid)
        try:
            await self.store.delete(USERS, account.uid)
        except StoreError as e:
            logger.error(e, context="delete_user_document", user_id=account.uid)

        try:
            owned = await self.store.query(TRIPS, where={"createdBy": account.uid})
            for snapshot in owned:
                await self.store.delete(TRIPS, snapshot.id)
        except StoreError as e:
            logger.error(e, context="delete_user_trips", user_id=account.uid)

        try:
            await self.provider.delete_user()
        except IdentityError as e:
            logger.error(e, context="delete_account", user_id=account.uid)
            if e.code == AuthErrorCode.USER_NOT_FOUND.value:
                self._fail("Account not found. It may have already been deleted.")
            else:
                self._fail(f"Failed to delete account: {e.message}")
            return False

        self._signed_out()
        self.error_message = None
        return True

    async def check_authentication_state(self) -> bool:
        """Restore the session from the provider's signed-in account, if any."""
        account = self.provider.current_user()
        if account is None:
            if self.current_user is None or not self.current_user.is_temporary:
                self.is_authenticated = False
                self.current_user = None
                self._notify()
            return self.is_authenticated

        fallback = account.display_name or (account.email or "").split("@", 1)[0] or "User"
        self._signed_in(await self._load_user(account, fallback))
        return True
