"""Identity providers: Supabase Auth, or local accounts for offline mode."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from functools import partial
import json
import logging
import re
from typing import Any
from uuid import uuid4

import httpx
from supabase import AuthApiError, AuthError, AuthRetryableError, Client
from werkzeug.security import check_password_hash, generate_password_hash

from studysphere.constants.storage_constants import LOCAL_ACCOUNTS_KEY, LOCAL_SESSION_KEY
from studysphere.core.models import Identity
from studysphere.core.storage.key_value import KeyValueStore

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6


class IdentityProviderError(Exception):
    """Provider failure carrying the provider's own error code."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code


class IdentityProvider(ABC):
    @abstractmethod
    async def sign_in(self, email: str, password: str) -> Identity: ...

    @abstractmethod
    async def sign_up(self, email: str, password: str, display_name: str | None = None) -> Identity:
        """Create the account and trigger email verification."""

    @abstractmethod
    async def sign_in_with_oauth(self, provider: str) -> str:
        """Return the URL the browser must visit to finish third-party sign-in."""

    @abstractmethod
    async def sign_out(self) -> None: ...

    @abstractmethod
    async def reset_password(self, email: str) -> None: ...

    @abstractmethod
    async def restore_session(self) -> Identity | None: ...

    @abstractmethod
    async def update_identity(self, email: str, display_name: str) -> Identity:
        """Change the signed-in account's email and display name."""

    @abstractmethod
    async def change_password(self, email: str, current_password: str, new_password: str) -> None:
        """Replace the password after re-checking ``current_password``."""


def _identity_from_user(user: Any) -> Identity:
    metadata = getattr(user, "user_metadata", None) or {}
    return Identity(
        id=str(user.id),
        email=user.email or "",
        display_name=metadata.get("display_name"),
        email_verified=getattr(user, "email_confirmed_at", None) is not None,
        claims=dict(getattr(user, "app_metadata", None) or {}),
    )


class SupabaseIdentityProvider(IdentityProvider):
    def __init__(self, client: Client) -> None:
        self._client = client

    async def sign_in(self, email: str, password: str) -> Identity:
        response = await self._call(
            self._client.auth.sign_in_with_password, {"email": email, "password": password}
        )
        if response.user is None:
            raise IdentityProviderError("invalid_credentials")
        return _identity_from_user(response.user)

    async def sign_up(self, email: str, password: str, display_name: str | None = None) -> Identity:
        credentials = {
            "email": email,
            "password": password,
            "options": {"data": {"display_name": display_name or email.split("@")[0]}},
        }
        response = await self._call(self._client.auth.sign_up, credentials)
        if response.user is None:
            raise IdentityProviderError("signup_failed", "Could not create user")
        return _identity_from_user(response.user)

    async def sign_in_with_oauth(self, provider: str) -> str:
        response = await self._call(self._client.auth.sign_in_with_oauth, {"provider": provider})
        return response.url

    async def sign_out(self) -> None:
        await self._call(self._client.auth.sign_out)

    async def reset_password(self, email: str) -> None:
        await self._call(self._client.auth.reset_password_for_email, email)

    async def restore_session(self) -> Identity | None:
        try:
            response = await self._call(self._client.auth.get_user)
        except IdentityProviderError:
            return None
        if response is None or response.user is None:
            return None
        return _identity_from_user(response.user)

    async def update_identity(self, email: str, display_name: str) -> Identity:
        response = await self._call(
            self._client.auth.update_user, {"email": email, "data": {"display_name": display_name}}
        )
        if response is None or response.user is None:
            raise IdentityProviderError("session_not_found", "No signed-in user to update")
        return _identity_from_user(response.user)

    async def change_password(self, email: str, current_password: str, new_password: str) -> None:
        try:
            await self.sign_in(email, current_password)
        except IdentityProviderError as exc:
            if exc.code == "invalid_credentials":
                raise IdentityProviderError("current_password_incorrect") from exc
            raise
        await self._call(self._client.auth.update_user, {"password": new_password})

    async def _call(self, func: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args))
        except AuthRetryableError as exc:
            raise IdentityProviderError("network_error", str(exc)) from exc
        except AuthApiError as exc:
            code = getattr(exc, "code", None) or str(getattr(exc, "status", "unknown"))
            raise IdentityProviderError(code, exc.message) from exc
        except AuthError as exc:
            raise IdentityProviderError(getattr(exc, "code", None) or "auth_error", str(exc)) from exc
        except httpx.HTTPError as exc:
            raise IdentityProviderError("network_error", str(exc)) from exc


class LocalIdentityProvider(IdentityProvider):
    """Accounts stored in the local key-value store; used in offline mode.

    Verification and reset emails cannot be sent offline, so both are logged.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def sign_in(self, email: str, password: str) -> Identity:
        account = self._accounts().get(email.strip().lower())
        if account is None:
            raise IdentityProviderError("user_not_found")
        if not check_password_hash(account["password_hash"], password):
            raise IdentityProviderError("invalid_credentials")
        self._store.set_item(LOCAL_SESSION_KEY, account["id"])
        return self._to_identity(account)

    async def sign_up(self, email: str, password: str, display_name: str | None = None) -> Identity:
        normalized = email.strip().lower()
        if not _EMAIL_PATTERN.match(normalized):
            raise IdentityProviderError("email_address_invalid")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise IdentityProviderError("weak_password")
        accounts = self._accounts()
        if normalized in accounts:
            raise IdentityProviderError("user_already_exists")
        account = {
            "id": uuid4().hex,
            "email": normalized,
            "display_name": display_name or normalized.split("@")[0],
            "password_hash": generate_password_hash(password),
            "email_verified": False,
        }
        accounts[normalized] = account
        self._store.set_item(LOCAL_ACCOUNTS_KEY, json.dumps(accounts))
        self._store.set_item(LOCAL_SESSION_KEY, account["id"])
        logger.info("Verification email for %s would be sent (offline mode)", normalized)
        return self._to_identity(account)

    async def sign_in_with_oauth(self, provider: str) -> str:
        raise IdentityProviderError("provider_disabled", f"{provider} sign-in needs the remote backend.")

    async def sign_out(self) -> None:
        self._store.remove_item(LOCAL_SESSION_KEY)

    async def reset_password(self, email: str) -> None:
        if email.strip().lower() not in self._accounts():
            raise IdentityProviderError("user_not_found")
        logger.info("Password reset email for %s would be sent (offline mode)", email)

    async def restore_session(self) -> Identity | None:
        session_id = self._store.get_item(LOCAL_SESSION_KEY)
        if not session_id:
            return None
        for account in self._accounts().values():
            if account["id"] == session_id:
                return self._to_identity(account)
        return None

    async def update_identity(self, email: str, display_name: str) -> Identity:
        accounts = self._accounts()
        current_key, account = self._session_account(accounts)
        normalized = email.strip().lower()
        if not _EMAIL_PATTERN.match(normalized):
            raise IdentityProviderError("email_address_invalid")
        if normalized != current_key and normalized in accounts:
            raise IdentityProviderError("email_exists")
        del accounts[current_key]
        account = {**account, "email": normalized, "display_name": display_name}
        if normalized != current_key:
            account["email_verified"] = False
        accounts[normalized] = account
        self._store.set_item(LOCAL_ACCOUNTS_KEY, json.dumps(accounts))
        return self._to_identity(account)

    async def change_password(self, email: str, current_password: str, new_password: str) -> None:
        accounts = self._accounts()
        current_key, account = self._session_account(accounts)
        if not check_password_hash(account["password_hash"], current_password):
            raise IdentityProviderError("current_password_incorrect")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise IdentityProviderError("weak_password")
        accounts[current_key] = {**account, "password_hash": generate_password_hash(new_password)}
        self._store.set_item(LOCAL_ACCOUNTS_KEY, json.dumps(accounts))

    def _session_account(self, accounts: dict[str, dict[str, Any]]) -> tuple[str, dict[str, Any]]:
        session_id = self._store.get_item(LOCAL_SESSION_KEY)
        for key, account in accounts.items():
            if session_id and account["id"] == session_id:
                return key, account
        raise IdentityProviderError("session_not_found")

    def _accounts(self) -> dict[str, dict[str, Any]]:
        raw = self._store.get_item(LOCAL_ACCOUNTS_KEY)
        if not raw:
            return {}
        try:
            loaded = json.loads(raw)
        except ValueError:
            logger.warning("Local account store is corrupt; ignoring it")
            return {}
        return loaded if isinstance(loaded, dict) else {}

    @staticmethod
    def _to_identity(account: dict[str, Any]) -> Identity:
        return Identity(
            id=account["id"],
            email=account["email"],
            display_name=account.get("display_name"),
            email_verified=bool(account.get("email_verified", False)),
        )
