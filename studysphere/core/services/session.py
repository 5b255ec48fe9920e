"""Session and role gate: who is signed in and whether they are an admin."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
import time
from typing import Any, Callable

from studysphere.constants.quiz_constants import ROLE_CACHE_TTL_SECONDS
from studysphere.constants.storage_constants import PROFILES_COLLECTION, ROLE_CACHE_KEY_TEMPLATE
from studysphere.core.errors import (
    AuthenticationError,
    PermissionDeniedError,
    StudySphereError,
    TransientError,
    ValidationError,
)
from studysphere.core.models import Identity, Preferences, Profile, Role, utcnow
from studysphere.core.services.backends import DocumentBackend
from studysphere.core.services.identity import MIN_PASSWORD_LENGTH, IdentityProvider, IdentityProviderError
from studysphere.core.storage.key_value import KeyValueStore

logger = logging.getLogger(__name__)

DASHBOARD_PATH = "/dashboard"

_AUTH_ERRORS: dict[str, tuple[type[StudySphereError], str]] = {
    "user_not_found": (AuthenticationError, "No account found with this email address."),
    "invalid_credentials": (AuthenticationError, "Incorrect email or password."),
    "user_already_exists": (ValidationError, "An account with this email already exists."),
    "email_exists": (ValidationError, "An account with this email already exists."),
    "weak_password": (ValidationError, "Password should be at least 6 characters."),
    "email_address_invalid": (ValidationError, "Please enter a valid email address."),
    "over_request_rate_limit": (TransientError, "Too many failed attempts. Please try again later."),
    "over_email_send_rate_limit": (TransientError, "Too many failed attempts. Please try again later."),
    "oauth_cancelled": (AuthenticationError, "Sign-in cancelled."),
    "provider_disabled": (AuthenticationError, "This sign-in method is not available."),
    "network_error": (TransientError, "Network error. Please check your connection."),
    "current_password_incorrect": (ValidationError, "Current password is incorrect"),
    "session_not_found": (AuthenticationError, "Authentication required"),
}


def translate_auth_error(error: IdentityProviderError) -> StudySphereError:
    """Map a provider error code onto the application's error taxonomy."""
    error_type, message = _AUTH_ERRORS.get(
        error.code, (AuthenticationError, "An error occurred. Please try again.")
    )
    return error_type(message)


@dataclass(slots=True)
class GateDecision:
    """Outcome of a page guard; callers prompt or redirect instead of failing."""

    allowed: bool
    prompt_sign_in: bool = False
    redirect_to: str | None = None
    message: str | None = None


class SessionContext:
    """Single source of truth for identity and role, passed to every service.

    Call ``initialize()`` once at startup; role-gated decisions should await
    ``wait_ready()`` first.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        profiles: DocumentBackend,
        store: KeyValueStore,
        role_ttl_seconds: int = ROLE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._provider = provider
        self._profiles = profiles
        self._store = store
        self._role_ttl_seconds = role_ttl_seconds
        self._clock = clock
        self._identity: Identity | None = None
        self._role: Role | None = None
        self._ready = asyncio.Event()

    async def initialize(self) -> None:
        identity = await self._provider.restore_session()
        if identity is not None:
            await self._on_signed_in(identity)
        self._ready.set()

    async def wait_ready(self) -> None:
        await self._ready.wait()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    # --- Provider delegation ---

    async def sign_in(self, email: str, password: str) -> Identity:
        try:
            identity = await self._provider.sign_in(email, password)
        except IdentityProviderError as exc:
            raise translate_auth_error(exc) from exc
        await self._on_signed_in(identity)
        logger.info("Signed in %s", identity.email)
        return identity

    async def sign_up(self, email: str, password: str, display_name: str | None = None) -> Identity:
        try:
            identity = await self._provider.sign_up(email, password, display_name)
        except IdentityProviderError as exc:
            raise translate_auth_error(exc) from exc
        await self._on_signed_in(identity)
        logger.info("Created account for %s", identity.email)
        return identity

    async def sign_in_with_oauth(self, provider_name: str) -> str:
        try:
            return await self._provider.sign_in_with_oauth(provider_name)
        except IdentityProviderError as exc:
            raise translate_auth_error(exc) from exc

    async def sign_out(self) -> None:
        uid = self._identity.id if self._identity else None
        try:
            await self._provider.sign_out()
        except IdentityProviderError as exc:
            raise translate_auth_error(exc) from exc
        finally:
            self._identity = None
            self._role = None
            if uid:
                self._store.remove_item(ROLE_CACHE_KEY_TEMPLATE.format(uid=uid))

    async def reset_password(self, email: str) -> None:
        try:
            await self._provider.reset_password(email)
        except IdentityProviderError as exc:
            raise translate_auth_error(exc) from exc

    # --- Identity and role ---

    def current_identity(self) -> Identity | None:
        return self._identity

    def is_authenticated(self) -> bool:
        return self._identity is not None

    @property
    def role(self) -> Role | None:
        return self._role

    async def is_admin(self) -> bool:
        return await self.resolve_role() is Role.ADMIN

    async def resolve_role(self) -> Role | None:
        """Return the current role, hitting the backend at most once per TTL."""
        if self._identity is None:
            return None
        cache_key = ROLE_CACHE_KEY_TEMPLATE.format(uid=self._identity.id)
        cached = self._read_cached_role(cache_key)
        if cached is not None:
            self._role = cached
            return cached

        role = await self._lookup_role(self._identity)
        self._role = role
        self._store.set_item(
            cache_key,
            json.dumps({"role": role.value, "expires": self._clock() + self._role_ttl_seconds}),
        )
        return role

    def invalidate_role(self, uid: str | None = None) -> None:
        target = uid or (self._identity.id if self._identity else None)
        if target:
            self._store.remove_item(ROLE_CACHE_KEY_TEMPLATE.format(uid=target))
        if self._identity is not None and target == self._identity.id:
            self._role = None

    # --- Guards ---

    def require_authenticated(self) -> GateDecision:
        if self._identity is None:
            return GateDecision(allowed=False, prompt_sign_in=True, message="Please sign in to continue.")
        return GateDecision(allowed=True)

    async def require_admin(self) -> GateDecision:
        decision = self.require_authenticated()
        if not decision.allowed:
            return decision
        if not await self.is_admin():
            return GateDecision(
                allowed=False,
                redirect_to=DASHBOARD_PATH,
                message="Access denied. Admin privileges required.",
            )
        return GateDecision(allowed=True)

    def ensure_authenticated(self) -> Identity:
        if self._identity is None:
            raise AuthenticationError("Authentication required")
        return self._identity

    async def ensure_admin(self) -> Identity:
        identity = self.ensure_authenticated()
        if not await self.is_admin():
            raise PermissionDeniedError("Admin privileges required")
        return identity

    # --- Profile ---

    async def get_profile(self) -> Profile:
        identity = self.ensure_authenticated()
        record = await self._profiles.get(PROFILES_COLLECTION, identity.id) or {}
        return Profile.from_record(
            {
                **record,
                "id": identity.id,
                "email": identity.email,
                "display_name": record.get("display_name") or identity.label,
            }
        )

    async def update_profile(self, display_name: str, email: str, target_exam: str | None = None) -> Profile:
        """Change name, email and target exam; the email must not belong to another account."""
        self.ensure_authenticated()
        display_name = display_name.strip()
        email = email.strip()
        if not display_name or not email:
            raise ValidationError("Name and email are required")
        try:
            updated = await self._provider.update_identity(email, display_name)
        except IdentityProviderError as exc:
            raise translate_auth_error(exc) from exc
        self._identity = updated
        await self._save_profile_fields(
            updated,
            {
                "email": updated.email,
                "display_name": display_name,
                "target_exam": (target_exam or "").strip() or None,
            },
        )
        logger.info("Updated profile for %s", updated.email)
        return await self.get_profile()

    async def change_password(self, current_password: str, new_password: str, confirm_password: str) -> None:
        identity = self.ensure_authenticated()
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"New password must be at least {MIN_PASSWORD_LENGTH} characters")
        if new_password != confirm_password:
            raise ValidationError("New passwords do not match")
        try:
            await self._provider.change_password(identity.email, current_password, new_password)
        except IdentityProviderError as exc:
            raise translate_auth_error(exc) from exc
        logger.info("Changed password for %s", identity.email)

    async def update_preferences(self, preferences: Preferences) -> Profile:
        identity = self.ensure_authenticated()
        await self._save_profile_fields(identity, {"preferences": preferences.to_record()})
        return await self.get_profile()

    # --- Internals ---

    async def _on_signed_in(self, identity: Identity) -> None:
        self._identity = identity
        self._role = None
        try:
            await self._touch_profile(identity)
        except TransientError as exc:
            logger.warning("Could not update profile for %s: %s", identity.email, exc)
        await self.resolve_role()

    async def _touch_profile(self, identity: Identity) -> None:
        now = utcnow().isoformat()
        profile = await self._profiles.get(PROFILES_COLLECTION, identity.id)
        if profile is None:
            await self._profiles.upsert(
                PROFILES_COLLECTION,
                {
                    "id": identity.id,
                    "email": identity.email,
                    "display_name": identity.label,
                    "role": Role.STUDENT.value,
                    "created_at": now,
                    "last_login_at": now,
                },
            )
        else:
            await self._profiles.update(PROFILES_COLLECTION, identity.id, {"last_login_at": now})

    async def _lookup_role(self, identity: Identity) -> Role:
        if identity.claims.get("admin") is True or identity.claims.get("role") == Role.ADMIN.value:
            return Role.ADMIN
        try:
            profile = await self._profiles.get(PROFILES_COLLECTION, identity.id)
        except TransientError as exc:
            logger.error("Error loading user role: %s", exc)
            return Role.STUDENT
        if profile is None:
            return Role.STUDENT
        try:
            return Role(profile.get("role") or Role.STUDENT.value)
        except ValueError:
            return Role.STUDENT

    def _read_cached_role(self, cache_key: str) -> Role | None:
        raw = self._store.get_item(cache_key)
        if not raw:
            return None
        try:
            cached = json.loads(raw)
            if float(cached["expires"]) > self._clock():
                return Role(cached["role"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable role cache entry %s", cache_key)
        return None

    async def _save_profile_fields(self, identity: Identity, fields: dict[str, Any]) -> None:
        if await self._profiles.get(PROFILES_COLLECTION, identity.id) is None:
            await self._touch_profile(identity)
        await self._profiles.update(PROFILES_COLLECTION, identity.id, fields)
