from __future__ import annotations

import hmac
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.context import AuthIdentity, RequestContext
from tenantgate.service.errors import (
    AccountInactiveError,
    AccountUnassignedError,
    ConfigMissingError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from tenantgate.service.passwords import PasswordService
from tenantgate.service.rbac import ROLE_ADMIN, ROLE_MANAGER, normalize_role
from tenantgate.service.sessions import SessionManager
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import STATUS_ACTIVE, Client, Membership, User

logger = get_logger(__name__)

_SLUG_INVALID_CHARS = re.compile(r"[^a-z0-9]+")


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def normalize_client_slug(slug: Optional[str]) -> str:
    return _SLUG_INVALID_CHARS.sub("-", (slug or "").strip().lower()).strip("-")


class AuthStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        client_id: Optional[str] = None,
        role: str = "player",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        status: str = STATUS_ACTIVE,
    ) -> User: ...

    async def update_password(self, user_id: str, password_hash: str) -> bool: ...

    async def mark_login_success(self, user_id: str, now: datetime) -> None: ...

    async def get_client(self, client_id: str) -> Optional[Client]: ...

    async def get_client_by_slug(self, slug: str) -> Optional[Client]: ...

    async def ensure_client(
        self,
        client_id: str,
        name: str,
        slug: Optional[str] = None,
        *,
        self_join_enabled: bool = False,
        status: str = STATUS_ACTIVE,
    ) -> Client: ...

    async def get_membership(self, user_id: str, client_id: str) -> Optional[Membership]: ...

    async def get_default_active_membership(self, user_id: str) -> Optional[Membership]: ...

    async def get_first_active_membership(self, user_id: str) -> Optional[Membership]: ...

    async def list_active_memberships(self, user_id: str) -> List[Membership]: ...

    async def ensure_membership(
        self,
        user_id: str,
        client_id: str,
        *,
        role: str = "player",
        status: str = STATUS_ACTIVE,
        is_default: bool = False,
        actor_id: Optional[str] = None,
    ) -> Membership: ...


def build_password_service(settings: Settings) -> Optional[PasswordService]:
    """Password hashing bound to the configured pepper.

    Without a session secret there is nothing safe to fall back to, so no
    service is built and every credential flow reports missing config.
    """
    if not settings.session_secret:
        logger.error("auth_session_secret_missing")
        return None
    pepper = settings.password_pepper
    if not pepper:
        logger.warning(
            "auth_password_pepper_missing",
            message="AUTH_PASSWORD_PEPPER is unset; using the session secret as pepper",
        )
        pepper = settings.session_secret
    return PasswordService(pepper, settings.password_iterations)


class AuthService:
    """Login, registration and account flows on top of the session manager."""

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        passwords: Optional[PasswordService],
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.sessions = sessions
        self.passwords = passwords
        self.settings = settings

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _require_passwords(self) -> PasswordService:
        if self.passwords is None:
            raise ConfigMissingError()
        return self.passwords

    async def ensure_default_client(self) -> Client:
        return await self.store.ensure_client(
            self.settings.default_client_id,
            self.settings.default_client_name,
            normalize_client_slug(self.settings.default_client_slug) or None,
        )

    async def _select_login_membership(self, user: User) -> Membership:
        membership = await self.store.get_default_active_membership(user.id)
        if membership is None:
            membership = await self.store.get_first_active_membership(user.id)
        if membership is None:
            logger.info("login_rejected", user_id=user.id, reason="no_active_membership")
            raise AccountUnassignedError(detail={"user_id": user.id})
        return membership

    async def login(self, ctx: RequestContext, email: str, password: str) -> AuthIdentity:
        passwords = self._require_passwords()
        normalized = normalize_email(email)
        user = await self.store.get_user_by_email(normalized) if normalized else None
        if user is None:
            await passwords.dummy_verify_async(password)
            logger.info("login_rejected", reason="unknown_account")
            raise InvalidCredentialsError()
        if not await passwords.verify_async(password, user.password_hash):
            logger.info("login_rejected", user_id=user.id, reason="password_mismatch")
            raise InvalidCredentialsError(detail={"user_id": user.id})
        if not user.is_active:
            logger.info("login_rejected", user_id=user.id, reason="account_inactive")
            raise AccountInactiveError(detail={"user_id": user.id})

        membership = await self._select_login_membership(user)
        if passwords.needs_rehash(user.password_hash):
            await self.store.update_password(user.id, await passwords.hash_async(password))
            logger.info("password_rehashed", user_id=user.id)
        await self.store.mark_login_success(user.id, self._now())
        identity = await self.sessions.create(ctx, user, membership)
        logger.info("login_succeeded", user_id=user.id, client_id=membership.client_id)
        return identity

    async def register(
        self,
        ctx: RequestContext,
        *,
        email: str,
        password: str,
        invite_key: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AuthIdentity:
        passwords = self._require_passwords()
        expected_key = self.settings.signup_invite_key
        if not expected_key:
            logger.error("auth_signup_invite_key_missing")
            raise ConfigMissingError()
        if not hmac.compare_digest(
            (invite_key or "").encode("utf-8"), expected_key.encode("utf-8")
        ):
            logger.info("registration_rejected", reason="invite_key_mismatch")
            raise ForbiddenError("Invalid invite key.", error_code="AUTH_INVALID_INVITE_KEY")

        client = await self.ensure_default_client()
        normalized = normalize_email(email)
        if await self.store.get_user_by_email(normalized):
            raise ConflictError(
                "An account with this email already exists.", error_code="AUTH_ACCOUNT_EXISTS"
            )
        password_hash = await passwords.hash_async(password)
        try:
            user = await self.store.create_user(
                normalized,
                password_hash,
                client_id=client.id,
                role=ROLE_ADMIN,
                first_name=(first_name or "").strip() or None,
                last_name=(last_name or "").strip() or None,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same email
            raise ConflictError(
                "An account with this email already exists.", error_code="AUTH_ACCOUNT_EXISTS"
            ) from exc
        membership = await self.store.ensure_membership(
            user.id,
            client.id,
            role=ROLE_ADMIN,
            status=STATUS_ACTIVE,
            is_default=True,
            actor_id=user.id,
        )
        await self.store.mark_login_success(user.id, self._now())
        identity = await self.sessions.create(ctx, user, membership)
        logger.info("registration_succeeded", user_id=user.id, client_id=client.id)
        return identity

    async def logout(self, ctx: RequestContext) -> bool:
        return await self.sessions.revoke_current(ctx)

    async def logout_everywhere(self, ctx: RequestContext, identity: AuthIdentity) -> int:
        """Revoke every session the user holds, in every tenant, and clear this cookie."""
        revoked = await self.sessions.revoke_all_for_user(identity.user_id)
        ctx.identity = None
        ctx.clear_session_cookie()
        logger.info("logout_everywhere", user_id=identity.user_id, revoked_sessions=revoked)
        return revoked

    async def change_password(
        self,
        ctx: RequestContext,
        identity: AuthIdentity,
        current_password: str,
        new_password: str,
    ) -> int:
        """Replace the password and revoke every other session in this tenant."""
        passwords = self._require_passwords()
        user = await self.store.get_user(identity.user_id)
        if user is None or not await passwords.verify_async(current_password, user.password_hash):
            raise ValidationError(
                "Current password is incorrect.", error_code="AUTH_INVALID_CURRENT_PASSWORD"
            )
        await self.store.update_password(user.id, await passwords.hash_async(new_password))
        revoked = await self.sessions.revoke_all_except(
            user.id, identity.client_id, identity.session_id
        )
        logger.info("password_changed", user_id=user.id, revoked_sessions=revoked)
        return revoked

    async def join_client(
        self,
        ctx: RequestContext,
        identity: AuthIdentity,
        *,
        client_id: Optional[str] = None,
        client_slug: Optional[str] = None,
    ) -> Dict[str, Any]:
        target: Optional[Client] = None
        if client_id:
            target = await self.store.get_client(client_id)
        elif client_slug:
            normalized_slug = normalize_client_slug(client_slug)
            if not normalized_slug:
                raise ValidationError("Invalid request payload.")
            target = await self.store.get_client_by_slug(normalized_slug)
        else:
            raise ValidationError("Invalid request payload.")

        if target is None or not target.is_active:
            raise NotFoundError("Organization not found.", error_code="CLIENT_NOT_FOUND")

        existing = await self.store.get_membership(identity.user_id, target.id)
        if existing is not None and not existing.is_active:
            raise ForbiddenError(
                "Your membership for this organization is inactive. Contact an administrator.",
                error_code="AUTH_MEMBERSHIP_INACTIVE",
            )
        if existing is None and not target.self_join_enabled:
            raise ForbiddenError(
                "This organization does not allow open self-join.",
                error_code="CLIENT_SELF_JOIN_DISABLED",
            )

        await self.store.ensure_membership(
            identity.user_id,
            target.id,
            role=existing.role if existing else ROLE_MANAGER,
            status=STATUS_ACTIVE,
            is_default=True,
            actor_id=identity.user_id,
        )
        switched = await self.sessions.switch_tenant(ctx, identity, target.id)
        logger.info(
            "client_joined",
            user_id=identity.user_id,
            client_id=target.id,
            joined_now=existing is None,
        )
        return {
            "clientId": target.id,
            "clientSlug": target.slug,
            "clientName": target.name,
            "joinedNow": existing is None,
            "role": switched.role,
            "user": switched.user,
            "session": switched.session,
        }

    async def session_summary(self, identity: AuthIdentity) -> Dict[str, Any]:
        memberships = await self.store.list_active_memberships(identity.user_id)
        return {
            "user": identity.user,
            "session": identity.session,
            "memberships": [
                {
                    "clientId": m.client_id,
                    "role": normalize_role(m.role),
                    "isDefault": m.is_default,
                }
                for m in memberships
            ],
        }
