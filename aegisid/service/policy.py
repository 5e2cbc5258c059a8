from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from aegisid.config import MfaMethod, Role, Settings
from aegisid.logging import get_logger
from aegisid.service.clock import Clock, SystemClock
from aegisid.service.errors import ValidationFailed
from aegisid.service.outcomes import MfaRequirement
from aegisid.storage.models import RoleMFAPolicy, User

logger = get_logger(__name__)

ENROLLABLE_METHODS = (MfaMethod.TOTP.value, MfaMethod.EMAIL.value)


class MFAPolicyService:
    """Role-level MFA requirements and the grace window that softens them."""

    def __init__(self, store, settings: Settings, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()

    def get(self, role: str) -> RoleMFAPolicy:
        return self.store.get_role_policy(role) or RoleMFAPolicy(role=role)

    def list(self) -> List[RoleMFAPolicy]:
        stored = {p.role: p for p in self.store.list_role_policies()}
        return [stored.get(role.value) or RoleMFAPolicy(role=role.value) for role in Role]

    def set_role_policy(
        self,
        role: str,
        *,
        mfa_required: bool,
        allowed_methods: Optional[Iterable[str]] = None,
        grace_period_days: Optional[int] = None,
        exempt: bool = False,
    ) -> RoleMFAPolicy:
        try:
            role = Role(role).value
        except ValueError:
            raise ValidationFailed(f"unknown role {role!r}")
        methods = list(allowed_methods) if allowed_methods is not None else list(ENROLLABLE_METHODS)
        unknown = set(methods) - set(ENROLLABLE_METHODS)
        if unknown or not methods:
            raise ValidationFailed(
                "allowed_methods must be a non-empty subset of totp and email"
            )
        if grace_period_days is not None and grace_period_days < 0:
            raise ValidationFailed("grace_period_days cannot be negative")
        if mfa_required and exempt:
            raise ValidationFailed("a role cannot both require MFA and be exempt")

        previous = self.get(role)
        now = self.clock.now()
        policy = self.store.upsert_role_policy(
            RoleMFAPolicy(
                role=role,
                mfa_required=mfa_required,
                allowed_methods=methods,
                grace_period_days=grace_period_days,
                exempt=exempt,
                updated_at=now,
            )
        )
        if mfa_required and not previous.mfa_required and grace_period_days:
            affected = self.store.apply_mfa_grace_period(
                role, now + timedelta(days=grace_period_days)
            )
            logger.info(
                "mfa_grace_period_applied",
                role=role,
                users=affected,
                grace_period_days=grace_period_days,
            )
        logger.info("mfa_role_policy_updated", role=role, mfa_required=mfa_required)
        return policy

    def grace_end_for_new_user(self, role: str) -> Optional[datetime]:
        policy = self.get(role)
        if policy.mfa_required and policy.grace_period_days:
            return self.clock.now() + timedelta(days=policy.grace_period_days)
        return None

    def grace_status(self, user: User) -> str:
        """``none`` when no window was granted, else ``active`` or ``expired``."""
        if user.mfa_grace_period_end is None:
            return "none"
        return "active" if self.clock.now() < user.mfa_grace_period_end else "expired"

    def evaluate(self, user: User, *, totp_enabled: bool) -> MfaRequirement:
        if not self.settings.enable_mfa:
            return MfaRequirement(required=False)
        policy = self.get(user.role)
        if policy.exempt:
            return MfaRequirement(required=False)
        if totp_enabled:
            return MfaRequirement(required=True, method=MfaMethod.TOTP.value)
        if user.email_mfa_enabled:
            return MfaRequirement(required=True, method=MfaMethod.EMAIL.value)
        if not policy.mfa_required:
            return MfaRequirement(required=False)
        if self.grace_status(user) == "active":
            return MfaRequirement(required=False)
        if MfaMethod.EMAIL.value in policy.allowed_methods:
            return MfaRequirement(required=True, method=MfaMethod.EMAIL.value)
        # The role needs TOTP but the user never enrolled; let them in to set it up
        return MfaRequirement(required=False, setup_required=True)
