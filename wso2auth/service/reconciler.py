from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from wso2auth.config import AuthType, Settings
from wso2auth.logging import get_logger
from wso2auth.service.errors import ReconciliationError
from wso2auth.service.extensions import ExtensionPoints
from wso2auth.service.session_state import SessionState
from wso2auth.storage.errors import ConstraintViolation
from wso2auth.storage.memory import MemoryStore
from wso2auth.storage.models import User

logger = get_logger(__name__)

FISCAL_CODE_LENGTH = 16
FALLBACK_NAME_LENGTH = 20


class LinkOutcome(str, Enum):
    LINKED_BY_EXTERNAL_ID = "linked_by_external_id"
    LINKED_BY_EMAIL_MATCH = "linked_by_email_match"
    LINKED_BY_USERNAME_MATCH = "linked_by_username_match"
    REGISTERED_NEW = "registered_new"


@dataclass
class ReconciliationResult:
    user: User
    outcome: LinkOutcome
    provider: str
    authname: str

    @property
    def created(self) -> bool:
        return self.outcome == LinkOutcome.REGISTERED_NEW


@dataclass(frozen=True)
class AuthTypePolicy:
    provider: str
    username_prefix: str
    auto_register: bool
    default_role: Optional[str]
    roles_to_exclude: List[str]


def _claim(claims: Dict[str, Any], name: str) -> Optional[str]:
    if not name:
        return None
    value = claims.get(name)
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


class IdentityReconciler:
    """Maps an IdP claim set onto exactly one local account.

    Lookup order is external id, then e-mail, then username; with no match
    the account is registered when auto-registration is on. Every write of
    one reconciliation happens in a single store transaction.
    """

    def __init__(self, store: MemoryStore, settings: Settings, extensions: ExtensionPoints):
        self.store = store
        self.settings = settings
        self.extensions = extensions

    def policy_for(self, auth_type: AuthType | str) -> AuthTypePolicy:
        settings = self.settings
        if AuthType(auth_type) == AuthType.OPERATOR:
            return AuthTypePolicy(
                provider="wso2_operator",
                username_prefix="wso2op_",
                auto_register=settings.operator_auto_register,
                default_role=settings.operator_user_role,
                roles_to_exclude=[],
            )
        return AuthTypePolicy(
            provider="wso2_auth",
            username_prefix="wso2_",
            auto_register=settings.citizen_auto_register,
            default_role=settings.citizen_user_role,
            roles_to_exclude=list(settings.citizen_roles_to_exclude),
        )

    def authenticate(
        self,
        claims: Dict[str, Any],
        auth_type: AuthType | str,
        session: SessionState,
    ) -> ReconciliationResult:
        """Reconcile ``claims`` and bind the resulting account to ``session``.

        Post-login listeners run inside the reconciliation transaction, so a
        listener failure undoes any link or registration. Raises
        ReconciliationError when no single account can be resolved; in that
        case the store and the session are left untouched.
        """
        auth_type = AuthType(auth_type)
        with self.store.transaction():
            result = self.reconcile(claims, auth_type)
            try:
                self.extensions.notify_post_login(result.user, claims, auth_type.value)
            except Exception as exc:
                logger.error(
                    "post_login_listener_failed",
                    user_id=result.user.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise ReconciliationError("post-login processing failed") from exc
        self._finalize_login(session, result)
        return result

    def reconcile(self, claims: Dict[str, Any], auth_type: AuthType | str) -> ReconciliationResult:
        policy = self.policy_for(auth_type)
        authname = _claim(claims, self.settings.claim_user_id)
        if not authname:
            logger.error("reconciliation_missing_user_id", claim=self.settings.claim_user_id)
            raise ReconciliationError(
                "identity claim missing", detail={"claim": self.settings.claim_user_id}
            )
        try:
            with self.store.transaction():
                result = self._reconcile(claims, policy, authname)
        except ConstraintViolation as exc:
            logger.error("reconciliation_constraint_violation", message=exc.message, detail=exc.detail)
            raise ReconciliationError("identity could not be linked", detail=exc.detail) from exc
        logger.info(
            "identity_reconciled",
            outcome=result.outcome.value,
            provider=result.provider,
            user_id=result.user.id,
        )
        return result

    def _reconcile(
        self, claims: Dict[str, Any], policy: AuthTypePolicy, authname: str
    ) -> ReconciliationResult:
        user = self.store.get_user_by_external_id(policy.provider, authname)
        if user is not None:
            self._ensure_active(user)
            self._sync_fields(user, claims)
            return ReconciliationResult(user, LinkOutcome.LINKED_BY_EXTERNAL_ID, policy.provider, authname)

        email = _claim(claims, self.settings.claim_email)
        if email:
            matches = self.store.find_users_by_email(email)
            if len(matches) > 1:
                logger.error("reconciliation_ambiguous_email", matches=len(matches))
                raise ReconciliationError(
                    "more than one account shares this e-mail",
                    detail={"matches": len(matches)},
                )
            if matches:
                return self._link_existing(
                    matches[0], claims, policy, authname, LinkOutcome.LINKED_BY_EMAIL_MATCH
                )

        username = _claim(claims, self.settings.claim_username)
        if username and self.settings.lookup_by_username:
            existing = self.store.get_user_by_name(username)
            if existing is not None:
                return self._link_existing(
                    existing, claims, policy, authname, LinkOutcome.LINKED_BY_USERNAME_MATCH
                )

        if not policy.auto_register:
            logger.warning("reconciliation_no_match_registration_disabled", provider=policy.provider)
            raise ReconciliationError(
                "no matching account and registration is disabled",
                detail={"provider": policy.provider},
            )
        return self._register(claims, policy, authname, username, email)

    def _link_existing(
        self,
        user: User,
        claims: Dict[str, Any],
        policy: AuthTypePolicy,
        authname: str,
        outcome: LinkOutcome,
    ) -> ReconciliationResult:
        self._ensure_active(user)
        self.store.link_external_identity(user.id, policy.provider, authname)
        logger.info("external_identity_linked", user_id=user.id, provider=policy.provider, outcome=outcome.value)
        self._sync_fields(user, claims)
        return ReconciliationResult(user, outcome, policy.provider, authname)

    @staticmethod
    def _ensure_active(user: User) -> None:
        if not user.is_active:
            logger.warning("reconciliation_blocked_account", user_id=user.id)
            raise ReconciliationError("account is blocked", detail={"user_id": user.id})

    def _register(
        self,
        claims: Dict[str, Any],
        policy: AuthTypePolicy,
        authname: str,
        username: Optional[str],
        email: Optional[str],
    ) -> ReconciliationResult:
        base_name = username or policy.username_prefix + authname[:FALLBACK_NAME_LENGTH]
        name = self.unique_username(base_name)
        if name != base_name:
            logger.info("username_collision_resolved", base_name=base_name, username=name)
        user = self.store.create_user(name, email)
        self._apply_mapped_fields(user, claims)
        self._assign_default_role(user, policy)
        self.store.save_user(user)
        self.store.link_external_identity(user.id, policy.provider, authname)
        logger.info("user_registered", user_id=user.id, provider=policy.provider)
        return ReconciliationResult(user, LinkOutcome.REGISTERED_NEW, policy.provider, authname)

    def unique_username(self, base_name: str) -> str:
        if self.store.get_user_by_name(base_name) is None:
            return base_name
        suffix = 1
        while self.store.get_user_by_name(f"{base_name}_{suffix}") is not None:
            suffix += 1
        return f"{base_name}_{suffix}"

    def mapped_fields(self, claims: Dict[str, Any]) -> Dict[str, Any]:
        """Profile values carried by ``claims``, limited to the local schema."""
        settings = self.settings
        schema = set(settings.user_profile_fields)
        values: Dict[str, Any] = {}
        first_name = _claim(claims, settings.claim_first_name)
        if first_name:
            values["first_name"] = first_name
        last_name = _claim(claims, settings.claim_last_name)
        if last_name:
            values["last_name"] = last_name
        fiscal_code = _claim(claims, settings.claim_fiscal_code)
        if fiscal_code:
            values["fiscal_code"] = fiscal_code[:FISCAL_CODE_LENGTH].upper()
        mobile = _claim(claims, settings.claim_mobile_phone)
        if mobile:
            values["mobile_phone"] = mobile
        groups = claims.get("groups")
        if groups:
            values["groups"] = groups
        return {key: value for key, value in values.items() if key in schema}

    def _apply_mapped_fields(self, user: User, claims: Dict[str, Any]) -> bool:
        changed = False
        for key, value in self.mapped_fields(claims).items():
            if user.profile.get(key) != value:
                user.profile[key] = value
                changed = True
        return changed

    def _sync_fields(self, user: User, claims: Dict[str, Any]) -> None:
        if self._apply_mapped_fields(user, claims):
            self.store.save_user(user)
            logger.info("user_fields_synced", user_id=user.id)

    def _assign_default_role(self, user: User, policy: AuthTypePolicy) -> None:
        role = policy.default_role
        if not role:
            return
        if any(user.has_role(excluded) for excluded in policy.roles_to_exclude):
            logger.info("default_role_skipped_excluded", user_id=user.id, role=role)
            return
        if not user.has_role(role):
            user.roles.append(role)
            logger.info("default_role_assigned", user_id=user.id, role=role)

    @staticmethod
    def _finalize_login(session: SessionState, result: ReconciliationResult) -> None:
        session.regenerate_id()
        session.bind_user(result.user.id, provider=result.provider, authname=result.authname)
