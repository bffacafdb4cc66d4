from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from wso2auth.config import Settings
from wso2auth.logging import get_logger
from wso2auth.service.errors import MalformedResponseError, UpstreamHttpError
from wso2auth.service.http import decode_json_object, send
from wso2auth.storage.memory import MemoryStore
from wso2auth.storage.models import User

logger = get_logger(__name__)

SERVICE = "operator_privileges"


class OperatorPrivilegesClient:
    """Client for the operator privileges service.

    Logs in with service credentials (the JWT comes back as the raw body)
    and lists the functions enabled for an operator.
    """

    def __init__(self, client: httpx.AsyncClient, settings: Settings, base_url: Optional[str]):
        self.client = client
        self.settings = settings
        self.base_url = base_url

    @property
    def is_configured(self) -> bool:
        return bool(
            self.base_url and self.settings.operator_username and self.settings.operator_password
        )

    async def login(self) -> str:
        if not self.is_configured:
            raise UpstreamHttpError("privileges service is not configured", service=SERVICE)
        response = await send(
            self.client,
            "POST",
            f"{self.base_url}/login",
            service=SERVICE,
            json={
                "username": self.settings.operator_username,
                "password": self.settings.operator_password,
            },
        )
        token = response.text.strip()
        if not token:
            raise MalformedResponseError("privileges login returned no token", service=SERVICE)
        return token

    async def operator_functions(self, operator: str) -> List[Dict[str, Any]]:
        ente = self.settings.operator_ente
        app = self.settings.operator_app
        if not ente or not app:
            raise UpstreamHttpError(
                "entity or application code not configured", service=SERVICE
            )
        token = await self.login()
        response = await send(
            self.client,
            "GET",
            f"{self.base_url}/1.0/operatore-funzioni/{operator}/{app}/{ente}",
            service=SERVICE,
            headers={"Authorization": f"Bearer {token}"},
        )
        payload = decode_json_object(response, service=SERVICE)
        if payload.get("esito") != "SUCCESS":
            logger.error(
                "operator_privileges_business_error",
                esito=payload.get("esito"),
                message=payload.get("messaggio"),
            )
            raise UpstreamHttpError("privileges service reported failure", service=SERVICE)
        functions = payload.get("listaFunzioneOperatore") or []
        if not isinstance(functions, list):
            raise MalformedResponseError("function list is not a list", service=SERVICE)
        return [item for item in functions if isinstance(item, dict)]


def parse_role_population(spec: str) -> Dict[str, str]:
    """Parse ``role:function|role:function`` into a role -> function map."""
    mapping: Dict[str, str] = {}
    for rule in (spec or "").split("|"):
        if ":" not in rule:
            continue
        role, function = rule.split(":", 1)
        role, function = role.strip(), function.strip()
        if role and function:
            mapping[role] = function
    return mapping


class OperatorRoleMapper:
    """Replaces an operator's mapped roles with those granted by the privileges service."""

    def __init__(self, privileges: OperatorPrivilegesClient, store: MemoryStore, settings: Settings):
        self.privileges = privileges
        self.store = store
        self.role_map = parse_role_population(settings.operator_role_population)

    async def apply(self, user: User, operator: str) -> bool:
        """Returns False when the privileges service could not be used; the login stands."""
        try:
            functions = await self.privileges.operator_functions(operator)
        except UpstreamHttpError as exc:
            logger.warning(
                "operator_privileges_unavailable",
                user_id=user.id,
                error_code=exc.error_code,
                error=exc.message,
            )
            return False
        granted = {item.get("funzione") for item in functions}
        roles = [role for role in user.roles if role not in self.role_map]
        for role, function in self.role_map.items():
            if function in granted:
                roles.append(role)
        if roles != user.roles:
            user.roles = roles
            self.store.save_user(user)
        logger.info(
            "operator_roles_applied",
            user_id=user.id,
            roles=[role for role in roles if role in self.role_map],
        )
        return True
