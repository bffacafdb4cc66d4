from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

AuthorizationUrlListener = Callable[[str, Dict[str, str]], Optional[str]]
TokenRequestListener = Callable[[Dict[str, str], str], None]
UserinfoRequestListener = Callable[[Dict[str, str], str], None]
UserinfoListener = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]
PostLoginListener = Callable[[Any, Dict[str, Any], str], None]
LogoutUrlListener = Callable[[str, Dict[str, str]], Optional[str]]


@dataclass
class ExtensionPoints:
    """Registered listeners invoked at fixed points of the login flow.

    Listeners run in registration order. For the hooks that transform a
    value, a non-None return replaces the value seen by the next listener.
    """

    authorization_url: List[AuthorizationUrlListener] = field(default_factory=list)
    token_request: List[TokenRequestListener] = field(default_factory=list)
    userinfo_request: List[UserinfoRequestListener] = field(default_factory=list)
    userinfo: List[UserinfoListener] = field(default_factory=list)
    post_login: List[PostLoginListener] = field(default_factory=list)
    logout_url: List[LogoutUrlListener] = field(default_factory=list)

    def alter_authorization_url(self, url: str, params: Dict[str, str]) -> str:
        for listener in self.authorization_url:
            replaced = listener(url, params)
            if replaced is not None:
                url = replaced
        return url

    def alter_token_request(self, params: Dict[str, str], code: str) -> None:
        for listener in self.token_request:
            listener(params, code)

    def alter_userinfo_request(self, headers: Dict[str, str], access_token: str) -> None:
        for listener in self.userinfo_request:
            listener(headers, access_token)

    def alter_userinfo(self, claims: Dict[str, Any]) -> Dict[str, Any]:
        for listener in self.userinfo:
            replaced = listener(claims)
            if replaced is not None:
                claims = replaced
        return claims

    def notify_post_login(self, user: Any, claims: Dict[str, Any], auth_type: str) -> None:
        for listener in self.post_login:
            listener(user, claims, auth_type)

    def alter_logout_url(self, url: str, params: Dict[str, str]) -> str:
        for listener in self.logout_url:
            replaced = listener(url, params)
            if replaced is not None:
                url = replaced
        return url
