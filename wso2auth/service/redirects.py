from __future__ import annotations

import re
from typing import Iterable, List, Optional
from urllib.parse import urlsplit

from wso2auth.logging import get_logger
from wso2auth.service.errors import RedirectSafetyError

logger = get_logger(__name__)

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))*$"
)
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


def normalize_domain(entry: str) -> Optional[str]:
    """Reduce a whitelist entry to a bare lowercase host, or None if invalid."""
    entry = entry.strip()
    if not entry:
        return None
    entry = _SCHEME_RE.sub("", entry)
    try:
        host = urlsplit("http://" + entry).hostname
    except ValueError:
        return None
    if not host or not _HOSTNAME_RE.match(host):
        return None
    return host


def is_internal_path(destination: str) -> bool:
    return (
        destination.startswith("/")
        and not destination.startswith("//")
        and "\\" not in destination
        and not any(ord(ch) < 32 for ch in destination)
    )


class SecureRedirectDispatcher:
    """Validates post-login destinations against a domain whitelist.

    Internal paths are always allowed and made absolute against the site
    URL. Absolute URLs pass verbatim only when their host equals, or is a
    subdomain of, a whitelisted domain. Anything else falls back.
    """

    def __init__(self, base_url: str, whitelist: Iterable[str], *, debug: bool = False):
        self.base_url = base_url.rstrip("/") + "/"
        self.debug = debug
        self.whitelist: List[str] = []
        for entry in whitelist:
            domain = normalize_domain(entry)
            if domain is None:
                logger.warning("redirect_whitelist_entry_invalid", entry=entry)
                continue
            self.whitelist.append(domain)

    def absolute(self, path: str) -> str:
        # a colon in the first segment stays part of the path
        return self.base_url.rstrip("/") + "/" + path.lstrip("/")

    def check(self, destination: str) -> str:
        """Return the URL to redirect to, or raise RedirectSafetyError."""
        if is_internal_path(destination):
            return self.absolute(destination)
        try:
            parts = urlsplit(destination)
            host = parts.hostname
        except ValueError as exc:
            raise RedirectSafetyError("destination is not a valid URL") from exc
        if parts.scheme not in ("http", "https") or not host:
            raise RedirectSafetyError("destination is not an absolute http(s) URL")
        if not self.whitelist:
            raise RedirectSafetyError("no external domains are whitelisted", detail={"host": host})
        for domain in self.whitelist:
            if host == domain or host.endswith("." + domain):
                if self.debug:
                    logger.debug("redirect_whitelist_match_debug", host=host, domain=domain)
                return destination
        raise RedirectSafetyError("destination host is not whitelisted", detail={"host": host})

    def resolve(self, destination: Optional[str], fallback: str = "/") -> str:
        fallback_url = self.absolute(fallback) if is_internal_path(fallback) else fallback
        if not destination:
            return fallback_url
        try:
            return self.check(destination)
        except RedirectSafetyError as exc:
            logger.warning(
                "redirect_rejected",
                reason=exc.message,
                host=exc.detail.get("host"),
            )
            return fallback_url
