import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple, Union

# Environment must be in place before wso2auth is imported: the app reads
# settings at import time.
_test_tmp_dir = tempfile.mkdtemp(prefix="wso2auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# no Redis in tests: sessions and sync timestamps go to the file store
os.environ["REDIS_URL"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("APP_BASE_URL", "http://testserver")
os.environ.setdefault("WSO2_AUTH_ENABLED", "true")
os.environ.setdefault("WSO2_ENVIRONMENT", "staging")
os.environ.setdefault("WSO2_CITIZEN_CLIENT_ID", "citizen-client")
os.environ.setdefault("WSO2_CITIZEN_CLIENT_SECRET", "citizen-secret")
os.environ.setdefault("WSO2_REDIRECT_WHITELIST", "trusted.org")
os.environ.setdefault("API_MANAGER_CLIENT_ID", "apim-client")
os.environ.setdefault("API_MANAGER_CLIENT_SECRET", "apim-secret")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from wso2auth.service.runtime import reset_runtime_for_tests  # noqa: E402

IDP_BASE = "https://id-staging.055055.it:9443/oauth2"
APIM_BASE = "https://api-staging.055055.it"

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeUpstream:
    """Routes outbound httpx requests to canned responses and records them."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Responder] = {}
        self.requests: List[httpx.Request] = []

    @staticmethod
    def _key(method: str, url: str) -> Tuple[str, str]:
        parsed = httpx.URL(url)
        return method.upper(), f"{parsed.scheme}://{parsed.netloc.decode()}{parsed.path}"

    def add(self, method: str, url: str, response: Responder) -> None:
        self.routes[self._key(method, url)] = response

    def json(self, method: str, url: str, payload: Any, status_code: int = 200) -> None:
        self.add(method, url, httpx.Response(status_code, json=payload))

    def calls(self, method: str, url: str) -> List[httpx.Request]:
        key = self._key(method, url)
        return [r for r in self.requests if self._key(r.method, str(r.url)) == key]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responder = self.routes.get(self._key(request.method, str(request.url)))
        if responder is None:
            return httpx.Response(404, json={"error": "not_found"})
        if callable(responder):
            return responder(request)
        return responder


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh user store and key-value file per test
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def runtime(upstream):
    """Runtime whose outbound HTTP goes to ``upstream``."""
    return reset_runtime_for_tests(transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
def configure(upstream, monkeypatch):
    """Set environment overrides and rebuild the runtime with them."""

    def _configure(**env: str):
        for name, value in env.items():
            monkeypatch.setenv(name, value)
        return reset_runtime_for_tests(transport=httpx.MockTransport(upstream.handler))

    return _configure


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
