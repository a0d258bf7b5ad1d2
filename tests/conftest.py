import inspect
import json
import os
import socket
from pathlib import Path

import httpx
import pytest

from backend.core.observability import metrics

VIOLATIONS = []
ARTIFACTS_DIR = Path("artifacts")
ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
REPORT = ARTIFACTS_DIR / "egress-violations.json"


def _is_allowed_callstack(allowed_paths: list[str]) -> bool:
    for frame in inspect.stack():
        filename = (frame.filename or "").replace("\\", "/")
        for ap in allowed_paths:
            if ap in filename:
                return True
    return False


def _db_host_port(db_url: str) -> tuple[str | None, int | None]:
    if "@" not in db_url:
        return None, None
    hostport = db_url.split("@", 1)[1].split("/", 1)[0]
    if ":" in hostport:
        host, port = hostport.split(":", 1)
        return host, int(port) if port.isdigit() else None
    return hostport, 5432


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    """Block network egress except from tests and the webhook adapter."""
    allowed_client_paths = [
        "/tests/",
        "/agents/dunning/delivery.py",
    ]
    db_host, db_port = _db_host_port(os.environ.get("DATABASE_URL", ""))

    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection
    real_httpx_init = httpx.Client.__init__

    def guard_getaddrinfo(host, *args, **kwargs):
        if db_host and isinstance(host, str) and host == db_host:
            return real_getaddrinfo(host, *args, **kwargs)
        if _is_allowed_callstack(allowed_client_paths):
            return real_getaddrinfo(host, *args, **kwargs)
        VIOLATIONS.append({"fn": "getaddrinfo", "host": str(host)})
        raise RuntimeError("Egress blocked: getaddrinfo disallowed")

    def guard_create_connection(address, *args, **kwargs):
        host, port = None, None
        if isinstance(address, tuple) and len(address) >= 2:
            host, port = address[0], address[1]
        if (db_host and host == db_host) or (db_port and port == db_port):
            return real_create_connection(address, *args, **kwargs)
        if _is_allowed_callstack(allowed_client_paths):
            return real_create_connection(address, *args, **kwargs)
        VIOLATIONS.append({"fn": "create_connection", "address": str(address)})
        raise RuntimeError("Egress blocked: create_connection disallowed")

    def guard_httpx_init(self, *args, **kwargs):
        if not _is_allowed_callstack(allowed_client_paths):
            VIOLATIONS.append({"fn": "httpx.Client.__init__"})
            raise RuntimeError("Egress blocked: httpx.Client not allowed from this callsite")
        return real_httpx_init(self, *args, **kwargs)

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = guard_httpx_init  # type: ignore[assignment]

    yield

    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = real_httpx_init  # type: ignore[assignment]

    REPORT.write_text(json.dumps(VIOLATIONS, indent=2))


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()
