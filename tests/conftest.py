import os
import socket
import sys
import urllib.request
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
SRC = REPO_ROOT / "src"

# Prefer repo sources over any installed package.
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def block_network(monkeypatch):
    if os.getenv("LIVE") == "1":
        return

    real_connect = socket.socket.connect

    def guarded_connect(sock, address):
        host = address[0] if isinstance(address, tuple) else address
        if host not in ("127.0.0.1", "localhost"):
            raise RuntimeError("Network access blocked in tests")
        return real_connect(sock, address)

    monkeypatch.setattr(socket.socket, "connect", guarded_connect)
    monkeypatch.setattr(
        urllib.request,
        "urlopen",
        lambda *args, **kwargs: (_ for _ in ()).throw(
            RuntimeError("Network access blocked in tests")
        ),
    )


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    from property_tracker.config import reset_settings_cache

    for name in list(os.environ):
        if name.startswith("PT_"):
            monkeypatch.delenv(name, raising=False)
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "tracker.sqlite")


@pytest.fixture
def store(db_path):
    from property_tracker.storage import SQLiteStore

    s = SQLiteStore(db_path)
    yield s
    s.close()


@pytest.fixture
def engine(store):
    from property_tracker.engine import IngestEngine
    from property_tracker.retry import RetryConfig

    return IngestEngine(
        store,
        retry_config=RetryConfig(retries=3, base_delay=0.0, factor=1.0, jitter=0.0),
        sleep_fn=lambda _: None,
    )


ADDR_A = {"line": "12 Oak St", "city": "Provo", "state": "UT", "postal_code": "84601"}
ADDR_B = {"line": "99 Elm Ave", "city": "Provo", "state": "UT", "postal_code": "84604"}


@pytest.fixture
def addr_a():
    return dict(ADDR_A)


@pytest.fixture
def addr_b():
    return dict(ADDR_B)
