import json
import sys
from importlib import reload
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fhe_analytics.app import config, storage  # noqa: E402
from fhe_analytics.app.errors import StreamError  # noqa: E402
from fhe_analytics.app.keys import KeyPair, fingerprint_for  # noqa: E402

FAKE_PUBLIC_KEY = "-----BEGIN PUBLIC KEY-----\ntest\n-----END PUBLIC KEY-----\n"


class RecordingConnection:
    """Subscriber connection that keeps every frame written to it."""

    def __init__(self, fail: bool = False) -> None:
        self.frames = []
        self.fail = fail
        self.closed = False

    def send(self, frame: str) -> None:
        if self.fail:
            raise StreamError("broken pipe")
        self.frames.append(frame)

    def close(self) -> None:
        self.closed = True

    def payloads(self):
        return [json.loads(frame[len("data: "):].strip()) for frame in self.frames]


@pytest.fixture
def fast_keys(monkeypatch):
    monkeypatch.setattr(
        storage,
        "generate_key_pair",
        lambda: KeyPair(public_key=FAKE_PUBLIC_KEY, fingerprint=fingerprint_for(FAKE_PUBLIC_KEY)),
    )


@pytest.fixture
def app_module(tmp_path, monkeypatch, fast_keys):
    db_path = tmp_path / "analytics.db"
    monkeypatch.setenv("FHE_ANALYTICS_DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("FHE_ANALYTICS_COLLECT_RATE_LIMIT", "1000")
    config.get_settings.cache_clear()

    from fhe_analytics.app import database

    reload(database)

    from fhe_analytics.app import main

    reload(main)
    main.reset_application_state()

    yield main

    main.reset_application_state()
    config.get_settings.cache_clear()


@pytest.fixture
def db_session(app_module):
    session = app_module.SessionLocal()
    try:
        yield session
    finally:
        session.close()
