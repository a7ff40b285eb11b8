from __future__ import annotations

import os

import pytest
from fastapi.testclient import TestClient

from governance.core.audit.store import AuditLogStore
from governance.core.config.manager import ConfigManager
from governance.core.config.models import ApiKeyEntry
from governance.core.config.paths import ConfigFsPaths
from governance.core.error_reporter import ErrorReporter
from governance.core.events import EventLogger
from governance.core.privacy.store import GovernedStore
from governance.core.security_events import SecurityAuditLogger
from governance.core.services import build_services
from governance.web.api import create_app
from governance.web.auth import ApiKeyAuthenticator, hash_key

from .helpers.fakes import FakeClock, QuietLogger, RecordingNotifier
from .helpers.web import API_KEYS, CRON_SECRET, SIGNING_KEY


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def logger():
    return QuietLogger()


@pytest.fixture
def fs(tmp_path):
    """Isolated root with config/, runtime/ and logs/ under tmp_path."""
    return ConfigFsPaths(root=str(tmp_path))


@pytest.fixture
def environ():
    return {"GOVERNANCE_CRON_SECRET": CRON_SECRET, "GOVERNANCE_UNSUBSCRIBE_SIGNING_KEY": SIGNING_KEY}


@pytest.fixture
def config_manager(fs, logger, environ):
    cm = ConfigManager(fs=fs, logger=logger, environ=environ)
    cm.load_all()
    return cm


@pytest.fixture
def audit_store(tmp_path, clock, logger):
    return AuditLogStore(
        path=str(tmp_path / "runtime" / "audit.sqlite"),
        event_logger=EventLogger(path=str(tmp_path / "logs" / "events.jsonl")),
        logger=logger,
        time_fn=clock.time,
        sleep_fn=lambda _s: None,
    )


@pytest.fixture
def governed_store(tmp_path, clock, logger):
    return GovernedStore(db_path=str(tmp_path / "runtime" / "governed.sqlite"), logger=logger, time_fn=clock.time)


@pytest.fixture
def admin_notifier():
    return RecordingNotifier()


@pytest.fixture
def services(fs, config_manager, clock, logger, admin_notifier):
    return build_services(
        config=config_manager.get(),
        fs=fs,
        config_manager=config_manager,
        logger=logger,
        event_logger=EventLogger(path=os.path.join(fs.logs_dir, "events.jsonl")),
        admin_notifier=admin_notifier,
        time_fn=clock.time,
    )


@pytest.fixture
def make_client(services, fs, clock, logger):
    def _make(*, cron_secret=CRON_SECRET, svc=None) -> TestClient:
        entries = [ApiKeyEntry(id=f"k{i}", key_hash=hash_key(raw), subject_id=subject, roles=roles) for i, (raw, (subject, roles)) in enumerate(API_KEYS.items())]
        app = create_app(
            services=svc or services,
            authenticator=ApiKeyAuthenticator(entries),
            cron_secret=cron_secret,
            event_logger=(svc or services).event_logger,
            security_logger=SecurityAuditLogger(path=os.path.join(fs.logs_dir, "security.log")),
            error_reporter=ErrorReporter(path=os.path.join(fs.logs_dir, "errors.jsonl")),
            logger=logger,
            time_fn=clock.time,
        )
        return TestClient(app)

    return _make


@pytest.fixture
def client(make_client):
    return make_client()
