from __future__ import annotations

import argparse
import logging
import os

import uvicorn

from governance.core.config.manager import ConfigManager, SecretUnavailable
from governance.core.config.paths import ConfigFsPaths
from governance.core.error_reporter import ErrorReporter, ErrorReporterConfig
from governance.core.events import EventLogger
from governance.core.logger import setup_logging
from governance.core.security_events import SecurityAuditLogger
from governance.core.services import build_services
from governance.web.api import create_app
from governance.web.auth import ApiKeyAuthenticator


def build_app(root: str = "."):  # noqa: ANN201
    """Load config from `root`, wire services and return the FastAPI app plus its web config."""
    fs = ConfigFsPaths(root)
    logger = setup_logging(fs.logs_dir)
    config = ConfigManager(fs=fs, logger=logger)
    cfg = config.load_all()
    logger.setLevel(getattr(logging, cfg.app.log_level, logging.INFO))

    event_logger = EventLogger(path=os.path.join(fs.logs_dir, "events.jsonl"))
    security_logger = SecurityAuditLogger(path=os.path.join(fs.logs_dir, "security.log"))
    error_reporter = ErrorReporter(path=os.path.join(fs.logs_dir, "errors.jsonl"), cfg=ErrorReporterConfig(include_tracebacks=cfg.app.include_tracebacks))

    services = build_services(config=cfg, fs=fs, config_manager=config, logger=logger, event_logger=event_logger)

    try:
        cron_secret = config.get_secret("cron_secret")
    except SecretUnavailable:
        cron_secret = None
        logger.warning("Cron secret not configured; scheduled job endpoints will reject every call.")

    web = cfg.web
    if not web.api_keys:
        logger.warning("No API keys configured in web.json; authenticated endpoints will reject every call.")
    app = create_app(
        services=services,
        authenticator=ApiKeyAuthenticator(web.api_keys),
        cron_secret=cron_secret,
        event_logger=event_logger,
        security_logger=security_logger,
        error_reporter=error_reporter,
        logger=logger,
        allowed_origins=list(web.allowed_origins),
        max_request_bytes=web.max_request_bytes,
        trust_forwarded_for=web.trust_forwarded_for,
    )
    return app, web, logger


def main() -> None:
    ap = argparse.ArgumentParser(description="Data governance and audit service")
    ap.add_argument("--root", default=".", help="Directory holding config/, runtime/ and logs/.")
    ap.add_argument("--host", default=None, help="Bind host (defaults to web.json bind_host).")
    ap.add_argument("--port", type=int, default=None, help="Bind port (defaults to web.json port).")
    args = ap.parse_args()

    app, web, logger = build_app(args.root)
    host = str(args.host or web.bind_host)
    port = int(args.port or web.port)
    if host != "127.0.0.1":
        SecurityAuditLogger(path=os.path.join(ConfigFsPaths(args.root).logs_dir, "security.log")).log(
            trace_id="startup",
            severity="WARN",
            event="web.remote_enabled",
            ip=None,
            endpoint="startup",
            outcome="enabled",
            details={"bind_host": host, "port": port},
        )
    logger.info(f"Web server starting on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
