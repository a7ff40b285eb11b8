from __future__ import annotations

import argparse
import json
import os
import sys

from governance.core.config.manager import ConfigManager
from governance.core.config.paths import ConfigFsPaths
from governance.core.events import EventLogger
from governance.core.logger import setup_logging
from governance.core.retention.maintenance import run_daily_maintenance
from governance.core.services import build_services

JOBS = ("daily-maintenance", "data-retention", "temp-cleanup", "coppa-age-out", "process-requests")


def main() -> None:
    ap = argparse.ArgumentParser(description="Run a scheduled governance job once and print its result as JSON.")
    ap.add_argument("job", choices=JOBS)
    ap.add_argument("--root", default=".", help="Directory holding config/, runtime/ and logs/.")
    ap.add_argument("--limit", type=int, default=10, help="process-requests: max requests to process.")
    ap.add_argument("--reclaim", action="store_true", help="process-requests: also pick up requests stuck in processing.")
    args = ap.parse_args()

    fs = ConfigFsPaths(args.root)
    logger = setup_logging(fs.logs_dir)
    cm = ConfigManager(fs=fs, logger=logger)
    cfg = cm.load_all()
    services = build_services(config=cfg, fs=fs, config_manager=cm, logger=logger, event_logger=EventLogger(path=os.path.join(fs.logs_dir, "events.jsonl")))

    if args.job == "daily-maintenance":
        res = run_daily_maintenance(services.retention, logger=logger)
        ok, out = res.success, res.to_dict()
    elif args.job == "data-retention":
        run = services.retention.run_all()
        ok, out = run.success, run.to_dict()
    elif args.job == "temp-cleanup":
        run = services.retention.cleanup_temporary_data()
        ok, out = run.success, run.to_dict()
    elif args.job == "coppa-age-out":
        r = services.age_out.process_age_outs()
        ok, out = r.ok, r.to_dict()
    else:
        reqs = services.dsar.process_pending(limit=args.limit, reclaim_processing=args.reclaim)
        ok = all(r.status.value != "failed" for r in reqs)
        out = {"processed": [r.summary() for r in reqs]}

    print(json.dumps(out, indent=2, sort_keys=True))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
