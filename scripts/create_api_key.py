from __future__ import annotations

import argparse
import json
import uuid

from governance.core.config.manager import ConfigManager
from governance.core.config.paths import ConfigFsPaths
from governance.web.auth import generate_key, hash_key


def main() -> None:
    ap = argparse.ArgumentParser(description="Create an API key and add its hash to config/web.json.")
    ap.add_argument("subject_id", help="Subject the key authenticates as.")
    ap.add_argument("--role", action="append", default=[], help="Role to grant (repeatable): admin, board.")
    ap.add_argument("--root", default=".")
    ap.add_argument("--print-only", action="store_true", help="Print the web.json entry instead of saving it.")
    args = ap.parse_args()

    key = generate_key()
    entry = {"id": uuid.uuid4().hex[:12], "key_hash": hash_key(key), "subject_id": args.subject_id, "roles": sorted(set(args.role))}

    if args.print_only:
        print(json.dumps(entry, indent=2))
    else:
        cm = ConfigManager(fs=ConfigFsPaths(args.root), logger=None)
        cm.load_all()
        web = cm.read_non_sensitive("web.json")
        web["api_keys"] = list(web.get("api_keys") or []) + [entry]
        cm.save_non_sensitive("web.json", web)
        print(f"Key id: {entry['id']} (hash saved to config/web.json)")
    print("New API key (shown once):")
    print(key)


if __name__ == "__main__":
    main()
