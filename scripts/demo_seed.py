#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

import requests

from marketplace.core.security import create_access_token


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the demo marketplace catalog on a running server")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--admin-id", default="admin-dev-001")
    args = parser.parse_args()

    token = create_access_token(args.admin_id, "admin")
    resp = requests.post(f"{args.base_url}/demo/seed", headers={"Authorization": f"Bearer {token}"}, timeout=60)
    resp.raise_for_status()
    data = resp.json()
    print(json.dumps(data, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
