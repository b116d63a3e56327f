#!/usr/bin/env python
from __future__ import annotations

import argparse
from pathlib import Path

import yaml


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a tenants YAML file for TENANTS_FILE")
    parser.add_argument("--output", required=True, help="output path (.yaml)")
    parser.add_argument("--tenant", default="acme", help="tenant id")
    parser.add_argument("--cnpj", default="12345678000190", help="company CNPJ used as storage prefix")
    parser.add_argument("--token", default="change-me", help="fiscal API token")
    parser.add_argument("--endpoint", default=None, help="per-tenant API endpoint (optional)")
    parser.add_argument("--interval", type=int, default=24, help="sync interval in hours")
    args = parser.parse_args()

    credential = {"api_token": args.token}
    if args.endpoint:
        credential["api_endpoint"] = args.endpoint

    document = {
        "tenants": [
            {
                "id": args.tenant,
                "external_id": args.cnpj,
                "name": args.tenant.title(),
                "active": True,
                "auto_sync": True,
                "sync_interval_hours": args.interval,
                "credential": credential,
            }
        ]
    }

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("w", encoding="utf-8") as fp:
        yaml.safe_dump(document, fp, sort_keys=False, allow_unicode=True)

    print(f"tenants file written: {output}")


if __name__ == "__main__":
    main()
