#!/usr/bin/env python3
"""
Health check for the Intune policy bridge.

Validates environment variables are set and tests API connectivity.

Usage:
    python3 graph_check.py
"""

import os
import sys
import json

sys.path.insert(0, __file__.rsplit("/", 1)[0])
from graph_client import GraphClient, FetchError
from policy_assignments import CATEGORY_TABLE


def check():
    """Run health checks and report status."""
    checks = {}

    required_vars = ["AZURE_TENANT_ID", "GRAPH_CLIENT_ID", "GRAPH_CLIENT_SECRET"]
    env_status = {}
    all_set = True
    for var in required_vars:
        val = os.getenv(var, "")
        if val:
            env_status[var] = "set"
        else:
            env_status[var] = "MISSING"
            all_set = False
    checks["environment"] = env_status

    if not all_set:
        checks["api_connection"] = {"ok": False, "error": "Missing environment variables"}
        print(json.dumps(checks, indent=2))
        sys.exit(1)

    client = GraphClient()
    checks["api_connection"] = client.test_connection()

    # One-row read per policy category (each needs its own read permission)
    if checks["api_connection"].get("ok"):
        category_access = {}
        for category, mapping in CATEGORY_TABLE.items():
            try:
                client.get_value(mapping.resource_path, params={"$top": 1})
                category_access[category] = "ok"
            except FetchError as e:
                category_access[category] = f"error ({e.status_code})"
        checks["permission_test"] = category_access

    print(json.dumps(checks, indent=2))

    if checks["api_connection"].get("ok"):
        sys.exit(0)
    else:
        sys.exit(1)


if __name__ == "__main__":
    check()
