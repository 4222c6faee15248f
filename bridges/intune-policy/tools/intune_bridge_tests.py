"""
Intune Policy Bridge Read-Only Test Battery

Exercises device compliance reporting and every policy category against
the live tenant and produces a compact pass/skip/fail summary.
No mutations, no side effects.

Usage: python3 intune_bridge_tests.py
"""

import logging
import sys
import time
from datetime import date
from collections import Counter

sys.path.insert(0, __file__.rsplit("/", 1)[0])
from graph_client import GraphClient, FetchError
from policy_assignments import POLICY_CATEGORIES, PolicyAssignmentResolver
from intune_check import summarize_compliance, find_stale


# ── Battery Runner ─────────────────────────────────────────────────────
# Checks return a detail string; a detail starting with "SKIP:" records a
# skip (permission not granted, nothing to check) instead of a pass.

results = []


def run_test(area, name, fn):
    started = time.time()
    try:
        detail = fn() or ""
        status = "SKIP" if detail.startswith("SKIP:") else "PASS"
    except Exception as e:
        detail = str(e)[:120]
        status = "FAIL"
    results.append({
        "num": len(results) + 1,
        "area": area,
        "name": name,
        "status": status,
        "detail": detail,
        "ms": int((time.time() - started) * 1000),
    })


def print_report(elapsed):
    tally = Counter(r["status"] for r in results)
    width = 116

    print(f"\n{'=' * width}")
    print(f"  Intune Policy Bridge Test Battery  ({date.today().isoformat()})")
    print(f"{'=' * width}")
    print(f"{'#':>3}  {'Area':<12} {'Check':<40} {'Status':<7} {'ms':>6}  Detail")
    print(f"{'-' * width}")
    for r in results:
        print(f"{r['num']:>3}  {r['area']:<12} {r['name']:<40} {r['status']:<7} {r['ms']:>6}  {r['detail'][:42]}")
    print(f"{'-' * width}")
    print(f"{tally['PASS']} passed, {tally['SKIP']} skipped, {tally['FAIL']} failed "
          f"of {len(results)} in {elapsed:.1f}s")
    print(f"{'=' * width}\n")


shared = {}


# ── Bridge Health ──────────────────────────────────────────────────────

def check_connection(client):
    def fn():
        info = client.test_connection()
        assert info.get("ok"), f"Connection failed: {info}"
        return f"Tenant: {info.get('display_name', '?')} via {info.get('api_base')}"
    run_test("Health", "Connection check", fn)


# ── Devices and Compliance ─────────────────────────────────────────────

def check_managed_devices(client):
    def fn():
        devices = client.list_managed_devices()
        shared["devices"] = devices
        return f"{len(devices)} managed devices"
    run_test("Devices", "List managed devices", fn)


def check_os_breakdown():
    def fn():
        devices = shared.get("devices")
        if not devices:
            return "SKIP: no devices loaded"
        os_counts = Counter(d.get("operatingSystem", "?") for d in devices)
        return ", ".join(f"{c} {o}" for o, c in os_counts.most_common(4))
    run_test("Devices", "Device OS breakdown", fn)


def check_compliance_summary():
    def fn():
        if "devices" not in shared:
            return "SKIP: device list did not load"
        s = summarize_compliance(shared["devices"])
        assert s["compliant"] + s["noncompliant"] + s["other"] == s["total"], "Counts do not add up"
        return f"{s['compliant_pct']}% compliant, {s['noncompliant_pct']}% noncompliant of {s['total']}"
    run_test("Devices", "Compliance summary", fn)


def check_stale_devices():
    def fn():
        if "devices" not in shared:
            return "SKIP: device list did not load"
        return f"{len(find_stale(shared['devices'], 30))} devices not synced in 30+ days"
    run_test("Devices", "Stale devices (>30 days)", fn)


# ── Policies and Assignments ───────────────────────────────────────────

def check_list_category(resolver, category):
    def fn():
        try:
            policies = resolver.list_policies(category)
        except FetchError as e:
            if e.status_code == 403:
                return "SKIP: read permission not granted (403)"
            raise
        shared[category] = policies
        unnamed = sum(1 for p in policies if not p.get("display_name"))
        assert not unnamed, f"{unnamed} policies missing a display name"
        return f"{len(policies)} policies"
    run_test("Policies", f"List {category}", fn)


def check_scan_category(resolver, category):
    def fn():
        policies = shared.get(category)
        if policies is None:
            return "SKIP: policy list did not load"
        summaries = resolver.resolve(category)
        assert len(summaries) <= len(policies), "More summaries than policies"
        for s in summaries:
            assert s.assignment_count == len(s.assigned_groups)
        assigned = sum(1 for s in summaries if s.assignment_count)
        dropped = len(policies) - len(summaries)
        return f"{assigned}/{len(summaries)} assigned, {dropped} dropped"
    run_test("Assignments", f"Scan {category}", fn)


# ── Main ───────────────────────────────────────────────────────────────

def main():
    start = time.time()
    client = GraphClient()

    # Resolver chatter goes to a quiet logger so the report stays readable
    log = logging.getLogger("intune_bridge_tests")
    log.addHandler(logging.NullHandler())
    log.propagate = False
    resolver = PolicyAssignmentResolver(client, logger=log)

    check_connection(client)

    check_managed_devices(client)
    check_os_breakdown()
    check_compliance_summary()
    check_stale_devices()

    for category in POLICY_CATEGORIES:
        check_list_category(resolver, category)
    for category in POLICY_CATEGORIES:
        check_scan_category(resolver, category)

    print_report(time.time() - start)

    failed = sum(1 for r in results if r["status"] == "FAIL")
    sys.exit(1 if failed > 0 else 0)


if __name__ == "__main__":
    main()
