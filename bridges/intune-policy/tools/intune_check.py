#!/usr/bin/env python3
"""
Intune Policy and Compliance Reporting Tool

Query Intune device compliance, policy inventories, and the groups each
policy is assigned to.

Usage:
    python3 intune_check.py overview                          # Device overview (counts by OS)
    python3 intune_check.py compliance                        # Compliance counts and percentages
    python3 intune_check.py noncompliant                      # Noncompliant devices
    python3 intune_check.py stale [--days 30]                 # Devices not synced in N days
    python3 intune_check.py policies <category>               # Policies in a category
    python3 intune_check.py policy <category> <id>            # One policy
    python3 intune_check.py assignments <category> <id> [--json]
    python3 intune_check.py scan <category> [--json]          # Every policy with its groups

Categories:
    AutopilotProfile, ApplicationProtection, ConditionalAccess,
    CompliancePolicies, DeviceConfiguration, DeviceConfigurationSC
"""

import argparse
import json
import os
import sys
from datetime import datetime, timedelta, timezone
from collections import Counter

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from graph_client import GraphClient, FetchError
from policy_assignments import (
    POLICY_CATEGORIES,
    PolicyAssignmentResolver,
    category_mapping,
    require_policy_id,
)

# These report through the resolver, which prints its own fetch errors
RESOLVER_COMMANDS = {"policies", "policy", "assignments", "scan"}


# ── Counting Helpers ───────────────────────────────────────────────────

def _pct(part: int, total: int) -> float:
    return round(part * 100.0 / total, 1) if total else 0.0


def summarize_compliance(devices: list) -> dict:
    """Count compliant / noncompliant / other devices with percentages."""
    states = Counter(d.get("complianceState") for d in devices)
    total = len(devices)
    compliant = states.get("compliant", 0)
    noncompliant = states.get("noncompliant", 0)
    return {
        "total": total,
        "compliant": compliant,
        "noncompliant": noncompliant,
        "other": total - compliant - noncompliant,
        "compliant_pct": _pct(compliant, total),
        "noncompliant_pct": _pct(noncompliant, total),
    }


def _parse_graph_time(value: str) -> datetime:
    # Graph returns 7-digit fractional seconds, which fromisoformat rejects
    return datetime.strptime(value[:19], "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)


def find_stale(devices: list, days: int = 30, now: datetime = None) -> list:
    """Devices whose lastSyncDateTime is older than `days`, oldest first."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)
    stale = []
    for d in devices:
        raw = d.get("lastSyncDateTime")
        if not raw:
            continue
        try:
            synced = _parse_graph_time(raw)
        except ValueError:
            continue
        if synced < cutoff:
            stale.append(d)
    stale.sort(key=lambda x: x.get("lastSyncDateTime", ""))
    return stale


# ── Device Reports ─────────────────────────────────────────────────────

def show_overview(client: GraphClient):
    """Show Intune managed device overview."""
    print("Intune Managed Device Overview")
    print("=" * 60)

    try:
        overview = client.get_managed_device_overview()
        print(f"  Total enrolled: {overview.get('enrolledDeviceCount', '?')}")
        print(f"  MDM authority:  {overview.get('mdmAuthority', '?')}")

        dt = overview.get("deviceOperatingSystemSummary", {})
        if dt:
            print(f"\n  By OS:")
            print(f"    Windows:   {dt.get('windowsCount', 0)}")
            print(f"    iOS:       {dt.get('iosCount', 0)}")
            print(f"    macOS:     {dt.get('macOSCount', 0)}")
            print(f"    Android:   {dt.get('androidCount', 0)}")
            print(f"    Unknown:   {dt.get('unknownCount', 0)}")
    except FetchError as e:
        print(f"  Overview unavailable: {e}", file=sys.stderr)

    devices = client.list_managed_devices()
    os_counts = Counter(d.get("operatingSystem", "?") for d in devices)
    print(f"\n  Actual enrolled devices: {len(devices)}")
    print(f"  By OS (actual): {', '.join(f'{c} {o}' for o, c in os_counts.most_common())}")


def show_compliance(client: GraphClient):
    """Show compliance counts and percentages across managed devices."""
    summary = summarize_compliance(client.list_managed_devices())

    print("Device Compliance")
    print("=" * 60)
    print(f"  Total devices:   {summary['total']}")
    print(f"  Compliant:       {summary['compliant']:<6} ({summary['compliant_pct']}%)")
    print(f"  Noncompliant:    {summary['noncompliant']:<6} ({summary['noncompliant_pct']}%)")
    print(f"  Other:           {summary['other']}")


def show_noncompliant(client: GraphClient):
    """Show noncompliant devices."""
    devices = client.list_managed_devices()
    nc = [d for d in devices if d.get("complianceState") == "noncompliant"]

    print(f"Noncompliant Devices: {len(nc)} of {len(devices)} total")
    print()
    print(f"{'Device':<22} {'OS':<10} {'Version':<16} {'User':<25} {'Last Sync'}")
    print("-" * 95)

    for d in sorted(nc, key=lambda x: (x.get("deviceName") or "").lower()):
        name = (d.get("deviceName") or "?")[:21]
        os_name = (d.get("operatingSystem") or "?")[:9]
        version = (d.get("osVersion") or "?")[:15]
        user = (d.get("userDisplayName") or "?")[:24]
        last_sync = (d.get("lastSyncDateTime") or "?")[:19]
        print(f"{name:<22} {os_name:<10} {version:<16} {user:<25} {last_sync}")


def show_stale(client: GraphClient, days: int = 30):
    """Show devices that haven't synced in N days."""
    devices = client.list_managed_devices()
    stale = find_stale(devices, days)

    print(f"Devices not synced in {days}+ days: {len(stale)} of {len(devices)} total")
    print()
    print(f"{'Device':<22} {'OS':<10} {'Compliance':<14} {'Last Sync'}")
    print("-" * 70)

    for d in stale[:30]:
        name = (d.get("deviceName") or "?")[:21]
        os_name = (d.get("operatingSystem") or "?")[:9]
        compliance = (d.get("complianceState") or "?")[:13]
        last_sync = (d.get("lastSyncDateTime") or "?")[:19]
        print(f"{name:<22} {os_name:<10} {compliance:<14} {last_sync}")

    if len(stale) > 30:
        print(f"\n... +{len(stale) - 30} more")


# ── Policy Reports ─────────────────────────────────────────────────────

def show_policies(resolver: PolicyAssignmentResolver, category: str):
    policies = resolver.list_policies(category)

    print(f"{category} Policies: {len(policies)}")
    print()
    print(f"{'Policy Name':<50} {'ID'}")
    print("-" * 90)
    for p in sorted(policies, key=lambda x: (x.get("display_name") or "").lower()):
        print(f"{(p.get('display_name') or '?')[:49]:<50} {p.get('id')}")


def show_policy(resolver: PolicyAssignmentResolver, category: str, policy_id: str):
    p = resolver.get_policy(category, policy_id)
    print(f"Policy: {p.get('display_name')}")
    print(f"  ID:          {p.get('id')}")
    print(f"  Category:    {p.get('category')}")
    print(f"  Description: {p.get('description') or ''}")


def show_assignments(resolver: PolicyAssignmentResolver, category: str, policy_id: str, as_json: bool = False):
    """Show the groups one policy is assigned to."""
    resolved = resolver.resolve(category, policy_id)

    if as_json:
        print(json.dumps([a.to_dict() for a in resolved], indent=2))
        return

    print(f"\nAssigned groups: {len(resolved)}")
    print(f"{'Group':<40} {'Excluded':<9} {'Description'}")
    print("-" * 90)
    for a in resolved:
        excluded = "yes" if a.excluded else ""
        print(f"{(a.group_name or '?')[:39]:<40} {excluded:<9} {(a.description or '')[:40]}")


def scan_assignments(resolver: PolicyAssignmentResolver, category: str, as_json: bool = False):
    """Summarize every policy in a category with its assigned groups."""
    summaries = resolver.resolve(category)

    if as_json:
        print(json.dumps([s.to_dict() for s in summaries], indent=2))
        return

    assigned = sum(1 for s in summaries if s.assignment_count)
    print(f"\n{category}: {len(summaries)} policies, {assigned} assigned, "
          f"{len(summaries) - assigned} unassigned")
    print()
    print(f"{'Policy Name':<45} {'Count':>5}  {'Groups'}")
    print("-" * 95)
    for s in summaries:
        groups = ", ".join(g or "?" for g in s.assigned_groups)
        print(f"{(s.display_name or '?')[:44]:<45} {s.assignment_count:>5}  {groups[:45]}")


# ── CLI ────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Intune policy and compliance reporting",
        epilog=f"Categories: {', '.join(POLICY_CATEGORIES)}",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("overview", help="Managed device overview")
    sub.add_parser("compliance", help="Compliance counts and percentages")
    sub.add_parser("noncompliant", help="Noncompliant devices")

    p = sub.add_parser("stale", help="Devices not synced in N days")
    p.add_argument("--days", type=int, default=30, help="Days since last sync (default 30)")

    p = sub.add_parser("policies", help="List policies in a category")
    p.add_argument("category")

    p = sub.add_parser("policy", help="Show one policy")
    p.add_argument("category")
    p.add_argument("policy_id")

    p = sub.add_parser("assignments", help="Resolve groups assigned to one policy")
    p.add_argument("category")
    p.add_argument("policy_id")
    p.add_argument("--json", dest="json_output", action="store_true", help="Output JSON")

    p = sub.add_parser("scan", help="Summarize assignments for every policy in a category")
    p.add_argument("category")
    p.add_argument("--json", dest="json_output", action="store_true", help="Output JSON")

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    category = getattr(args, "category", None)
    try:
        if category is not None:
            category_mapping(category)
        if getattr(args, "policy_id", None) is not None:
            args.policy_id = require_policy_id(args.policy_id)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)

    client = GraphClient()
    resolver = PolicyAssignmentResolver(client)

    try:
        if args.command == "overview":
            show_overview(client)
        elif args.command == "compliance":
            show_compliance(client)
        elif args.command == "noncompliant":
            show_noncompliant(client)
        elif args.command == "stale":
            show_stale(client, args.days)
        elif args.command == "policies":
            show_policies(resolver, category)
        elif args.command == "policy":
            show_policy(resolver, category, args.policy_id)
        elif args.command == "assignments":
            show_assignments(resolver, category, args.policy_id, args.json_output)
        elif args.command == "scan":
            scan_assignments(resolver, category, args.json_output)
    except FetchError as e:
        if args.command not in RESOLVER_COMMANDS:
            print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
