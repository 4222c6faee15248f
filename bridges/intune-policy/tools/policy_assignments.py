"""
Intune Policy Assignment Resolver

Maps a policy category to its Graph resource, fetches assignment records,
and resolves each group-targeted assignment to the group's name and
description.

Two modes:
  resolve(category, policy_id)   -> [ResolvedAssignment, ...] for one policy
  resolve(category)              -> [PolicySummary, ...] for every policy

Failures fetching the policy list (or, for a single policy, its
assignments) propagate as FetchError. Failures for one policy's
assignments during a scan, or for one group lookup, are logged as
warnings and that item is dropped.
"""

import sys
from collections import namedtuple
from types import MappingProxyType

from graph_client import FetchError


class ConfigurationError(ValueError):
    """Unknown policy category; raised before any request is made."""


CategoryMapping = namedtuple(
    "CategoryMapping",
    ["resource_path", "assignment_segment", "display_name_field", "group_id_path"],
)

_TARGET_GROUP = ("target", "groupId")

CATEGORY_TABLE = MappingProxyType({
    "AutopilotProfile": CategoryMapping(
        "deviceManagement/windowsAutopilotDeploymentProfiles", "assignments", "displayName", _TARGET_GROUP),
    "ApplicationProtection": CategoryMapping(
        "deviceAppManagement/managedAppPolicies", "assignments", "displayName", _TARGET_GROUP),
    "ConditionalAccess": CategoryMapping(
        "identity/conditionalAccess/policies", "assignments", "displayName", _TARGET_GROUP),
    "CompliancePolicies": CategoryMapping(
        "deviceManagement/deviceCompliancePolicies", "assignments", "displayName", _TARGET_GROUP),
    "DeviceConfiguration": CategoryMapping(
        "deviceManagement/deviceConfigurations", "groupAssignments", "displayName", ("targetGroupId",)),
    "DeviceConfigurationSC": CategoryMapping(
        "deviceManagement/configurationPolicies", "assignments", "name", _TARGET_GROUP),
})

POLICY_CATEGORIES = tuple(CATEGORY_TABLE)

GROUP_PATH = "groups/{group_id}"

# Scan output always reports this; see DESIGN.md (TargetType).
DEFAULT_TARGET_TYPE = "groupAssignmentTarget"


def category_mapping(category: str) -> CategoryMapping:
    """Return the resource/field mapping for a category or raise ConfigurationError."""
    try:
        return CATEGORY_TABLE[category]
    except (KeyError, TypeError):
        raise ConfigurationError(
            f"Unknown policy category: {category!r}. "
            f"Expected one of: {', '.join(POLICY_CATEGORIES)}"
        ) from None


def require_policy_id(policy_id) -> str:
    """Return the stripped policy id; blank or non-string ids raise ValueError."""
    if not isinstance(policy_id, str) or not policy_id.strip():
        raise ValueError(f"Policy id must be a non-empty string, got {policy_id!r}")
    return policy_id.strip()


def _short_reason(err: FetchError) -> str:
    return f"HTTP {err.status_code}" if err.status_code is not None else "request failed"


def extract_group_id(assignment: dict, mapping: CategoryMapping):
    """Walk the category's group id path; None means a non-group target."""
    node = assignment
    for key in mapping.group_id_path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node if isinstance(node, str) and node else None


def is_exclusion(assignment: dict) -> bool:
    if assignment.get("excludeGroup"):
        return True
    target = assignment.get("target") or {}
    return (target.get("@odata.type") or "").endswith("exclusionGroupAssignmentTarget")


# ── Result Records ─────────────────────────────────────────────────────

class Outcome:
    """Per-item result: a value on success, a reason when the item was skipped."""

    def __init__(self, ok: bool, value=None, reason: str = ""):
        self.ok = ok
        self.value = value
        self.reason = reason

    @classmethod
    def success(cls, value):
        return cls(True, value=value)

    @classmethod
    def skip(cls, reason: str):
        return cls(False, reason=reason)

    def __repr__(self):
        if self.ok:
            return f"Outcome.success({self.value!r})"
        return f"Outcome.skip({self.reason!r})"


class ResolvedAssignment:
    def __init__(self, group_id, group_name, description=None, excluded=False, target_type=None):
        self.group_id = group_id
        self.group_name = group_name
        self.description = description
        self.excluded = excluded
        self.target_type = target_type

    def to_dict(self) -> dict:
        d = {
            "group_id": self.group_id,
            "group_name": self.group_name,
            "description": self.description,
            "excluded": self.excluded,
        }
        if self.target_type is not None:
            d["target_type"] = self.target_type
        return d

    def __eq__(self, other):
        return isinstance(other, ResolvedAssignment) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"ResolvedAssignment({self.group_id!r}, {self.group_name!r})"


class PolicySummary:
    """One policy from a scan with the groups it is assigned to."""

    def __init__(self, policy_id, display_name, description, category, assignments):
        self.policy_id = policy_id
        self.display_name = display_name
        self.description = description
        self.category = category
        self.assignments = list(assignments)

    @property
    def assigned_groups(self) -> list:
        return [a.group_name for a in self.assignments]

    @property
    def assignment_count(self) -> int:
        return len(self.assignments)

    def to_dict(self) -> dict:
        return {
            "id": self.policy_id,
            "display_name": self.display_name,
            "description": self.description,
            "category": self.category,
            "assigned_groups": self.assigned_groups,
            "assignment_count": self.assignment_count,
            "assignments": [a.to_dict() for a in self.assignments],
        }

    def __eq__(self, other):
        return isinstance(other, PolicySummary) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"PolicySummary({self.policy_id!r}, {self.display_name!r}, count={self.assignment_count})"


# ── Resolver ───────────────────────────────────────────────────────────

class PolicyAssignmentResolver:
    """Resolves Intune policy assignments to directory group names.

    `client` needs get_json(endpoint) and get_value(endpoint), both raising
    FetchError. `logger` is optional (anything with info/warning/error);
    without one, lines are printed.
    """

    def __init__(self, client, logger=None):
        self.client = client
        self.logger = logger

    # ── Output ────────────────────────────────────────────────────────

    def _info(self, msg: str):
        if self.logger is not None:
            self.logger.info(msg)
        else:
            print(msg)

    def _warn(self, msg: str):
        if self.logger is not None:
            self.logger.warning(msg)
        else:
            print(f"WARNING: {msg}", file=sys.stderr)

    def _fatal(self, err: FetchError):
        msg = f"Request to {err.endpoint} failed (HTTP {err.status_code}): {err.body}"
        if self.logger is not None:
            self.logger.error(msg)
        else:
            print(f"ERROR: {msg}", file=sys.stderr)

    # ── Fetching ──────────────────────────────────────────────────────

    def _fetch_value(self, endpoint: str) -> list:
        try:
            return self.client.get_value(endpoint)
        except FetchError as e:
            self._fatal(e)
            raise

    def _lookup_group(self, group_id: str) -> Outcome:
        try:
            group = self.client.get_json(GROUP_PATH.format(group_id=group_id))
        except FetchError as e:
            return Outcome.skip(_short_reason(e))
        return Outcome.success(group)

    def _resolve_assignments(self, assignments: list, mapping: CategoryMapping, target_type=None) -> list:
        outcomes = []
        for assignment in assignments:
            group_id = extract_group_id(assignment, mapping)
            if not group_id:
                continue

            looked_up = self._lookup_group(group_id)
            if not looked_up.ok:
                self._warn(f"Skipping group {group_id}: {looked_up.reason}")
                outcomes.append(looked_up)
                continue

            group = looked_up.value
            resolved = ResolvedAssignment(
                group_id=group_id,
                group_name=group.get("displayName"),
                description=group.get("description"),
                excluded=is_exclusion(assignment),
                target_type=target_type,
            )
            self._info(f"  Resolved group {group_id} -> {resolved.group_name}")
            outcomes.append(Outcome.success(resolved))

        return [o.value for o in outcomes if o.ok]

    def _flatten_policy(self, policy: dict, category: str, mapping: CategoryMapping) -> dict:
        return {
            "id": policy.get("id"),
            "display_name": policy.get(mapping.display_name_field),
            "description": policy.get("description"),
            "category": category,
        }

    # ── Public API ────────────────────────────────────────────────────

    def get_policy(self, category: str, policy_id: str) -> dict:
        """Fetch one policy entity and return its flattened form."""
        mapping = category_mapping(category)
        policy_id = require_policy_id(policy_id)
        endpoint = f"{mapping.resource_path}/{policy_id}"
        try:
            policy = self.client.get_json(endpoint)
        except FetchError as e:
            self._fatal(e)
            raise
        return self._flatten_policy(policy, category, mapping)

    def list_policies(self, category: str) -> list:
        """List the first page of policies for a category, flattened."""
        mapping = category_mapping(category)
        return [
            self._flatten_policy(p, category, mapping)
            for p in self._fetch_value(mapping.resource_path)
        ]

    def resolve(self, category: str, policy_id: str = None) -> list:
        """Resolve assignments for one policy, or summarize every policy in the category."""
        mapping = category_mapping(category)

        if policy_id is not None:
            policy_id = require_policy_id(policy_id)
            endpoint = f"{mapping.resource_path}/{policy_id}/{mapping.assignment_segment}"
            assignments = self._fetch_value(endpoint)
            return self._resolve_assignments(assignments, mapping)

        summaries = []
        for policy in self._fetch_value(mapping.resource_path):
            pid = policy.get("id")
            endpoint = f"{mapping.resource_path}/{pid}/{mapping.assignment_segment}"
            try:
                assignments = self.client.get_value(endpoint)
            except FetchError as e:
                self._warn(f"Skipping policy {pid}: {_short_reason(e)}")
                continue

            resolved = self._resolve_assignments(assignments, mapping, target_type=DEFAULT_TARGET_TYPE)
            flat = self._flatten_policy(policy, category, mapping)
            summaries.append(PolicySummary(
                policy_id=pid,
                display_name=flat["display_name"],
                description=flat["description"],
                category=category,
                assignments=resolved,
            ))

        return summaries
