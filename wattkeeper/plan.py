"""Turn findings into an ApplyPlan without touching the system."""

import shlex
from dataclasses import dataclass, field
from typing import Iterable, Optional

from wattkeeper.config import UNIT_NAME, UNIT_PATH, Policy
from wattkeeper.findings import APPLY_ORDER, ChangeKind, Finding

# Kinds reduced mode keeps: immediately-volatile direct writes only.
REDUCED_MODE_KINDS = frozenset({ChangeKind.SYSFS})

TOGGLE_STATES = ("enabled", "disabled")

_BUCKETS = {
    ChangeKind.SYSFS: "sysfs_writes",
    ChangeKind.TOGGLE: "toggles",
    ChangeKind.KERNEL_PARAM: "kernel_params",
    ChangeKind.SERVICE: "services",
    ChangeKind.UNIT: "units",
}


@dataclass(frozen=True)
class PlannedChange:
    kind: ChangeKind
    target: str
    value: str
    description: str = ""
    category: str = ""
    privileged: bool = True

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "target": self.target,
            "value": self.value,
            "description": self.description,
            "category": self.category,
            "privileged": self.privileged,
        }


@dataclass(frozen=True)
class SkippedFinding:
    finding: Finding
    reason: str


@dataclass
class ApplyPlan:
    sysfs_writes: list = field(default_factory=list)
    toggles: list = field(default_factory=list)
    kernel_params: list = field(default_factory=list)
    services: list = field(default_factory=list)
    units: list = field(default_factory=list)
    skipped: list = field(default_factory=list)

    def bucket(self, kind: ChangeKind) -> list:
        return getattr(self, _BUCKETS[kind])

    def changes(self):
        """Yield every planned change in execution order."""
        for kind in APPLY_ORDER:
            yield from self.bucket(kind)

    @property
    def change_count(self) -> int:
        return sum(len(self.bucket(kind)) for kind in APPLY_ORDER)

    def is_empty(self) -> bool:
        return self.change_count == 0

    def requires_privilege(self) -> bool:
        return any(c.privileged for c in self.changes())

    def to_dict(self) -> dict:
        d = {_BUCKETS[kind]: [c.to_dict() for c in self.bucket(kind)]
             for kind in APPLY_ORDER}
        d["skipped"] = [
            {"finding": s.finding.to_dict(), "reason": s.reason}
            for s in self.skipped
        ]
        return d


# ── Builder ──────────────────────────────────────────────────────────────────

def build_plan(findings: Iterable[Finding], policy: Optional[Policy] = None) -> ApplyPlan:
    """Map each finding to at most one planned change.

    Total: a finding that cannot or must not be planned lands in ``skipped``
    with a reason instead of raising.
    """
    policy = policy or Policy()
    plan = ApplyPlan()
    seen = set()

    for finding in findings:
        change, reason = _plan_finding(finding, policy)
        if change is not None:
            key = (change.kind, _dedup_key(change))
            if key in seen:
                change, reason = None, f"duplicate {change.kind.value} target {change.target}"
            else:
                seen.add(key)
        if change is None:
            plan.skipped.append(SkippedFinding(finding, reason))
            continue
        plan.bucket(change.kind).append(change)

    if (policy.persist_unit and plan.sysfs_writes
            and _allowed_in_mode(ChangeKind.UNIT, policy)):
        plan.units.append(PlannedChange(
            kind=ChangeKind.UNIT,
            target=UNIT_PATH,
            value=render_unit(plan.sysfs_writes),
            description=f"Generate {UNIT_NAME} to re-apply sysfs values at boot",
            category="persistence",
            privileged=True,
        ))

    return plan


def _allowed_in_mode(kind: ChangeKind, policy: Policy) -> bool:
    return not policy.reduced or kind in REDUCED_MODE_KINDS


def _dedup_key(change: PlannedChange) -> str:
    if change.kind == ChangeKind.KERNEL_PARAM:
        return change.target.split("=", 1)[0]
    return change.target


def _plan_finding(finding: Finding, policy: Policy):
    """Return ``(change, None)`` or ``(None, reason)``."""
    kind, target = finding.kind, finding.target
    if kind is None or not target:
        return None, "informational finding, no automatic fix"
    if kind == ChangeKind.UNIT:
        return None, "unit files are generated from the plan, not requested"
    if finding.category in policy.skip_categories:
        return None, f"category {finding.category!r} skipped by policy"
    if target in policy.skip_targets:
        return None, f"target {target} skipped by policy"
    if not _allowed_in_mode(kind, policy):
        return None, f"{kind.value} changes are not applied in reduced mode"

    value = finding.recommended_value.strip()
    description = finding.description

    if kind == ChangeKind.SYSFS:
        if not target.startswith("/"):
            return None, f"sysfs target {target!r} is not an absolute path"
        if not value:
            return None, "no recommended value to write"

    elif kind == ChangeKind.TOGGLE:
        value = value.lower()
        if value not in TOGGLE_STATES:
            return None, f"toggle value must be one of {', '.join(TOGGLE_STATES)}"
        if target in policy.protected_devices:
            return None, f"wakeup device {target} is protected by policy"

    elif kind == ChangeKind.KERNEL_PARAM:
        token = value or target.strip()
        if not token or any(ch.isspace() for ch in token):
            return None, f"invalid kernel parameter {token!r}"
        target = value = token

    elif kind == ChangeKind.SERVICE:
        value = "disabled"

    return PlannedChange(
        kind=kind,
        target=target,
        value=value,
        description=description,
        category=finding.category,
        privileged=finding.privileged,
    ), None


# ── Boot persistence unit ────────────────────────────────────────────────────

def _systemd_quote(text: str) -> str:
    escaped = (text.replace("\\", "\\\\").replace('"', '\\"')
               .replace("$", "$$").replace("%", "%%"))
    return f'"{escaped}"'


def render_unit(writes) -> str:
    """Render the oneshot unit that re-applies *writes* at boot.

    Output depends only on the writes and their order.
    """
    lines = [
        "# Managed by wattkeeper -- do not edit",
        "[Unit]",
        "Description=wattkeeper power-saving settings",
        "After=multi-user.target",
        "",
        "[Service]",
        "Type=oneshot",
        "RemainAfterExit=yes",
    ]
    for write in writes:
        cmd = f"echo {shlex.quote(write.value)} > {shlex.quote(write.target)}"
        lines.append(f"ExecStart=-/bin/sh -c {_systemd_quote(cmd)}")
    lines += [
        "",
        "[Install]",
        "WantedBy=multi-user.target",
        "",
    ]
    return "\n".join(lines)
