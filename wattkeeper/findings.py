"""Audit findings and the weighted score derived from them."""

import json
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from wattkeeper.errors import FindingsError

FULL_SCORE = 100
MAX_WEIGHT = 100


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def parse(cls, raw: str) -> "Severity":
        value = str(raw).strip().lower()
        if value == "med":
            value = "medium"
        return cls(value)


class ChangeKind(Enum):
    """How a finding is remediated, listed in the order changes are applied."""

    SYSFS = "sysfs"
    TOGGLE = "toggle"
    KERNEL_PARAM = "kernel_param"
    SERVICE = "service"
    UNIT = "unit"


APPLY_ORDER = (
    ChangeKind.SYSFS,
    ChangeKind.TOGGLE,
    ChangeKind.KERNEL_PARAM,
    ChangeKind.SERVICE,
    ChangeKind.UNIT,
)
REVERT_ORDER = tuple(reversed(APPLY_ORDER))


@dataclass(frozen=True)
class Finding:
    """One deviation from the recommended power policy.

    ``kind`` and ``target`` describe the automatic fix, if there is one: a
    sysfs path, a wakeup device name, a kernel parameter token or a service
    name.  Findings without them are informational and never planned.
    """

    category: str
    severity: Severity
    description: str
    current_value: str = ""
    recommended_value: str = ""
    weight: int = 0
    kind: Optional[ChangeKind] = None
    target: Optional[str] = None
    privileged: bool = True
    impact: str = ""

    def __post_init__(self):
        if isinstance(self.weight, bool) or not isinstance(self.weight, int):
            raise ValueError(f"weight must be an integer, got {self.weight!r}")
        if not 0 <= self.weight <= MAX_WEIGHT:
            raise ValueError(f"weight must be within 0..{MAX_WEIGHT}, got {self.weight}")

    @classmethod
    def from_dict(cls, data: dict) -> "Finding":
        kind = data.get("kind")
        return cls(
            category=str(data["category"]),
            severity=Severity.parse(data["severity"]),
            description=str(data.get("description", "")),
            current_value=str(data.get("current_value", "")),
            recommended_value=str(data.get("recommended_value", "")),
            weight=data.get("weight", 0),
            kind=ChangeKind(kind) if kind else None,
            target=data.get("target") or None,
            privileged=bool(data.get("privileged", True)),
            impact=str(data.get("impact", "")),
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["severity"] = self.severity.value
        d["kind"] = self.kind.value if self.kind else None
        return d


def score(findings: Iterable[Finding]) -> int:
    """100 minus the sum of finding weights, never below 0."""
    deducted = sum(f.weight for f in findings)
    return max(0, FULL_SCORE - deducted)


def load_findings(path) -> list:
    """Read the audit collaborator's findings document.

    Accepts either a bare JSON list or an object with a ``findings`` list.
    """
    path = Path(path)
    try:
        with open(path) as fh:
            data = json.load(fh)
    except OSError as e:
        raise FindingsError(f"cannot read {path}: {e.strerror or e}") from e
    except json.JSONDecodeError as e:
        raise FindingsError(f"{path} is not valid JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get("findings")
    if not isinstance(data, list):
        raise FindingsError(f"{path} must contain a list of findings")

    findings = []
    for idx, item in enumerate(data):
        if not isinstance(item, dict):
            raise FindingsError(f"{path}: finding #{idx} is not an object")
        try:
            findings.append(Finding.from_dict(item))
        except KeyError as e:
            raise FindingsError(f"{path}: finding #{idx} lacks {e.args[0]!r}") from e
        except ValueError as e:
            raise FindingsError(f"{path}: finding #{idx}: {e}") from e
    return findings
