"""Compare the recorded ApplyState with what the system looks like now."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from wattkeeper.errors import MutationError
from wattkeeper.findings import ChangeKind


class DriftState(Enum):
    ACTIVE = "active"
    DRIFTED = "drifted"
    UNKNOWN = "unknown"
    PENDING_REBOOT = "pending_reboot"


@dataclass(frozen=True)
class RecordStatus:
    kind: ChangeKind
    target: str
    state: DriftState
    expected: str = ""
    actual: Optional[str] = None
    detail: str = ""

    @classmethod
    def active(cls, record, expected: str, actual: str) -> "RecordStatus":
        return cls(record.kind, record.target, DriftState.ACTIVE, expected, actual)

    @classmethod
    def drifted(cls, record, expected: str, actual: str,
                detail: str = "") -> "RecordStatus":
        return cls(record.kind, record.target, DriftState.DRIFTED,
                   expected, actual, detail)

    @classmethod
    def unknown(cls, record, detail: str, expected: str = "") -> "RecordStatus":
        return cls(record.kind, record.target, DriftState.UNKNOWN,
                   expected, None, detail)

    @classmethod
    def pending_reboot(cls, record, expected: str,
                       detail: str = "") -> "RecordStatus":
        return cls(record.kind, record.target, DriftState.PENDING_REBOOT,
                   expected, None, detail)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "target": self.target,
            "state": self.state.value,
            "expected": self.expected,
            "actual": self.actual,
            "detail": self.detail,
        }


@dataclass
class StatusReport:
    timestamp: str
    entries: list = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.entries)

    def count(self, state: DriftState) -> int:
        return sum(1 for e in self.entries if e.state == state)

    def counts(self) -> dict:
        return {state.value: self.count(state) for state in DriftState}

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "counts": self.counts(),
            "total": self.total,
            "entries": [e.to_dict() for e in self.entries],
        }


def check_record(record, mutators) -> RecordStatus:
    try:
        return mutators[record.kind].check(record)
    except MutationError as e:
        return RecordStatus.unknown(record, str(e))


def check_status(store, mutators) -> Optional[StatusReport]:
    """Classify every recorded change against its live value.

    Returns None when nothing has been applied.  StateCorrupt propagates.
    Nothing is written.
    """
    state = store.load()
    if state is None:
        return None
    return StatusReport(
        timestamp=state.timestamp,
        entries=[check_record(record, mutators) for record in state.ordered()],
    )
