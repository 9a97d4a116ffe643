"""Undo records and the persisted ApplyState ledger."""

import json
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import ClassVar, Optional, Tuple

from wattkeeper.bootloader import BOOTLOADER_KINDS
from wattkeeper.config import STATE_PATH, STATE_VERSION
from wattkeeper.errors import StateCorrupt
from wattkeeper.findings import APPLY_ORDER, ChangeKind


# ── field validation ─────────────────────────────────────────────────────────

def _str(data: dict, key: str) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"{key!r} must be a string")
    return value


def _opt_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{key!r} must be a string or null")
    return value


def _bool(data: dict, key: str) -> bool:
    value = data[key]
    if not isinstance(value, bool):
        raise ValueError(f"{key!r} must be a boolean")
    return value


# ── Undo records ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SysfsUndo:
    kind: ClassVar[ChangeKind] = ChangeKind.SYSFS

    path: str
    original_value: str
    new_value: str

    @property
    def target(self) -> str:
        return self.path

    @classmethod
    def from_dict(cls, data: dict) -> "SysfsUndo":
        return cls(_str(data, "path"), _str(data, "original_value"),
                   _str(data, "new_value"))


@dataclass(frozen=True)
class ToggleUndo:
    kind: ClassVar[ChangeKind] = ChangeKind.TOGGLE

    device: str
    was_enabled: bool
    desired_enabled: bool

    @property
    def target(self) -> str:
        return self.device

    @classmethod
    def from_dict(cls, data: dict) -> "ToggleUndo":
        return cls(_str(data, "device"), _bool(data, "was_enabled"),
                   _bool(data, "desired_enabled"))


@dataclass(frozen=True)
class BootEntryEdit:
    """One boot entry (or defaults file) a kernel parameter was written to.

    ``replaced`` is the token for the same parameter that the insert
    overwrote, restored on revert.
    """

    path: str
    replaced: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "BootEntryEdit":
        if not isinstance(data, dict):
            raise ValueError("boot entry must be an object")
        return cls(_str(data, "path"), _opt_str(data, "replaced"))


@dataclass(frozen=True)
class KernelParamUndo:
    kind: ClassVar[ChangeKind] = ChangeKind.KERNEL_PARAM

    param: str
    bootloader: str
    entries: Tuple[BootEntryEdit, ...] = ()

    @property
    def target(self) -> str:
        return self.param

    @classmethod
    def from_dict(cls, data: dict) -> "KernelParamUndo":
        entries = data["entries"]
        if not isinstance(entries, list):
            raise ValueError("'entries' must be a list")
        bootloader = _str(data, "bootloader")
        if bootloader not in BOOTLOADER_KINDS:
            raise ValueError(f"unknown bootloader {bootloader!r}")
        return cls(_str(data, "param"), bootloader,
                   tuple(BootEntryEdit.from_dict(e) for e in entries))


@dataclass(frozen=True)
class ServiceUndo:
    kind: ClassVar[ChangeKind] = ChangeKind.SERVICE

    name: str
    was_active: bool
    was_enabled: bool
    masked: bool = False

    @property
    def target(self) -> str:
        return self.name

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceUndo":
        return cls(_str(data, "name"), _bool(data, "was_active"),
                   _bool(data, "was_enabled"), _bool(data, "masked"))


@dataclass(frozen=True)
class UnitUndo:
    kind: ClassVar[ChangeKind] = ChangeKind.UNIT

    path: str
    name: str
    content_sha256: str

    @property
    def target(self) -> str:
        return self.path

    @classmethod
    def from_dict(cls, data: dict) -> "UnitUndo":
        return cls(_str(data, "path"), _str(data, "name"),
                   _str(data, "content_sha256"))


RECORD_TYPES = {
    ChangeKind.SYSFS: SysfsUndo,
    ChangeKind.TOGGLE: ToggleUndo,
    ChangeKind.KERNEL_PARAM: KernelParamUndo,
    ChangeKind.SERVICE: ServiceUndo,
    ChangeKind.UNIT: UnitUndo,
}


# ── ApplyState ───────────────────────────────────────────────────────────────

def _empty_records() -> dict:
    return {kind: [] for kind in APPLY_ORDER}


@dataclass
class ApplyState:
    """Everything the last apply changed, grouped by kind in apply order."""

    timestamp: str
    records: dict = field(default_factory=_empty_records)

    @classmethod
    def new(cls) -> "ApplyState":
        return cls(timestamp=datetime.now(timezone.utc).isoformat())

    def add(self, record) -> None:
        self.records.setdefault(record.kind, []).append(record)

    def records_of(self, kind: ChangeKind) -> list:
        return self.records.get(kind, [])

    def ordered(self, order=APPLY_ORDER):
        for kind in order:
            yield from self.records_of(kind)

    @property
    def total(self) -> int:
        return sum(len(recs) for recs in self.records.values())

    def is_empty(self) -> bool:
        return self.total == 0

    def retain(self, keep) -> "ApplyState":
        """Copy of this state holding only the records in *keep*."""
        keep_ids = {id(r) for r in keep}
        records = _empty_records()
        for kind in APPLY_ORDER:
            records[kind] = [r for r in self.records_of(kind) if id(r) in keep_ids]
        return ApplyState(timestamp=self.timestamp, records=records)

    def to_dict(self) -> dict:
        return {
            "version": STATE_VERSION,
            "timestamp": self.timestamp,
            "records": {
                kind.value: [asdict(r) for r in self.records_of(kind)]
                for kind in APPLY_ORDER
            },
        }

    @classmethod
    def from_dict(cls, data) -> "ApplyState":
        """Strictly parse a persisted state; raises ValueError/KeyError on any defect."""
        if not isinstance(data, dict):
            raise ValueError("top level must be an object")
        if data.get("version") != STATE_VERSION:
            raise ValueError(f"unsupported version {data.get('version')!r}")
        timestamp = _str(data, "timestamp")
        raw = data["records"]
        if not isinstance(raw, dict):
            raise ValueError("'records' must be an object")
        records = _empty_records()
        for key, items in raw.items():
            kind = ChangeKind(key)
            if not isinstance(items, list):
                raise ValueError(f"records for {key!r} must be a list")
            record_type = RECORD_TYPES[kind]
            for item in items:
                if not isinstance(item, dict):
                    raise ValueError(f"{key} record must be an object")
                records[kind].append(record_type.from_dict(item))
        return cls(timestamp=timestamp, records=records)


# ── StateStore ───────────────────────────────────────────────────────────────

class StateStore:
    """JSON-backed ledger of the last apply, consumed by revert and status."""

    def __init__(self, path=None):
        self.path = Path(path) if path is not None else STATE_PATH

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[ApplyState]:
        """Return the stored state, None when nothing was applied.

        Raises StateCorrupt for anything that is present but unusable.
        """
        try:
            with open(self.path) as fh:
                text = fh.read()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise StateCorrupt(self.path, f"unreadable: {e}") from e
        try:
            return ApplyState.from_dict(json.loads(text))
        except json.JSONDecodeError as e:
            raise StateCorrupt(self.path, f"invalid JSON: {e}") from e
        except KeyError as e:
            raise StateCorrupt(self.path, f"missing field {e.args[0]!r}") from e
        except (TypeError, ValueError) as e:
            raise StateCorrupt(self.path, str(e)) from e

    def save(self, state: ApplyState) -> None:
        """Write *state* atomically: temp file, fsync, rename."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w") as fh:
            json.dump(state.to_dict(), fh, indent=2)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
