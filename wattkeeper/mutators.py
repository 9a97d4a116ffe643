"""Apply, revert and check a single change of each kind.

Every mutator follows the same contract:

``apply(change)``
    Perform the change and return the UndoRecord needed to reverse it, or
    None when the system is already in the desired state.  Raises a
    MutationError subclass on failure, leaving nothing to record.
``revert(record)``
    Reverse a previously recorded change.  Raises MutationError on failure.
``check(record)``
    Compare the live value against what was applied, read-only.
"""

import hashlib
from pathlib import Path

from wattkeeper import console
from wattkeeper.bootloader import (
    bootloader_for,
    detect_bootloader,
    param_name,
)
from wattkeeper.config import CMDLINE_PATH, WAKEUP_PATH
from wattkeeper.errors import (
    ExternalToolFailed,
    MutationError,
    TargetMissing,
    ToggleReadFailed,
    WriteFailed,
)
from wattkeeper.findings import ChangeKind
from wattkeeper.state import (
    BootEntryEdit,
    KernelParamUndo,
    ServiceUndo,
    SysfsUndo,
    ToggleUndo,
    UnitUndo,
)
from wattkeeper.status import RecordStatus
from wattkeeper.sysfs import normalize_value


class Mutator:
    kind = None

    def __init__(self, sysfs, runner, quiet: bool = False):
        self.sysfs = sysfs
        self.runner = runner
        self.quiet = quiet

    def _info(self, msg: str) -> None:
        if not self.quiet:
            console.info(msg)

    def apply(self, change):
        raise NotImplementedError

    def revert(self, record) -> None:
        raise NotImplementedError

    def check(self, record) -> RecordStatus:
        raise NotImplementedError


# ── Direct sysfs writes ──────────────────────────────────────────────────────

class SysfsWriter(Mutator):
    kind = ChangeKind.SYSFS

    def _read(self, path: str, value: str):
        try:
            raw = self.sysfs.read_optional(path)
        except OSError as e:
            raise WriteFailed(path, value, f"cannot read current value: {e.strerror or e}") from e
        return None if raw is None else normalize_value(raw)

    def _write(self, path: str, value: str) -> None:
        try:
            self.sysfs.write(path, value)
        except OSError as e:
            raise WriteFailed(path, value, e.strerror or str(e)) from e

    def apply(self, change):
        original = self._read(change.target, change.value)
        if original is None:
            raise TargetMissing(change.target)
        self._write(change.target, change.value)
        return SysfsUndo(change.target, original, change.value)

    def revert(self, record) -> None:
        if not self.sysfs.exists(record.path):
            raise TargetMissing(record.path)
        self._write(record.path, record.original_value)

    def check(self, record) -> RecordStatus:
        actual = self._read(record.path, record.new_value)
        expected = record.new_value.strip()
        if actual is None:
            return RecordStatus.unknown(record, f"{record.path} no longer exists", expected)
        if actual == expected:
            return RecordStatus.active(record, expected, actual)
        return RecordStatus.drifted(record, expected, actual)


# ── Toggle-only ACPI wakeup interface ────────────────────────────────────────

def parse_wakeup_table(text: str) -> dict:
    """Parse /proc/acpi/wakeup into ``{device: enabled}``.

    Lines look like ``XHC1      S4    *enabled   pci:0000:c4:00.4``.
    """
    states = {}
    for line in text.splitlines():
        parts = line.split()
        if not parts or parts[0] == "Device":
            continue
        for part in parts[1:]:
            status = part.lstrip("*")
            if status in ("enabled", "disabled"):
                states[parts[0]] = status == "enabled"
                break
    return states


def _state_word(enabled: bool) -> str:
    return "enabled" if enabled else "disabled"


class WakeupToggler(Mutator):
    """Writes to /proc/acpi/wakeup flip a device, they never set it.

    Every write is preceded by a fresh read so a device is only flipped when
    its current state differs from the one wanted.
    """

    kind = ChangeKind.TOGGLE

    def read_states(self) -> dict:
        try:
            text = self.sysfs.read(WAKEUP_PATH)
        except OSError as e:
            raise ToggleReadFailed(f"/{WAKEUP_PATH}", e.strerror or str(e)) from e
        return parse_wakeup_table(text)

    def _current(self, device: str) -> bool:
        states = self.read_states()
        if device not in states:
            raise TargetMissing(f"wakeup device {device}")
        return states[device]

    def _flip_to(self, device: str, wanted: bool) -> None:
        try:
            self.sysfs.write(WAKEUP_PATH, device)
        except OSError as e:
            raise WriteFailed(f"/{WAKEUP_PATH}", device, e.strerror or str(e)) from e
        try:
            now = self.read_states().get(device)
        except ToggleReadFailed as e:
            console.warn(f"{device} was toggled but its new state could not be read: {e}")
            return
        if now != wanted:
            raise WriteFailed(
                f"/{WAKEUP_PATH}", device,
                f"device is {_state_word(bool(now))} after toggle, expected {_state_word(wanted)}",
            )

    def apply(self, change):
        desired = change.value == "enabled"
        current = self._current(change.target)
        if current == desired:
            self._info(f"{change.target} wakeup already {_state_word(desired)}")
            return None
        self._flip_to(change.target, desired)
        return ToggleUndo(change.target, current, desired)

    def revert(self, record) -> None:
        if self._current(record.device) == record.was_enabled:
            self._info(f"{record.device} wakeup already {_state_word(record.was_enabled)}")
            return
        self._flip_to(record.device, record.was_enabled)

    def check(self, record) -> RecordStatus:
        expected = _state_word(record.desired_enabled)
        try:
            states = self.read_states()
        except ToggleReadFailed as e:
            return RecordStatus.unknown(record, str(e), expected)
        if record.device not in states:
            return RecordStatus.unknown(record, f"{record.device} is not listed in /{WAKEUP_PATH}", expected)
        actual = _state_word(states[record.device])
        if actual == expected:
            return RecordStatus.active(record, expected, actual)
        return RecordStatus.drifted(record, expected, actual)


# ── Kernel parameters ────────────────────────────────────────────────────────

class KernelParamMutator(Mutator):
    kind = ChangeKind.KERNEL_PARAM

    def __init__(self, sysfs, runner, quiet: bool = False, bootloader=None):
        super().__init__(sysfs, runner, quiet=quiet)
        self._bootloader = bootloader
        self._detected = bootloader is not None

    @property
    def bootloader(self):
        """The active bootloader, detected once and cached for this invocation."""
        if not self._detected:
            self._bootloader = detect_bootloader(self.sysfs, self.runner)
            self._detected = True
        return self._bootloader

    def _bootloader_for(self, kind: str):
        current = self._bootloader
        if current is not None and current.kind == kind:
            return current
        try:
            return bootloader_for(kind, self.sysfs, self.runner)
        except ValueError as e:
            raise MutationError(str(e)) from e

    def apply(self, change):
        token = change.value
        bootloader = self.bootloader
        if bootloader is None:
            raise MutationError("no supported bootloader configuration found")
        entries = bootloader.list_entries()
        if not entries:
            raise MutationError(f"no {bootloader.kind} boot entries found")

        originals = {}
        edits = []
        try:
            for entry in entries:
                original = bootloader.read_entry(entry)
                changed, replaced = bootloader.insert_param(entry, token)
                if changed:
                    originals[entry] = original
                    edits.append(BootEntryEdit(entry, replaced))
            if edits and bootloader.needs_regenerate:
                bootloader.regenerate()
        except MutationError:
            self._restore(bootloader, originals)
            raise

        if not edits:
            self._info(f"{token} already present in every {bootloader.kind} entry")
            return None
        return KernelParamUndo(token, bootloader.kind, tuple(edits))

    def _restore(self, bootloader, originals: dict) -> None:
        for entry, content in originals.items():
            try:
                bootloader.write_entry(entry, content)
            except MutationError as e:
                console.error(f"Could not restore {entry}: {e}")

    def revert(self, record) -> None:
        bootloader = self._bootloader_for(record.bootloader)
        changed = False
        for edit in record.entries:
            if not self.sysfs.exists(edit.path):
                console.warn(f"{edit.path} no longer exists, nothing to remove")
                continue
            if bootloader.remove_param(edit.path, record.param, restore=edit.replaced):
                changed = True
        if changed and bootloader.needs_regenerate:
            bootloader.regenerate()

    def check(self, record) -> RecordStatus:
        expected = record.param
        cmdline = self.sysfs.read_optional(CMDLINE_PATH)
        if cmdline is None:
            return RecordStatus.unknown(record, f"cannot read /{CMDLINE_PATH}", expected)
        live = cmdline.split()
        if record.param in live:
            return RecordStatus.active(record, expected, record.param)

        bootloader = self._bootloader_for(record.bootloader)
        present = [e.path for e in record.entries if self.sysfs.exists(e.path)]
        if not present:
            return RecordStatus.unknown(record, "recorded boot entries no longer exist", expected)
        if any(bootloader.has_param(path, record.param) for path in present):
            return RecordStatus.pending_reboot(
                record, expected, "configured in boot entries, reboot to activate",
            )
        name = param_name(record.param)
        actual = next((w for w in live if param_name(w) == name), "absent")
        return RecordStatus.drifted(record, expected, actual,
                                    "removed from boot entries")


# ── Services ─────────────────────────────────────────────────────────────────

_ACTIVE_STATES = ("active", "activating", "reloading")
_ENABLED_STATES = ("enabled", "enabled-runtime")


class ServiceDisabler(Mutator):
    kind = ChangeKind.SERVICE

    def query(self, name: str) -> dict:
        result = self.runner.run(
            ["systemctl", "show", "--property=LoadState,ActiveState,UnitFileState", name],
            echo=False,
        )
        props = {}
        for line in result.stdout.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                props[key.strip()] = value.strip()
        return props

    @staticmethod
    def _flags(props: dict):
        return (props.get("ActiveState") in _ACTIVE_STATES,
                props.get("UnitFileState") in _ENABLED_STATES)

    def apply(self, change):
        name = change.target
        props = self.query(name)
        if props.get("LoadState") == "not-found":
            raise TargetMissing(f"service {name}")
        was_active, was_enabled = self._flags(props)
        if not (was_active or was_enabled):
            self._info(f"{name} already stopped and disabled")
            return None

        if was_active:
            self.runner.run(["systemctl", "stop", name])
        masked = False
        try:
            try:
                self.runner.run(["systemctl", "disable", name])
            except ExternalToolFailed as e:
                console.warn(f"Disabling {name} failed ({e}), masking instead")
                self.runner.run(["systemctl", "mask", name])
                masked = True
        except ExternalToolFailed:
            if was_active:
                self.runner.run(["systemctl", "start", name], check=False)
            raise
        return ServiceUndo(name, was_active, was_enabled, masked)

    def revert(self, record) -> None:
        if record.masked:
            self.runner.run(["systemctl", "unmask", record.name])
        if not record.was_active:
            self._info(f"{record.name} was not running before apply, leaving it stopped")
            return
        if record.was_enabled:
            self.runner.run(["systemctl", "enable", record.name])
        self.runner.run(["systemctl", "start", record.name])

    def check(self, record) -> RecordStatus:
        expected = "inactive/disabled"
        props = self.query(record.name)
        if props.get("LoadState") == "not-found":
            return RecordStatus.unknown(record, f"service {record.name} not found", expected)
        is_active, is_enabled = self._flags(props)
        actual = f"{props.get('ActiveState', '?')}/{props.get('UnitFileState', '?')}"
        if is_active or is_enabled:
            return RecordStatus.drifted(record, expected, actual)
        return RecordStatus.active(record, expected, actual)


# ── Generated unit ───────────────────────────────────────────────────────────

def content_digest(content: str) -> str:
    return hashlib.sha256(content.encode()).hexdigest()


class UnitGenerator(Mutator):
    kind = ChangeKind.UNIT

    def _reload(self, check: bool = True) -> None:
        self.runner.run(["systemctl", "daemon-reload"], check=check)

    def apply(self, change):
        path = self.sysfs.path(change.target)
        name = Path(change.target).name
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as fh:
                fh.write(change.value)
        except OSError as e:
            raise WriteFailed(change.target, name, e.strerror or str(e)) from e

        try:
            self._reload()
            self.runner.run(["systemctl", "enable", name])
        except ExternalToolFailed:
            path.unlink(missing_ok=True)
            try:
                self._reload(check=False)
            except ExternalToolFailed as e:
                console.warn(f"daemon-reload after removing {change.target} failed: {e}")
            raise
        return UnitUndo(change.target, name, content_digest(change.value))

    def revert(self, record) -> None:
        path = self.sysfs.path(record.path)
        if not path.exists():
            console.warn(f"{record.path} already removed")
            self.runner.run(["systemctl", "disable", record.name], check=False)
            return
        self.runner.run(["systemctl", "disable", record.name])
        try:
            path.unlink()
        except OSError as e:
            raise WriteFailed(record.path, "", f"cannot remove: {e.strerror or e}") from e
        self._reload()

    def check(self, record) -> RecordStatus:
        expected = record.content_sha256[:12]
        try:
            content = self.sysfs.read_optional(record.path)
        except OSError as e:
            return RecordStatus.unknown(record, f"cannot read {record.path}: {e}", expected)
        if content is None:
            return RecordStatus.unknown(record, f"{record.path} no longer exists", expected)
        actual = content_digest(content)[:12]
        if actual == expected:
            return RecordStatus.active(record, expected, actual)
        return RecordStatus.drifted(record, expected, actual, "unit file was modified")


MUTATOR_TYPES = {
    ChangeKind.SYSFS: SysfsWriter,
    ChangeKind.TOGGLE: WakeupToggler,
    ChangeKind.KERNEL_PARAM: KernelParamMutator,
    ChangeKind.SERVICE: ServiceDisabler,
    ChangeKind.UNIT: UnitGenerator,
}


def build_mutators(sysfs, runner, quiet: bool = False) -> dict:
    """One mutator per kind, sharing a filesystem root and command runner."""
    return {kind: cls(sysfs, runner, quiet=quiet)
            for kind, cls in MUTATOR_TYPES.items()}
