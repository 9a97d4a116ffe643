import json
import tempfile
import unittest
from pathlib import Path

from wattkeeper.errors import StateCorrupt
from wattkeeper.findings import ChangeKind
from wattkeeper.state import (
    ApplyState,
    BootEntryEdit,
    KernelParamUndo,
    ServiceUndo,
    StateStore,
    SysfsUndo,
    ToggleUndo,
    UnitUndo,
)


def full_state() -> ApplyState:
    state = ApplyState.new()
    state.add(SysfsUndo("/sys/a", "performance", "power"))
    state.add(SysfsUndo("/sys/b", "default", "powersupersave"))
    state.add(ToggleUndo("XHC1", True, False))
    state.add(KernelParamUndo("acpi.ec_no_wakeup=1", "systemd-boot", (
        BootEntryEdit("/boot/loader/entries/a.conf"),
        BootEntryEdit("/boot/loader/entries/b.conf", "acpi.ec_no_wakeup=0"),
    )))
    state.add(ServiceUndo("bluetooth.service", True, True, masked=True))
    state.add(UnitUndo("/etc/systemd/system/w.service", "w.service", "ab" * 32))
    return state


class TestStateStore(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.path = Path(self._td.name) / "lib" / "state.json"
        self.store = StateStore(self.path)

    def test_absent_state_loads_as_none(self):
        self.assertFalse(self.store.exists())
        self.assertIsNone(self.store.load())

    def test_save_and_load_every_record_kind(self):
        state = full_state()
        self.store.save(state)
        loaded = self.store.load()
        self.assertEqual(loaded.timestamp, state.timestamp)
        self.assertEqual(loaded.total, 6)
        for kind in ChangeKind:
            self.assertEqual(loaded.records_of(kind), state.records_of(kind))
        edit = loaded.records_of(ChangeKind.KERNEL_PARAM)[0].entries[1]
        self.assertEqual(edit.replaced, "acpi.ec_no_wakeup=0")

    def test_save_is_atomic_and_leaves_no_temp_file(self):
        self.store.save(full_state())
        self.assertTrue(self.path.exists())
        self.assertEqual(list(self.path.parent.iterdir()), [self.path])
        data = json.loads(self.path.read_text())
        self.assertEqual(data["version"], 1)
        self.assertEqual(len(data["records"]["sysfs"]), 2)

    def test_save_replaces_previous_generation(self):
        self.store.save(full_state())
        small = ApplyState.new()
        small.add(SysfsUndo("/sys/c", "0", "1"))
        self.store.save(small)
        self.assertEqual(self.store.load().total, 1)

    def test_clear(self):
        self.store.save(full_state())
        self.store.clear()
        self.assertFalse(self.store.exists())
        self.store.clear()

    def _corrupt(self, text):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(text)
        with self.assertRaises(StateCorrupt):
            self.store.load()

    def test_invalid_json_is_corrupt(self):
        self._corrupt("{\"version\": 1,")

    def test_wrong_version_is_corrupt(self):
        data = full_state().to_dict()
        data["version"] = 99
        self._corrupt(json.dumps(data))

    def test_missing_field_is_corrupt(self):
        data = full_state().to_dict()
        del data["records"]["sysfs"][0]["original_value"]
        self._corrupt(json.dumps(data))

    def test_wrong_field_type_is_corrupt(self):
        data = full_state().to_dict()
        data["records"]["toggle"][0]["was_enabled"] = "yes"
        self._corrupt(json.dumps(data))

    def test_unknown_kind_is_corrupt(self):
        data = full_state().to_dict()
        data["records"]["firmware"] = []
        self._corrupt(json.dumps(data))

    def test_unknown_bootloader_is_corrupt(self):
        data = full_state().to_dict()
        data["records"]["kernel_param"][0]["bootloader"] = "lilo"
        self._corrupt(json.dumps(data))

    def test_non_object_is_corrupt(self):
        self._corrupt("[]")


class TestApplyState(unittest.TestCase):
    def test_ordered_follows_kind_order(self):
        state = ApplyState.new()
        state.add(ServiceUndo("cups.service", True, False))
        state.add(SysfsUndo("/sys/a", "0", "1"))
        kinds = [r.kind for r in state.ordered()]
        self.assertEqual(kinds, [ChangeKind.SYSFS, ChangeKind.SERVICE])

    def test_retain_keeps_only_given_records(self):
        state = full_state()
        keep = [state.records_of(ChangeKind.SYSFS)[1],
                state.records_of(ChangeKind.SERVICE)[0]]
        kept = state.retain(keep)
        self.assertEqual(kept.total, 2)
        self.assertEqual(kept.timestamp, state.timestamp)
        self.assertEqual(kept.records_of(ChangeKind.SYSFS)[0].path, "/sys/b")
        self.assertEqual(state.total, 6)

    def test_record_targets(self):
        state = full_state()
        targets = [r.target for r in state.ordered()]
        self.assertEqual(targets, [
            "/sys/a", "/sys/b", "XHC1", "acpi.ec_no_wakeup=1",
            "bluetooth.service", "/etc/systemd/system/w.service",
        ])


if __name__ == "__main__":
    unittest.main()
