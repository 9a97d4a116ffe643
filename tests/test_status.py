import unittest

import _support
from wattkeeper.config import Policy
from wattkeeper.errors import StateCorrupt
from wattkeeper.executor import Executor
from wattkeeper.findings import ChangeKind
from wattkeeper.mutators import build_mutators
from wattkeeper.plan import build_plan
from wattkeeper.state import (
    ApplyState,
    BootEntryEdit,
    KernelParamUndo,
    ServiceUndo,
    StateStore,
    SysfsUndo,
    ToggleUndo,
)
from wattkeeper.status import DriftState, check_status

ENTRY = "/boot/loader/entries/fedora.conf"


def root_ok():
    return True


class TestCheckStatus(_support.RootTestCase):
    def setUp(self):
        super().setUp()
        self.store = StateStore(self.state_path)
        self.runner = _support.FakeRunner({
            "cups.service": {"active": False, "enabled": False, "masked": False},
        })
        self.sysfs = _support.ToggleSysfs(self.root, {"XHC1": False})
        self.mutators = build_mutators(self.sysfs, self.runner)

    def test_no_state(self):
        self.assertIsNone(check_status(self.store, self.mutators))

    def test_corrupt_state_propagates(self):
        self.state_path.parent.mkdir(parents=True)
        self.state_path.write_text("garbage")
        with self.assertRaises(StateCorrupt):
            check_status(self.store, self.mutators)

    def test_unknown_bootloader_in_state_is_corrupt(self):
        state = ApplyState.new()
        state.add(KernelParamUndo("acpi.ec_no_wakeup=1", "lilo", (BootEntryEdit(ENTRY),)))
        self.store.save(state)
        with self.assertRaises(StateCorrupt):
            check_status(self.store, self.mutators)

    def test_only_the_changed_value_is_drifted(self):
        for name in ("a", "b", "c"):
            self.put(f"/sys/power/{name}", "0\n")
        plan = build_plan(
            [_support.finding("sysfs", f"/sys/power/{n}", "1") for n in "abc"],
            Policy(persist_unit=False),
        )
        Executor(self.store, self.mutators, is_privileged=root_ok).run(plan)
        self.put("/sys/power/b", "0\n")

        report = check_status(self.store, self.mutators)
        states = {e.target: e.state for e in report.entries}
        self.assertEqual(states, {
            "/sys/power/a": DriftState.ACTIVE,
            "/sys/power/b": DriftState.DRIFTED,
            "/sys/power/c": DriftState.ACTIVE,
        })
        drifted = [e for e in report.entries if e.state == DriftState.DRIFTED][0]
        self.assertEqual((drifted.expected, drifted.actual), ("1", "0"))

    def test_kernel_param_awaiting_reboot(self):
        self.put(ENTRY, "title Fedora\noptions ro quiet acpi.ec_no_wakeup=1\n")
        self.put("/proc/cmdline", "ro quiet\n")
        state = ApplyState.new()
        state.add(KernelParamUndo("acpi.ec_no_wakeup=1", "systemd-boot",
                                  (BootEntryEdit(ENTRY),)))
        self.store.save(state)

        report = check_status(self.store, self.mutators)
        self.assertEqual(report.entries[0].state, DriftState.PENDING_REBOOT)
        self.assertEqual(report.count(DriftState.PENDING_REBOOT), 1)
        self.assertEqual(report.count(DriftState.DRIFTED), 0)

    def test_counts_cover_every_record(self):
        self.put("/sys/power/a", "1\n")
        self.put("/proc/cmdline", "ro\n")
        state = ApplyState.new()
        state.add(SysfsUndo("/sys/power/a", "0", "1"))
        state.add(SysfsUndo("/sys/power/gone", "0", "1"))
        state.add(ToggleUndo("XHC1", True, False))
        state.add(KernelParamUndo("nmi_watchdog=0", "systemd-boot",
                                  (BootEntryEdit("/boot/loader/entries/gone.conf"),)))
        state.add(ServiceUndo("cups.service", True, True))
        state.add(ServiceUndo("avahi-daemon.service", True, True))
        self.store.save(state)

        report = check_status(self.store, self.mutators)
        counts = report.counts()
        self.assertEqual(sum(counts.values()), report.total)
        self.assertEqual(report.total, state.total)
        self.assertEqual(counts, {
            "active": 3, "drifted": 0, "unknown": 3, "pending_reboot": 0,
        })
        by_target = {e.target: e.state for e in report.entries}
        self.assertEqual(by_target["/sys/power/gone"], DriftState.UNKNOWN)
        self.assertEqual(by_target["avahi-daemon.service"], DriftState.UNKNOWN)

    def test_status_is_read_only(self):
        self.put("/sys/power/a", "1\n")
        state = ApplyState.new()
        state.add(SysfsUndo("/sys/power/a", "0", "1"))
        state.add(ToggleUndo("XHC1", True, False))
        state.add(ServiceUndo("cups.service", True, True))
        self.store.save(state)
        before = self.state_path.read_text()

        check_status(self.store, self.mutators)
        self.assertEqual(self.state_path.read_text(), before)
        self.assertEqual(self.sysfs.toggle_writes, [])
        self.assertEqual(self.runner.mutating_calls(), [])
        self.assertEqual(self.get("/sys/power/a"), "1\n")

    def test_check_errors_become_unknown(self):
        self.runner.fail.add(("systemctl", "show"))
        state = ApplyState.new()
        state.add(ServiceUndo("cups.service", True, True))
        self.store.save(state)
        entry = check_status(self.store, self.mutators).entries[0]
        self.assertEqual(entry.kind, ChangeKind.SERVICE)
        self.assertEqual(entry.state, DriftState.UNKNOWN)
        self.assertIn("exited 1", entry.detail)

    def test_report_to_dict(self):
        self.put("/sys/power/a", "1\n")
        state = ApplyState.new()
        state.add(SysfsUndo("/sys/power/a", "0", "1"))
        self.store.save(state)
        d = check_status(self.store, self.mutators).to_dict()
        self.assertEqual(d["total"], 1)
        self.assertEqual(d["counts"]["active"], 1)
        self.assertEqual(d["entries"][0]["state"], "active")


if __name__ == "__main__":
    unittest.main()
