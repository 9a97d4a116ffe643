import json
import unittest
import unittest.mock

import _support
from wattkeeper.config import Policy
from wattkeeper.errors import (
    PrivilegeRequired,
    StateCorrupt,
    TargetMissing,
    WattkeeperError,
    WriteFailed,
)
from wattkeeper.executor import Executor
from wattkeeper.findings import APPLY_ORDER, ChangeKind
from wattkeeper.mutators import SysfsWriter, WakeupToggler
from wattkeeper.plan import build_plan
from wattkeeper.revert import RevertEngine
from wattkeeper.state import (
    ApplyState,
    KernelParamUndo,
    ServiceUndo,
    StateStore,
    SysfsUndo,
    ToggleUndo,
    UnitUndo,
)


def root_ok():
    return True


class ScriptedReverter:
    def __init__(self, log, fail=(), missing=()):
        self.log = log
        self.fail = set(fail)
        self.missing = set(missing)

    def revert(self, record):
        self.log.append(record.target)
        if record.target in self.fail:
            raise WriteFailed(record.target, "", "scripted")
        if record.target in self.missing:
            raise TargetMissing(record.target)


def scripted(log, **kw):
    reverter = ScriptedReverter(log, **kw)
    return {kind: reverter for kind in APPLY_ORDER}


def mixed_state() -> ApplyState:
    state = ApplyState.new()
    state.add(SysfsUndo("/sys/a", "0", "1"))
    state.add(SysfsUndo("/sys/b", "0", "1"))
    state.add(ToggleUndo("XHC1", True, False))
    state.add(KernelParamUndo("nmi_watchdog=0", "systemd-boot", ()))
    state.add(ServiceUndo("cups.service", True, True))
    state.add(UnitUndo("/etc/systemd/system/w.service", "w.service", "00"))
    return state


class TestRevertEngine(_support.RootTestCase):
    def setUp(self):
        super().setUp()
        self.store = StateStore(self.state_path)

    def test_no_state(self):
        self.assertIsNone(RevertEngine(self.store, {}, is_privileged=root_ok).run())

    def test_reverts_in_reverse_order_and_clears(self):
        self.store.save(mixed_state())
        log = []
        summary = RevertEngine(self.store, scripted(log), is_privileged=root_ok).run()
        self.assertEqual(log, [
            "/etc/systemd/system/w.service", "cups.service", "nmi_watchdog=0",
            "XHC1", "/sys/b", "/sys/a",
        ])
        self.assertTrue(summary.ok)
        self.assertEqual(summary.counts()["reverted"], 6)
        self.assertIsNone(summary.remaining)
        self.assertFalse(self.store.exists())

    def test_partial_failure_keeps_only_failed_records(self):
        self.store.save(mixed_state())
        log = []
        summary = RevertEngine(self.store, scripted(log, fail=["cups.service"]),
                               is_privileged=root_ok).run()
        self.assertEqual(len(log), 6)
        self.assertEqual(summary.counts(), {"reverted": 5, "skipped": 0, "failed": 1})
        remaining = self.store.load()
        self.assertEqual([r.target for r in remaining.ordered()], ["cups.service"])

        log.clear()
        summary = RevertEngine(self.store, scripted(log), is_privileged=root_ok).run()
        self.assertEqual(log, ["cups.service"])
        self.assertTrue(summary.ok)
        self.assertFalse(self.store.exists())

    def test_missing_target_is_dropped(self):
        self.store.save(mixed_state())
        log = []
        summary = RevertEngine(self.store, scripted(log, missing=["/sys/a"]),
                               is_privileged=root_ok).run()
        self.assertTrue(summary.ok)
        self.assertEqual(summary.counts()["skipped"], 1)
        self.assertFalse(self.store.exists())

    def test_requires_privilege(self):
        self.store.save(mixed_state())
        log = []
        with self.assertRaises(PrivilegeRequired):
            RevertEngine(self.store, scripted(log), is_privileged=lambda: False).run()
        self.assertEqual(log, [])
        self.assertEqual(self.store.load().total, 6)

    def test_corrupt_state_reverts_nothing(self):
        self.state_path.parent.mkdir(parents=True)
        self.state_path.write_text(json.dumps({"version": 1, "records": {}}))
        log = []
        with self.assertRaises(StateCorrupt):
            RevertEngine(self.store, scripted(log), is_privileged=root_ok).run()
        self.assertEqual(log, [])
        self.assertTrue(self.store.exists())

    def test_unknown_bootloader_aborts_before_any_revert(self):
        data = mixed_state().to_dict()
        data["records"]["kernel_param"][0]["bootloader"] = "lilo"
        self.state_path.parent.mkdir(parents=True)
        self.state_path.write_text(json.dumps(data))
        log = []
        with self.assertRaises(StateCorrupt):
            RevertEngine(self.store, scripted(log), is_privileged=root_ok).run()
        self.assertEqual(log, [])
        self.assertEqual(json.loads(self.state_path.read_text()), data)

    def test_save_failure_is_reported(self):
        self.store.save(mixed_state())
        log = []
        engine = RevertEngine(self.store, scripted(log, fail=["XHC1"]),
                              is_privileged=root_ok)
        with unittest.mock.patch.object(self.store, "save",
                                        side_effect=PermissionError(13, "denied")):
            with self.assertRaisesRegex(WattkeeperError, "1 unreverted change"):
                engine.run()
        self.assertEqual(len(log), 6)

    def test_empty_state_is_cleared(self):
        self.store.save(ApplyState.new())
        summary = RevertEngine(self.store, {}, is_privileged=lambda: False).run()
        self.assertEqual(summary.counts()["reverted"], 0)
        self.assertFalse(self.store.exists())


class TestApplyThenRevert(_support.RootTestCase):
    """Round trips through real mutators on a temporary root."""

    def setUp(self):
        super().setUp()
        self.store = StateStore(self.state_path)

    def test_sysfs_values_return_to_original(self):
        self.put("/sys/a", "balance_performance\n")
        self.put("/sys/b", "[default] performance powersave\n")
        mutators = {ChangeKind.SYSFS: SysfsWriter(self.sysfs, _support.FakeRunner())}
        plan = build_plan([_support.finding("sysfs", "/sys/a", "power"),
                           _support.finding("sysfs", "/sys/b", "powersave")],
                          Policy(persist_unit=False))
        Executor(self.store, mutators, is_privileged=root_ok).run(plan)
        self.assertEqual(self.get("/sys/a"), "power")

        summary = RevertEngine(self.store, mutators, is_privileged=root_ok).run()
        self.assertTrue(summary.ok)
        self.assertEqual(self.get("/sys/a"), "balance_performance")
        self.assertEqual(self.get("/sys/b"), "default")

    def test_wakeup_device_is_reenabled_with_one_write(self):
        sysfs = _support.ToggleSysfs(self.root, {"XHC1": True, "LID0": True})
        mutators = {ChangeKind.TOGGLE: WakeupToggler(sysfs, _support.FakeRunner())}
        plan = build_plan([_support.finding("toggle", "XHC1", "disabled")])
        Executor(self.store, mutators, is_privileged=root_ok).run(plan)
        self.assertFalse(sysfs.devices["XHC1"])

        RevertEngine(self.store, mutators, is_privileged=root_ok).run()
        self.assertTrue(sysfs.devices["XHC1"])
        self.assertEqual(sysfs.toggle_writes, ["XHC1", "XHC1"])
        self.assertTrue(sysfs.devices["LID0"])

    def test_default_privilege_check_uses_effective_uid(self):
        self.store.save(mixed_state())
        with unittest.mock.patch("os.geteuid", return_value=1000):
            with self.assertRaises(PrivilegeRequired):
                RevertEngine(self.store, scripted([])).run()


if __name__ == "__main__":
    unittest.main()
