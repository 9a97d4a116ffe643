"""Run an ApplyPlan through the mutators and persist what changed."""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from wattkeeper import console
from wattkeeper.console import KIND_ICONS, KIND_LABELS
from wattkeeper.errors import (
    MutationError,
    PrivilegeRequired,
    TargetMissing,
    WattkeeperError,
)
from wattkeeper.findings import APPLY_ORDER, ChangeKind
from wattkeeper.state import ApplyState


def is_root() -> bool:
    return os.geteuid() == 0


class Phase(Enum):
    INIT = "init"
    PRIVILEGE_CHECK = "privilege_check"
    ABORTED = "aborted"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ChangeFailure:
    change: object
    error: MutationError


@dataclass
class ApplySummary:
    applied: list = field(default_factory=list)   # (change, record)
    skipped: list = field(default_factory=list)   # (change, reason)
    failed: list = field(default_factory=list)    # ChangeFailure
    state: Optional[ApplyState] = None

    @property
    def ok(self) -> bool:
        return not self.failed

    def counts(self) -> dict:
        return {
            "applied": len(self.applied),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


def describe_change(change) -> str:
    if change.kind == ChangeKind.UNIT:
        return f"write {change.target} and enable it"
    if change.kind == ChangeKind.SERVICE:
        return f"stop and disable {change.target}"
    if change.kind == ChangeKind.KERNEL_PARAM:
        return f"add {change.value} to the kernel command line"
    if change.kind == ChangeKind.TOGGLE:
        return f"set {change.target} wakeup {change.value}"
    return f"{change.target} -> {change.value}"


class Executor:
    """Apply a plan kind by kind, saving the ApplyState after every success.

    The on-disk state therefore always lists exactly the changes that
    completed, even if the process dies mid-run.
    """

    def __init__(self, store, mutators, is_privileged=is_root,
                 quiet: bool = False, dry_run: bool = False):
        self.store = store
        self.mutators = mutators
        self.is_privileged = is_privileged
        self.quiet = quiet
        self.dry_run = dry_run
        self.phase = Phase.INIT

    def run(self, plan) -> ApplySummary:
        self.phase = Phase.PRIVILEGE_CHECK
        if (not self.dry_run and plan.requires_privilege()
                and not self.is_privileged()):
            self.phase = Phase.ABORTED
            raise PrivilegeRequired("apply")

        self.phase = Phase.RUNNING
        summary = ApplySummary()
        if not self.dry_run and not plan.is_empty() and self.store.exists():
            console.warn(f"Existing state file at {self.store.path} will be overwritten")
            console.warn("(Run revert first if you need to reverse the previous apply)")

        state = ApplyState.new()
        kinds = [k for k in APPLY_ORDER if plan.bucket(k)]
        for step, kind in enumerate(kinds, start=1):
            console.section(KIND_ICONS[kind.value], KIND_LABELS[kind.value],
                            step, len(kinds))
            for change in plan.bucket(kind):
                self._run_change(change, state, summary)

        self.phase = Phase.COMPLETED
        summary.state = None if state.is_empty() else state
        return summary

    def _run_change(self, change, state: ApplyState, summary: ApplySummary) -> None:
        what = describe_change(change)
        if self.dry_run:
            console.dry(what)
            summary.skipped.append((change, "dry run"))
            return

        mutator = self.mutators[change.kind]
        try:
            record = mutator.apply(change)
        except TargetMissing as e:
            console.skip(f"Skipped {what}: {e}")
            summary.skipped.append((change, str(e)))
            return
        except MutationError as e:
            console.error(f"Failed to {what}: {e}")
            summary.failed.append(ChangeFailure(change, e))
            return

        if record is None:
            summary.skipped.append((change, "already in desired state"))
            return

        state.add(record)
        try:
            self.store.save(state)
        except OSError as e:
            self.phase = Phase.ABORTED
            console.error(f"Cannot write {self.store.path}: {e}; undoing {what}")
            try:
                mutator.revert(record)
            except MutationError as undo_err:
                console.error(f"Undo of {what} failed: {undo_err}")
            raise WattkeeperError(
                f"cannot persist apply state to {self.store.path}: {e}"
            ) from e
        if not self.quiet:
            console.info(what[:1].upper() + what[1:])
        summary.applied.append((change, record))
