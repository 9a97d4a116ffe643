"""Undo the changes recorded by the last apply."""

from dataclasses import dataclass, field
from typing import Optional

from wattkeeper import console
from wattkeeper.console import KIND_ICONS, KIND_LABELS
from wattkeeper.errors import (
    MutationError,
    PrivilegeRequired,
    TargetMissing,
    WattkeeperError,
)
from wattkeeper.executor import is_root
from wattkeeper.findings import REVERT_ORDER
from wattkeeper.state import ApplyState


@dataclass
class RevertSummary:
    reverted: list = field(default_factory=list)  # records
    skipped: list = field(default_factory=list)   # (record, reason)
    failed: list = field(default_factory=list)    # (record, error)
    remaining: Optional[ApplyState] = None

    @property
    def ok(self) -> bool:
        return not self.failed

    def counts(self) -> dict:
        return {
            "reverted": len(self.reverted),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


class RevertEngine:
    """Walk the ApplyState backwards and reverse each record.

    Kinds are undone in the reverse of apply order so the generated unit and
    services go before the values they reference.  A failure never stops the
    walk; failed records are written back as the new state so running revert
    again retries only those.
    """

    def __init__(self, store, mutators, is_privileged=is_root, quiet: bool = False):
        self.store = store
        self.mutators = mutators
        self.is_privileged = is_privileged
        self.quiet = quiet

    def run(self) -> Optional[RevertSummary]:
        """Returns None when there is no stored state.  StateCorrupt propagates."""
        state = self.store.load()
        if state is None:
            return None
        summary = RevertSummary()
        if state.is_empty():
            self.store.clear()
            return summary
        if not self.is_privileged():
            raise PrivilegeRequired("revert")

        outstanding = []
        kinds = [k for k in REVERT_ORDER if state.records_of(k)]
        for step, kind in enumerate(kinds, start=1):
            console.section(KIND_ICONS[kind.value], f"Undo: {KIND_LABELS[kind.value]}",
                            step, len(kinds))
            mutator = self.mutators[kind]
            for record in reversed(state.records_of(kind)):
                try:
                    mutator.revert(record)
                except TargetMissing as e:
                    console.skip(f"Nothing to restore for {record.target}: {e}")
                    summary.skipped.append((record, str(e)))
                except MutationError as e:
                    console.error(f"Failed to revert {record.target}: {e}")
                    summary.failed.append((record, e))
                    outstanding.append(record)
                else:
                    if not self.quiet:
                        console.info(f"Reverted {record.target}")
                    summary.reverted.append(record)

        if outstanding:
            summary.remaining = state.retain(outstanding)
            try:
                self.store.save(summary.remaining)
            except OSError as e:
                console.error(f"Cannot write {self.store.path}: {e}")
                raise WattkeeperError(
                    f"cannot record {len(outstanding)} unreverted change(s) "
                    f"in {self.store.path}: {e}"
                ) from e
        else:
            self.store.clear()
        return summary
