"""Command line entry point: audit, plan, apply, revert, status."""

import argparse
import sys
import time

from wattkeeper import console
from wattkeeper.config import Policy, Settings
from wattkeeper.console import KIND_ICONS, KIND_LABELS, Icons
from wattkeeper.errors import (
    FindingsError,
    PrivilegeRequired,
    StateCorrupt,
    WattkeeperError,
)
from wattkeeper.executor import Executor, describe_change
from wattkeeper.findings import APPLY_ORDER, ChangeKind, Severity, load_findings, score
from wattkeeper.mutators import build_mutators
from wattkeeper.plan import build_plan
from wattkeeper.revert import RevertEngine
from wattkeeper.runner import CommandRunner
from wattkeeper.state import StateStore
from wattkeeper.status import DriftState, check_status
from wattkeeper.sysfs import SysfsRoot

PLAN_NOTES = {
    ChangeKind.TOGGLE: " (volatile, resets on reboot)",
    ChangeKind.KERNEL_PARAM: " (requires reboot)",
}

DRIFT_PRINTERS = {
    DriftState.ACTIVE: console.info,
    DriftState.PENDING_REBOOT: console.note,
    DriftState.DRIFTED: console.warn,
    DriftState.UNKNOWN: console.skip,
}


# ── wiring ───────────────────────────────────────────────────────────────────

def _store(settings: Settings) -> StateStore:
    return StateStore(settings.state_path)


def _mutators(settings: Settings) -> dict:
    runner = CommandRunner(timeout=settings.timeout, quiet=settings.quiet)
    return build_mutators(SysfsRoot(settings.root), runner, quiet=settings.quiet)


def policy_from_args(args) -> Policy:
    return Policy(
        mode="reduced" if args.reduced else "full",
        skip_categories=frozenset(args.skip_category or ()),
        skip_targets=frozenset(args.skip_target or ()),
        protected_devices=frozenset(args.keep_wakeup or ()),
        persist_unit=not args.no_unit,
    )


def _confirm(lines: list, yes: bool) -> bool:
    """Print what is about to happen and ask.  True means go ahead."""
    if yes:
        return True
    print()
    for line in lines:
        console.emphasis(line)
    print()
    try:
        answer = input("  Proceed? [y/N] ").strip().lower()
    except (EOFError, KeyboardInterrupt):
        print()
        answer = ""
    if answer != "y":
        console.info("Aborted.")
        return False
    print()
    return True


# ── printing ─────────────────────────────────────────────────────────────────

def print_plan(plan) -> None:
    for kind in APPLY_ORDER:
        changes = plan.bucket(kind)
        if not changes:
            continue
        console.info(f"{KIND_ICONS[kind.value]}  {KIND_LABELS[kind.value]}"
                     f"{PLAN_NOTES.get(kind, '')}:")
        for change in changes:
            line = describe_change(change)
            if change.description:
                line += f"  ({change.description})"
            console.bullet(line)
    if plan.skipped:
        console.skip(f"{len(plan.skipped)} finding(s) not planned:")
        for skipped in plan.skipped:
            f = skipped.finding
            console.bullet(f"{f.category}: {f.description} [{skipped.reason}]")


def print_apply_summary(summary, elapsed: float) -> None:
    c = summary.counts()
    title = (f"{Icons.CHECK}  Apply complete" if summary.ok
             else f"{Icons.WARN}  Apply finished with failures")
    console.banner(f"{title} ({int(elapsed)}s)")
    console.info(f"{c['applied']} applied, {c['skipped']} skipped, {c['failed']} failed")
    for failure in summary.failed:
        console.error(f"{describe_change(failure.change)}: {failure.error}")
    if any(change.kind == ChangeKind.KERNEL_PARAM for change, _ in summary.applied):
        console.warn("Kernel parameter changes take effect after a reboot")
    if summary.state is not None:
        console.info(f"{Icons.UNDO}  To undo:    sudo wattkeeper revert")


def print_revert_summary(summary, store) -> None:
    c = summary.counts()
    title = (f"{Icons.CHECK}  Revert complete" if summary.ok
             else f"{Icons.WARN}  Revert finished with failures")
    console.banner(title)
    console.info(f"{c['reverted']} reverted, {c['skipped']} skipped, {c['failed']} failed")
    for record, err in summary.failed:
        console.error(f"{record.target}: {err}")
    if summary.remaining is not None:
        console.warn(f"{summary.remaining.total} change(s) still recorded in {store.path}; "
                     "run revert again to retry")
    else:
        console.info(f"{Icons.TRASH}  State file removed")


def print_status(report) -> None:
    for entry in report.entries:
        line = f"{KIND_LABELS[entry.kind.value]}: {entry.target} [{entry.state.value}]"
        if entry.state == DriftState.DRIFTED:
            line += f" expected {entry.expected!r}, found {entry.actual!r}"
        if entry.detail:
            line += f" ({entry.detail})"
        DRIFT_PRINTERS[entry.state](line)
    c = report.counts()
    print()
    console.emphasis(
        f"{c['active']} active, {c['drifted']} drifted, "
        f"{c['pending_reboot']} pending reboot, {c['unknown']} unknown "
        f"(of {report.total})"
    )


# ── commands ─────────────────────────────────────────────────────────────────

def cmd_audit(args, settings: Settings) -> int:
    findings = load_findings(args.findings)
    console.banner(f"{Icons.SEARCH}  wattkeeper audit")
    for f in findings:
        line = f"[{f.severity.name}] {f.category}: {f.description}"
        if f.current_value or f.recommended_value:
            line += f" ({f.current_value or '?'} → {f.recommended_value or '?'})"
        line += f", weight {f.weight}"
        (console.warn if f.severity == Severity.HIGH else console.info)(line)
    if not findings:
        console.info("No findings")
    print()
    console.emphasis(f"Score: {score(findings)}/100")
    return 0


def cmd_plan(args, settings: Settings) -> int:
    plan = build_plan(load_findings(args.findings), policy_from_args(args))
    console.banner(f"{Icons.EYE}  wattkeeper plan")
    print_plan(plan)
    if plan.is_empty():
        console.info("Nothing to change")
    return 0


def cmd_apply(args, settings: Settings) -> int:
    t0 = time.monotonic()
    plan = build_plan(load_findings(args.findings), policy_from_args(args))
    console.banner(f"{Icons.BOLT}  wattkeeper apply")
    if plan.is_empty():
        print_plan(plan)
        console.info("Nothing to change")
        return 0

    store = _store(settings)
    executor = Executor(store, _mutators(settings), quiet=settings.quiet,
                        dry_run=args.dry_run)
    if not args.dry_run:
        if plan.requires_privilege() and not executor.is_privileged():
            raise PrivilegeRequired("apply")
        print_plan(plan)
        prompt = [f"About to apply {plan.change_count} change(s).",
                  "Run `wattkeeper revert` afterwards to reverse them."]
        if not _confirm(prompt, args.yes):
            return 0

    summary = executor.run(plan)
    print_apply_summary(summary, time.monotonic() - t0)
    return 0 if summary.ok else 1


def cmd_revert(args, settings: Settings) -> int:
    store = _store(settings)
    console.banner(f"{Icons.UNDO}  wattkeeper revert")
    state = store.load()
    if state is None:
        console.info(f"No state file at {store.path}, nothing to revert")
        return 0
    console.info(f"State from {state.timestamp}, {state.total} change(s) recorded")
    engine = RevertEngine(store, _mutators(settings), quiet=settings.quiet)
    if not state.is_empty() and not engine.is_privileged():
        raise PrivilegeRequired("revert")
    if not _confirm(["About to reverse every recorded change."], args.yes):
        return 0

    summary = engine.run()
    if summary is None:
        console.info("Nothing to revert")
        return 0
    print_revert_summary(summary, store)
    return 0 if summary.ok else 1


def cmd_status(args, settings: Settings) -> int:
    store = _store(settings)
    console.banner(f"{Icons.STAMP}  wattkeeper status")
    report = check_status(store, _mutators(settings))
    if report is None:
        console.info(f"No state file at {store.path}, nothing applied yet")
        return 0
    console.info(f"Applied at {report.timestamp}")
    print_status(report)
    return 0


COMMANDS = {
    "audit": cmd_audit,
    "plan": cmd_plan,
    "apply": cmd_apply,
    "revert": cmd_revert,
    "status": cmd_status,
}


# ── CLI ──────────────────────────────────────────────────────────────────────

def _add_findings_arg(p) -> None:
    p.add_argument(
        "--findings", required=True, metavar="FILE",
        help="JSON findings document produced by the hardware audit",
    )


def _add_policy_args(p) -> None:
    p.add_argument(
        "--reduced", action="store_true",
        help="only apply immediately-volatile sysfs writes",
    )
    p.add_argument(
        "--no-unit", action="store_true",
        help="do not generate the boot persistence unit",
    )
    p.add_argument(
        "--skip-category", action="append", metavar="NAME",
        help="ignore findings of this category (repeatable)",
    )
    p.add_argument(
        "--skip-target", action="append", metavar="TARGET",
        help="ignore findings for this path, device, parameter or service (repeatable)",
    )
    p.add_argument(
        "--keep-wakeup", action="append", metavar="DEVICE",
        help="never toggle this ACPI wakeup device (repeatable)",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="wattkeeper",
        description="Audit and reversibly apply power-saving settings.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  wattkeeper audit --findings audit.json          # score the findings
  wattkeeper plan --findings audit.json --reduced # preview volatile changes only
  sudo wattkeeper apply --findings audit.json     # apply (interactive confirm)
  sudo wattkeeper apply --findings audit.json -y  # skip confirmation prompt
  wattkeeper status                               # report drift since apply
  sudo wattkeeper revert                          # reverse the last apply
""",
    )
    p.add_argument(
        "--root", metavar="DIR",
        help="filesystem root for sysfs, proc and boot files (default: /)",
    )
    p.add_argument(
        "--state", metavar="FILE",
        help="apply state file (default: /var/lib/wattkeeper/state.json)",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress per-change output; show only banners, warnings, and errors",
    )
    sub = p.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    audit = sub.add_parser("audit", help="print findings and the weighted score")
    _add_findings_arg(audit)

    plan = sub.add_parser("plan", help="show the change plan without applying it")
    _add_findings_arg(plan)
    _add_policy_args(plan)

    apply = sub.add_parser("apply", help="apply the change plan and record how to undo it")
    _add_findings_arg(apply)
    _add_policy_args(apply)
    apply.add_argument(
        "--dry-run", action="store_true",
        help="print what would change without changing it",
    )
    apply.add_argument(
        "-y", "--yes", action="store_true",
        help="skip interactive confirmation prompt",
    )

    revert = sub.add_parser("revert", help="reverse every change from the last apply")
    revert.add_argument(
        "-y", "--yes", action="store_true",
        help="skip interactive confirmation prompt",
    )

    sub.add_parser("status", help="report drift between applied and live values")
    return p


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env(root=args.root, state=args.state,
                                     quiet=args.quiet)
    except ValueError as e:
        console.error(str(e))
        return 2

    try:
        return COMMANDS[args.command](args, settings)
    except FindingsError as e:
        console.error(str(e))
        return 2
    except PrivilegeRequired as e:
        console.error(f"{e} (try: sudo wattkeeper {args.command})")
        return 1
    except StateCorrupt as e:
        console.error(str(e))
        console.error("Refusing to guess; inspect or remove the state file manually")
        return 1
    except WattkeeperError as e:
        console.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
