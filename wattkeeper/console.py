"""Terminal output helpers shared by every wattkeeper command."""

import sys


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class Icons:
    BOLT     = "\uf0e7"   # bolt
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    UNDO     = "\uf0e2"   # rotate-left
    COGS     = "\uf085"   # cogs
    WRENCH   = "\uf0ad"   # wrench
    LINUX    = "\uf17c"   # tux
    TOGGLE   = "\uf205"   # toggle-on
    BAN      = "\uf05e"   # ban (disable)
    SEARCH   = "\uf002"   # search
    STAMP    = "\uf249"   # id-badge
    TRASH    = "\uf1f8"   # trash
    CLOCK    = "\uf017"   # clock (pending reboot)


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {icon}  {title}  {tag}")
    print(f"{'─' * 60}{_C.RESET}")


def info(msg: str) -> None:
    print(f"  {_C.GREEN}{Icons.OK}{_C.RESET}  {msg}")


def warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{Icons.WARN}{_C.RESET}  {msg}")


def error(msg: str) -> None:
    print(f"  {_C.RED}{Icons.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def skip(msg: str) -> None:
    print(f"  {_C.DIM}{Icons.SKIP}  {msg}{_C.RESET}")


def dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{Icons.EYE}  [DRY RUN]{_C.RESET} {msg}")


def emphasis(msg: str) -> None:
    print(f"  {_C.BOLD}{msg}{_C.RESET}")


def note(msg: str) -> None:
    print(f"  {_C.DIM}{msg}{_C.RESET}")


def bullet(msg: str) -> None:
    print(f"    • {msg}")


# ── Change kinds ─────────────────────────────────────────────────────────────

KIND_ICONS = {
    "sysfs":        Icons.WRENCH,
    "toggle":       Icons.TOGGLE,
    "kernel_param": Icons.LINUX,
    "service":      Icons.COGS,
    "unit":         Icons.BOLT,
}

KIND_LABELS = {
    "sysfs":        "Runtime sysfs values",
    "toggle":       "ACPI wakeup sources",
    "kernel_param": "Kernel parameters",
    "service":      "Services",
    "unit":         "Boot persistence unit",
}
