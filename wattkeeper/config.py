"""Constants, environment overrides and policy settings."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Optional

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_ROOT = Path("/")
STATE_PATH = Path("/var/lib/wattkeeper/state.json")
STATE_VERSION = 1

COMMAND_TIMEOUT = 30

# Paths below are relative to the filesystem root so tests can redirect them.
WAKEUP_PATH = "proc/acpi/wakeup"
CMDLINE_PATH = "proc/cmdline"
BOOT_ENTRIES_DIR = "boot/loader/entries"
GRUB_DEFAULTS_PATH = "etc/default/grub"
GRUB_CFG_PATHS = (
    ("boot/grub2/grub.cfg", "grub2-mkconfig"),
    ("boot/efi/EFI/fedora/grub.cfg", "grub2-mkconfig"),
    ("boot/grub/grub.cfg", "grub-mkconfig"),
)

UNIT_NAME = "wattkeeper-powersave.service"
UNIT_PATH = f"/etc/systemd/system/{UNIT_NAME}"

POLICY_MODES = ("full", "reduced")

ENV_ROOT = "WATTKEEPER_ROOT"
ENV_STATE = "WATTKEEPER_STATE"
ENV_TIMEOUT = "WATTKEEPER_COMMAND_TIMEOUT"


# ── Policy ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Policy:
    """What the plan builder is allowed to turn into changes."""

    mode: str = "full"
    skip_categories: FrozenSet[str] = field(default_factory=frozenset)
    skip_targets: FrozenSet[str] = field(default_factory=frozenset)
    protected_devices: FrozenSet[str] = field(default_factory=frozenset)
    persist_unit: bool = True

    def __post_init__(self):
        if self.mode not in POLICY_MODES:
            raise ValueError(f"unknown policy mode {self.mode!r}")

    @property
    def reduced(self) -> bool:
        return self.mode == "reduced"


# ── Settings ─────────────────────────────────────────────────────────────────

@dataclass
class Settings:
    root: Path = DEFAULT_ROOT
    state_path: Path = STATE_PATH
    timeout: int = COMMAND_TIMEOUT
    quiet: bool = False

    @classmethod
    def from_env(cls, root: Optional[str] = None, state: Optional[str] = None,
                 quiet: bool = False, environ=None) -> "Settings":
        """Resolve settings from CLI values, then WATTKEEPER_* vars, then defaults."""
        env = os.environ if environ is None else environ
        root = root or env.get(ENV_ROOT) or str(DEFAULT_ROOT)
        state = state or env.get(ENV_STATE) or str(STATE_PATH)
        raw_timeout = env.get(ENV_TIMEOUT)
        try:
            timeout = int(raw_timeout) if raw_timeout else COMMAND_TIMEOUT
        except ValueError:
            raise ValueError(
                f"{ENV_TIMEOUT} must be an integer number of seconds, got {raw_timeout!r}"
            ) from None
        if timeout <= 0:
            raise ValueError(f"{ENV_TIMEOUT} must be positive, got {timeout}")
        return cls(root=Path(root), state_path=Path(state),
                   timeout=timeout, quiet=quiet)
