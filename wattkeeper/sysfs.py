"""Filesystem access relative to a (possibly virtual) root directory."""

import re
from pathlib import Path
from typing import Optional

from wattkeeper.config import DEFAULT_ROOT

_SELECTED_RE = re.compile(r"\[([^\]]+)\]")


def normalize_value(raw: str) -> str:
    """Return the effective value of a sysfs attribute.

    Choice attributes list every option and bracket the active one
    (``default performance [powersave] powersupersave``); those collapse to the
    selected token.  Everything else is just whitespace-trimmed.
    """
    text = raw.strip()
    m = _SELECTED_RE.search(text)
    if m and " " in text:
        return m.group(1).strip()
    return text


class SysfsRoot:
    """Resolve absolute system paths against a root, ``/`` in production."""

    def __init__(self, root=None):
        self.root = Path(root) if root is not None else DEFAULT_ROOT

    def path(self, target: str) -> Path:
        return self.root / str(target).lstrip("/")

    def exists(self, target: str) -> bool:
        return self.path(target).exists()

    def read(self, target: str) -> str:
        with open(self.path(target)) as fh:
            return fh.read()

    def read_optional(self, target: str) -> Optional[str]:
        """Read *target*, returning None when it does not exist."""
        try:
            return self.read(target)
        except FileNotFoundError:
            return None

    def write(self, target: str, value: str) -> None:
        with open(self.path(target), "w") as fh:
            fh.write(value)

    def list_dir(self, target: str) -> list:
        path = self.path(target)
        if not path.is_dir():
            return []
        return sorted(p.name for p in path.iterdir())
