"""Kernel command line editing for the supported bootloaders.

Each bootloader exposes the same capability set: ``detect``, ``list_entries``,
``insert_param``, ``remove_param``, ``has_param`` and ``regenerate``.  Entries
are addressed by their absolute system path (``/boot/loader/entries/x.conf``,
``/etc/default/grub``) and resolved through the SysfsRoot.
"""

import re
from typing import Optional

from wattkeeper.config import BOOT_ENTRIES_DIR, GRUB_CFG_PATHS, GRUB_DEFAULTS_PATH
from wattkeeper.errors import ExternalToolFailed, TargetMissing, WriteFailed


def param_name(token: str) -> str:
    return token.split("=", 1)[0]


def add_token(words: list, token: str):
    """Return ``(words, replaced, changed)`` with *token* present exactly once.

    Another value of the same parameter is replaced in place and returned as
    ``replaced``.
    """
    if token in words:
        return words, None, False
    name = param_name(token)
    for idx, word in enumerate(words):
        if param_name(word) == name:
            new = list(words)
            new[idx] = token
            return new, word, True
    return words + [token], None, True


def remove_token(words: list, token: str, restore: Optional[str] = None) -> list:
    """Drop every *token*; the first occurrence becomes *restore* if given."""
    out = []
    for word in words:
        if word == token:
            if restore:
                out.append(restore)
                restore = None
            continue
        out.append(word)
    return out


def _join_like(lines: list, original: str) -> str:
    text = "\n".join(lines)
    if original.endswith("\n"):
        text += "\n"
    return text


class Bootloader:
    kind = None
    needs_regenerate = False

    def __init__(self, sysfs, runner):
        self.sysfs = sysfs
        self.runner = runner

    # capability interface -------------------------------------------------

    def detect(self) -> bool:
        raise NotImplementedError

    def list_entries(self) -> list:
        raise NotImplementedError

    def regenerate(self) -> None:
        """Rebuild generated boot configuration; no-op unless needed."""

    def insert_param(self, entry: str, token: str):
        """Add *token* to *entry*; returns ``(changed, replaced)``."""
        content = self.read_entry(entry)
        lines = content.splitlines()
        indices = self._cmdline_indices(lines)
        if not indices:
            raise WriteFailed(entry, token, "no kernel command line found")
        changed = False
        replaced = None
        for idx in indices:
            words, rep, did = add_token(self._get_words(lines[idx]), token)
            if did:
                lines[idx] = self._set_words(lines[idx], words)
                changed = True
                replaced = replaced or rep
        if changed:
            self.write_entry(entry, _join_like(lines, content), token)
        return changed, replaced

    def remove_param(self, entry: str, token: str,
                     restore: Optional[str] = None) -> bool:
        content = self.read_entry(entry)
        lines = content.splitlines()
        changed = False
        for idx in self._cmdline_indices(lines):
            words = self._get_words(lines[idx])
            if token not in words:
                continue
            lines[idx] = self._set_words(lines[idx], remove_token(words, token, restore))
            changed = True
            restore = None
        if changed:
            self.write_entry(entry, _join_like(lines, content), token)
        return changed

    def has_param(self, entry: str, token: str) -> bool:
        lines = self.read_entry(entry).splitlines()
        return any(token in self._get_words(lines[idx])
                   for idx in self._cmdline_indices(lines))

    # file access ----------------------------------------------------------

    def read_entry(self, entry: str) -> str:
        try:
            return self.sysfs.read(entry)
        except FileNotFoundError:
            raise TargetMissing(entry) from None
        except OSError as e:
            raise WriteFailed(entry, "", f"cannot read: {e.strerror or e}") from e

    def write_entry(self, entry: str, content: str, token: str = "") -> None:
        try:
            self.sysfs.write(entry, content)
        except OSError as e:
            raise WriteFailed(entry, token, e.strerror or str(e)) from e

    # per-format line handling ---------------------------------------------

    def _cmdline_indices(self, lines: list) -> list:
        raise NotImplementedError

    def _get_words(self, line: str) -> list:
        raise NotImplementedError

    def _set_words(self, line: str, words: list) -> str:
        raise NotImplementedError


class SystemdBoot(Bootloader):
    """Boot Loader Specification entries with ``options`` lines."""

    kind = "systemd-boot"

    def detect(self) -> bool:
        return bool(self.list_entries())

    def list_entries(self) -> list:
        return [
            f"/{BOOT_ENTRIES_DIR}/{name}"
            for name in self.sysfs.list_dir(BOOT_ENTRIES_DIR)
            if name.endswith(".conf")
        ]

    def _cmdline_indices(self, lines: list) -> list:
        return [i for i, line in enumerate(lines)
                if line.split()[:1] == ["options"]]

    def _get_words(self, line: str) -> list:
        return line.split()[1:]

    def _set_words(self, line: str, words: list) -> str:
        return " ".join(["options"] + words)


_GRUB_RE = re.compile(r'^(GRUB_CMDLINE_LINUX(?:_DEFAULT)?)="([^"]*)"(.*)$')


class Grub(Bootloader):
    """``/etc/default/grub`` plus grub-mkconfig regeneration."""

    kind = "grub"
    needs_regenerate = True

    def detect(self) -> bool:
        return self.sysfs.exists(GRUB_DEFAULTS_PATH)

    def list_entries(self) -> list:
        return [f"/{GRUB_DEFAULTS_PATH}"] if self.detect() else []

    def _cmdline_indices(self, lines: list) -> list:
        found = {}
        for i, line in enumerate(lines):
            m = _GRUB_RE.match(line)
            if m:
                found.setdefault(m.group(1), []).append(i)
        # Boot-time defaults win; GRUB_CMDLINE_LINUX also feeds recovery entries.
        return found.get("GRUB_CMDLINE_LINUX_DEFAULT") or found.get("GRUB_CMDLINE_LINUX", [])

    def _get_words(self, line: str) -> list:
        return _GRUB_RE.match(line).group(2).split()

    def _set_words(self, line: str, words: list) -> str:
        m = _GRUB_RE.match(line)
        return f'{m.group(1)}="{" ".join(words)}"{m.group(3)}'

    def regenerate(self) -> None:
        for cfg, tool in GRUB_CFG_PATHS:
            if self.sysfs.exists(cfg):
                self.runner.run([tool, "-o", f"/{cfg}"])
                return
        raise ExternalToolFailed(
            ["grub2-mkconfig"], None,
            "could not locate grub.cfg, run grub2-mkconfig manually",
        )


BOOTLOADERS = (SystemdBoot, Grub)
BOOTLOADER_KINDS = tuple(cls.kind for cls in BOOTLOADERS)


def detect_bootloader(sysfs, runner) -> Optional[Bootloader]:
    """Return the first bootloader whose configuration is present."""
    for cls in BOOTLOADERS:
        bootloader = cls(sysfs, runner)
        if bootloader.detect():
            return bootloader
    return None


def bootloader_for(kind: str, sysfs, runner) -> Bootloader:
    for cls in BOOTLOADERS:
        if cls.kind == kind:
            return cls(sysfs, runner)
    raise ValueError(f"unknown bootloader {kind!r}")
