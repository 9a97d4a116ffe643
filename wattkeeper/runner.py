"""Bounded subprocess execution for systemctl and bootloader tooling."""

import subprocess

from wattkeeper import console
from wattkeeper.config import COMMAND_TIMEOUT
from wattkeeper.errors import ExternalToolFailed


class CommandRunner:

    def __init__(self, timeout: int = COMMAND_TIMEOUT, quiet: bool = False):
        self.timeout = timeout
        self.quiet = quiet

    def run(self, cmd, check: bool = True, echo: bool = True):
        """Execute *cmd* and capture its output.

        A missing binary, a timeout, or (with *check*) a non-zero exit raise
        ExternalToolFailed.  With *check* off a non-zero exit only warns.
        Read-only queries pass ``echo=False`` to keep the "Running:" line out.
        """
        pretty = " ".join(str(c) for c in cmd)
        if echo and not self.quiet:
            console.info(f"Running: {pretty}")
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout,
            )
        except FileNotFoundError:
            raise ExternalToolFailed(cmd, 127, f"{cmd[0]}: command not found") from None
        except subprocess.TimeoutExpired:
            raise ExternalToolFailed(
                cmd, None, f"timed out after {self.timeout}s"
            ) from None
        if result.returncode != 0:
            if check:
                raise ExternalToolFailed(cmd, result.returncode, result.stderr)
            console.warn(f"  ↳ exited {result.returncode}: {pretty}")
        return result
