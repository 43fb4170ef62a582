# src/minilab/remote/packages.py

from __future__ import annotations

import logging
import shlex
from typing import Sequence

from .interface import RemoteRunner

log = logging.getLogger("minilab")


class AptPackageManager:
    """
    Debian/Ubuntu package installation over a RemoteRunner.
    """

    def __init__(self, update_cache: bool = True, timeout: float = 1800.0):
        self.update_cache = update_cache
        self.timeout = timeout

    def installed(self, runner: RemoteRunner, names: Sequence[str]) -> bool:
        """True when every package is installed (dpkg state 'install ok installed')."""
        if not names:
            return True
        pkgs = " ".join(shlex.quote(n) for n in names)
        res = runner.run(f"dpkg-query -W -f='${{Status}}\\n' {pkgs} 2>/dev/null")
        if not res.ok:
            return False
        lines = [ln.strip() for ln in res.stdout.splitlines() if ln.strip()]
        return len(lines) == len(names) and all(ln == "install ok installed" for ln in lines)

    def install_packages(self, runner: RemoteRunner, names: Sequence[str]) -> None:
        """Raises ActionError if apt fails."""
        if not names:
            return
        pkgs = " ".join(shlex.quote(n) for n in names)
        if self.update_cache:
            runner.check("apt-get update -y", sudo=True, timeout=self.timeout)
        log.debug("installing %s", pkgs)
        runner.check(
            f"DEBIAN_FRONTEND=noninteractive apt-get install -y --no-install-recommends {pkgs}",
            sudo=True,
            timeout=self.timeout,
        )
