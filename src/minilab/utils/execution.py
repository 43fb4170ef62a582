# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/utils/execution.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

from ..errors import RuntimeToolError

Cmd = Sequence[Union[str, "os.PathLike[str]"]]

log = logging.getLogger("minilab")


@dataclass
class CommandRunner:
    """
    Runs local commands (docker, ssh-keygen, ...) with full logging.
    In dry-run mode commands are logged and reported as successful.
    """
    dry_run: bool = False
    label: str = "cmd"
    env: Optional[dict] = field(default=None)

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def run(
        self,
        cmd: Cmd,
        *,
        check: bool = True,
        input: Optional[str] = None,
        cwd: str | os.PathLike | None = None,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(map(str, cmd))
        log.debug("[%s] $ %s", self.label, cmd_str)

        if self.dry_run:
            log.info("[%s] dry-run: %s", self.label, cmd_str)
            return subprocess.CompletedProcess(args=list(cmd), returncode=0, stdout="", stderr="")

        env = {**os.environ, **self.env} if self.env else None
        start = time.time()
        try:
            result = subprocess.run(
                [str(c) for c in cmd],
                capture_output=True,
                text=True,
                input=input,
                cwd=str(cwd) if cwd else None,
                env=env,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise RuntimeToolError(f"[{self.label}] command not found: {cmd[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise RuntimeToolError(f"[{self.label}] timed out after {timeout}s: {cmd_str}") from e

        duration = time.time() - start
        if result.stdout:
            log.debug("[%s][stdout]\n%s", self.label, result.stdout.rstrip())
        if result.stderr:
            log.debug("[%s][stderr]\n%s", self.label, result.stderr.rstrip())
        log.debug("[%s][exit %d] (%.2fs)", self.label, result.returncode, duration)

        if check and result.returncode != 0:
            tail = (result.stderr or result.stdout).strip().splitlines()[-1:] or [""]
            raise RuntimeToolError(
                f"[{self.label}] '{cmd_str}' failed (rc={result.returncode}): {tail[0]}"
            )
        return result
