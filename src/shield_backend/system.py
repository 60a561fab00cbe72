# src/shield_backend/system.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import Callable, List

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


# -----------------------------
# Commandes
# -----------------------------

def which(binary: str) -> str:
    path = shutil.which(binary)
    if path is None:
        raise RuntimeError(f"Required binary '{binary}' not found in PATH.")
    return path


def run_cmd(cmd: List[str], check: bool = True) -> subprocess.CompletedProcess:
    logger.debug("exec: %s", " ".join(cmd))
    return subprocess.run(cmd, check=check, capture_output=True, text=True)


def describe_error(exc: Exception) -> str:
    """Message court pour un échec de commande (stderr si dispo)."""
    if isinstance(exc, subprocess.CalledProcessError):
        err = (exc.stderr or "").strip()
        cmd = " ".join(exc.cmd) if isinstance(exc.cmd, list) else str(exc.cmd)
        return f"'{cmd}' exited {exc.returncode}" + (f": {err}" if err else "")
    return str(exc)


COMMAND_ERRORS = (subprocess.CalledProcessError, RuntimeError, OSError)


def is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


# -----------------------------
# Gestionnaire de services (systemd)
# -----------------------------

class ServiceManager:
    def __init__(self, runner: Runner = run_cmd):
        self.runner = runner

    def _systemctl(self, action: str, name: str) -> bool:
        try:
            self.runner(["systemctl", action, name])
            return True
        except COMMAND_ERRORS as e:
            logger.warning("systemctl %s %s failed: %s", action, name, describe_error(e))
            return False

    def start(self, name: str) -> bool:
        return self._systemctl("start", name)

    def stop(self, name: str) -> bool:
        return self._systemctl("stop", name)

    def is_active(self, name: str) -> bool:
        try:
            out = self.runner(["systemctl", "is-active", name], check=False).stdout
        except COMMAND_ERRORS:
            return False
        return (out or "").strip() == "active"
