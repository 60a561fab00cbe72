# src/shield_backend/dns.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from .config import ShieldConfig
from .models import StepResult
from .system import COMMAND_ERRORS, Runner, describe_error, run_cmd

logger = logging.getLogger(__name__)

HARDENING_OPTIONS = "options timeout:2 attempts:3 single-request-reopen"


def render_resolv_conf(config: ShieldConfig) -> str:
    servers: List[str] = []
    for key in ("primary", "secondary", "fallback"):
        addr = config.get("dns", key).strip()
        if addr and addr not in servers:
            servers.append(addr)

    lines = ["# Generated by anon-shield, original saved until 'shield stop'"]
    lines += [f"nameserver {s}" for s in servers]
    lines.append(HARDENING_OPTIONS)
    return "\n".join(lines) + "\n"


class DnsManager:
    def __init__(self, config: ShieldConfig, resolv_conf: Path, backup_file: Path, runner: Runner = run_cmd):
        self.config = config
        self.resolv_conf = resolv_conf
        self.backup_file = backup_file
        self.runner = runner

    @property
    def active(self) -> bool:
        return self.backup_file.exists()

    # chattr(1) est optionnel : absent ou refusé -> on continue
    def _chattr(self, flag: str) -> None:
        try:
            self.runner(["chattr", flag, str(self.resolv_conf)])
        except COMMAND_ERRORS as e:
            logger.debug("chattr %s %s skipped: %s", flag, self.resolv_conf, describe_error(e))

    def secure(self) -> StepResult:
        if not self.config.get_bool("general", "dns_override"):
            return StepResult.skipped("DNS override disabled in configuration")
        if self.backup_file.exists():
            # ne jamais écraser la vraie sauvegarde
            return StepResult.success(f"DNS already overridden, backup kept at {self.backup_file}")

        try:
            original = self.resolv_conf.read_bytes()
        except OSError as e:
            return StepResult.failure(f"cannot read {self.resolv_conf}: {e}")

        try:
            self.backup_file.parent.mkdir(parents=True, exist_ok=True)
            self.backup_file.write_bytes(original)
            self.backup_file.chmod(0o600)
        except OSError as e:
            return StepResult.failure(f"cannot write DNS backup {self.backup_file}: {e}")

        self._chattr("-i")
        try:
            self.resolv_conf.write_text(render_resolv_conf(self.config), encoding="utf-8")
        except OSError as e:
            # rien n'a changé : la sauvegarde n'a plus lieu d'être
            self.backup_file.unlink(missing_ok=True)
            return StepResult.failure(f"cannot write {self.resolv_conf}: {e}")
        self._chattr("+i")

        logger.info("Resolver configuration replaced, backup at %s", self.backup_file)
        return StepResult.success(f"{self.resolv_conf} now points to configured resolvers")

    def restore(self) -> StepResult:
        if not self.backup_file.exists():
            return StepResult.skipped("DNS override not active")

        try:
            original = self.backup_file.read_bytes()
        except OSError as e:
            # exception à la consommation systématique : la sauvegarde est la seule
            # copie du resolv.conf d'origine, elle reste pour un prochain 'stop'
            return StepResult.warning(f"cannot read DNS backup {self.backup_file}, kept for a later restore: {e}")

        self._chattr("-i")
        res = StepResult.success(f"{self.resolv_conf} restored")
        try:
            self.resolv_conf.write_bytes(original)
        except OSError as e:
            logger.warning("Cannot restore %s: %s", self.resolv_conf, e)
            res = StepResult.warning(f"cannot restore {self.resolv_conf}: {e}")

        try:
            self.backup_file.unlink()
        except OSError as e:
            logger.error("Cannot delete %s: %s", self.backup_file, e)
        return res
