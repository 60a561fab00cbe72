# src/shield_backend/session.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .config import ShieldConfig
from .dns import DnsManager
from .firewall import FirewallManager
from .interfaces import LinkControl
from .mac import MacManager
from .models import (
    InterfaceDescriptor,
    Phase,
    SessionState,
    StatusSnapshot,
    StepResult,
    TransitionReport,
)
from .paths import ShieldPaths
from .proxy import ProxyController
from .state import SessionStore
from .system import Runner, ServiceManager, run_cmd

logger = logging.getLogger(__name__)

# erreurs "étape ratée" qu'un composant peut laisser passer (config invalide, I/O)
STEP_ERRORS = (ValueError, OSError, RuntimeError, subprocess.CalledProcessError)


@dataclass
class Step:
    name: str                           # nom du drapeau dans ComponentFlags
    apply: Callable[[], StepResult]
    undo: Callable[[], StepResult]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShieldSession:
    """
    Inactive -> (activate) -> Active -> (deactivate) -> Inactive.

    Activation : mac, dns, tor, i2p (optionnel), firewall.
    Désactivation : exactement l'ordre inverse. Une étape ratée est
    comptée mais n'arrête jamais la suite.
    """

    def __init__(
        self,
        config: ShieldConfig,
        paths: ShieldPaths,
        mac: MacManager,
        dns: DnsManager,
        proxy: ProxyController,
        firewall: FirewallManager,
        store: Optional[SessionStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.paths = paths
        self.mac = mac
        self.dns = dns
        self.proxy = proxy
        self.firewall = firewall
        self.store = store or SessionStore(paths)
        self.sleep = sleep
        self.clock = clock

        self.state: SessionState = self.store.load()
        self.phase = Phase.ACTIVE if self.state.running else Phase.INACTIVE
        self.trace: List[Tuple[str, str]] = []
        self._pending_signal: Optional[int] = None

    @classmethod
    def build(cls, config: ShieldConfig, paths: ShieldPaths, runner: Runner = run_cmd) -> "ShieldSession":
        return cls(
            config=config,
            paths=paths,
            mac=MacManager(config, paths.mac_map_file, LinkControl(runner)),
            dns=DnsManager(config, paths.resolv_conf, paths.dns_backup_file, runner),
            proxy=ProxyController(config, paths, ServiceManager(runner)),
            firewall=FirewallManager(config, runner),
        )

    # -----------------------------
    # Étapes
    # -----------------------------

    def _steps(self, undoing: bool = False) -> List[Step]:
        steps = [
            Step("mac", self.mac.randomize, self.mac.restore),
            Step("dns", self.dns.secure, self.dns.restore),
            Step("tor", self.proxy.start_primary, self.proxy.stop_primary),
        ]
        if self._i2p_selected(undoing):
            steps.append(Step("i2p", self.proxy.start_secondary, self.proxy.stop_secondary))
        steps.append(Step("firewall", self.firewall.enable_kill_switch, self._release_firewall))
        return steps

    def _i2p_selected(self, undoing: bool) -> bool:
        if undoing and self.state.flags.i2p:
            return True
        try:
            return self.config.get_bool("general", "i2p_enabled")
        except ValueError as e:
            if not undoing:
                raise
            # la restauration ne dépend jamais d'une config lisible
            logger.warning("Cannot read i2p setting (%s), stopping i2p anyway", e)
            return True

    def _release_firewall(self) -> StepResult:
        # règles de l'hôte intactes si le kill switch n'a jamais été posé
        if not self.state.flags.firewall and not self.firewall.status()["enabled"]:
            return StepResult.skipped("kill switch not active, host rules left untouched")
        return self.firewall.disable()

    def _run(self, action: str, name: str, fn: Callable[[], StepResult]) -> StepResult:
        self.trace.append((action, name))
        try:
            result = fn()
        except STEP_ERRORS as e:
            result = StepResult.failure(f"{name}: {e}")

        for d in result.details:
            logger.info("%s %s: %s", action, name, d)
        for err in result.errors:
            if result.failed:
                logger.error("%s %s: %s", action, name, err)
            else:
                logger.warning("%s %s: %s", action, name, err)
        return result

    def _persist(self) -> None:
        self.store.refresh(self.state)
        try:
            self.store.save(self.state)
        except OSError as e:
            logger.error("Cannot save session state: %s", e)

    # -----------------------------
    # Transitions
    # -----------------------------

    def activate(self) -> TransitionReport:
        if self.state.running:
            logger.warning("Session marker already present, re-applying on top of the current state")

        self.phase = Phase.TRANSITIONING
        report = TransitionReport(phase=Phase.ACTIVE)

        for step in self._steps():
            if self._pending_signal is not None:
                break
            result = self._run("activate", step.name, step.apply)
            report.results[step.name] = result
            setattr(self.state.flags, step.name, result.applied)
            self._persist()

        if self._pending_signal is not None:
            return self._abort(report)

        try:
            self.store.write_marker(os.getpid())
        except OSError as e:
            logger.error("Cannot write session marker %s: %s", self.paths.marker_file, e)
        self.state.activated_at = self.clock().isoformat(timespec="seconds")
        self._persist()
        self.phase = Phase.ACTIVE

        if report.failures or report.warnings:
            logger.warning("Shield activated with %d issues", report.failures + report.warnings)
        else:
            logger.info("Shield activated")
        return report

    def deactivate(self) -> TransitionReport:
        self.phase = Phase.TRANSITIONING
        report = TransitionReport(phase=Phase.INACTIVE)

        for step in reversed(self._steps(undoing=True)):
            result = self._run("deactivate", step.name, step.undo)
            report.results[step.name] = result
            still_applied = getattr(self.state.flags, step.name) and result.failed
            setattr(self.state.flags, step.name, still_applied)
            self._persist()

        self.store.remove_marker()
        self._persist()
        self.phase = Phase.INACTIVE

        if report.failures or report.warnings:
            logger.warning("Shield deactivated with %d issues", report.failures + report.warnings)
        else:
            logger.info("Shield deactivated")
        return report

    def restart(self) -> List[TransitionReport]:
        reports = [self.deactivate()]
        if self._pending_signal is None:
            self.sleep(self.config.get_float("general", "restart_delay"))
        if self._pending_signal is not None:
            reports[0].interrupted = self._pending_signal
            return reports
        reports.append(self.activate())
        return reports

    def _abort(self, report: TransitionReport) -> TransitionReport:
        signum = self._pending_signal
        logger.warning("Signal %s received during activation, rolling back", signum)
        undo = self.deactivate()
        report.results.update({f"rollback:{k}": v for k, v in undo.results.items()})
        report.phase = Phase.INACTIVE
        report.interrupted = signum
        return report

    # -----------------------------
    # Signaux
    # -----------------------------

    def _on_signal(self, signum, frame) -> None:
        # jamais d'annulation en cours d'étape : on note, on traite entre deux étapes
        logger.warning("Received signal %d", signum)
        self._pending_signal = signum

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._on_signal)
        signal.signal(signal.SIGTERM, self._on_signal)

    @property
    def pending_signal(self) -> Optional[int]:
        return self._pending_signal

    def wait_for_signal(self, poll: float = 1.0) -> TransitionReport:
        """Mode --foreground : on reste actif jusqu'à SIGINT/SIGTERM."""
        while self._pending_signal is None:
            self.sleep(poll)
        report = self.deactivate()
        report.interrupted = self._pending_signal
        return report

    # -----------------------------
    # Statut
    # -----------------------------

    def status(self) -> StatusSnapshot:
        self.state = self.store.load()
        originals = self.mac.originals()
        interfaces = [
            InterfaceDescriptor(name=name, mac=mac, randomized=name in originals)
            for name, mac in self.mac.inventory([]).items()
        ]
        return StatusSnapshot(
            running=self.state.running,
            activated_at=self.state.activated_at,
            flags=self.state.flags,
            tor_listening=self.proxy.primary_listening(),
            i2p_listening=self.proxy.secondary_listening(),
            mac_randomized=self.mac.active,
            dns_secured=self.dns.active,
            interfaces=interfaces,
        )
