# src/shield_backend/proxy.py
from __future__ import annotations

import logging
import os
import shutil
import signal
import socket
import subprocess
import time
from typing import Callable, List, Optional

import stem
import stem.connection
from stem import Signal
from stem.control import Controller

from .config import ShieldConfig
from .models import StepResult
from .paths import ShieldPaths
from .system import ServiceManager, is_root

logger = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"

# transport -> clé de config du binaire pluggable transport
PLUGIN_KEYS = {
    "obfs4": "obfs4_plugin",
    "meek_lite": "obfs4_plugin",
    "snowflake": "snowflake_plugin",
    "webtunnel": "webtunnel_plugin",
}


def port_open(host: str, port: int, timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


# ---------- Rendu du torrc ----------

def render_torrc(config: ShieldConfig, paths: ShieldPaths, run_as: Optional[str] = None) -> str:
    perf = "performance"
    lines = [
        "# Generated by anon-shield, rewritten on every start",
        f"DataDirectory {paths.tor_data_dir}",
        "RunAsDaemon 0",
        f"Log notice file {paths.tor_data_dir / 'notices.log'}",
        f"SocksPort {LOCALHOST}:{config.get_int('tor', 'socks_port')}",
        f"TransPort {LOCALHOST}:{config.get_int('tor', 'trans_port')}",
        f"DNSPort {LOCALHOST}:{config.get_int('tor', 'dns_port')}",
        f"ControlPort {LOCALHOST}:{config.get_int('tor', 'control_port')}",
        "CookieAuthentication 1",
        "AutomapHostsOnResolve 1",
        "VirtualAddrNetworkIPv4 10.192.0.0/10",
        "",
        f"CircuitBuildTimeout {config.get_int(perf, 'circuit_build_timeout')}",
        "LearnCircuitBuildTimeout 0",
        f"NewCircuitPeriod {config.get_int(perf, 'new_circuit_period')}",
        f"MaxCircuitDirtiness {config.get_int(perf, 'max_circuit_dirtiness')}",
        f"NumEntryGuards {config.get_int(perf, 'num_entry_guards')}",
        f"KeepalivePeriod {config.get_int(perf, 'keepalive_period')}",
        f"ConnectionPadding {config.get_int(perf, 'connection_padding')}",
        f"ReducedConnectionPadding {config.get_int(perf, 'reduced_connection_padding')}",
    ]

    if run_as:
        lines.append(f"User {run_as}")

    if config.get_bool("tor", "use_bridges"):
        bridges = config.get_lines("tor", "bridges")
        if not bridges:
            raise ValueError("[tor] use_bridges is set but no bridge line is configured")
        lines += ["", "UseBridges 1"]
        transports: List[str] = []
        for b in bridges:
            t = b.split()[0]
            if t in PLUGIN_KEYS and t not in transports:
                transports.append(t)
        for t in transports:
            lines.append(f"ClientTransportPlugin {t} exec {config.get('tor', PLUGIN_KEYS[t])}")
        lines += [f"Bridge {b}" for b in bridges]

    if config.get_bool("general", "stealth_mode"):
        lines += [
            "",
            "ClientOnly 1",
            "PublishServerDescriptor 0",
            "AvoidDiskWrites 1",
        ]

    return "\n".join(lines) + "\n"


# ---------- Contrôleur ----------

class ProxyController:
    """
    tor : lancé directement (torrc privé), repli sur le service système.
    i2p : uniquement via le gestionnaire de services, optionnel.
    """

    def __init__(
        self,
        config: ShieldConfig,
        paths: ShieldPaths,
        services: Optional[ServiceManager] = None,
        launcher: Callable[..., subprocess.Popen] = subprocess.Popen,
        probe: Optional[Callable[[str, int], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        killer: Callable[[int, int], None] = os.kill,
        controller_factory: Callable[..., Controller] = Controller.from_port,
    ):
        self.config = config
        self.paths = paths
        self.services = services or ServiceManager()
        self.launcher = launcher
        self.probe = probe or port_open
        self.sleep = sleep
        self.killer = killer
        self.controller_factory = controller_factory

    # --- tor ---

    def _prepare(self, run_as: Optional[str]) -> None:
        data_dir = self.paths.tor_data_dir
        data_dir.mkdir(parents=True, exist_ok=True)
        data_dir.chmod(0o700)
        if run_as:
            if self.paths.tor_root is None:
                logger.warning("tor data directory %s sits in a private root, %s may not reach it", data_dir, run_as)
            else:
                self.paths.tor_root.chmod(0o755)
            try:
                shutil.chown(data_dir, user=run_as, group=run_as)
            except (LookupError, OSError) as e:
                logger.warning("Cannot hand %s to %s: %s", data_dir, run_as, e)
        self.paths.torrc_file.write_text(render_torrc(self.config, self.paths, run_as), encoding="utf-8")

    def _launch(self) -> Optional[subprocess.Popen]:
        cmd = [self.config.get("tor", "binary"), "-f", str(self.paths.torrc_file)]
        try:
            proc = self.launcher(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning("Direct tor launch failed: %s", e)
            return None
        try:
            self.paths.tor_pid_file.write_text(f"{proc.pid}\n", encoding="utf-8")
        except OSError as e:
            logger.error("Cannot record tor pid %d: %s", proc.pid, e)
        logger.info("tor started with pid %d", proc.pid)
        return proc

    def _fallback_to_service(self) -> bool:
        self.paths.tor_pid_file.unlink(missing_ok=True)
        name = self.config.get("tor", "service_name")
        logger.info("Falling back to system service '%s'", name)
        return self.services.start(name)

    def wait_ready(self, proc: Optional[subprocess.Popen] = None) -> bool:
        """
        Sonde le SocksPort : readiness_retries essais espacés de
        readiness_interval secondes. Seule attente bornée du système.
        """
        port = self.config.get_int("tor", "socks_port")
        retries = self.config.get_int("performance", "readiness_retries")
        interval = self.config.get_float("performance", "readiness_interval")

        for attempt in range(1, retries + 1):
            if self.probe(LOCALHOST, port):
                logger.info("tor SOCKS port %d ready after %d attempt(s)", port, attempt)
                return True
            if proc is not None and proc.poll() is not None:
                logger.warning("tor exited early with code %s", proc.returncode)
                proc = None
                if not self._fallback_to_service():
                    return False
            self.sleep(interval)
        return False

    def start_primary(self) -> StepResult:
        run_as = self.config.get("tor", "user") if is_root() else None
        try:
            self._prepare(run_as)
        except (OSError, ValueError) as e:
            return StepResult.failure(f"cannot prepare tor configuration: {e}")

        proc = self._launch()
        if proc is None and not self._fallback_to_service():
            return StepResult.failure("tor could not be started (direct launch and service both failed)")

        if not self.wait_ready(proc):
            retries = self.config.get_int("performance", "readiness_retries")
            return StepResult.failure(
                f"tor SOCKS port {self.config.get_int('tor', 'socks_port')} not reachable after {retries} attempts"
            )
        return StepResult.success(f"tor listening on {LOCALHOST}:{self.config.get_int('tor', 'socks_port')}")

    def tracked_pid(self) -> Optional[int]:
        try:
            return int(self.paths.tor_pid_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def stop_primary(self) -> StepResult:
        res = StepResult.success()
        pid = self.tracked_pid()
        if pid is not None:
            try:
                self.killer(pid, signal.SIGTERM)
                res.details.append(f"tor pid {pid} terminated")
            except ProcessLookupError:
                res.details.append(f"tor pid {pid} already gone")
            except PermissionError as e:
                res.errors.append(f"cannot terminate tor pid {pid}: {e}")
            self.paths.tor_pid_file.unlink(missing_ok=True)

        # double arrêt volontaire : sans effet si le service ne tourne pas
        self.services.stop(self.config.get("tor", "service_name"))

        if res.errors:
            return StepResult.failure(*res.errors)
        return res

    def new_identity(self) -> StepResult:
        port = self.config.get_int("tor", "control_port")
        try:
            with self.controller_factory(port=port) as ctl:
                ctl.authenticate()
                ctl.signal(Signal.NEWNYM)
                wait = ctl.get_newnym_wait()
        except (stem.ControllerError, stem.connection.AuthenticationFailure) as e:
            return StepResult.failure(f"tor control port {port}: {e}")
        if wait > 0:
            return StepResult.success(f"new identity requested, effective in {wait:.0f}s")
        return StepResult.success("new identity requested")

    # --- i2p ---

    def start_secondary(self) -> StepResult:
        if not self.config.get_bool("general", "i2p_enabled"):
            return StepResult.skipped("i2p disabled in configuration")

        name = self.config.get("i2p", "service_name")
        if not self.services.start(name):
            return StepResult.warning(f"i2p service '{name}' failed to start")

        self.sleep(self.config.get_float("i2p", "settle_delay"))
        port = self.config.get_int("i2p", "http_proxy_port")
        if not self.probe(LOCALHOST, port):
            return StepResult.warning(f"i2p started but HTTP proxy port {port} not reachable yet")
        return StepResult.success(f"i2p listening on {LOCALHOST}:{port}")

    def stop_secondary(self) -> StepResult:
        name = self.config.get("i2p", "service_name")
        if not self.services.stop(name):
            return StepResult.warning(f"i2p service '{name}' failed to stop")
        return StepResult.success(f"i2p service '{name}' stopped")

    # --- sondes ---

    def primary_listening(self) -> bool:
        return self.probe(LOCALHOST, self.config.get_int("tor", "socks_port"))

    def secondary_listening(self) -> bool:
        return self.probe(LOCALHOST, self.config.get_int("i2p", "http_proxy_port"))
