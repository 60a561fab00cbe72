"""
Fakes partagés : aucun test ne touche l'hôte (ip, iptables, chattr,
systemctl, tor sont tous simulés).
"""
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from shield_backend.config import ShieldConfig
from shield_backend.paths import ShieldPaths


ORIGINAL_LINKS = {
    "eth0": "3c:22:fb:01:aa:10",
    "wlan0": "a4:5e:60:c2:11:7f",
}

RESOLV_CONTENT = b"# managed by NetworkManager\nnameserver 192.168.1.1\nsearch lan\n"


class FakeIptables:
    """Table de règles en mémoire : filter + nat, politiques par chaîne."""

    def __init__(self):
        self.policies = {"INPUT": "ACCEPT", "FORWARD": "ACCEPT", "OUTPUT": "ACCEPT"}
        self.filter: Dict[str, List[str]] = {}
        self.nat: Dict[str, List[str]] = {}
        self.user_chains: List[str] = []

    def handle(self, args: List[str]) -> str:
        table = self.filter
        if args[:2] == ["-t", "nat"]:
            table = self.nat
            args = args[2:]
        op = args[0]
        if op == "-F":
            table.clear()
        elif op == "-X":
            if table is self.filter:
                self.user_chains.clear()
        elif op == "-P":
            self.policies[args[1]] = args[2]
        elif op == "-A":
            table.setdefault(args[1], []).append(" ".join(args))
        elif op == "-N":
            self.user_chains.append(args[1])
        elif op == "-S":
            return self.dump(table)
        else:
            raise ValueError(f"unsupported iptables op {op}")
        return ""

    def dump(self, table) -> str:
        lines = []
        if table is self.filter:
            lines += [f"-P {c} {p}" for c, p in self.policies.items()]
        for rules in table.values():
            lines += rules
        return "\n".join(lines) + "\n"

    @property
    def empty(self) -> bool:
        return not any(self.filter.values()) and not any(self.nat.values())


class FakeRunner:
    """
    Remplace run_cmd : enregistre chaque commande, simule ip/iptables/ip6tables/
    systemctl/chattr, et échoue sur demande.
    """

    def __init__(self, links: Optional[Dict[str, str]] = None):
        self.calls: List[List[str]] = []
        self.links: Dict[str, str] = dict(links if links is not None else ORIGINAL_LINKS)
        self.link_state: Dict[str, str] = {name: "up" for name in self.links}
        self.iptables = FakeIptables()
        self.ip6tables = FakeIptables()
        self.services: Dict[str, bool] = {}
        self.fail_when: List[Callable[[List[str]], bool]] = []
        self.missing: List[str] = []

    def fail_on(self, predicate: Callable[[List[str]], bool]) -> None:
        self.fail_when.append(predicate)

    def __call__(self, cmd: List[str], check: bool = True) -> subprocess.CompletedProcess:
        self.calls.append(list(cmd))
        if cmd[0] in self.missing:
            raise FileNotFoundError(2, "No such file or directory", cmd[0])
        if any(p(cmd) for p in self.fail_when):
            if check:
                raise subprocess.CalledProcessError(1, cmd, output="", stderr="simulated failure")
            return subprocess.CompletedProcess(cmd, 1, "", "simulated failure")

        out = ""
        if cmd[0] == "ip":
            self._ip(cmd)
        elif cmd[0] == "iptables":
            out = self.iptables.handle(cmd[1:])
        elif cmd[0] == "ip6tables":
            out = self.ip6tables.handle(cmd[1:])
        elif cmd[0] == "systemctl":
            action, name = cmd[1], cmd[2]
            if action == "start":
                self.services[name] = True
            elif action == "stop":
                self.services[name] = False
            elif action == "is-active":
                out = "active\n" if self.services.get(name) else "inactive\n"
        return subprocess.CompletedProcess(cmd, 0, out, "")

    def _ip(self, cmd: List[str]) -> None:
        # ip link set dev NAME (down|up|address MAC)
        name, action = cmd[4], cmd[5]
        if name not in self.links:
            raise subprocess.CalledProcessError(1, cmd, stderr=f"Cannot find device \"{name}\"")
        if action == "address":
            self.links[name] = cmd[6]
        else:
            self.link_state[name] = action

    def commands(self, binary: str) -> List[List[str]]:
        return [c for c in self.calls if c[0] == binary]


class FakeProcess:
    def __init__(self, pid: int = 4242, returncode: Optional[int] = None):
        self.pid = pid
        self.returncode = returncode

    def poll(self):
        return self.returncode


class FakeLauncher:
    def __init__(self, proc: Optional[FakeProcess] = None, error: Optional[OSError] = None):
        self.proc = proc or FakeProcess()
        self.error = error
        self.calls: List[List[str]] = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        if self.error is not None:
            raise self.error
        return self.proc


class FakeProbe:
    """Ports ouverts après `ready_after` sondes ratées."""

    def __init__(self, open_ports=(), ready_after: int = 0):
        self.open_ports = set(open_ports)
        self.ready_after = ready_after
        self.calls: List[tuple] = []

    def __call__(self, host: str, port: int) -> bool:
        self.calls.append((host, port))
        if port not in self.open_ports:
            return False
        attempts = sum(1 for _, p in self.calls if p == port)
        return attempts > self.ready_after


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def paths(tmp_path: Path) -> ShieldPaths:
    resolv = tmp_path / "etc" / "resolv.conf"
    resolv.parent.mkdir()
    resolv.write_bytes(RESOLV_CONTENT)
    p = ShieldPaths(root=tmp_path / "home", resolv_conf=resolv)
    p.ensure()
    return p


@pytest.fixture
def config(paths: ShieldPaths) -> ShieldConfig:
    cfg = ShieldConfig.load(paths.config_file)
    cfg.set("performance", "readiness_retries", "5")
    return cfg


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def inventory(runner: FakeRunner):
    def _inventory(exclude):
        return {n: m for n, m in sorted(runner.links.items()) if n not in exclude}
    return _inventory


@pytest.fixture(autouse=True)
def not_root(monkeypatch):
    monkeypatch.setattr("shield_backend.proxy.is_root", lambda: False)
