# src/shield_backend/interfaces.py
from __future__ import annotations

import re
from typing import Dict, Iterable, Optional

import psutil

from .system import Runner, run_cmd


MAC_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
NULL_MAC = "00:00:00:00:00:00"


def normalize_mac(raw: str) -> Optional[str]:
    """'3C-22-FB-01-AA-10' -> '3c:22:fb:01:aa:10', None si illisible."""
    mac = (raw or "").strip().lower().replace("-", ":")
    if not MAC_RE.match(mac):
        return None
    return mac


def list_interfaces(exclude: Iterable[str] = ()) -> Dict[str, str]:
    """
    Interfaces non-loopback avec une adresse MAC lisible : {nom: mac}.
    """
    excluded = set(exclude)
    found: Dict[str, str] = {}
    for name, addrs in psutil.net_if_addrs().items():
        if name == "lo" or name in excluded:
            continue
        for a in addrs:
            if a.family != psutil.AF_LINK:
                continue
            mac = normalize_mac(a.address)
            if mac and mac != NULL_MAC:
                found[name] = mac
                break
    return dict(sorted(found.items()))


class LinkControl:
    """
    ip(8) : down / address / up. Chaque appel peut lever
    CalledProcessError ou OSError, l'appelant isole les échecs.
    """

    def __init__(self, runner: Runner = run_cmd):
        self.runner = runner

    def set_down(self, iface: str) -> None:
        self.runner(["ip", "link", "set", "dev", iface, "down"])

    def set_address(self, iface: str, mac: str) -> None:
        self.runner(["ip", "link", "set", "dev", iface, "address", mac])

    def set_up(self, iface: str) -> None:
        self.runner(["ip", "link", "set", "dev", iface, "up"])
