# src/shield_backend/paths.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_HOME = Path.home() / ".config" / "anon-shield"
RESOLV_CONF = Path("/etc/resolv.conf")
# hors de la racine privée (0700) : tor y entre après avoir changé d'utilisateur
TOR_ROOT = Path("/var/lib/anon-shield")


@dataclass(frozen=True)
class ShieldPaths:
    root: Path
    resolv_conf: Path = RESOLV_CONF
    tor_root: Optional[Path] = None     # None -> sous `root` (tor lancé sans User)

    @classmethod
    def default(cls, home: Optional[str] = None) -> "ShieldPaths":
        """
        Racine : --home > $SHIELD_HOME > ~/.config/anon-shield
        Données tor : /var/lib/anon-shield/tor
        """
        raw = home or os.environ.get("SHIELD_HOME")
        return cls(root=Path(raw).expanduser() if raw else DEFAULT_HOME, tor_root=TOR_ROOT)

    @property
    def config_file(self) -> Path:
        return self.root / "shield.conf"

    @property
    def session_file(self) -> Path:
        return self.root / "session.json"

    @property
    def marker_file(self) -> Path:
        return self.root / "shield.pid"

    @property
    def mac_map_file(self) -> Path:
        return self.root / "original_macs.json"

    @property
    def dns_backup_file(self) -> Path:
        return self.root / "resolv.conf.bak"

    @property
    def tor_data_dir(self) -> Path:
        return (self.tor_root or self.root) / "tor"

    @property
    def torrc_file(self) -> Path:
        return self.root / "torrc"

    @property
    def tor_pid_file(self) -> Path:
        return self.root / "tor.pid"

    @property
    def log_file(self) -> Path:
        return self.root / "shield.log"

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.root.chmod(0o700)
