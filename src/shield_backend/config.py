# src/shield_backend/config.py
from __future__ import annotations

import configparser
import copy
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .models import BridgeType


logger = logging.getLogger(__name__)

Record = Dict[str, Dict[str, str]]


# -----------------------------
# Schéma + valeurs par défaut
# -----------------------------

DEFAULTS: Record = {
    "general": {
        "mac_randomization": "true",
        "mac_exclude": "",
        "dns_override": "true",
        "kill_switch": "true",
        "i2p_enabled": "false",
        "stealth_mode": "false",
        "restart_delay": "2",
        "log_level": "INFO",
    },
    "tor": {
        "binary": "tor",
        "service_name": "tor",
        "user": "debian-tor",
        "socks_port": "9050",
        "trans_port": "9040",
        "dns_port": "53",
        "control_port": "9051",
        "or_port": "9001",
        "dir_port": "9030",
        "use_bridges": "false",
        "bridge_type": "none",
        "bridges": "",
        "obfs4_plugin": "/usr/bin/obfs4proxy",
        "snowflake_plugin": "/usr/bin/snowflake-client",
        "webtunnel_plugin": "/usr/bin/webtunnel-client",
    },
    "i2p": {
        "service_name": "i2pd",
        "user": "i2pd",
        "http_proxy_port": "4444",
        "socks_port": "4447",
        "settle_delay": "10",
    },
    "dns": {
        "primary": "127.0.0.1",
        "secondary": "1.1.1.1",
        "fallback": "9.9.9.9",
    },
    "performance": {
        "circuit_build_timeout": "60",
        "new_circuit_period": "30",
        "max_circuit_dirtiness": "600",
        "num_entry_guards": "3",
        "keepalive_period": "60",
        "connection_padding": "1",
        "reduced_connection_padding": "0",
        "readiness_retries": "30",
        "readiness_interval": "1",
    },
}

_TRUE = ("1", "true", "yes", "y", "on")
_FALSE = ("0", "false", "no", "n", "off", "")


# -----------------------------
# Store
# -----------------------------

class ShieldConfig:
    """
    Fichier INI section -> clé -> valeur (str).

    Les défauts sont fusionnés à chaque chargement ; les clés inconnues
    sont conservées telles quelles mais ignorées par le reste du code.
    """

    def __init__(self, path: Optional[Path] = None, record: Optional[Record] = None):
        self.path = path
        self._parser = configparser.ConfigParser(interpolation=None)
        self._parser.optionxform = str  # garder la casse des clés
        self._parser.read_dict(DEFAULTS)
        if record:
            self._parser.read_dict(record)

    @classmethod
    def load(cls, path: Path) -> "ShieldConfig":
        cfg = cls(path)
        if path.exists():
            try:
                with path.open("r", encoding="utf-8") as f:
                    cfg._parser.read_file(f)
            except configparser.Error as e:
                raise ValueError(f"{path}: {e}") from None
        else:
            logger.info("Creating default configuration at %s", path)
        cfg.save()
        return cfg

    def save(self, path: Optional[Path] = None) -> None:
        path = path or self.path
        if path is None:
            raise ValueError("No configuration path to save to")
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            self._parser.write(f)

    # --- accès typé ---

    def get(self, section: str, key: str) -> str:
        return self._parser.get(section, key)

    def get_int(self, section: str, key: str) -> int:
        raw = self.get(section, key)
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"[{section}] {key} must be an integer, got {raw!r}") from None

    def get_float(self, section: str, key: str) -> float:
        raw = self.get(section, key)
        try:
            return float(raw)
        except ValueError:
            raise ValueError(f"[{section}] {key} must be a number, got {raw!r}") from None

    def get_bool(self, section: str, key: str) -> bool:
        raw = self.get(section, key).strip().lower()
        if raw in _TRUE:
            return True
        if raw in _FALSE:
            return False
        raise ValueError(f"[{section}] {key} must be a boolean, got {raw!r}")

    def get_list(self, section: str, key: str) -> List[str]:
        return [x.strip() for x in self.get(section, key).split(",") if x.strip()]

    def get_lines(self, section: str, key: str) -> List[str]:
        return [x.strip() for x in self.get(section, key).splitlines() if x.strip()]

    def set(self, section: str, key: str, value: str) -> None:
        if not self._parser.has_section(section):
            self._parser.add_section(section)
        self._parser.set(section, key, value)

    def as_dict(self) -> Record:
        return {s: dict(self._parser.items(s)) for s in self._parser.sections()}

    def replace(self, record: Record) -> None:
        """Remplace le contenu par `record` (défauts re-fusionnés)."""
        parser = configparser.ConfigParser(interpolation=None)
        parser.optionxform = str
        parser.read_dict(DEFAULTS)
        parser.read_dict(record)
        self._parser = parser


# -----------------------------
# Bridges (remplace le menu interactif)
# -----------------------------

def apply_bridge(record: Record, bridge_type: BridgeType, lines: Sequence[str] = ()) -> Record:
    """
    Retourne une copie de `record` configurée pour `bridge_type`.
    Ne touche ni au disque ni à l'entrée.
    """
    out = copy.deepcopy(record)
    tor = out.setdefault("tor", {})

    if bridge_type is BridgeType.NONE:
        tor["use_bridges"] = "false"
        tor["bridge_type"] = BridgeType.NONE.value
        tor["bridges"] = ""
        return out

    cleaned = [l.strip() for l in lines if l.strip()]
    if not cleaned:
        raise ValueError(f"Bridge type '{bridge_type.value}' needs at least one bridge line")

    transport = bridge_type.value
    normalized = []
    for line in cleaned:
        if line.split()[0] != transport:
            line = f"{transport} {line}"
        normalized.append(line)

    tor["use_bridges"] = "true"
    tor["bridge_type"] = transport
    tor["bridges"] = "\n".join(normalized)
    return out


def parse_bridge_type(value: str) -> BridgeType:
    value = value.strip().lower()
    if value == "meek":
        return BridgeType.MEEK
    try:
        return BridgeType(value)
    except ValueError:
        known = ", ".join(b.value for b in BridgeType)
        raise ValueError(f"Unknown bridge type '{value}' (known: {known})") from None
