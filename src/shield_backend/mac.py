# src/shield_backend/mac.py
from __future__ import annotations

import json
import logging
import random
import secrets
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import ShieldConfig
from .interfaces import LinkControl, list_interfaces, normalize_mac
from .models import StepResult
from .system import COMMAND_ERRORS, describe_error

logger = logging.getLogger(__name__)

Inventory = Callable[[List[str]], Dict[str, str]]


def random_mac(rng: Optional[random.Random] = None) -> str:
    """
    Adresse unicast administrée localement : bit 1 du premier octet à 1,
    bit 0 à 0.
    """
    rng = rng or secrets.SystemRandom()
    octets = [rng.randrange(256) for _ in range(6)]
    octets[0] = (octets[0] & 0xFC) | 0x02
    return ":".join(f"{o:02x}" for o in octets)


# -----------------------------
# Fichier des adresses d'origine
# -----------------------------

def load_mac_map(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a JSON object")
    return {str(k): str(v) for k, v in data.items()}


def save_mac_map(path: Path, mapping: Dict[str, str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(mapping, f, indent=2)
    path.chmod(0o600)


# -----------------------------
# Manager
# -----------------------------

class MacManager:
    def __init__(
        self,
        config: ShieldConfig,
        map_file: Path,
        link: Optional[LinkControl] = None,
        inventory: Optional[Inventory] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.map_file = map_file
        self.link = link or LinkControl()
        self.inventory = inventory or list_interfaces
        self.rng = rng

    @property
    def active(self) -> bool:
        return self.map_file.exists()

    def originals(self) -> Dict[str, str]:
        try:
            return load_mac_map(self.map_file)
        except (OSError, ValueError) as e:
            logger.error("Cannot read %s: %s", self.map_file, e)
            return {}

    def _apply(self, iface: str, mac: str) -> None:
        self.link.set_down(iface)
        try:
            self.link.set_address(iface, mac)
        finally:
            # on remonte l'interface même si le changement d'adresse échoue
            self.link.set_up(iface)

    def randomize(self) -> StepResult:
        if not self.config.get_bool("general", "mac_randomization"):
            return StepResult.skipped("MAC randomization disabled in configuration")

        current = self.inventory(self.config.get_list("general", "mac_exclude"))
        if not current:
            return StepResult.skipped("no eligible network interface")

        try:
            existing = load_mac_map(self.map_file)
        except (OSError, ValueError) as e:
            return StepResult.failure(f"cannot read existing MAC map {self.map_file}: {e}")

        if existing:
            logger.warning("MAC map already present, keeping recorded originals for %s", ", ".join(existing))
        originals = dict(existing)
        for name, mac in current.items():
            originals.setdefault(name, mac)

        # persistance avant toute mutation : restauration possible même en cas d'échec partiel
        try:
            save_mac_map(self.map_file, originals)
        except OSError as e:
            return StepResult.failure(f"cannot persist original MAC map: {e}")

        res = StepResult.success()
        for name in current:
            new_mac = random_mac(self.rng)
            try:
                self._apply(name, new_mac)
            except COMMAND_ERRORS as e:
                msg = f"{name}: {describe_error(e)}"
                logger.error("MAC randomization failed on %s", msg)
                res.errors.append(msg)
                continue
            logger.info("MAC %s: %s -> %s", name, originals[name], new_mac)
            res.details.append(f"{name}: {originals[name]} -> {new_mac}")

        if res.errors:
            res = StepResult.failure(*res.errors)
        return res

    def restore(self) -> StepResult:
        if not self.map_file.exists():
            return StepResult.skipped("MAC randomization not active")

        try:
            mapping = load_mac_map(self.map_file)
        except (OSError, ValueError) as e:
            logger.error("Unreadable MAC map %s discarded: %s", self.map_file, e)
            self._discard()
            return StepResult.warning(f"unreadable MAC map discarded: {e}")

        res = StepResult.success()
        for name, raw in mapping.items():
            mac = normalize_mac(raw)
            if mac is None:
                res.errors.append(f"{name}: invalid recorded address {raw!r}")
                continue
            try:
                self._apply(name, mac)
            except COMMAND_ERRORS as e:
                msg = f"{name}: {describe_error(e)}"
                logger.warning("MAC restore failed on %s", msg)
                res.errors.append(msg)
                continue
            logger.info("MAC %s restored to %s", name, mac)
            res.details.append(f"{name}: restored {mac}")

        # consommée même si incomplète : jamais réappliquée périmée
        self._discard()

        if res.errors:
            return StepResult.warning(*res.errors)
        return res

    def _discard(self) -> None:
        try:
            self.map_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Cannot delete %s: %s", self.map_file, e)
