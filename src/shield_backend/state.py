# src/shield_backend/state.py
from __future__ import annotations
import json
import logging
from typing import Optional

from .models import ComponentFlags, SessionState
from .paths import ShieldPaths

logger = logging.getLogger(__name__)


def state_to_dict(state: SessionState) -> dict:
    return {
        "running": state.running,
        "activated_at": state.activated_at,
        "flags": {
            "mac": state.flags.mac,
            "dns": state.flags.dns,
            "firewall": state.flags.firewall,
            "tor": state.flags.tor,
            "i2p": state.flags.i2p,
        },
    }


def dict_to_state(data: dict) -> SessionState:
    flags = data.get("flags", {})
    return SessionState(
        running=bool(data.get("running", False)),
        activated_at=data.get("activated_at"),
        flags=ComponentFlags(
            mac=bool(flags.get("mac", False)),
            dns=bool(flags.get("dns", False)),
            firewall=bool(flags.get("firewall", False)),
            tor=bool(flags.get("tor", False)),
            i2p=bool(flags.get("i2p", False)),
        ),
    )


class SessionStore:
    """
    session.json + fichier marqueur. Les drapeaux mac/dns et `running`
    sont toujours recalculés depuis les fichiers qui font foi.
    """

    def __init__(self, paths: ShieldPaths):
        self.paths = paths

    def load(self) -> SessionState:
        path = self.paths.session_file
        state = SessionState()
        if path.exists():
            try:
                with path.open("r", encoding="utf-8") as f:
                    state = dict_to_state(json.load(f))
            except (OSError, ValueError, AttributeError) as e:
                logger.warning("Ignoring unreadable session file %s: %s", path, e)
                state = SessionState()
        return self.refresh(state)

    def refresh(self, state: SessionState) -> SessionState:
        state.flags.mac = self.paths.mac_map_file.exists()
        state.flags.dns = self.paths.dns_backup_file.exists()
        state.running = self.paths.marker_file.exists()
        if not state.running:
            state.activated_at = None
        return state

    def save(self, state: SessionState) -> None:
        path = self.paths.session_file
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(state_to_dict(state), f, indent=2)

    # --- marqueur de session ---

    def write_marker(self, pid: int) -> None:
        self.paths.marker_file.parent.mkdir(parents=True, exist_ok=True)
        self.paths.marker_file.write_text(f"{pid}\n", encoding="utf-8")

    def remove_marker(self) -> None:
        self.paths.marker_file.unlink(missing_ok=True)

    def marker_pid(self) -> Optional[int]:
        try:
            return int(self.paths.marker_file.read_text().strip())
        except (OSError, ValueError):
            return None
