# src/shield_backend/models.py
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional


class Outcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"   # étape optionnelle ratée (i2p, restauration partielle)
    SKIPPED = "skipped"   # désactivé par la config / rien à faire


class Phase(Enum):
    INACTIVE = "inactive"
    TRANSITIONING = "transitioning"
    ACTIVE = "active"


class BridgeType(Enum):
    NONE = "none"
    OBFS4 = "obfs4"
    SNOWFLAKE = "snowflake"
    WEBTUNNEL = "webtunnel"
    MEEK = "meek_lite"


@dataclass
class StepResult:
    outcome: Outcome
    details: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILURE

    @property
    def applied(self) -> bool:
        """La mutation est en place (ou a été annulée) sur l'hôte."""
        return self.outcome is Outcome.SUCCESS

    @classmethod
    def success(cls, *details: str) -> "StepResult":
        return cls(Outcome.SUCCESS, list(details))

    @classmethod
    def skipped(cls, *details: str) -> "StepResult":
        return cls(Outcome.SKIPPED, list(details))

    @classmethod
    def warning(cls, *errors: str) -> "StepResult":
        return cls(Outcome.WARNING, errors=list(errors))

    @classmethod
    def failure(cls, *errors: str) -> "StepResult":
        return cls(Outcome.FAILURE, errors=list(errors))


@dataclass
class ComponentFlags:
    mac: bool = False
    dns: bool = False
    firewall: bool = False
    tor: bool = False
    i2p: bool = False


@dataclass
class SessionState:
    running: bool = False
    activated_at: Optional[str] = None   # ISO-8601, UTC
    flags: ComponentFlags = field(default_factory=ComponentFlags)


@dataclass
class InterfaceDescriptor:
    name: str
    mac: str          # ex "3c:22:fb:01:aa:10"
    randomized: bool


@dataclass
class TransitionReport:
    phase: Phase
    results: Dict[str, StepResult] = field(default_factory=dict)
    interrupted: Optional[int] = None    # numéro du signal reçu

    @property
    def failures(self) -> int:
        return sum(1 for r in self.results.values() if r.failed)

    @property
    def warnings(self) -> int:
        return sum(1 for r in self.results.values() if r.outcome is Outcome.WARNING)


@dataclass
class StatusSnapshot:
    running: bool
    activated_at: Optional[str]
    flags: ComponentFlags
    tor_listening: bool
    i2p_listening: bool
    mac_randomized: bool
    dns_secured: bool
    interfaces: List[InterfaceDescriptor] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)
