# src/shield_backend/firewall.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import ShieldConfig
from .models import StepResult
from .system import COMMAND_ERRORS, Runner, describe_error, run_cmd

logger = logging.getLogger(__name__)


# -----------------------------
# Data
# -----------------------------

WEB_PORTS = (80, 443)
DNS_PORT = 53
CHAINS = ("INPUT", "FORWARD", "OUTPUT")


@dataclass
class KillSwitchPolicy:
    tor_user: str
    trans_port: int
    relay_ports: List[int]                  # ORPort + DirPort
    extra_owners: List[str] = field(default_factory=list)   # ex: i2pd

    @classmethod
    def from_config(cls, config: ShieldConfig) -> "KillSwitchPolicy":
        extra = []
        if config.get_bool("general", "i2p_enabled"):
            extra.append(config.get("i2p", "user"))
        return cls(
            tor_user=config.get("tor", "user"),
            trans_port=config.get_int("tor", "trans_port"),
            relay_ports=[config.get_int("tor", "or_port"), config.get_int("tor", "dir_port")],
            extra_owners=extra,
        )


FLUSH_RULES: List[List[str]] = [
    ["-F"],
    ["-X"],
    ["-t", "nat", "-F"],
    ["-t", "nat", "-X"],
]


def _ports(ports) -> str:
    return ",".join(str(p) for p in ports)


def kill_switch_rules(policy: KillSwitchPolicy) -> List[List[str]]:
    """
    Règles iptables ordonnées. L'ordre compte : les deux dernières
    (owner tor ACCEPT, puis DROP) doivent rester en fin de OUTPUT.
    """
    user = policy.tor_user
    rules: List[List[str]] = list(FLUSH_RULES)

    rules += [["-P", chain, "DROP"] for chain in CHAINS]

    rules += [
        ["-A", "INPUT", "-i", "lo", "-j", "ACCEPT"],
        ["-A", "OUTPUT", "-o", "lo", "-j", "ACCEPT"],
        ["-A", "INPUT", "-m", "conntrack", "--ctstate", "ESTABLISHED,RELATED", "-j", "ACCEPT"],
        ["-A", "OUTPUT", "-m", "conntrack", "--ctstate", "ESTABLISHED,RELATED", "-j", "ACCEPT"],
        ["-A", "OUTPUT", "-p", "tcp", "-m", "multiport",
         "--dports", _ports(list(policy.relay_ports) + list(WEB_PORTS)), "-j", "ACCEPT"],
    ]

    # DNS sortant : uniquement le propriétaire du proxy
    for proto in ("udp", "tcp"):
        rules.append(["-A", "OUTPUT", "-p", proto, "--dport", str(DNS_PORT),
                      "-m", "owner", "--uid-owner", user, "-j", "ACCEPT"])

    # redirection transparente du web vers le TransPort (sauf tor lui-même)
    rules.append(["-t", "nat", "-A", "OUTPUT", "-p", "tcp", "-m", "multiport",
                  "--dports", _ports(WEB_PORTS), "-m", "owner", "!", "--uid-owner", user,
                  "-j", "REDIRECT", "--to-ports", str(policy.trans_port)])

    for owner in policy.extra_owners:
        rules.append(["-A", "OUTPUT", "-m", "owner", "--uid-owner", owner, "-j", "ACCEPT"])

    rules += [
        ["-A", "OUTPUT", "-m", "owner", "--uid-owner", user, "-j", "ACCEPT"],
        ["-A", "OUTPUT", "-j", "DROP"],
    ]
    return rules


def allow_all_rules() -> List[List[str]]:
    return [["-P", chain, "ACCEPT"] for chain in CHAINS] + list(FLUSH_RULES)


# IPv6 : le proxy n'écoute qu'en IPv4, tout le trafic v6 hors lo est coupé
IPV6_FLUSH_RULES: List[List[str]] = [["-F"], ["-X"]]


def ipv6_lockdown_rules() -> List[List[str]]:
    rules: List[List[str]] = list(IPV6_FLUSH_RULES)
    rules += [["-P", chain, "DROP"] for chain in CHAINS]
    rules += [
        ["-A", "INPUT", "-i", "lo", "-j", "ACCEPT"],
        ["-A", "OUTPUT", "-o", "lo", "-j", "ACCEPT"],
        ["-A", "OUTPUT", "-j", "DROP"],
    ]
    return rules


def ipv6_allow_all_rules() -> List[List[str]]:
    return [["-P", chain, "ACCEPT"] for chain in CHAINS] + list(IPV6_FLUSH_RULES)


# -----------------------------
# Manager
# -----------------------------

class FirewallManager:
    def __init__(self, config: ShieldConfig, runner: Runner = run_cmd):
        self.config = config
        self.runner = runner

    def _iptables(self, *args: str, check: bool = True):
        return self.runner(["iptables", *args], check=check)

    def _ip6tables(self, *args: str, check: bool = True):
        return self.runner(["ip6tables", *args], check=check)

    def enable_kill_switch(self) -> StepResult:
        if not self.config.get_bool("general", "kill_switch"):
            return StepResult.skipped("kill switch disabled in configuration")

        try:
            rules = kill_switch_rules(KillSwitchPolicy.from_config(self.config))
        except ValueError as e:
            return StepResult.failure(str(e))

        for args in rules:
            try:
                self._iptables(*args)
            except COMMAND_ERRORS as e:
                # pas de kill switch à moitié posé : retour à l'état ouvert
                msg = f"iptables {' '.join(args)}: {describe_error(e)}"
                logger.error("Kill switch aborted, reverting: %s", msg)
                undo = self.disable()
                return StepResult.failure(msg, *undo.errors)

        res = StepResult.success(f"kill switch enabled ({len(rules)} rules)")
        v6_rules = ipv6_lockdown_rules()
        for args in v6_rules:
            try:
                self._ip6tables(*args)
            except FileNotFoundError:
                # pas d'ip6tables : pas de pile IPv6 filtrable sur cet hôte
                logger.warning("ip6tables not found, IPv6 traffic left unfiltered")
                res.details.append("ip6tables not available, IPv6 left unfiltered")
                break
            except COMMAND_ERRORS as e:
                msg = f"ip6tables {' '.join(args)}: {describe_error(e)}"
                logger.error("Kill switch aborted, reverting: %s", msg)
                undo = self.disable()
                return StepResult.failure(msg, *undo.errors)
        else:
            res.details.append(f"IPv6 blocked ({len(v6_rules)} rules)")

        logger.info("Kill switch enabled (%d IPv4 rules)", len(rules))
        return res

    def disable(self) -> StepResult:
        res = StepResult.success("firewall reset to allow-all")
        for args in allow_all_rules():
            try:
                self._iptables(*args)
            except COMMAND_ERRORS as e:
                msg = f"iptables {' '.join(args)}: {describe_error(e)}"
                logger.error("Firewall reset step failed: %s", msg)
                res.errors.append(msg)

        for args in ipv6_allow_all_rules():
            try:
                self._ip6tables(*args)
            except FileNotFoundError:
                logger.debug("ip6tables not found, nothing to reset for IPv6")
                break
            except COMMAND_ERRORS as e:
                msg = f"ip6tables {' '.join(args)}: {describe_error(e)}"
                logger.error("Firewall reset step failed: %s", msg)
                res.errors.append(msg)

        if res.errors:
            return StepResult.failure(*res.errors)
        return res

    def status(self) -> Dict[str, Any]:
        """
        Retour:
          {enabled: bool, output_policy: Optional[str], ruleset: str}
        """
        try:
            rules_filter = self._iptables("-S").stdout or ""
        except COMMAND_ERRORS:
            return {"enabled": False, "output_policy": None, "ruleset": ""}

        try:
            rules_nat = self._iptables("-t", "nat", "-S").stdout or ""
        except COMMAND_ERRORS:
            rules_nat = "(nat table unavailable)\n"

        lines = [l.strip() for l in rules_filter.splitlines() if l.strip()]
        policy: Optional[str] = None
        for l in lines:
            if l.startswith("-P OUTPUT "):
                policy = l.split()[2]
        output_rules = [l for l in lines if l.startswith("-A OUTPUT")]
        enabled = policy == "DROP" and bool(output_rules) and output_rules[-1] == "-A OUTPUT -j DROP"

        return {
            "enabled": enabled,
            "output_policy": policy,
            "ruleset": rules_filter + "\n" + rules_nat,
        }
