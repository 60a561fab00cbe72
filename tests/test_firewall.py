"""Tests for the kill switch rule set."""
from __future__ import annotations

import pytest

from shield_backend.config import ShieldConfig
from shield_backend.firewall import FirewallManager, KillSwitchPolicy, ipv6_lockdown_rules, kill_switch_rules
from shield_backend.models import Outcome


@pytest.fixture
def firewall(config, runner):
    return FirewallManager(config, runner)


class TestRules:

    def setup_method(self):
        self.policy = KillSwitchPolicy.from_config(ShieldConfig())
        self.rules = kill_switch_rules(self.policy)

    def test_flush_then_default_deny(self):
        assert self.rules[:4] == [["-F"], ["-X"], ["-t", "nat", "-F"], ["-t", "nat", "-X"]]
        assert self.rules[4:7] == [
            ["-P", "INPUT", "DROP"],
            ["-P", "FORWARD", "DROP"],
            ["-P", "OUTPUT", "DROP"],
        ]

    def test_owner_accept_and_drop_are_last(self):
        assert self.rules[-2] == ["-A", "OUTPUT", "-m", "owner", "--uid-owner", "debian-tor", "-j", "ACCEPT"]
        assert self.rules[-1] == ["-A", "OUTPUT", "-j", "DROP"]

    def test_dns_only_for_proxy_owner(self):
        dns = [r for r in self.rules if "--dport" in r and r[r.index("--dport") + 1] == "53"]
        assert len(dns) == 2
        for r in dns:
            assert r[r.index("--uid-owner") + 1] == "debian-tor"

    def test_relay_and_web_ports_allowed(self):
        assert ["-A", "OUTPUT", "-p", "tcp", "-m", "multiport", "--dports", "9001,9030,80,443", "-j", "ACCEPT"] in self.rules

    def test_web_redirected_to_trans_port(self):
        nat = [r for r in self.rules if r[:2] == ["-t", "nat"] and "REDIRECT" in r]
        assert len(nat) == 1
        assert nat[0][-2:] == ["--to-ports", "9040"]
        assert "!" in nat[0]

    def test_i2p_owner_admitted_before_final_rules(self):
        cfg = ShieldConfig(record={"general": {"i2p_enabled": "true"}})
        rules = kill_switch_rules(KillSwitchPolicy.from_config(cfg))
        assert rules[-3] == ["-A", "OUTPUT", "-m", "owner", "--uid-owner", "i2pd", "-j", "ACCEPT"]

    def test_ipv6_default_deny(self):
        rules = ipv6_lockdown_rules()
        assert [r for r in rules if r[0] == "-P"] == [
            ["-P", "INPUT", "DROP"],
            ["-P", "FORWARD", "DROP"],
            ["-P", "OUTPUT", "DROP"],
        ]
        assert rules[-1] == ["-A", "OUTPUT", "-j", "DROP"]
        assert not any("nat" in r for r in rules)


class TestManager:

    def test_enable_then_disable_restores_allow_all(self, firewall, runner):
        assert firewall.enable_kill_switch().outcome is Outcome.SUCCESS
        assert runner.iptables.policies["OUTPUT"] == "DROP"
        assert not runner.iptables.empty

        assert firewall.disable().outcome is Outcome.SUCCESS
        assert set(runner.iptables.policies.values()) == {"ACCEPT"}
        assert runner.iptables.empty

    def test_status_reports_kill_switch(self, firewall):
        assert firewall.status()["enabled"] is False
        firewall.enable_kill_switch()
        st = firewall.status()
        assert st["enabled"] is True
        assert st["output_policy"] == "DROP"
        firewall.disable()
        assert firewall.status()["enabled"] is False

    def test_failed_rule_reverts_everything(self, firewall, runner):
        runner.fail_on(lambda c: c[0] == "iptables" and "REDIRECT" in c)

        res = firewall.enable_kill_switch()

        assert res.failed
        assert set(runner.iptables.policies.values()) == {"ACCEPT"}
        assert runner.iptables.empty

    def test_disabled_in_config(self, firewall, config, runner):
        config.set("general", "kill_switch", "false")
        assert firewall.enable_kill_switch().outcome is Outcome.SKIPPED
        assert runner.calls == []

    def test_disable_continues_after_error(self, firewall, runner):
        firewall.enable_kill_switch()
        runner.fail_on(lambda c: c == ["iptables", "-P", "INPUT", "ACCEPT"])

        res = firewall.disable()

        assert res.failed
        assert runner.iptables.policies["OUTPUT"] == "ACCEPT"
        assert runner.iptables.empty

    def test_ipv6_blocked_then_reopened(self, firewall, runner):
        firewall.enable_kill_switch()
        assert set(runner.ip6tables.policies.values()) == {"DROP"}
        assert runner.ip6tables.filter["OUTPUT"][-1] == "-A OUTPUT -j DROP"

        assert firewall.disable().outcome is Outcome.SUCCESS
        assert set(runner.ip6tables.policies.values()) == {"ACCEPT"}
        assert runner.ip6tables.empty

    def test_missing_ip6tables_is_not_fatal(self, firewall, runner):
        runner.missing.append("ip6tables")

        res = firewall.enable_kill_switch()

        assert res.outcome is Outcome.SUCCESS
        assert any("IPv6 left unfiltered" in d for d in res.details)
        assert runner.iptables.policies["OUTPUT"] == "DROP"
        assert firewall.disable().outcome is Outcome.SUCCESS

    def test_ipv6_failure_reverts_both_families(self, firewall, runner):
        runner.fail_on(lambda c: c == ["ip6tables", "-P", "OUTPUT", "DROP"])

        res = firewall.enable_kill_switch()

        assert res.failed
        assert set(runner.iptables.policies.values()) == {"ACCEPT"}
        assert runner.iptables.empty
        assert runner.ip6tables.policies["INPUT"] == "ACCEPT"
