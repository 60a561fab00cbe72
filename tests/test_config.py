"""Tests for the configuration store and bridge settings."""
from __future__ import annotations

import pytest

from shield_backend.config import DEFAULTS, ShieldConfig, apply_bridge, parse_bridge_type
from shield_backend.models import BridgeType


class TestShieldConfig:

    def test_load_creates_file_with_defaults(self, tmp_path):
        path = tmp_path / "shield.conf"
        cfg = ShieldConfig.load(path)
        assert path.exists()
        for section, values in DEFAULTS.items():
            for key, value in values.items():
                assert cfg.get(section, key) == value

    def test_partial_file_is_merged_and_rewritten(self, tmp_path):
        path = tmp_path / "shield.conf"
        path.write_text("[tor]\nsocks_port = 9150\n")

        cfg = ShieldConfig.load(path)
        assert cfg.get_int("tor", "socks_port") == 9150
        assert cfg.get_int("tor", "trans_port") == 9040

        text = path.read_text()
        assert "[performance]" in text
        assert "trans_port = 9040" in text

    def test_unknown_keys_are_preserved(self, tmp_path):
        path = tmp_path / "shield.conf"
        path.write_text("[general]\nfavourite_colour = purple\n\n[extra]\nfoo = bar\n")

        ShieldConfig.load(path)
        cfg = ShieldConfig.load(path)
        assert cfg.get("general", "favourite_colour") == "purple"
        assert cfg.as_dict()["extra"] == {"foo": "bar"}

    def test_typed_accessors(self):
        cfg = ShieldConfig(record={"general": {"mac_exclude": "docker0, virbr0,"}})
        assert cfg.get_bool("general", "kill_switch") is True
        assert cfg.get_bool("general", "i2p_enabled") is False
        assert cfg.get_float("performance", "readiness_interval") == 1.0
        assert cfg.get_list("general", "mac_exclude") == ["docker0", "virbr0"]

    def test_invalid_values_raise(self):
        cfg = ShieldConfig(record={"tor": {"socks_port": "ninety"}, "general": {"kill_switch": "maybe"}})
        with pytest.raises(ValueError):
            cfg.get_int("tor", "socks_port")
        with pytest.raises(ValueError):
            cfg.get_bool("general", "kill_switch")

    def test_multiline_bridges_survive_save(self, tmp_path):
        path = tmp_path / "shield.conf"
        cfg = ShieldConfig.load(path)
        cfg.set("tor", "bridges", "obfs4 192.0.2.1:443 AAAA cert=x iat-mode=0\nobfs4 192.0.2.2:443 BBBB cert=y iat-mode=0")
        cfg.save()

        again = ShieldConfig.load(path)
        assert len(again.get_lines("tor", "bridges")) == 2


class TestBridges:

    def test_apply_bridge_does_not_mutate_input(self):
        record = ShieldConfig().as_dict()
        out = apply_bridge(record, BridgeType.OBFS4, ["192.0.2.1:443 AAAA cert=x iat-mode=0"])

        assert record["tor"]["use_bridges"] == "false"
        assert out["tor"]["use_bridges"] == "true"
        assert out["tor"]["bridge_type"] == "obfs4"
        assert out["tor"]["bridges"] == "obfs4 192.0.2.1:443 AAAA cert=x iat-mode=0"

    def test_transport_prefix_not_doubled(self):
        out = apply_bridge({}, BridgeType.SNOWFLAKE, ["snowflake 192.0.2.3:80 CCCC", "  "])
        assert out["tor"]["bridges"] == "snowflake 192.0.2.3:80 CCCC"

    def test_none_clears_bridges(self):
        record = apply_bridge({}, BridgeType.OBFS4, ["192.0.2.1:443 AAAA"])
        out = apply_bridge(record, BridgeType.NONE)
        assert out["tor"]["use_bridges"] == "false"
        assert out["tor"]["bridges"] == ""

    def test_bridge_type_without_lines_rejected(self):
        with pytest.raises(ValueError):
            apply_bridge({}, BridgeType.WEBTUNNEL, [])

    def test_parse_bridge_type(self):
        assert parse_bridge_type("OBFS4") is BridgeType.OBFS4
        assert parse_bridge_type("meek") is BridgeType.MEEK
        with pytest.raises(ValueError):
            parse_bridge_type("carrier-pigeon")


def test_malformed_file_reported_as_value_error(tmp_path):
    path = tmp_path / "shield.conf"
    path.write_text("socks_port = 9050\n")
    with pytest.raises(ValueError):
        ShieldConfig.load(path)
