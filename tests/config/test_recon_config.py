"""
Tests for recon_config: YAML loading, validation and the config trace.
"""

import pytest
from decimal import Decimal

from recon_config import get_active_config
from recon_config.loader import compute_checksum, parse_config
from recon_config.schema import ReconConfig, SeverityThresholds, ToleranceConfig
from recon_kernel.domain.match import MatchPass


class TestDefaultConfig:

    def test_shipped_defaults(self):
        config = get_active_config()

        assert config.config_id == "default"
        assert config.tolerance.absolute == Decimal("1.00")
        assert config.tolerance.percent == Decimal("0.005")
        assert config.date_window_days == 7
        assert config.allow_partial
        assert config.confidence_for(MatchPass.EXACT) == 100
        assert config.confidence_for(MatchPass.PARTIAL_SETTLEMENT) == 75
        assert len(config.checksum) == 64

    def test_yaml_matches_dataclass_defaults(self):
        config = get_active_config()
        defaults = ReconConfig()

        assert config.tolerance == defaults.tolerance
        assert config.severity == defaults.severity
        assert dict(config.pass_confidence) == dict(defaults.pass_confidence)

    def test_trace_logged(self, captured_logs):
        config = get_active_config()

        traces = [r for r in captured_logs() if r["message"] == "RECON_CONFIG_TRACE"]
        assert traces
        assert traces[-1]["checksum"] == config.checksum
        assert traces[-1]["tolerance_absolute"] == "1.00"


class TestOverrides:

    def test_override_file(self, tmp_path):
        path = tmp_path / "strict.yaml"
        path.write_text(
            "config_id: strict\n"
            "version: 2\n"
            "tolerance:\n"
            "  absolute: \"0.50\"\n"
            "  percent: \"0\"\n"
            "matching:\n"
            "  date_window_days: 3\n"
            "  allow_partial: false\n"
            "  max_workers: 4\n"
            "  pass_confidence:\n"
            "    3: 80\n"
        )

        config = get_active_config(path)

        assert config.config_id == "strict"
        assert config.version == 2
        assert config.tolerance == ToleranceConfig(Decimal("0.50"), Decimal("0"))
        assert config.date_window_days == 3
        assert not config.allow_partial
        assert config.max_workers == 4
        assert config.confidence_for(MatchPass.NORMALIZED_REFERENCE) == 80
        assert config.confidence_for(MatchPass.EXACT) == 100

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        config = get_active_config(path)

        assert config.tolerance == ToleranceConfig()
        assert config.date_window_days == 7

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")


class TestValidation:

    @pytest.mark.parametrize(
        "data",
        [
            {"tolerance": {"absolute": "-1"}},
            {"tolerance": {"percent": "1.5"}},
            {"tolerance": {"absolute": "lots"}},
            {"matching": {"date_window_days": -1}},
            {"matching": {"max_workers": 0}},
            {"matching": {"pass_confidence": {1: 101}}},
            {"matching": {"pass_confidence": {9: 50}}},
            {"severity": {"medium_at": "500", "high_at": "100"}},
        ],
    )
    def test_invalid_values_rejected(self, data):
        with pytest.raises(ValueError):
            parse_config(data)

    def test_severity_thresholds_ordered(self):
        with pytest.raises(ValueError):
            SeverityThresholds(medium_at=Decimal("10"), high_at=Decimal("5"))


class TestChecksum:

    def test_deterministic_and_key_order_independent(self):
        a = {"tolerance": {"absolute": "1.00", "percent": "0.005"}, "config_id": "x"}
        b = {"config_id": "x", "tolerance": {"percent": "0.005", "absolute": "1.00"}}

        assert compute_checksum(a) == compute_checksum(b)

    def test_changes_with_content(self):
        assert compute_checksum({"tolerance": {"absolute": "1.00"}}) != compute_checksum(
            {"tolerance": {"absolute": "2.00"}}
        )
