"""
Tests for engine configuration and state profile models.
"""

from decimal import Decimal

import pytest

from src.discovery.models import DiscoveryConfig, DiscoveryResult
from src.hmm.models import HMMConfig, StateProfile


def signature_row(**overrides):
    row = {
        "state_id": 1,
        "flow_count": 250,
        "avg_in_bytes": Decimal("1200.5"),
        "avg_out_bytes": Decimal("300.25"),
        "bytes_ratio": 3.98,
        "avg_duration_ms": 40.0,
        "avg_pkts_per_sec": 12.5,
        "tcp_pct": Decimal("0.75"),
        "udp_pct": Decimal("0.25"),
        "icmp_pct": Decimal("0"),
        "well_known_pct": 0.9,
        "registered_pct": 0.1,
        "ephemeral_pct": 0.0,
    }
    row.update(overrides)
    return row


class TestHMMConfig:
    """Tests for HMMConfig defaults."""

    def test_defaults(self):
        config = HMMConfig()

        assert config.seed == 42
        assert config.self_transition == 0.7
        assert config.min_variance == 1e-4
        assert config.kmeans_iterations == 10
        assert (config.min_states, config.max_states) == (2, 10)
        assert config.bic_patience == 2
        assert (config.bic_max_iter, config.bic_tol) == (10, 0.1)
        assert (config.bic_subsample_threshold, config.bic_subsample_size) == (15_000, 10_000)
        assert (config.max_iter, config.tol) == (50, 1e-2)
        assert config.use_process is True
        assert config.start_method == "spawn"

    def test_to_dict(self):
        assert HMMConfig(seed=1).to_dict()["seed"] == 1


class TestStateProfile:
    """Tests for StateProfile construction from store rows."""

    def test_from_signature(self):
        profile = StateProfile.from_signature(signature_row())

        assert profile.state_id == 1
        assert profile.flow_count == 250
        assert profile.avg_in_bytes == pytest.approx(1200.5)
        assert profile.protocol_dist.tcp == pytest.approx(0.75)
        assert profile.port_category_dist.well_known == pytest.approx(0.9)
        assert profile.conn_complete_pct is None
        assert profile.anomaly_score is None
        assert profile.anomaly_factors == ()

    def test_optional_fields(self):
        profile = StateProfile.from_signature(
            signature_row(conn_complete_pct=0.5, no_reply_pct=float("nan"), avg_bytes_per_pkt=Decimal("64"))
        )

        assert profile.conn_complete_pct == 0.5
        assert profile.no_reply_pct is None
        assert profile.avg_bytes_per_pkt == 64.0

    def test_missing_required_field(self):
        row = signature_row()
        del row["bytes_ratio"]
        with pytest.raises(KeyError):
            StateProfile.from_signature(row)

    def test_is_immutable(self):
        profile = StateProfile.from_signature(signature_row())
        with pytest.raises(AttributeError):
            profile.flow_count = 1

    def test_to_dict(self):
        data = StateProfile.from_signature(signature_row()).to_dict()

        assert data["protocol_dist"] == {"tcp": 0.75, "udp": 0.25, "icmp": 0.0}
        assert data["anomaly_factors"] == []


class TestDiscoveryModels:
    """Tests for discovery configuration and results."""

    def test_config_defaults(self):
        config = DiscoveryConfig()

        assert config.requested_states == 0
        assert config.min_flows == 10
        assert config.write_batch_size == 1000
        assert isinstance(config.hmm, HMMConfig)

    def test_result_to_dict(self):
        profile = StateProfile.from_signature(signature_row())
        result = DiscoveryResult(
            profiles=[profile], n_states=3, converged=False, iterations=50, log_likelihood=-10.0
        )

        data = result.to_dict()

        assert data["n_states"] == 3
        assert data["profiles"][0]["state_id"] == 1
