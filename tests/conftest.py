"""
Pytest configuration and shared fixtures.
"""

import numpy as np
import pandas as pd
import pytest

from src.discovery.models import DiscoveryConfig
from src.hmm.models import HMMConfig, PortCategoryDistribution, ProtocolDistribution, StateProfile


# Engine fixtures
@pytest.fixture
def fast_config():
    """Engine configuration that trains in-process with small iteration caps."""
    return HMMConfig(max_iter=20, bic_max_iter=5, use_process=False)


@pytest.fixture
def two_clusters():
    """40 two-dimensional points: 20 around (0, 0) then 20 around (10, 10)."""
    rng = np.random.default_rng(7)
    low = rng.normal(0.0, 0.3, size=(20, 2))
    high = rng.normal(10.0, 0.3, size=(20, 2))
    return np.vstack([low, high])


def _flow_rows(n: int, seed: int = 0) -> pd.DataFrame:
    """Raw flow rows alternating between bulk TCP transfers and short UDP lookups"""
    rng = np.random.default_rng(seed)
    rows = []
    for i in range(n):
        if i % 2 == 0:
            rows.append(
                {
                    "row_id": i + 1,
                    "group_id": f"10.0.0.{i % 3}",
                    "in_bytes": float(rng.integers(800_000, 1_200_000)),
                    "out_bytes": float(rng.integers(20_000, 40_000)),
                    "in_pkts": float(rng.integers(700, 900)),
                    "out_pkts": float(rng.integers(300, 400)),
                    "flow_duration_ms": float(rng.integers(4_000, 6_000)),
                    "protocol": 6,
                    "l4_dst_port": 443,
                    "src_to_dst_iat_avg": float(rng.integers(5, 15)),
                    "conn_state": "SF",
                    "inter_flow_gap_ms": float(rng.integers(1_000, 2_000)),
                }
            )
        else:
            rows.append(
                {
                    "row_id": i + 1,
                    "group_id": f"10.0.0.{i % 3}",
                    "in_bytes": float(rng.integers(60, 90)),
                    "out_bytes": float(rng.integers(100, 200)),
                    "in_pkts": 1.0,
                    "out_pkts": 1.0,
                    "flow_duration_ms": float(rng.integers(1, 5)),
                    "protocol": 17,
                    "l4_dst_port": 53,
                    "src_to_dst_iat_avg": 0.0,
                    "conn_state": "S0",
                    "inter_flow_gap_ms": float(rng.integers(10, 50)),
                }
            )
    return pd.DataFrame(rows)


@pytest.fixture
def make_flow_rows():
    """Factory for raw flow DataFrames as returned by a flow store."""
    return _flow_rows


@pytest.fixture
def flow_rows():
    """60 raw flow rows of two clearly separated behaviours."""
    return _flow_rows(60)


@pytest.fixture
def make_profile():
    """Factory for state profiles with neutral defaults."""

    def factory(state_id: int, **overrides) -> StateProfile:
        values = {
            "state_id": state_id,
            "flow_count": 100,
            "avg_in_bytes": 1_000.0,
            "avg_out_bytes": 500.0,
            "bytes_ratio": 2.0,
            "avg_duration_ms": 100.0,
            "avg_pkts_per_sec": 10.0,
            "protocol_dist": ProtocolDistribution(tcp=0.6, udp=0.3, icmp=0.1),
            "port_category_dist": PortCategoryDistribution(
                well_known=0.5, registered=0.3, ephemeral=0.2
            ),
        }
        values.update(overrides)
        return StateProfile(**values)

    return factory


# Discovery fixtures
@pytest.fixture
def discovery_config(fast_config):
    """Discovery configuration with in-process training and test connection settings."""
    return DiscoveryConfig(
        requested_states=0,
        sample_size=1_000,
        flow_table="flows",
        write_batch_size=50,
        hmm=fast_config,
        postgres_host="localhost",
        postgres_port=5432,
        postgres_database="test_db",
        postgres_user="test_user",
        postgres_password="test_password",
        redis_host="localhost",
        redis_port=6379,
        model_cache_ttl_seconds=3600,
        model_key="hmm:model:test",
    )
