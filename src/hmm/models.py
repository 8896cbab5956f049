"""
Data models and configuration for the HMM state-discovery engine.
"""

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class HMMConfig:
    """Tunable constants of the engine.

    The sticky self-transition and the BIC early-stop patience are empirical
    defaults for flow-behaviour persistence, exposed here so callers can tune them.
    """

    seed: int = 42  # Only source of randomness: K-means++ seeding
    self_transition: float = 0.7  # Initial transition matrix diagonal
    min_variance: float = 1e-4  # Floor for every per-state, per-feature variance
    kmeans_iterations: int = 10  # Lloyd refinement passes after K-means++

    # Model-order selection (BIC sweep)
    min_states: int = 2
    max_states: int = 10
    bic_patience: int = 2  # Stop after this many consecutive non-improving K
    bic_max_iter: int = 10
    bic_tol: float = 0.1
    bic_subsample_threshold: int = 15_000
    bic_subsample_size: int = 10_000

    # Final fit
    max_iter: int = 50
    tol: float = 1e-2

    # Execution context
    use_process: bool = True  # Train in a separate process when possible
    start_method: str = "spawn"
    poll_interval_seconds: float = 0.5

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProtocolDistribution:
    """Share of flows per transport protocol (0..1)"""

    tcp: float = 0.0
    udp: float = 0.0
    icmp: float = 0.0

    @property
    def skew(self) -> float:
        """Distance of the dominant protocol share from a uniform split"""
        return max(self.tcp, self.udp, self.icmp) - 1.0 / 3.0


@dataclass
class PortCategoryDistribution:
    """Share of flows per destination port range (0..1)"""

    well_known: float = 0.0
    registered: float = 0.0
    ephemeral: float = 0.0


@dataclass(frozen=True)
class StateProfile:
    """Aggregate statistics for one discovered state, optionally scored"""

    state_id: int
    flow_count: int
    avg_in_bytes: float
    avg_out_bytes: float
    bytes_ratio: float
    avg_duration_ms: float
    avg_pkts_per_sec: float
    protocol_dist: ProtocolDistribution = field(default_factory=ProtocolDistribution)
    port_category_dist: PortCategoryDistribution = field(
        default_factory=PortCategoryDistribution
    )
    conn_complete_pct: float | None = None
    no_reply_pct: float | None = None
    rejected_pct: float | None = None
    avg_bytes_per_pkt: float | None = None
    avg_inter_flow_gap_ms: float | None = None
    anomaly_score: int | None = None
    anomaly_factors: tuple[str, ...] = ()

    @classmethod
    def from_signature(cls, row: dict[str, Any]) -> "StateProfile":
        """Build a profile from one aggregate row of the flow store"""

        def optional(name: str) -> float | None:
            value = row.get(name)
            if value is None or value != value:  # NaN from pandas
                return None
            return float(value)

        return cls(
            state_id=int(row["state_id"]),
            flow_count=int(row["flow_count"]),
            avg_in_bytes=float(row["avg_in_bytes"]),
            avg_out_bytes=float(row["avg_out_bytes"]),
            bytes_ratio=float(row["bytes_ratio"]),
            avg_duration_ms=float(row["avg_duration_ms"]),
            avg_pkts_per_sec=float(row["avg_pkts_per_sec"]),
            protocol_dist=ProtocolDistribution(
                tcp=float(row["tcp_pct"]),
                udp=float(row["udp_pct"]),
                icmp=float(row["icmp_pct"]),
            ),
            port_category_dist=PortCategoryDistribution(
                well_known=float(row["well_known_pct"]),
                registered=float(row["registered_pct"]),
                ephemeral=float(row["ephemeral_pct"]),
            ),
            conn_complete_pct=optional("conn_complete_pct"),
            no_reply_pct=optional("no_reply_pct"),
            rejected_pct=optional("rejected_pct"),
            avg_bytes_per_pkt=optional("avg_bytes_per_pkt"),
            avg_inter_flow_gap_ms=optional("avg_inter_flow_gap_ms"),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["anomaly_factors"] = list(self.anomaly_factors)
        return data
