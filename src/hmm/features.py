"""
Feature extraction and scaling for HMM-based network flow analysis.

Each flow becomes a fixed 16-dimensional vector (see FEATURE_NAMES). Raw rows
are validated once, when they enter the engine, and carried afterwards as a
read-only numpy matrix together with their row and group identifiers.
"""

from dataclasses import asdict, dataclass
from typing import Any

import numpy as np
import pandas as pd
import structlog

from .errors import ModelNotFittedError

logger = structlog.get_logger(__name__)

FEATURE_NAMES = (
    "log1p_in_bytes",
    "log1p_out_bytes",
    "log1p_in_pkts",
    "log1p_out_pkts",
    "log1p_duration_ms",
    "log1p_iat_avg",
    "bytes_ratio",
    "pkts_per_second",
    "is_tcp",
    "is_udp",
    "is_icmp",
    "port_category",
    "is_conn_complete",
    "is_conn_rejected",
    "log1p_bytes_per_pkt",
    "log1p_inter_flow_gap",
)
N_FEATURES = len(FEATURE_NAMES)

REQUIRED_COLUMNS = (
    "in_bytes",
    "out_bytes",
    "in_pkts",
    "out_pkts",
    "flow_duration_ms",
    "protocol",
    "l4_dst_port",
)
OPTIONAL_COLUMNS = {
    "src_to_dst_iat_avg": 0.0,
    "conn_state": "",
    "inter_flow_gap_ms": 0.0,
}
RAW_COLUMNS = REQUIRED_COLUMNS + tuple(OPTIONAL_COLUMNS)

PROTO_ICMP = 1
PROTO_TCP = 6
PROTO_UDP = 17

# Connection states of rejected, reset or unanswered flows
REJECTED_STATES = frozenset({"REJ", "RSTO", "RSTR", "S0"})


def port_category(port: np.ndarray | int) -> np.ndarray:
    """0 = well-known (<=1023), 1 = registered (<=49151), 2 = ephemeral"""
    port = np.asarray(port)
    return np.where(port <= 1023, 0, np.where(port <= 49151, 1, 2))


def compute_feature_frame(frame: pd.DataFrame) -> pd.DataFrame:
    """Compute the 16 flow features for every row of a raw flow DataFrame

    Args:
        frame: DataFrame with at least REQUIRED_COLUMNS; OPTIONAL_COLUMNS
            default to 0 / "" when absent or null

    Returns:
        DataFrame with FEATURE_NAMES columns, indexed like ``frame``

    Raises:
        ValueError: If required columns are missing, null or non-numeric
    """
    missing = set(REQUIRED_COLUMNS) - set(frame.columns)
    if missing:
        raise ValueError(f"Flow rows missing required columns: {sorted(missing)}")

    if frame[list(REQUIRED_COLUMNS)].isna().any().any():
        raise ValueError("Flow rows contain null values in required columns")

    numeric = frame[list(REQUIRED_COLUMNS)].apply(pd.to_numeric).astype(float)
    for column in ("src_to_dst_iat_avg", "inter_flow_gap_ms"):
        if column in frame.columns:
            numeric[column] = pd.to_numeric(frame[column]).fillna(0.0).astype(float)
        else:
            numeric[column] = 0.0

    if "conn_state" in frame.columns:
        conn_state = frame["conn_state"].fillna("").astype(str)
    else:
        conn_state = pd.Series("", index=frame.index)

    in_bytes = numeric["in_bytes"].to_numpy()
    out_bytes = numeric["out_bytes"].to_numpy()
    in_pkts = numeric["in_pkts"].to_numpy()
    out_pkts = numeric["out_pkts"].to_numpy()
    duration_ms = numeric["flow_duration_ms"].to_numpy()
    protocol = numeric["protocol"].to_numpy()

    total_pkts = in_pkts + out_pkts
    total_bytes = in_bytes + out_bytes
    duration_s = np.maximum(duration_ms / 1000.0, 0.001)

    features = {
        "log1p_in_bytes": np.log1p(in_bytes),
        "log1p_out_bytes": np.log1p(out_bytes),
        "log1p_in_pkts": np.log1p(in_pkts),
        "log1p_out_pkts": np.log1p(out_pkts),
        "log1p_duration_ms": np.log1p(duration_ms),
        "log1p_iat_avg": np.log1p(numeric["src_to_dst_iat_avg"].to_numpy()),
        "bytes_ratio": in_bytes / (out_bytes + 1.0),
        "pkts_per_second": total_pkts / duration_s,
        "is_tcp": (protocol == PROTO_TCP).astype(float),
        "is_udp": (protocol == PROTO_UDP).astype(float),
        "is_icmp": (protocol == PROTO_ICMP).astype(float),
        "port_category": port_category(numeric["l4_dst_port"].to_numpy()).astype(float),
        "is_conn_complete": (conn_state == "SF").to_numpy(dtype=float),
        "is_conn_rejected": conn_state.isin(REJECTED_STATES).to_numpy(dtype=float),
        "log1p_bytes_per_pkt": np.log1p(total_bytes / np.maximum(total_pkts, 1.0)),
        "log1p_inter_flow_gap": np.log1p(numeric["inter_flow_gap_ms"].to_numpy()),
    }

    return pd.DataFrame(features, index=frame.index, columns=list(FEATURE_NAMES))


@dataclass(frozen=True)
class FlowRecord:
    """Raw attributes of one network flow"""

    in_bytes: float
    out_bytes: float
    in_pkts: float
    out_pkts: float
    flow_duration_ms: float
    protocol: int
    l4_dst_port: int
    src_to_dst_iat_avg: float = 0.0
    conn_state: str = ""
    inter_flow_gap_ms: float = 0.0

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "FlowRecord":
        """Validate and coerce a loosely-typed row into a FlowRecord

        Raises:
            ValueError: If a required field is missing or not numeric
        """
        missing = [name for name in REQUIRED_COLUMNS if data.get(name) is None]
        if missing:
            raise ValueError(f"Flow record missing required fields: {missing}")

        return cls(
            in_bytes=float(data["in_bytes"]),
            out_bytes=float(data["out_bytes"]),
            in_pkts=float(data["in_pkts"]),
            out_pkts=float(data["out_pkts"]),
            flow_duration_ms=float(data["flow_duration_ms"]),
            protocol=int(data["protocol"]),
            l4_dst_port=int(data["l4_dst_port"]),
            src_to_dst_iat_avg=float(data.get("src_to_dst_iat_avg") or 0.0),
            conn_state=str(data.get("conn_state") or ""),
            inter_flow_gap_ms=float(data.get("inter_flow_gap_ms") or 0.0),
        )

    def to_features(self) -> np.ndarray:
        return compute_feature_frame(pd.DataFrame([asdict(self)])).to_numpy()[0]


@dataclass(frozen=True)
class FeatureMatrix:
    """Feature vectors in input row order, with row and optional group identifiers"""

    values: np.ndarray
    row_ids: tuple
    group_ids: tuple | None = None

    def __post_init__(self):
        values = np.array(self.values, dtype=float)
        if values.ndim != 2:
            raise ValueError(f"Feature matrix must be 2-dimensional, got shape {values.shape}")
        if len(self.row_ids) != len(values):
            raise ValueError(
                f"Got {len(self.row_ids)} row ids for {len(values)} feature rows"
            )
        if self.group_ids is not None and len(self.group_ids) != len(values):
            raise ValueError(
                f"Got {len(self.group_ids)} group ids for {len(values)} feature rows"
            )
        values.setflags(write=False)
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "row_ids", tuple(self.row_ids))
        if self.group_ids is not None:
            object.__setattr__(self, "group_ids", tuple(self.group_ids))

    def __len__(self) -> int:
        return len(self.values)

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        id_column: str = "row_id",
        group_column: str | None = "group_id",
    ) -> "FeatureMatrix":
        """Build a matrix from raw flow rows as returned by the flow store

        Rows with null required fields are not usable and are dropped.

        Raises:
            ValueError: If the id column or a required raw column is missing
        """
        if id_column not in frame.columns:
            raise ValueError(f"Flow rows missing id column '{id_column}'")

        missing = set(REQUIRED_COLUMNS) - set(frame.columns)
        if missing:
            raise ValueError(f"Flow rows missing required columns: {sorted(missing)}")

        usable = frame.dropna(subset=list(REQUIRED_COLUMNS))
        dropped = len(frame) - len(usable)
        if dropped:
            logger.warning("Dropped flow rows with missing fields", dropped=dropped)

        features = compute_feature_frame(usable)
        group_ids = None
        if group_column is not None and group_column in usable.columns:
            group_ids = tuple(usable[group_column].tolist())

        return cls(
            values=features.to_numpy(),
            row_ids=tuple(usable[id_column].tolist()),
            group_ids=group_ids,
        )


class StandardScaler:
    """Zero-mean, unit-variance normalization with population standard deviation"""

    def __init__(self):
        self.mean_: np.ndarray | None = None
        self.std_: np.ndarray | None = None

    @property
    def is_fitted(self) -> bool:
        return self.mean_ is not None and self.std_ is not None

    def fit(self, data) -> "StandardScaler":
        data = np.asarray(data, dtype=float)
        if data.ndim != 2 or data.shape[0] == 0:
            raise ValueError("Cannot fit StandardScaler on empty data")

        self.mean_ = data.mean(axis=0)
        self.std_ = data.std(axis=0)  # ddof=0: population std
        return self

    def transform(self, data) -> np.ndarray:
        if not self.is_fitted:
            raise ModelNotFittedError("StandardScaler has not been fitted. Call fit() first.")

        data = np.asarray(data, dtype=float)
        if data.ndim != 2 or data.shape[1] != len(self.mean_):
            raise ValueError(
                f"Expected {len(self.mean_)} features but got shape {data.shape}"
            )

        # Constant features map to 0 instead of dividing by zero
        constant = self.std_ == 0
        safe_std = np.where(constant, 1.0, self.std_)
        scaled = (data - self.mean_) / safe_std
        scaled[:, constant] = 0.0
        return scaled

    def fit_transform(self, data) -> np.ndarray:
        return self.fit(data).transform(data)

    def to_dict(self) -> dict[str, list[float]]:
        if not self.is_fitted:
            raise ModelNotFittedError("StandardScaler has not been fitted. Call fit() first.")
        return {"mean": self.mean_.tolist(), "std": self.std_.tolist()}

    @classmethod
    def from_dict(cls, data: dict[str, list[float]]) -> "StandardScaler":
        mean = np.asarray(data["mean"], dtype=float)
        std = np.asarray(data["std"], dtype=float)
        if mean.shape != std.shape or mean.ndim != 1:
            raise ValueError("Scaler mean and std must be vectors of equal length")

        scaler = cls()
        scaler.mean_ = mean
        scaler.std_ = std
        return scaler
