"""
Interface the discovery service needs from a flow store.

The store is injected into DiscoveryService; FlowDatabase is the PostgreSQL
implementation, tests use in-memory fakes.
"""

from collections.abc import Mapping
from typing import Protocol, runtime_checkable

import pandas as pd


@runtime_checkable
class FlowStore(Protocol):
    def ensure_hmm_state_column(self) -> None:
        """Prepare the store to hold a state label per flow; idempotent"""
        ...

    def extract_features(self, sample_size: int | None = None) -> pd.DataFrame:
        """Raw flow rows for training

        Columns: ``row_id``, ``group_id`` and the raw fields listed in
        ``src.hmm.features.RAW_COLUMNS``.
        """
        ...

    def write_state_assignments(self, assignments: Mapping) -> None:
        """Persist ``row_id -> state`` labels"""
        ...

    def get_state_signatures(self) -> pd.DataFrame:
        """One aggregate row per state over the current labels

        Columns match the keys read by ``StateProfile.from_signature``.
        """
        ...
