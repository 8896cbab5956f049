"""
Tests for the in-process training pipeline.
"""

from unittest.mock import MagicMock

import numpy as np
import pytest

from src.hmm.features import StandardScaler
from src.hmm.gaussian_hmm import GaussianHMM
from src.hmm.training import (
    ProgressReporter,
    TrainResult,
    build_sequences,
    group_indices,
    predict_and_reassemble,
    train_states,
)


class IndexEchoModel:
    """Decodes every observation to the value of its first feature"""

    def predict(self, sequence):
        return [int(row[0]) for row in sequence]


class TestProgressReporter:
    """Tests for ProgressReporter."""

    def test_never_moves_backwards(self):
        callback = MagicMock()
        reporter = ProgressReporter(callback)

        reporter(30, "training")
        reporter(20, "training")

        assert [c.args for c in callback.call_args_list] == [(30, "training"), (30, "training")]

    def test_callback_errors_are_swallowed(self):
        reporter = ProgressReporter(MagicMock(side_effect=RuntimeError("ui gone")))
        reporter(10, "scaling")
        assert reporter.percent == 10

    def test_without_callback(self):
        reporter = ProgressReporter()
        reporter(50, "training")
        assert reporter.percent == 50


class TestSequences:
    """Tests for grouping rows into sequences."""

    def test_group_indices_first_appearance_order(self):
        assert group_indices(["b", "a", "b", "c", "a"]) == [[0, 2], [1, 4], [3]]

    def test_build_sequences_without_groups(self):
        data = np.arange(6.0).reshape(3, 2)
        sequences = build_sequences(data)
        assert len(sequences) == 1
        np.testing.assert_array_equal(sequences[0], data)

    def test_build_sequences_with_groups(self):
        data = np.arange(10.0).reshape(5, 2)
        sequences = build_sequences(data, ["x", "y", "x", "y", "x"])

        np.testing.assert_array_equal(sequences[0], data[[0, 2, 4]])
        np.testing.assert_array_equal(sequences[1], data[[1, 3]])

    def test_reassembly_restores_row_order(self):
        """Labels decoded per group land back on their original rows."""
        scaled = np.arange(8.0).reshape(8, 1)
        groups = ["a", "b", "a", "c", "b", "a", "c", "b"]

        states = predict_and_reassemble(IndexEchoModel(), scaled, groups)

        assert states == list(range(8))

    def test_reassembly_without_groups(self):
        scaled = np.arange(4.0).reshape(4, 1)
        assert predict_and_reassemble(IndexEchoModel(), scaled) == [0, 1, 2, 3]


class TestTrainStates:
    """Tests for train_states."""

    def test_fixed_states(self, two_clusters, fast_config):
        result = train_states(two_clusters, requested_states=2, config=fast_config)

        assert isinstance(result, TrainResult)
        assert result.n_states == 2
        assert len(result.states) == 40
        assert len(set(result.states[:20])) == 1
        assert len(set(result.states[20:])) == 1
        assert result.states[0] != result.states[-1]
        assert result.iterations >= 1
        assert np.isfinite(result.log_likelihood)

    def test_auto_selects_states(self, two_clusters, fast_config):
        result = train_states(two_clusters, requested_states=0, config=fast_config)
        assert result.n_states == 2
        assert set(result.states) == {0, 1}

    def test_progress_sequence(self, two_clusters, fast_config):
        """Progress starts at scaling, never decreases and ends at 100."""
        updates = []
        train_states(
            two_clusters,
            requested_states=0,
            on_progress=lambda percent, phase: updates.append((percent, phase)),
            config=fast_config,
        )

        percents = [p for p, _ in updates]
        phases = [phase for _, phase in updates]
        assert updates[0] == (10, "scaling")
        assert updates[-1] == (100, "complete")
        assert percents == sorted(percents)
        assert "bic-selection" in phases
        assert (80, "predicting") in updates
        assert all(40 <= p <= 80 for p, phase in updates if phase == "training")

    def test_fixed_states_skip_selection(self, two_clusters, fast_config):
        phases = []
        train_states(
            two_clusters,
            requested_states=3,
            on_progress=lambda percent, phase: phases.append(phase),
            config=fast_config,
        )
        assert "bic-selection" not in phases

    def test_failing_callback_does_not_abort(self, two_clusters, fast_config):
        def explode(percent, phase):
            raise RuntimeError("listener crashed")

        result = train_states(two_clusters, 2, on_progress=explode, config=fast_config)
        assert len(result.states) == 40

    def test_grouped_training(self, two_clusters, fast_config):
        """Interleaved groups are trained separately and labels keep row order."""
        order = np.empty(40, dtype=int)
        order[0::2] = np.arange(20)
        order[1::2] = np.arange(20, 40)
        matrix = two_clusters[order]
        groups = ["low" if i % 2 == 0 else "high" for i in range(40)]

        result = train_states(matrix, 2, group_ids=groups, config=fast_config)

        low_states = set(result.states[0::2])
        high_states = set(result.states[1::2])
        assert len(low_states) == 1
        assert len(high_states) == 1
        assert low_states != high_states

    def test_result_carries_serialized_model(self, two_clusters, fast_config):
        """The fitted model and scaler can be restored from the result."""
        result = train_states(two_clusters, 2, config=fast_config)

        model = GaussianHMM.from_dict(result.model)
        scaler = StandardScaler.from_dict(result.scaler)

        assert model.predict(scaler.transform(two_clusters)) == result.states

    def test_to_dict(self, two_clusters, fast_config):
        data = train_states(two_clusters, 2, config=fast_config).to_dict()
        assert set(data) >= {"states", "n_states", "converged", "iterations", "log_likelihood"}

    def test_empty_matrix(self, fast_config):
        with pytest.raises(ValueError, match="empty"):
            train_states(np.empty((0, 3)), 2, config=fast_config)

    def test_negative_states(self, two_clusters, fast_config):
        with pytest.raises(ValueError, match="requested_states"):
            train_states(two_clusters, -1, config=fast_config)

    def test_group_length_mismatch(self, two_clusters, fast_config):
        with pytest.raises(ValueError, match="group ids"):
            train_states(two_clusters, 2, group_ids=["a"] * 3, config=fast_config)
