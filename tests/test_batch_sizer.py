"""
Tests for adaptive batch sizing
"""
import pytest

from batch_engine.core.batch_sizer import choose_batch_size
from batch_engine.core.errors import ConfigurationError


class TestChooseBatchSize:
    """Tests for choose_batch_size"""

    def test_small_backlog_taken_whole(self):
        assert choose_batch_size(3, 5, 100, 20) == 3

    def test_large_backlog_uses_optimal(self):
        assert choose_batch_size(200, 5, 100, 20) == 20

    def test_between_bounds_uses_optimal(self):
        assert choose_batch_size(50, 5, 100, 20) == 20

    def test_between_bounds_below_optimal(self):
        """A backlog smaller than the optimal size is taken whole"""
        assert choose_batch_size(12, 5, 100, 20) == 12

    def test_boundaries_are_inclusive(self):
        assert choose_batch_size(5, 5, 100, 20) == 5
        assert choose_batch_size(100, 5, 100, 20) == 20

    def test_empty_backlog(self):
        assert choose_batch_size(0, 5, 100, 20) == 0

    def test_is_pure(self):
        """Repeated calls give the same answer"""
        results = {choose_batch_size(50, 5, 100, 20) for _ in range(10)}
        assert results == {20}

    def test_rejects_negative_values(self):
        with pytest.raises(ConfigurationError):
            choose_batch_size(-1, 5, 100, 20)

    def test_rejects_inverted_bounds(self):
        with pytest.raises(ConfigurationError):
            choose_batch_size(50, 100, 5, 20)
