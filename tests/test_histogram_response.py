"""Tests for the binned-distribution layer and the response model."""

import pytest

np = pytest.importorskip("numpy")

from refold.core.errors import InvalidArgumentError
from refold.core.histogram import (
    Histogram,
    as_histogram,
    asimov_clone,
    from_vector,
    to_error_vector,
    to_vector,
)
from refold.core.response import Response


class TestHistogram:
    def test_from_values_keeps_flow_bins_empty(self):
        hist = Histogram.from_values([1.0, 2.0, 3.0], edges=[[0.0, 1.0, 3.0, 4.0]])
        assert hist.contents.shape == (5,)
        assert hist.contents[0] == 0.0 and hist.contents[-1] == 0.0
        assert np.array_equal(to_vector(hist), [1.0, 2.0, 3.0])
        assert to_vector(hist, include_overflow=True).size == 5

    def test_density_divides_by_bin_width(self):
        hist = Histogram.from_values([2.0, 4.0], edges=[[0.0, 1.0, 3.0]])
        assert np.allclose(to_vector(hist, use_density=True), [2.0, 2.0])
        assert np.allclose(to_error_vector(hist, use_density=True), [np.sqrt(2.0), 1.0])

    def test_default_errors_are_sqrt_of_contents(self):
        hist = Histogram.from_values([4.0, 9.0])
        assert np.allclose(to_error_vector(hist), [2.0, 3.0])

    def test_two_dimensional_flat_indexing(self):
        values = np.arange(6, dtype=float).reshape(2, 3)
        hist = Histogram.from_values(values)
        assert hist.dim == 2
        assert hist.shape == (2, 3)
        assert np.array_equal(to_vector(hist), np.arange(6, dtype=float))
        assert hist.nbins(include_overflow=True) == 4 * 5

    def test_from_vector_with_overflow(self):
        hist = from_vector([1.0, 2.0, 3.0, 4.0], None, "h", "title", [[0.0, 1.0, 2.0]], include_overflow=True)
        assert hist.contents[0] == 1.0
        assert hist.contents[-1] == 4.0
        assert hist.integral() == pytest.approx(5.0)
        assert hist.integral(include_overflow=True) == pytest.approx(10.0)

    def test_asimov_clone_sets_poisson_errors(self):
        hist = Histogram.from_values([16.0, 25.0], errors=[1.0, 1.0])
        clone = asimov_clone(hist)
        assert np.allclose(to_error_vector(clone), [4.0, 5.0])
        assert np.allclose(to_error_vector(hist), [1.0, 1.0])

    def test_invalid_inputs(self):
        with pytest.raises(InvalidArgumentError):
            as_histogram(None)
        with pytest.raises(InvalidArgumentError):
            Histogram.from_values([1.0, 2.0], edges=[[0.0, 2.0, 1.0]])
        with pytest.raises(InvalidArgumentError):
            Histogram.from_values([1.0, 2.0, 3.0], edges=[[0.0, 1.0, 2.0]])


class TestResponse:
    def test_from_matrix_round_trips_matrix(self):
        matrix = np.array([[0.8, 0.1], [0.1, 0.7]])
        res = Response.from_matrix(matrix, [100.0, 200.0])
        assert res.nbins_measured == 2
        assert res.nbins_truth == 2
        assert np.allclose(res.matrix(), matrix)
        assert np.allclose(res.vmeasured(), matrix @ [100.0, 200.0])
        assert np.allclose(res.efficiency(), [0.9, 0.8])

    def test_fill_miss_fake(self):
        res = Response.setup([0.0, 1.0, 2.0], [0.0, 1.0, 2.0])
        res.fill([0.5, 1.5, 1.5], [0.5, 1.5, 0.5])
        res.miss(0.5)
        res.fake(1.5)
        assert np.array_equal(res.vtruth(), [3.0, 1.0])
        assert np.array_equal(res.vmeasured(), [1.0, 3.0])
        assert np.array_equal(res.vfakes(), [0.0, 1.0])
        counts = res.matrix(normalized=False)
        assert np.array_equal(counts, [[1.0, 0.0], [1.0, 1.0]])
        assert np.allclose(res.matrix(), [[1.0 / 3.0, 0.0], [1.0 / 3.0, 1.0]])

    def test_fill_with_overflow_bins(self):
        res = Response.setup([0.0, 1.0], [0.0, 1.0], overflow=True)
        assert res.nbins_measured == 3
        res.fill([5.0], [-1.0])
        assert res.matrix(normalized=False)[2, 0] == 1.0

    def test_from_histograms(self):
        migrations = Histogram.from_values(np.array([[8.0, 1.0], [2.0, 9.0]]))
        res = Response.from_histograms([9.0, 11.0], [10.0, 10.0], migrations)
        assert np.allclose(res.matrix(), [[0.8, 0.1], [0.2, 0.9]])
        assert np.allclose(res.sumw2(), [[8.0, 1.0], [2.0, 9.0]])

    def test_toy_fluctuates_counts_and_clear_cache_restores(self):
        res = Response.from_matrix(np.eye(2), [100.0, 100.0])
        nominal = res.matrix().copy()
        res.run_toy(np.random.default_rng(11))
        assert res.is_toy
        assert np.all(res.counts() >= 0.0)
        assert not np.allclose(res.matrix(), nominal)
        res.clear_cache()
        assert not res.is_toy
        assert np.allclose(res.matrix(), nominal)

    def test_fold_checks_length(self):
        res = Response.from_matrix(np.eye(2), [1.0, 1.0])
        assert np.allclose(res.vfolded([2.0, 3.0]), [2.0, 3.0])
        with pytest.raises(InvalidArgumentError):
            res.vfolded([1.0, 2.0, 3.0])

    def test_counts_shape_is_validated(self):
        with pytest.raises(InvalidArgumentError):
            Response([1.0, 2.0], [1.0, 2.0], np.zeros((3, 2)))
