"""Tests for the unfolding strategies and their registry."""

import pytest

np = pytest.importorskip("numpy")

import refold.solvers as solvers
from refold.core.config import UnfoldConfig
from refold.core.errors import AlgorithmUnavailableError
from refold.core.response import Response
from refold.solvers import (
    BayesStrategy,
    UnfoldStrategy,
    bayes_iterate,
    create_strategy,
    register_strategy,
    svd_unfolding_matrix,
)
from refold.unfold import Algorithm, ErrorTreatment, Unfolder


SMEARING = np.array([
    [0.80, 0.10, 0.00],
    [0.15, 0.80, 0.15],
    [0.00, 0.10, 0.80],
])
TRUTH = np.array([1000.0, 2000.0, 1500.0])
QUIET = UnfoldConfig(verbose=0)


@pytest.fixture
def smearing_response():
    return Response.from_matrix(SMEARING, TRUTH)


def _is_psd(cov):
    eig = np.linalg.eigvalsh(cov)
    return np.all(eig >= -1e-9 * np.max(np.abs(eig)))


class TestBayes:
    def test_identity_response_returns_measured(self):
        measured = np.array([5.0, 7.0, 11.0])
        rec, jac = bayes_iterate(np.eye(3), measured, np.ones(3), 4, with_jacobian=True)
        assert np.allclose(rec, measured)
        assert np.allclose(jac, np.eye(3))

    def test_prior_equal_to_truth_is_a_fixed_point(self):
        rec, _ = bayes_iterate(SMEARING, SMEARING @ TRUTH, TRUTH, 10)
        assert np.allclose(rec, TRUTH)

    def test_empty_prior_falls_back_to_flat(self):
        rec, _ = bayes_iterate(np.eye(2), np.array([3.0, 4.0]), np.zeros(2), 1)
        assert np.allclose(rec, [3.0, 4.0])

    def test_engine_covariance_is_symmetric_and_positive(self, smearing_response):
        engine = Unfolder(smearing_response, SMEARING @ TRUTH, Algorithm.BAYES, config=QUIET)
        assert np.allclose(engine.vunfold(), TRUTH)
        cov = engine.eunfold(ErrorTreatment.COVARIANCE)
        assert np.allclose(cov, cov.T)
        assert _is_psd(cov)
        assert np.all(np.diag(cov) > 0.0)

    def test_iterations_are_regularization_parameter(self):
        strategy = BayesStrategy()
        assert strategy.reg_parm == 4.0
        strategy.reg_parm = 0
        assert strategy.reg_parm == 1.0


class TestSvd:
    def test_result_and_covariance(self, smearing_response):
        engine = Unfolder(smearing_response, SMEARING @ TRUTH, Algorithm.SVD, config=QUIET)
        rec = engine.vunfold()
        assert rec.shape == (3,)
        assert np.all(np.isfinite(rec))
        cov = engine.eunfold(ErrorTreatment.COVARIANCE)
        assert np.allclose(cov, cov.T)
        assert _is_psd(cov)

    def test_weaker_regularization_moves_towards_truth(self):
        errors = np.sqrt(SMEARING @ TRUTH)
        measured = SMEARING @ TRUTH
        distances = [
            np.linalg.norm(svd_unfolding_matrix(SMEARING, errors, k) @ measured - TRUTH) for k in (1, 2, 3)
        ]
        assert distances[0] > distances[1] > distances[2]

    def test_empty_response_fails(self):
        assert svd_unfolding_matrix(np.zeros((2, 2)), np.ones(2), 1) is None


class TestBinByBin:
    def test_correction_factors(self, smearing_response):
        engine = Unfolder(smearing_response, SMEARING @ TRUTH, Algorithm.BIN_BY_BIN, config=QUIET)
        assert np.allclose(engine.vunfold(), TRUTH)
        factors = TRUTH / (SMEARING @ TRUTH)
        expected = factors ** 2 * (SMEARING @ TRUTH)
        assert np.allclose(engine.eunfold_v(ErrorTreatment.ERRORS) ** 2, expected)

    def test_unequal_binning_fails(self):
        response = Response.from_matrix(SMEARING[:2], TRUTH)
        engine = Unfolder(response, [100.0, 200.0], Algorithm.BIN_BY_BIN, config=QUIET)
        assert not engine.unfold()
        assert engine.cache.failed
        assert np.array_equal(engine.vunfold(), np.zeros(3))


class TestInvert:
    def test_rectangular_response_uses_pseudo_inverse(self):
        matrix = np.array([[0.9, 0.0], [0.1, 0.5], [0.0, 0.5]])
        truth = np.array([100.0, 200.0])
        response = Response.from_matrix(matrix, truth)
        engine = Unfolder(response, matrix @ truth, Algorithm.INVERT, config=QUIET)
        assert np.allclose(engine.vunfold(), truth)


class TestRegistry:
    def test_dummy_strategy_by_default(self):
        assert type(create_strategy("none")) is UnfoldStrategy

    def test_closed_form_dagostini_is_unavailable(self):
        with pytest.raises(AlgorithmUnavailableError):
            create_strategy(Algorithm.DAGOSTINI)
        with pytest.raises(AlgorithmUnavailableError):
            register_strategy(Algorithm.DAGOSTINI, UnfoldStrategy)

    def test_unregistered_algorithm_is_unavailable(self):
        with pytest.raises(AlgorithmUnavailableError):
            create_strategy(Algorithm.GP)

    def test_register_strategy(self, monkeypatch, smearing_response):
        monkeypatch.setattr(solvers, "_REGISTRY", dict(solvers._REGISTRY))

        class Doubling(UnfoldStrategy):
            algorithm = Algorithm.IDS

            def unfold(self, engine):
                return 2.0 * engine.vmeasured()

        register_strategy("ids", Doubling)
        engine = Unfolder(smearing_response, [1.0, 2.0, 3.0], Algorithm.IDS, config=QUIET)
        assert np.allclose(engine.vunfold(), [2.0, 4.0, 6.0])


class TestPyUnfold:
    def test_external_unfolding(self, smearing_response):
        pytest.importorskip("pyunfold")
        engine = Unfolder(smearing_response, SMEARING @ TRUTH, Algorithm.TUNFOLD, config=QUIET)
        rec = engine.vunfold()
        assert rec.shape == (3,)
        assert np.allclose(rec, TRUTH, rtol=0.1)
        assert np.all(engine.eunfold_v(ErrorTreatment.COVARIANCE) > 0.0)
