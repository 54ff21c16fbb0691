"""Tests for the unfolding engine: lazy cache, error treatments and chi-squared."""

import io

import pytest

np = pytest.importorskip("numpy")

from refold.core.cache import UnfoldStatus
from refold.core.config import UnfoldConfig
from refold.core.errors import (
    AlgorithmUnavailableError,
    ConfigurationError,
    InvalidArgumentError,
)
from refold.core.histogram import Histogram
from refold.core.linalg import InversionStatus, invert_matrix
from refold.core.response import Response
from refold.solvers import REGPARM_UNSET
from refold.unfold import Algorithm, ErrorTreatment, ResponseOwnership, SystematicsTreatment, Unfolder


SMEARING = np.array([
    [0.80, 0.10, 0.00],
    [0.15, 0.80, 0.15],
    [0.00, 0.10, 0.80],
])
TRUTH = np.array([1000.0, 2000.0, 1500.0])


@pytest.fixture
def diag_response():
    return Response.from_matrix(np.eye(3), [10.0, 20.0, 30.0])


@pytest.fixture
def smearing_response():
    return Response.from_matrix(SMEARING, TRUTH)


@pytest.fixture
def quiet():
    return UnfoldConfig(verbose=0, seed=1234)


class TestLazyUnfolding:
    def test_identity_response_recovers_measured(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], Algorithm.NONE, config=quiet)
        assert np.allclose(engine.vunfold(), [10.0, 20.0, 30.0])

    def test_invert_recovers_truth_from_folded_measurement(self, smearing_response, quiet):
        measured = SMEARING @ TRUTH
        engine = Unfolder(smearing_response, measured, Algorithm.INVERT, config=quiet)
        assert np.allclose(engine.vunfold(), TRUTH)

    def test_unfold_runs_strategy_once(self, smearing_response, quiet):
        engine = Unfolder(smearing_response, SMEARING @ TRUTH, Algorithm.BAYES, config=quiet)
        assert engine.cache.status is UnfoldStatus.UNINITIALIZED
        assert engine.unfold()
        first = engine.vunfold()
        assert engine.unfold()
        second = engine.vunfold()
        assert engine.unfold_count == 1
        assert np.array_equal(first, second)
        assert engine.cache.status is UnfoldStatus.UNFOLDED

    def test_setup_invalidates_cache(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        engine.eunfold(ErrorTreatment.COV_TOY)
        engine.eunfold(ErrorTreatment.COVARIANCE)
        engine.wunfold(ErrorTreatment.COVARIANCE)
        cache = engine.cache
        assert cache.have_err_mat and cache.have_cov and cache.have_wgt
        count = engine.unfold_count
        engine.setup(diag_response, [1.0, 2.0, 3.0])
        assert engine.cache.status is UnfoldStatus.UNINITIALIZED
        assert not engine.cache.have_err_mat
        assert not engine.cache.have_cov
        assert not engine.cache.have_wgt
        assert np.allclose(engine.vunfold(), [1.0, 2.0, 3.0])
        assert engine.unfold_count == count + 1

    def test_measured_copy_is_private(self, diag_response, quiet):
        measured = Histogram.from_values([10.0, 20.0, 30.0])
        engine = Unfolder(diag_response, measured, config=quiet)
        measured.contents[1] = 1000.0
        assert np.allclose(engine.vunfold(), [10.0, 20.0, 30.0])

    def test_none_response_is_rejected(self, quiet):
        with pytest.raises(InvalidArgumentError):
            Unfolder(None, [1.0, 2.0], config=quiet)
        engine = Unfolder(config=quiet)
        with pytest.raises(InvalidArgumentError):
            engine.setup(None, [1.0, 2.0])

    def test_measured_binning_must_match(self, diag_response, quiet):
        with pytest.raises(InvalidArgumentError):
            Unfolder(diag_response, [1.0, 2.0], config=quiet)

    def test_ownership(self, diag_response, quiet):
        cloned = Unfolder(diag_response, [1.0, 2.0, 3.0], config=quiet)
        owned = Unfolder(diag_response, [1.0, 2.0, 3.0], ownership=ResponseOwnership.OWNED, config=quiet)
        assert cloned.response is not diag_response
        assert owned.response is diag_response

    def test_copy_is_independent(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        engine.vunfold()
        clone = engine.copy()
        clone.set_measured([1.0, 1.0, 1.0])
        assert np.allclose(clone.vunfold(), [1.0, 1.0, 1.0])
        assert np.allclose(engine.vunfold(), [10.0, 20.0, 30.0])
        assert clone.response is not engine.response


class TestSingularResponse:
    @pytest.fixture
    def engine(self, quiet):
        matrix = np.diag([1.0, 1.0, 0.0])
        response = Response.from_matrix(matrix, [10.0, 20.0, 30.0])
        return Unfolder(response, [10.0, 20.0, 0.0], Algorithm.INVERT, config=quiet)

    def test_inverter_reports_failure(self, engine):
        assert invert_matrix(engine.response.matrix()).status is InversionStatus.FAILED

    def test_failure_is_sticky_and_zero_filled(self, engine):
        assert not engine.unfold()
        assert engine.cache.status is UnfoldStatus.FAILED
        assert not engine.unfold()
        assert engine.unfold_count == 1
        assert np.array_equal(engine.vunfold(), np.zeros(3))
        assert np.array_equal(engine.eunfold_v(ErrorTreatment.COVARIANCE), np.zeros(3))
        assert np.array_equal(engine.hunfold().contents, np.zeros(5))

    def test_errors_and_chi2_report_failure(self, engine):
        assert not engine.unfold_with_errors(ErrorTreatment.COVARIANCE)
        assert engine.chi2([10.0, 20.0, 30.0], ErrorTreatment.COVARIANCE) == -1.0

    def test_reset_clears_failure(self, engine):
        engine.unfold()
        engine.set_algorithm(Algorithm.NONE)
        assert engine.unfold()


class TestErrorTreatments:
    def test_chi2_of_exact_result_is_zero(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        assert engine.chi2([10.0, 20.0, 30.0], ErrorTreatment.ERRORS) == pytest.approx(0.0)
        assert engine.chi2([10.0, 20.0, 30.0], ErrorTreatment.COVARIANCE) == pytest.approx(0.0)

    def test_chi2_against_shifted_reference(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        # errors are sqrt(10), sqrt(20), sqrt(30)
        expected = 10.0 / 10.0 + 0.0 + 30.0 / 30.0
        reference = [10.0 - np.sqrt(10.0), 20.0, 30.0 + np.sqrt(30.0)]
        assert engine.chi2(reference, ErrorTreatment.ERRORS) == pytest.approx(expected)
        assert engine.chi2(reference, ErrorTreatment.COVARIANCE) == pytest.approx(expected)

    def test_chi2_rejects_wrong_length(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        with pytest.raises(InvalidArgumentError):
            engine.chi2([1.0, 2.0])

    def test_error_vectors_are_never_negative(self, smearing_response):
        config = UnfoldConfig(verbose=0, ntoys=20, seed=5)
        engine = Unfolder(smearing_response, SMEARING @ TRUTH, Algorithm.BAYES, config=config)
        for treatment in (
            ErrorTreatment.NO_ERROR,
            ErrorTreatment.ERRORS,
            ErrorTreatment.COVARIANCE,
            ErrorTreatment.COV_TOY,
            ErrorTreatment.ROOFIT,
        ):
            errors = engine.eunfold_v(treatment)
            assert errors.shape == (3,)
            assert np.all(errors >= 0.0), treatment

    def test_no_error_treatment_uses_sqrt_of_result(self, diag_response, quiet):
        engine = Unfolder(diag_response, [4.0, 9.0, 16.0], config=quiet)
        assert np.allclose(engine.eunfold_v(ErrorTreatment.NO_ERROR), [2.0, 3.0, 4.0])
        assert np.allclose(engine.wunfold(ErrorTreatment.NO_ERROR), np.diag([1 / 4.0, 1 / 9.0, 1 / 16.0]))

    def test_covariance_and_weights(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        assert engine.unfold_with_errors(ErrorTreatment.COVARIANCE, want_weights=True)
        assert np.allclose(engine.eunfold(ErrorTreatment.COVARIANCE), np.diag([10.0, 20.0, 30.0]))
        assert np.allclose(engine.wunfold(ErrorTreatment.COVARIANCE), np.diag([0.1, 0.05, 1 / 30.0]))

    def test_treatment_change_invalidates_only_variances(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        assert engine.unfold_with_errors(ErrorTreatment.ERRORS)
        assert engine.cache.have_errors
        assert engine.unfold_with_errors(ErrorTreatment.COVARIANCE)
        assert not engine.cache.have_errors
        assert engine.cache.have_cov
        assert engine.cache.unfolded
        assert engine.unfold_count == 1

    def test_default_treatment_follows_configuration(self, diag_response):
        config = UnfoldConfig(verbose=0, error_treatment="errors")
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=config)
        engine.eunfold_v()
        assert engine.active_treatment is ErrorTreatment.ERRORS
        assert engine.resolve_treatment("default") is ErrorTreatment.ERRORS

    def test_unrecognised_treatment(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        with pytest.raises(ConfigurationError):
            engine.eunfold_v("best-guess")

    def test_measured_covariance_drives_errors(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        cov = np.array([[4.0, 1.0, 0.0], [1.0, 9.0, 0.0], [0.0, 0.0, 16.0]])
        engine.set_measured_cov(cov)
        assert engine.has_measured_cov
        assert np.allclose(engine.emeasured(), [2.0, 3.0, 4.0])
        assert np.allclose(engine.eunfold(ErrorTreatment.COVARIANCE), cov)
        with pytest.raises(InvalidArgumentError):
            engine.set_measured_cov(np.eye(2))

    def test_hunfold_uses_truth_binning(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        hist = engine.hunfold(ErrorTreatment.ERRORS)
        assert hist.shape == (3,)
        assert np.allclose(hist.contents[1:-1], [10.0, 20.0, 30.0])
        assert np.allclose(hist.bin_errors[1:-1], np.sqrt([10.0, 20.0, 30.0]))


class TestConfiguration:
    def test_regularization_settings(self, smearing_response, quiet):
        engine = Unfolder(smearing_response, SMEARING @ TRUTH, Algorithm.BAYES, config=quiet)
        assert engine.reg_parm == 4.0
        assert (engine.min_parm, engine.max_parm, engine.step_size_parm, engine.default_parm) == (1, 15, 1, 4)
        engine.vunfold()
        engine.reg_parm = 2
        assert engine.reg_parm == 2.0
        assert engine.cache.status is UnfoldStatus.UNINITIALIZED
        engine.vunfold()
        assert engine.unfold_count == 2

    def test_base_strategy_has_no_regularization(self, diag_response, quiet):
        engine = Unfolder(diag_response, [1.0, 2.0, 3.0], config=quiet)
        assert engine.reg_parm == REGPARM_UNSET
        assert (engine.min_parm, engine.max_parm, engine.step_size_parm, engine.default_parm) == (0, 0, 0, 0)

    def test_settings_refresh_on_algorithm_change(self, smearing_response, quiet):
        engine = Unfolder(smearing_response, SMEARING @ TRUTH, config=quiet)
        engine.set_algorithm(Algorithm.SVD)
        assert engine.algorithm is Algorithm.SVD
        assert engine.max_parm == 3
        assert engine.default_parm == 1

    def test_regparm_from_constructor_and_new(self, smearing_response, quiet):
        engine = Unfolder.new("bayes", smearing_response, SMEARING @ TRUTH, regparm=7, config=quiet)
        assert engine.algorithm is Algorithm.BAYES
        assert engine.reg_parm == 7.0

    def test_unavailable_algorithms(self, diag_response, quiet):
        with pytest.raises(AlgorithmUnavailableError):
            Unfolder(diag_response, [1.0, 2.0, 3.0], Algorithm.DAGOSTINI, config=quiet)
        with pytest.raises(AlgorithmUnavailableError):
            Unfolder(diag_response, [1.0, 2.0, 3.0], Algorithm.IDS, config=quiet)

    def test_include_systematics_clears_cache(self, diag_response, quiet):
        engine = Unfolder(diag_response, [1.0, 2.0, 3.0], config=quiet)
        engine.vunfold()
        engine.include_systematics(SystematicsTreatment.ALL)
        assert engine.systematics is SystematicsTreatment.ALL
        assert engine.cache.status is UnfoldStatus.UNINITIALIZED

    def test_force_recalculation_restores_nominal_response(self, diag_response, quiet):
        engine = Unfolder(diag_response, [1.0, 2.0, 3.0], config=quiet)
        engine.response.run_toy(np.random.default_rng(0))
        engine.force_recalculation()
        assert not engine.response.is_toy

    def test_names_default_from_response(self, quiet):
        response = Response.from_matrix(np.eye(2), [1.0, 2.0], name="resp", title="toy response")
        engine = Unfolder(response, [1.0, 2.0], config=quiet)
        assert engine.name == "resp"
        assert engine.title == "Unfold toy response"


class TestReporting:
    def test_summary_and_describe(self, diag_response, quiet):
        engine = Unfolder(diag_response, [1.0, 2.0, 3.0], config=quiet)
        assert "3 bins measured" in engine.summary()
        info = engine.describe()
        assert info["algorithm"] == "NONE"
        assert info["nt"] == 3

    def test_print_table(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        out = io.StringIO()
        engine.print_table(treatment=ErrorTreatment.COVARIANCE, file=out)
        text = out.getvalue()
        assert "Unfolded" in text
        assert "Chi^2/NDF=0/3" in text

    def test_table_formats(self, diag_response, quiet):
        engine = Unfolder(diag_response, [10.0, 20.0, 30.0], config=quiet)
        table = engine.table(treatment=ErrorTreatment.ERRORS)
        assert table.chi2 == -999.0
        assert table.to_text("csv").splitlines()[0].startswith("bin,train_truth")
        assert table.to_text("markdown").count("\n") == 4
