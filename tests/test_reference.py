import numpy as np
import pytest
from scipy import stats

from varsel import InvalidConfiguration, ReferencePosterior
from conftest import conjugate_draws, make_reference


def test_full_projection_reproduces_reference(signal_ref):
    full = tuple(range(signal_ref.n_predictors))
    expected = stats.norm.logpdf(signal_ref.y[None, :], signal_ref.mu,
                                 signal_ref.sigma[:, None])
    assert np.allclose(signal_ref.pointwise_log_lik(full), expected)
    # column order does not matter
    assert np.allclose(signal_ref.pointwise_log_lik(full[::-1]), expected)


def test_full_projection_by_least_squares_matches_reference(signal_ref):
    w, sigma_perp = signal_ref._project_draws(tuple(range(signal_ref.n_predictors)))
    assert np.allclose(w[:, 0], signal_ref.alpha)
    assert np.allclose(w[:, 1:], signal_ref.beta)
    assert np.allclose(sigma_perp, signal_ref.sigma)


def test_projected_sigma_absorbs_dropped_signal(signal_ref):
    _, sigma_null = signal_ref._project_draws(())
    _, sigma_two = signal_ref._project_draws((0, 1))
    assert np.all(sigma_null >= signal_ref.sigma)
    assert np.all(sigma_null > sigma_two)


def test_log_lik_matches_pointwise(signal_ref):
    pw = signal_ref.pointwise_log_lik((2, 0))
    assert np.allclose(signal_ref.log_lik(5, (2, 0)), pw[:, 5])
    assert signal_ref.log_lik(5, (2, 0)).shape == (signal_ref.n_draws,)


def test_importance_weights_are_negative_log_lik(signal_ref):
    full = tuple(range(signal_ref.n_predictors))
    assert np.allclose(signal_ref.importance_weights(3),
                       -signal_ref.pointwise_log_lik(full)[:, 3])
    with pytest.raises(IndexError):
        signal_ref.importance_weights(signal_ref.n_obs)


def test_search_criterion_prefers_true_predictor(strong_ref):
    scores = [strong_ref.search_criterion((j,)) for j in range(strong_ref.n_predictors)]
    assert int(np.argmax(scores)) == 0
    full = tuple(range(strong_ref.n_predictors))
    assert strong_ref.search_criterion(full) == pytest.approx(0.0, abs=1e-8)
    assert strong_ref.search_criterion(()) < strong_ref.search_criterion((0,))


def test_project_shape_and_reproducible(signal_ref):
    a = signal_ref.project((1, 0), ns=50, rng_seed=3)
    b = signal_ref.project((1, 0), ns=50, rng_seed=3)
    assert a.shape == (50, 4)
    assert np.array_equal(a, b)
    assert np.all(a[:, -1] > 0)
    # coefficients come back in submodel order
    assert np.mean(a[:, 1]) == pytest.approx(-1.0, abs=0.2)
    assert np.mean(a[:, 2]) == pytest.approx(1.5, abs=0.2)


def test_project_caps_ns_with_warning(signal_data):
    ref = make_reference(*signal_data, S=100)
    with pytest.warns(UserWarning, match="capping"):
        out = ref.project((0,), ns=500)
    assert out.shape == (100, 3)


@pytest.mark.parametrize("ns", [0, -3, 2.5])
def test_project_rejects_bad_ns(signal_ref, ns):
    with pytest.raises(InvalidConfiguration):
        signal_ref.project((0,), ns=ns)


def test_rejects_repeated_or_out_of_range_predictors(signal_ref):
    with pytest.raises(InvalidConfiguration):
        signal_ref.pointwise_log_lik((0, 0))
    with pytest.raises(InvalidConfiguration):
        signal_ref.pointwise_log_lik((signal_ref.n_predictors,))


def test_constructor_validation(signal_data):
    X, y = signal_data
    alpha, beta, sigma = conjugate_draws(X, y, S=50)
    with pytest.raises(InvalidConfiguration):
        ReferencePosterior(X[:, :0], y, alpha, beta[:, :0], sigma)
    with pytest.raises(InvalidConfiguration):
        ReferencePosterior(X, y[:-1], alpha, beta, sigma)
    with pytest.raises(InvalidConfiguration):
        ReferencePosterior(X, y, alpha, beta[:, :-1], sigma)
    bad_y = y.copy()
    bad_y[4] = np.nan
    with pytest.raises(InvalidConfiguration, match="non-finite"):
        ReferencePosterior(X, bad_y, alpha, beta, sigma)
    with pytest.raises(InvalidConfiguration):
        ReferencePosterior(X, y, alpha, beta, -sigma)


class _NoMatrix(ReferencePosterior):
    def pointwise_log_lik(self, submodel):
        raise AssertionError("single observation should not need the full matrix")


def test_log_lik_computes_one_observation(signal_data):
    ref = make_reference(*signal_data, S=300)
    single = make_reference(*signal_data, S=300, cls=_NoMatrix)
    for sub in [(), (2, 0), tuple(range(ref.n_predictors))]:
        pw = ref.pointwise_log_lik(sub)
        for i in (0, 57, ref.n_obs - 1):
            assert np.allclose(single.log_lik(i, sub), pw[:, i])
