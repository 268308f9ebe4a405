import numpy as np
import pytest

from varsel import ReferencePosterior


def conjugate_draws(X, y, S=2000, rng_seed=0):
    """Draws from the flat-prior posterior of a Gaussian linear model."""
    rng = np.random.default_rng(rng_seed)
    N = X.shape[0]
    Z = np.column_stack([np.ones(N), X])
    ZtZ_inv = np.linalg.inv(Z.T @ Z)
    coef_hat = ZtZ_inv @ Z.T @ y
    resid = y - Z @ coef_hat
    dof = N - Z.shape[1]
    s2 = resid @ resid / dof
    sigma2 = dof * s2 / rng.chisquare(dof, size=S)
    L = np.linalg.cholesky(ZtZ_inv)
    coef = coef_hat + np.sqrt(sigma2)[:, None] * (rng.standard_normal((S, Z.shape[1])) @ L.T)
    return coef[:, 0], coef[:, 1:], np.sqrt(sigma2)


def make_reference(X, y, S=2000, rng_seed=0, cls=ReferencePosterior):
    alpha, beta, sigma = conjugate_draws(X, y, S=S, rng_seed=rng_seed)
    return cls(X, y, alpha, beta, sigma)


@pytest.fixture
def null_data():
    rng = np.random.default_rng(85)
    X = rng.standard_normal((85, 11))
    y = rng.standard_normal(85)
    return X, y


@pytest.fixture
def strong_data():
    rng = np.random.default_rng(11)
    X = rng.standard_normal((85, 11))
    y = 3.0 * X[:, 0] + 0.5 * rng.standard_normal(85)
    return X, y


@pytest.fixture
def signal_data():
    rng = np.random.default_rng(3)
    X = rng.standard_normal((120, 6))
    y = 1.5 * X[:, 0] - 1.0 * X[:, 1] + 0.75 * X[:, 2] + 0.5 * rng.standard_normal(120)
    return X, y


@pytest.fixture
def null_ref(null_data):
    return make_reference(*null_data)


@pytest.fixture
def strong_ref(strong_data):
    return make_reference(*strong_data)


@pytest.fixture
def signal_ref(signal_data):
    return make_reference(*signal_data)
