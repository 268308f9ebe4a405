import os
import time
import warnings
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass

import numpy as np
import pandas as pd
import arviz as az
from scipy import stats
from scipy.special import logsumexp

__all__ = [
    "InvalidConfiguration", "DegenerateModel", "InsufficientData",
    "NumericOverflow", "DegenerateModelWarning",
    "ReferencePosterior", "PathEvaluation",
    "psis_log_weights", "reference_loo",
    "build_path", "evaluate_path", "suggest_size", "project",
    "cv_varsel", "varsel_summary",
]

KHAT_THRESHOLD = 0.7


class InvalidConfiguration(ValueError):
    """Bad selection settings or reference draws."""


class DegenerateModel(RuntimeError):
    """Importance sampling failed for one or more left-out observations.

    Attributes
    ----------
    observations : tuple of int
        Indices of the observations whose LOO term could not be trusted.
    khat : ndarray
        Pareto shape estimates for those observations (``inf`` where no
        finite importance ratios were available).
    """
    def __init__(self, message, observations=(), khat=None):
        super().__init__(message)
        self.observations = tuple(int(i) for i in observations)
        self.khat = np.asarray(khat if khat is not None else [], dtype=float)


class InsufficientData(DegenerateModel):
    """Too many unreliable observations to trust the aggregate ELPD."""


class NumericOverflow(ArithmeticError):
    """Pointwise log predictive density came out non-finite."""
    def __init__(self, message, submodel_size=None, observations=()):
        super().__init__(message)
        self.submodel_size = submodel_size
        self.observations = tuple(int(i) for i in observations)


class DegenerateModelWarning(UserWarning):
    """Unreliable observations were dropped from the LOO aggregate."""


def _as_submodel(submodel, p):
    submodel = tuple(int(j) for j in submodel)
    if len(set(submodel)) != len(submodel):
        raise InvalidConfiguration(f"submodel {submodel} has repeated predictors")
    for j in submodel:
        if j < 0 or j >= p:
            raise InvalidConfiguration(f"predictor index {j} outside 0..{p - 1}")
    return submodel


class ReferencePosterior:
    """Gaussian linear reference model held as posterior draws.

    Submodels are obtained by projecting each reference draw onto the
    span of an intercept and the chosen columns of ``X``: the projected
    coefficients are the least-squares fit to the draw's linear predictor,
    and the projected residual variance absorbs the misfit, which is the
    KL-minimizing Gaussian for that draw.

    Parameters
    ----------
    X : ndarray (N, p)
        Predictor matrix the reference model was fitted to.
    y : ndarray (N,)
        Response.
    alpha : ndarray (S,)
        Intercept draws.
    beta : ndarray (S, p)
        Coefficient draws.
    sigma : ndarray (S,)
        Residual standard deviation draws.
    """
    def __init__(self, X, y, alpha, beta, sigma):
        X = np.asarray(X, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        alpha = np.asarray(alpha, dtype=np.float64).reshape(-1)
        beta = np.asarray(beta, dtype=np.float64)
        sigma = np.asarray(sigma, dtype=np.float64).reshape(-1)
        if X.ndim != 2 or X.shape[1] < 1:
            raise InvalidConfiguration("X must be 2D with at least one predictor (p >= 1).")
        N, p = X.shape
        if y.shape != (N,):
            raise InvalidConfiguration(f"y has shape {y.shape}, expected ({N},)")
        S = alpha.shape[0]
        if S < 1 or beta.shape != (S, p) or sigma.shape != (S,):
            raise InvalidConfiguration(
                f"draw shapes disagree: alpha {alpha.shape}, beta {beta.shape}, "
                f"sigma {sigma.shape} for p={p}")
        for name, arr in [("X", X), ("y", y), ("alpha", alpha),
                          ("beta", beta), ("sigma", sigma)]:
            if not np.all(np.isfinite(arr)):
                n_bad = int((~np.isfinite(arr)).sum())
                raise InvalidConfiguration(f"{name} contains {n_bad} non-finite values")
        if np.any(sigma <= 0):
            raise InvalidConfiguration("sigma draws must be positive")
        self.X = X
        self.y = y
        self.alpha = alpha
        self.beta = beta
        self.sigma = sigma
        self.mu = alpha[:, None] + beta @ X.T          # (S, N)
        self._loglik = stats.norm.logpdf(y[None, :], self.mu, sigma[:, None])

    @property
    def n_obs(self):
        return self.X.shape[0]

    @property
    def n_predictors(self):
        return self.X.shape[1]

    @property
    def n_draws(self):
        return self.alpha.shape[0]

    def _design(self, submodel):
        cols = [np.ones((self.n_obs, 1))]
        if submodel:
            cols.append(self.X[:, list(submodel)])
        return np.hstack(cols)

    def _project_draws(self, submodel, draws=None):
        """Project reference draws onto ``submodel``.

        Returns
        -------
        w : ndarray (S', k+1)
            Intercept and coefficients for each draw.
        sigma_perp : ndarray (S',)
            Projected residual standard deviation.
        """
        submodel = _as_submodel(submodel, self.n_predictors)
        mu = self.mu if draws is None else self.mu[draws]
        sigma = self.sigma if draws is None else self.sigma[draws]
        Z = self._design(submodel)
        w, _, _, _ = np.linalg.lstsq(Z, mu.T, rcond=None)   # (k+1, S')
        resid = mu.T - Z @ w
        sigma_perp = np.sqrt(sigma ** 2 + np.mean(resid ** 2, axis=0))
        return w.T, sigma_perp

    def pointwise_log_lik(self, submodel):
        """Log-likelihood (S, N) of every observation under projected draws."""
        submodel = _as_submodel(submodel, self.n_predictors)
        if sorted(submodel) == list(range(self.n_predictors)):
            # projecting onto every predictor reproduces the reference
            return self._loglik.copy()
        w, sigma_perp = self._project_draws(submodel)
        mu_sub = w @ self._design(submodel).T
        return stats.norm.logpdf(self.y[None, :], mu_sub, sigma_perp[:, None])

    def log_lik(self, i, submodel):
        """Log-likelihood (S,) of observation ``i`` under projected draws."""
        if not 0 <= i < self.n_obs:
            raise IndexError(f"observation {i} outside 0..{self.n_obs - 1}")
        submodel = _as_submodel(submodel, self.n_predictors)
        if sorted(submodel) == list(range(self.n_predictors)):
            return self._loglik[:, i].copy()
        w, sigma_perp = self._project_draws(submodel)
        mu_i = w @ self._design(submodel)[i]
        return stats.norm.logpdf(self.y[i], mu_i, sigma_perp)

    def importance_weights(self, i):
        """Raw log importance ratios (S,) for leaving out observation ``i``.

        The ratios are proportional to ``1 / p(y_i | theta_s)`` under the
        reference model, returned on the log scale.
        """
        if not 0 <= i < self.n_obs:
            raise IndexError(f"observation {i} outside 0..{self.n_obs - 1}")
        return -self._loglik[:, i]

    def search_criterion(self, submodel):
        """Negative KL divergence from the posterior-mean reference predictive.

        The reference is summarised by its posterior mean linear predictor
        and mean residual variance, projected onto ``submodel`` once.  Larger
        is better.
        """
        submodel = _as_submodel(submodel, self.n_predictors)
        mu_bar = self.mu.mean(axis=0)
        sigma2_bar = np.mean(self.sigma ** 2)
        Z = self._design(submodel)
        w, _, _, _ = np.linalg.lstsq(Z, mu_bar, rcond=None)
        mse = np.mean((mu_bar - Z @ w) ** 2)
        kl = 0.5 * self.n_obs * np.log1p(mse / sigma2_bar)
        return -float(kl)

    def project(self, submodel, ns, rng_seed=0):
        """Projected draws for ``submodel``.

        Parameters
        ----------
        submodel : sequence of int
            Predictor indices, in the order their coefficients are reported.
        ns : int
            Number of reference draws to project.  Capped (with a warning)
            at the number of available draws.
        rng_seed : int
            Seed for choosing which reference draws are projected.

        Returns
        -------
        ndarray (ns, k+2)
            Columns: intercept, one coefficient per predictor in
            ``submodel``, sigma.
        """
        if int(ns) != ns or ns < 1:
            raise InvalidConfiguration(f"ns must be a positive integer, got {ns!r}")
        ns = int(ns)
        if ns > self.n_draws:
            warnings.warn(f"ns={ns} > S={self.n_draws}; capping at S={self.n_draws}")
            ns = self.n_draws
        rng = np.random.RandomState(rng_seed)
        draws = np.sort(rng.choice(self.n_draws, size=ns, replace=False))
        w, sigma_perp = self._project_draws(submodel, draws=draws)
        return np.column_stack([w, sigma_perp])


def psis_log_weights(log_ratios, reff=1.0):
    """Pareto-smoothed, normalized LOO log weights.

    Observations whose raw log ratios are not all finite cannot be
    smoothed; they get ``nan`` weights and a Pareto shape of ``inf``.

    Parameters
    ----------
    log_ratios : ndarray (N, S)
        Raw log importance ratios, one row per left-out observation.
    reff : float
        Relative MCMC efficiency used to size the Pareto tail.

    Returns
    -------
    lw : ndarray (N, S)
        Smoothed log weights, each row normalized to sum to one.
    khat : ndarray (N,)
        Estimated generalized Pareto shape per observation.
    """
    log_ratios = np.asarray(log_ratios, dtype=np.float64)
    N = log_ratios.shape[0]
    ok = np.all(np.isfinite(log_ratios), axis=1)
    lw = np.full_like(log_ratios, np.nan)
    khat = np.full(N, np.inf)
    if ok.any():
        lw_ok, khat_ok = az.psislw(log_ratios[ok].copy(), reff=reff)
        lw[ok] = np.asarray(lw_ok)
        khat[ok] = np.asarray(khat_ok)
    return lw, khat


def _stack_log_ratios(ref):
    return np.stack([np.asarray(ref.importance_weights(i), dtype=np.float64)
                     for i in range(ref.n_obs)])


def reference_loo(ref, reff=1.0):
    """PSIS-LOO estimate for the reference model itself.

    Parameters
    ----------
    ref : ReferencePosterior
    reff : float
        Relative MCMC efficiency.

    Returns
    -------
    dict
        Keys ``elpd_loo``, ``se``, ``p_loo``, ``pointwise``, ``khat``,
        ``n_bad_khat``.  Observations without finite importance ratios
        have ``nan`` pointwise values and are left out of the totals.
    """
    lw, khat = psis_log_weights(_stack_log_ratios(ref), reff=reff)
    full = tuple(range(ref.n_predictors))
    loglik = np.asarray(ref.pointwise_log_lik(full))          # (S, N)
    ok = np.isfinite(khat)
    pointwise = np.full(ref.n_obs, np.nan)
    pointwise[ok] = logsumexp(lw[ok] + loglik[:, ok].T, axis=1)
    lppd = logsumexp(loglik[:, ok], axis=0) - np.log(loglik.shape[0])
    n = int(ok.sum())
    elpd = float(np.sum(pointwise[ok]))
    se = float(np.sqrt(n * np.var(pointwise[ok], ddof=1))) if n > 1 else np.nan
    return {"elpd_loo": elpd, "se": se,
            "p_loo": float(np.sum(lppd) - elpd),
            "pointwise": pointwise, "khat": khat,
            "n_bad_khat": int(np.sum(khat > KHAT_THRESHOLD))}


def _n_workers(n_tasks, max_workers):
    n_workers = min(n_tasks, os.cpu_count() or 1)
    if max_workers is not None:
        n_workers = min(n_workers, max_workers)
    return max(1, n_workers)


def _deadline(timeout):
    return None if timeout is None else time.monotonic() + timeout


def _check_deadline(deadline, what):
    if deadline is not None and time.monotonic() > deadline:
        raise TimeoutError(f"wall-clock budget exhausted during {what}")


def _parallel_map(func, tasks, max_workers=None, deadline=None, what="selection"):
    """Map ``func`` over ``tasks`` in worker threads, preserving order.

    ``deadline`` is a ``time.monotonic()`` value; passing it raises
    ``TimeoutError`` without waiting for tasks still running.
    """
    tasks = list(tasks)
    n_workers = _n_workers(len(tasks), max_workers)
    if n_workers == 1:
        results = []
        for t in tasks:
            _check_deadline(deadline, what)
            results.append(func(t))
        _check_deadline(deadline, what)
        return results

    pool = ThreadPoolExecutor(max_workers=n_workers)
    try:
        futures = [pool.submit(func, t) for t in tasks]
        results = []
        for f in futures:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                results.append(f.result(timeout=remaining))
            except FuturesTimeoutError:
                raise TimeoutError(f"wall-clock budget exhausted during {what}") from None
    except BaseException:
        pool.shutdown(wait=False, cancel_futures=True)
        raise
    pool.shutdown(wait=True)
    return results


def build_path(ref, max_workers=None, timeout=None):
    """Forward search for the order in which predictors enter.

    At each step every remaining predictor is scored by
    ``ref.search_criterion(path + [j])`` and the best is appended; ties go
    to the lowest index.  A single remaining candidate is appended without
    being scored.

    Parameters
    ----------
    ref : ReferencePosterior
        Reference model (anything with ``n_predictors`` and
        ``search_criterion``).
    max_workers : int or None
        Maximum threads used to score candidates within a step.
    timeout : float or None
        Wall-clock budget in seconds for the whole search.

    Returns
    -------
    tuple of int
        Permutation of ``range(p)``.
    """
    p = ref.n_predictors
    if p < 1:
        raise InvalidConfiguration(f"need at least one candidate predictor, got p={p}")
    deadline = _deadline(timeout)
    path = []
    remaining = list(range(p))
    for k in range(p):
        if len(remaining) == 1:
            best_j = remaining[0]
            print(f"  step {k+1}: selected X[{best_j}] (last candidate)")
        else:
            scores = _parallel_map(
                lambda j: ref.search_criterion(tuple(path) + (j,)),
                remaining, max_workers=max_workers, deadline=deadline,
                what=f"forward search step {k+1}")
            best_j = None
            best_score = -np.inf
            for j, score in zip(remaining, scores):
                if score > best_score:
                    best_score = score
                    best_j = j
            if best_j is None:
                raise NumericOverflow(
                    f"search criterion non-finite for every candidate at step {k+1}",
                    submodel_size=k + 1, observations=())
            print(f"  step {k+1}: selected X[{best_j}], criterion={best_score:.6f}")
        path.append(best_j)
        remaining.remove(best_j)
    return tuple(path)


@dataclass(frozen=True)
class PathEvaluation:
    """LOO performance of every prefix of a selection path.

    ``elpd[k]`` and ``se[k]`` refer to the submodel built from
    ``path[:k]``; ``pointwise`` has one row per size and ``nan`` in the
    columns of excluded observations.
    """
    path: tuple
    elpd: np.ndarray
    se: np.ndarray
    pointwise: np.ndarray
    khat: np.ndarray
    included: np.ndarray
    unreliable: tuple

    @property
    def n_used(self):
        return int(self.included.sum())

    def elpd_diff(self, k, ref=None):
        """ELPD of size ``k`` minus ELPD of size ``ref`` (default: full)."""
        ref = len(self.path) if ref is None else ref
        return float(self.elpd[k] - self.elpd[ref])

    def se_diff(self, k, ref=None):
        """Standard error of ``elpd_diff`` from the pointwise differences."""
        ref = len(self.path) if ref is None else ref
        d = self.pointwise[ref, self.included] - self.pointwise[k, self.included]
        n = d.shape[0]
        if n < 2:
            return np.nan
        return float(np.sqrt(n * np.var(d, ddof=1)))


def evaluate_path(ref, path, reff=1.0, max_unreliable_frac=0.1,
                  max_workers=None, timeout=None):
    """PSIS-LOO estimate of ELPD for every prefix of ``path``.

    The reference model's full-data draws are reweighted by Pareto-smoothed
    importance weights for each left-out observation; each submodel's
    projected draws are scored under those weights.

    Parameters
    ----------
    ref : ReferencePosterior
    path : sequence of int
        Selection path from :func:`build_path`.
    reff : float
        Relative MCMC efficiency passed to the Pareto smoothing.
    max_unreliable_frac : float
        Largest fraction of observations (k-hat > 0.7 or no finite
        importance ratios) that may be dropped with a warning before
        the evaluation fails.
    max_workers : int or None
        Maximum threads used across submodel sizes.
    timeout : float or None
        Wall-clock budget in seconds, covering the Pareto smoothing and
        the per-size evaluations.

    Returns
    -------
    PathEvaluation
    """
    deadline = _deadline(timeout)
    path = _as_submodel(path, ref.n_predictors)
    if not 0.0 <= max_unreliable_frac < 1.0:
        raise InvalidConfiguration(
            f"max_unreliable_frac must be in [0, 1), got {max_unreliable_frac}")
    N = ref.n_obs

    lw, khat = psis_log_weights(_stack_log_ratios(ref), reff=reff)
    _check_deadline(deadline, "Pareto smoothing")
    unreliable = np.flatnonzero(~(khat <= KHAT_THRESHOLD))
    if unreliable.size > max_unreliable_frac * N:
        raise InsufficientData(
            f"{unreliable.size} of {N} observations have unreliable importance "
            f"weights (k-hat > {KHAT_THRESHOLD}): {unreliable.tolist()}",
            observations=unreliable, khat=khat[unreliable])
    if unreliable.size > 0:
        warnings.warn(
            f"excluding {unreliable.size} of {N} observations with unreliable "
            f"importance weights from LOO: {unreliable.tolist()} "
            f"(k-hat {np.round(khat[unreliable], 2).tolist()})",
            DegenerateModelWarning)
    included = np.ones(N, dtype=bool)
    included[unreliable] = False
    lw_in = lw[included]                                   # (n, S)

    def _size_worker(k):
        loglik = np.asarray(ref.pointwise_log_lik(path[:k]))[:, included]
        with np.errstate(invalid="ignore"):
            elpd_i = logsumexp(lw_in + loglik.T, axis=1)
        bad = np.flatnonzero(~np.isfinite(elpd_i))
        if bad.size > 0:
            obs = np.flatnonzero(included)[bad]
            raise NumericOverflow(
                f"non-finite LOO log density for submodel size {k} at "
                f"observations {obs.tolist()}",
                submodel_size=k, observations=obs)
        return k, elpd_i

    sizes = list(range(len(path) + 1))
    n_workers = _n_workers(len(sizes), max_workers)
    print(f"Evaluating {len(sizes)} submodel sizes on {included.sum()} "
          f"observations with {n_workers} worker(s)")
    results = _parallel_map(_size_worker, sizes, max_workers=max_workers,
                            deadline=deadline, what="path evaluation")
    results.sort(key=lambda r: r[0])

    pointwise = np.full((len(sizes), N), np.nan)
    for k, elpd_i in results:
        pointwise[k, included] = elpd_i
    n = int(included.sum())
    elpd = pointwise[:, included].sum(axis=1)
    if n > 1:
        se = np.sqrt(n * np.var(pointwise[:, included], axis=1, ddof=1))
    else:
        se = np.full(len(sizes), np.nan)
    return PathEvaluation(path=path, elpd=elpd, se=se, pointwise=pointwise,
                          khat=khat, included=included,
                          unreliable=tuple(int(i) for i in unreliable))


def suggest_size(evaluation, alpha=0.32):
    """Smallest submodel not significantly worse than the full model.

    Size ``k`` qualifies when ``elpd[k] >= elpd[p] - z * se_diff(k)`` with
    ``z`` the one-sided standard normal quantile at level ``alpha``.

    Parameters
    ----------
    evaluation : PathEvaluation
    alpha : float
        Significance level in (0, 1).

    Returns
    -------
    int
        Suggested number of predictors, in ``0..p``.
    """
    if not 0.0 < alpha < 1.0:
        raise InvalidConfiguration(f"alpha must be in (0, 1), got {alpha}")
    z = stats.norm.ppf(1.0 - alpha)
    p = len(evaluation.path)
    for k in range(p):
        se_diff = evaluation.se_diff(k)
        if not np.isfinite(se_diff):
            se_diff = 0.0
        if evaluation.elpd[k] >= evaluation.elpd[p] - z * se_diff:
            return k
    return p


def project(ref, path, size, ns=400, rng_seed=0):
    """Projected posterior draws for the first ``size`` predictors of ``path``.

    Returns
    -------
    ndarray (ns, size+2)
        Intercept, coefficients in path order, sigma.
    """
    if not 0 <= size <= len(path):
        raise InvalidConfiguration(f"size {size} outside 0..{len(path)}")
    if int(ns) != ns or ns < 1:
        raise InvalidConfiguration(f"ns must be a positive integer, got {ns!r}")
    return ref.project(tuple(path[:size]), ns, rng_seed=rng_seed)


def varsel_summary(evaluation, names=None):
    """Table of ELPD by submodel size.

    Parameters
    ----------
    evaluation : PathEvaluation
    names : list of str, optional
        Predictor names indexed by column.  Defaults to ``X[j]``.

    Returns
    -------
    DataFrame
        Columns ``size``, ``solution_term``, ``elpd``, ``se``, ``diff``,
        ``diff_se``.
    """
    rows = []
    for k in range(len(evaluation.path) + 1):
        if k == 0:
            term = ""
        else:
            j = evaluation.path[k - 1]
            term = names[j] if names is not None else f"X[{j}]"
        rows.append({
            "size": k,
            "solution_term": term,
            "elpd": float(evaluation.elpd[k]),
            "se": float(evaluation.se[k]),
            "diff": evaluation.elpd_diff(k),
            "diff_se": evaluation.se_diff(k),
        })
    return pd.DataFrame(rows)


def cv_varsel(ref, alpha=0.32, ns=400, rng_seed=0, reff=1.0,
              max_unreliable_frac=0.1, max_workers=None, timeout=None,
              names=None):
    """Projection predictive variable selection with a LOO stopping rule.

    Runs :func:`build_path`, :func:`evaluate_path`, :func:`suggest_size`
    and :func:`project` in turn.

    Parameters
    ----------
    ref : ReferencePosterior
        Fitted reference model.
    alpha : float
        Significance level for :func:`suggest_size`.
    ns : int
        Number of draws to project for the suggested submodel.
    rng_seed : int
        Seed for choosing the projected draws.
    reff, max_unreliable_frac, max_workers
        Forwarded to :func:`evaluate_path`.
    timeout : float or None
        Wall-clock budget in seconds shared by the search and the
        evaluation; ``TimeoutError`` when it runs out.
    names : list of str, optional
        Predictor names for the summary table.

    Returns
    -------
    dict
        Keys ``path``, ``evaluation``, ``suggested_size``, ``projected``,
        ``summary``.
    """
    if not 0.0 < alpha < 1.0:
        raise InvalidConfiguration(f"alpha must be in (0, 1), got {alpha}")
    if int(ns) != ns or ns < 1:
        raise InvalidConfiguration(f"ns must be a positive integer, got {ns!r}")
    if ref.n_predictors < 1:
        raise InvalidConfiguration("need at least one candidate predictor")

    deadline = _deadline(timeout)
    print(f"Forward search over {ref.n_predictors} predictors")
    path = build_path(ref, max_workers=max_workers, timeout=timeout)
    if deadline is not None:
        _check_deadline(deadline, "forward search")
        timeout = deadline - time.monotonic()
    evaluation = evaluate_path(ref, path, reff=reff,
                               max_unreliable_frac=max_unreliable_frac,
                               max_workers=max_workers, timeout=timeout)
    size = suggest_size(evaluation, alpha=alpha)
    projected = project(ref, path, size, ns=ns, rng_seed=rng_seed)
    summary = varsel_summary(evaluation, names=names)

    print(summary.to_string(index=False, float_format=lambda x: f"{x:.3f}"))
    print(f"Suggested size: {size} (alpha={alpha})")
    return {"path": path, "evaluation": evaluation, "suggested_size": size,
            "projected": projected, "summary": summary}
