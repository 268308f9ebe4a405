import os

import numpy as np
import pandas as pd

import jax
import jax.numpy as jnp
import numpyro as npyr
import numpyro.distributions as dist
from numpyro.infer import MCMC, NUTS, Predictive
from numpyro.diagnostics import effective_sample_size, split_gelman_rubin

import varsel

# Ensure tqdm can detect a terminal width in non-TTY environments
# (cloud notebooks, piped output) so progress bars update in-place.
os.environ.setdefault("COLUMNS", "120")

__all__ = [
    "fit", "predict", "reference_posterior",
    "summary_report", "default_scale_global",
    "run_analysis",
]


def hslinear(X=None, y=None, slab_scale=None, slab_df=None, scale_global=None):
    """NumPyro model for linear regression with regularized horseshoe prior.

    The intercept receives a wide Normal(0, 10) prior and the residual
    standard deviation a HalfNormal(1) prior, which assumes the outcome is
    on a unit scale.  Coefficients receive a regularized horseshoe prior
    whose global scale is ``scale_global * sigma``.

    Parameters
    ----------
    X : ndarray (N, J)
        Design matrix for penalized covariates (no intercept column).
    y : ndarray (N,)
        Continuous outcome.
    slab_scale : float
        Scale of the regularizing slab on large coefficients.
    slab_df : float
        Degrees of freedom for the slab inverse-gamma prior.
    scale_global : float
        Global shrinkage scale, controls overall sparsity.
    """
    nu_local = 1.
    nu_global = 1.
    J = X.shape[1]
    N = X.shape[0]
    alpha = npyr.sample("alpha", dist.Normal(0, 10.0))
    sigma = npyr.sample("sigma", dist.HalfNormal(1.0))

    aux1_global = npyr.sample("aux1_global", dist.HalfNormal(1.0))
    aux2_global = npyr.sample("aux2_global", dist.InverseGamma(0.5 * nu_global, 0.5 * nu_global))
    τ = npyr.deterministic("tau", aux1_global * jnp.sqrt(aux2_global) * scale_global * sigma)
    caux = npyr.sample("caux", dist.InverseGamma(0.5 * slab_df, 0.5 * slab_df))
    eta = npyr.deterministic("eta", slab_scale * jnp.sqrt(caux))
    with npyr.plate("J penalized covariates", J):
        z = npyr.sample("z", dist.Normal(0, 1.0))
        aux1_local = npyr.sample("aux1_local", dist.HalfNormal(1.0))
        aux2_local = npyr.sample("aux2_local", dist.InverseGamma(0.5 * nu_local, 0.5 * nu_local))
        lambda_raw = jnp.multiply(aux1_local, jnp.sqrt(aux2_local))
        lambda_tilde = jnp.sqrt(jnp.divide(eta**2 * jnp.square(lambda_raw),
                                           eta**2 + τ**2 * jnp.square(lambda_raw)))
        beta = npyr.deterministic("beta", jnp.multiply(z, lambda_tilde * τ))
    mu = npyr.deterministic("mu", alpha + jnp.dot(X, beta))
    with npyr.plate("N observations", N):
        npyr.sample("y", dist.Normal(mu, sigma), obs=y)


def fit(X, y, slab_scale=1.0, slab_df=4.0, scale_global=1.0,
        num_warmup=1000, num_samples=1000, num_chains=4,
        target_accept_prob=0.95, max_tree_depth=12, rng_seed=0,
        print_summary=True):
    """Fit the horseshoe linear regression model with NUTS.

    Parameters
    ----------
    X : array (N, J)
        Penalized design matrix.
    y : array (N,)
        Continuous outcome, ideally standardized.
    slab_scale : float
        Regularizing slab scale.
    slab_df : float
        Slab inverse-gamma degrees of freedom.
    scale_global : float
        Global shrinkage scale (multiplied by sigma inside the model).
    num_warmup : int
        Number of warmup (adaptation) iterations per chain.
    num_samples : int
        Number of posterior samples per chain.
    num_chains : int
        Number of MCMC chains.
    target_accept_prob : float
        NUTS target acceptance probability.
    max_tree_depth : int
        NUTS maximum tree depth.
    rng_seed : int
        Random seed.
    print_summary : bool
        If True, print the full NumPyro summary table to stdout.

    Returns
    -------
    MCMC
        Fitted sampler with ``.get_samples()`` method.
    """
    for name, arr in [("X", X), ("y", y)]:
        if not jnp.all(jnp.isfinite(arr)):
            n_bad = int((~jnp.isfinite(arr)).sum())
            raise ValueError(
                f"{name} contains {n_bad} non-finite values (NaN/Inf). "
                f"Clean the data before fitting.")
    kernel = NUTS(
        hslinear,
        target_accept_prob=target_accept_prob,
        max_tree_depth=max_tree_depth,
    )
    mcmc = MCMC(
        kernel,
        num_warmup=num_warmup,
        num_samples=num_samples,
        num_chains=num_chains,
        progress_bar=print_summary,
    )
    mcmc.run(jax.random.PRNGKey(rng_seed), X=X, y=y,
             slab_scale=slab_scale, slab_df=slab_df, scale_global=scale_global)
    if print_summary:
        mcmc.print_summary()
    return mcmc


def predict(result, X_new, slab_scale=1.0, slab_df=4.0, scale_global=1.0,
            rng_seed=1):
    """Posterior draws of the linear predictor for new observations.

    Parameters
    ----------
    result : MCMC
        Fitted model returned by :func:`fit`.
    X_new : array (N_new, J)
        Penalized design matrix for new data.
    slab_scale, slab_df, scale_global : float
        Must match the values used in :func:`fit`.
    rng_seed : int
        Random seed for the predictive.

    Returns
    -------
    ndarray (S, N_new)
        Posterior draws of the mean outcome.
    """
    predictive = Predictive(
        hslinear,
        posterior_samples=result.get_samples(),
        return_sites=["mu"],
    )
    preds = predictive(
        jax.random.PRNGKey(rng_seed),
        X=X_new, y=None,
        slab_scale=slab_scale, slab_df=slab_df, scale_global=scale_global,
    )
    return preds["mu"]


def reference_posterior(result, X, y):
    """Wrap a fitted model as a :class:`varsel.ReferencePosterior`."""
    samples = result.get_samples()
    return varsel.ReferencePosterior(
        np.asarray(X), np.asarray(y),
        alpha=np.asarray(samples["alpha"]),
        beta=np.asarray(samples["beta"]),
        sigma=np.asarray(samples["sigma"]),
    )


def _shrinkage_factors(samples, N):
    """kappa_j = 1 / (1 + N tau^2 lambda_tilde_j^2 / sigma^2), per draw."""
    tau = samples["tau"][..., None]
    eta = samples["eta"][..., None]
    sigma = samples["sigma"][..., None]
    lambda_raw = samples["aux1_local"] * jnp.sqrt(samples["aux2_local"])
    lambda_tilde_sq = (eta**2 * lambda_raw**2) / (eta**2 + tau**2 * lambda_raw**2)
    return 1.0 / (1.0 + N * tau**2 * lambda_tilde_sq / sigma**2)


def summary_report(mcmc, filepath, N, penalized_names=None):
    """Posterior summary table saved to CSV.

    Parameters
    ----------
    mcmc : MCMC
        Fitted result supporting ``get_samples(group_by_chain=True)``.
    filepath : str
        Path for the output CSV.
    N : int
        Number of observations the model was fitted to (for kappa).
    penalized_names : list of str, optional
        Display names for penalized covariates.  When provided, the
        top-5 penalized betas (by squared posterior mean) are appended.
    """
    chain_samples = mcmc.get_samples(group_by_chain=True)

    def _row(name, x_chain, kappa_val=None):
        x_flat = x_chain.reshape(-1)
        return {
            "parameter": name,
            "kappa": kappa_val if kappa_val is not None else "",
            "mean": float(jnp.mean(x_flat)),
            "q0.03": float(jnp.percentile(x_flat, 3)),
            "q0.97": float(jnp.percentile(x_flat, 97)),
            "n_eff": float(effective_sample_size(np.array(x_chain))),
            "r_hat": float(split_gelman_rubin(np.array(x_chain))),
        }

    kappa_all = _shrinkage_factors(chain_samples, N)       # (chains, S, J)
    kappa_mean = np.array(kappa_all.reshape(-1, kappa_all.shape[-1]).mean(axis=0))
    m_eff_chain = (1.0 - kappa_all).sum(axis=-1)

    rows = [_row("tau", chain_samples["tau"]),
            _row("eta", chain_samples["eta"]),
            _row("sigma", chain_samples["sigma"]),
            _row("m_eff", m_eff_chain),
            _row("Intercept", chain_samples["alpha"])]

    beta_chain = chain_samples["beta"]
    if penalized_names is not None:
        beta_mean = np.array(beta_chain.reshape(-1, beta_chain.shape[-1]).mean(axis=0))
        n_top = min(5, len(penalized_names))
        top_idx = np.argsort(beta_mean ** 2)[-n_top:][::-1]
        for idx in top_idx:
            rows.append(_row(penalized_names[idx], beta_chain[..., idx],
                             kappa_val=round(float(kappa_mean[idx]), 4)))

    df = pd.DataFrame(rows)
    df.to_csv(filepath, index=False, float_format="%.4f")
    print(df.to_string(index=False))
    print(f"Summary saved to {filepath}")
    return df


def default_scale_global(N, J, p0=None):
    """Piironen & Vehtari global scale ``p0 / (J - p0) / sqrt(N)``.

    The model multiplies this by sigma.  ``p0`` defaults to
    ``max(1, J // 4)`` and is capped below J.
    """
    if p0 is None:
        p0 = max(1, J // 4)
    p0 = min(p0, J - 1) if J > 1 else p0
    if J - p0 <= 0:
        return 1.0 / np.sqrt(N)
    return p0 / (J - p0) / np.sqrt(N)


def run_analysis(df, y_col, penalized_cols, filestem,
                 slab_scale=2.0, slab_df=4.0, p0=None, scale_global=None,
                 standardize=True, num_warmup=1000, num_samples=1000,
                 num_chains=4, target_accept_prob=0.95, max_tree_depth=12,
                 rng_seed=0, alpha=0.32, ns=400, max_workers=None):
    """High-level entry point: fit, then select covariates by projection.

    Extracts arrays, estimates ``scale_global`` if needed, fits the
    reference model, reports its LOO performance and runs
    :func:`varsel.cv_varsel`.

    Parameters
    ----------
    df : DataFrame
        Data containing outcome and covariates.
    y_col : str
        Name of the continuous outcome column.
    penalized_cols : list of str
        Candidate covariates (horseshoe prior).  An intercept is always
        included and never penalized.
    filestem : str
        Prefix for output files (CSV summaries).
    slab_scale, slab_df : float
        Regularizing slab settings.
    p0 : int or None
        Prior guess for the number of relevant covariates, used when
        ``scale_global`` is not given.
    scale_global : float or None
        Global shrinkage scale.  If None, see :func:`default_scale_global`.
    standardize : bool
        If True (default), standardize covariates and outcome to zero mean
        and unit variance before fitting.  Coefficients are reported on the
        standardized scale.
    num_warmup, num_samples, num_chains : int
        MCMC settings.
    target_accept_prob : float
        NUTS target acceptance probability.
    max_tree_depth : int
        NUTS maximum tree depth.
    rng_seed : int
        Random seed for sampling and for the projected draws.
    alpha : float
        Significance level for the suggested submodel size.
    ns : int
        Number of projected draws for the suggested submodel.
    max_workers : int or None
        Maximum worker threads for the selection.

    Returns
    -------
    dict
        ``result``, ``N``, ``penalized_cols``, ``loo``, ``varsel``,
        ``selected_names``, ``projected`` (DataFrame).
    """
    used_cols = [y_col] + list(penalized_cols)
    N_before = len(df)
    df = df[used_cols].dropna()
    N_after = len(df)
    if N_after < N_before:
        print(f"Dropped {N_before - N_after} rows with missing values "
              f"({N_before} -> {N_after})")

    y = df[y_col].values.astype(np.float64)
    X = df[penalized_cols].values.astype(np.float64)
    N, J = X.shape
    if J < 1:
        raise varsel.InvalidConfiguration("penalized_cols must name at least one column")

    if standardize:
        X_std = X.std(axis=0)
        X_std[X_std == 0] = 1.0
        X = (X - X.mean(axis=0)) / X_std
        y_std = y.std() if y.std() > 0 else 1.0
        y = (y - y.mean()) / y_std
        print("Covariates and outcome standardized to zero mean, unit variance")

    print(f"N={N}, J={J}")

    if scale_global is None:
        scale_global = default_scale_global(N, J, p0=p0)
        print(f"scale_global estimated: scale_global={scale_global:.4f}")

    result = fit(
        jnp.array(X), jnp.array(y),
        slab_scale=slab_scale, slab_df=slab_df, scale_global=scale_global,
        num_warmup=num_warmup, num_samples=num_samples, num_chains=num_chains,
        target_accept_prob=target_accept_prob, max_tree_depth=max_tree_depth,
        rng_seed=rng_seed, print_summary=False,
    )
    summary_report(result, filestem + "_summary.csv", N,
                   penalized_names=list(penalized_cols))

    ref = reference_posterior(result, X, y)
    loo = varsel.reference_loo(ref)
    print(f"\nReference model PSIS-LOO (N={N}):")
    print(f"  elpd_loo = {loo['elpd_loo']:.2f} (SE {loo['se']:.2f})")
    print(f"  p_loo    = {loo['p_loo']:.2f}")
    print(f"  k-hat > {varsel.KHAT_THRESHOLD}: {loo['n_bad_khat']} observations")

    print("\n" + "=" * 60)
    print("Projection predictive variable selection")
    print("=" * 60)
    vs = varsel.cv_varsel(ref, alpha=alpha, ns=ns, rng_seed=rng_seed,
                          max_workers=max_workers, names=list(penalized_cols))
    vs["summary"].to_csv(filestem + "_varsel.csv", index=False, float_format="%.4f")
    print(f"Selection table saved to {filestem}_varsel.csv")

    size = vs["suggested_size"]
    selected_names = [penalized_cols[j] for j in vs["path"][:size]]
    print("\nSelected covariates (in order):")
    for i, name in enumerate(selected_names):
        print(f"  {i+1}. {name}")
    projected = pd.DataFrame(vs["projected"],
                             columns=["Intercept"] + selected_names + ["sigma"])

    return {
        "result": result, "N": N,
        "penalized_cols": list(penalized_cols),
        "loo": loo, "varsel": vs,
        "selected_names": selected_names,
        "projected": projected,
    }
