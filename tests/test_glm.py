import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm

from gwaskin.association import glm
from gwaskin.association.glm import GWASKIN_GLM
from gwaskin.utils.data_types import GenotypeMatrix, Phenotype
from gwaskin.utils.exceptions import AlignmentError, DegenerateInputError


def _inputs(n: int = 80, m: int = 12, seed: int = 0):
    rng = np.random.default_rng(seed)
    G = rng.binomial(2, rng.uniform(0.2, 0.8, m), size=(n, m)).astype(np.int8)
    covariates = rng.normal(size=(n, 2))
    y = 1.0 + covariates @ np.array([0.4, -0.7]) + 0.3 * G[:, 0] + rng.normal(size=n)
    return G, covariates, y


def test_glm_matches_statsmodels_ols() -> None:
    G, covariates, y = _inputs()

    res = GWASKIN_GLM(y, G, CV=covariates, verbose=False)

    for j in range(G.shape[1]):
        design = sm.add_constant(np.column_stack([covariates, G[:, j].astype(float)]))
        fit = sm.OLS(y, design).fit()
        assert res.effects[j] == pytest.approx(fit.params[-1], rel=1e-8, abs=1e-12)
        assert res.se[j] == pytest.approx(fit.bse[-1], rel=1e-8)
        assert res.tstats[j] == pytest.approx(fit.tvalues[-1], rel=1e-8, abs=1e-10)
        assert res.pvalues[j] == pytest.approx(fit.pvalues[-1], rel=1e-6)
    assert res.method == "GLM"
    assert np.all(res.n_obs == len(y))


def test_glm_drops_missing_calls_per_marker() -> None:
    G, covariates, y = _inputs(seed=1)
    rng = np.random.default_rng(11)
    for j in (2, 3, 7):
        G[rng.choice(len(y), size=6, replace=False), j] = -9
    G[:, 4] = np.where(G[:, 2] == -9, -9, G[:, 4])

    res = GWASKIN_GLM(y, G, CV=covariates, maxLine=3, verbose=False)

    for j in (2, 3, 4, 7):
        observed = G[:, j] != -9
        design = sm.add_constant(np.column_stack([covariates[observed], G[observed, j].astype(float)]))
        fit = sm.OLS(y[observed], design).fit()
        assert res.n_obs[j] == observed.sum()
        assert res.effects[j] == pytest.approx(fit.params[-1], rel=1e-8, abs=1e-12)
        assert res.se[j] == pytest.approx(fit.bse[-1], rel=1e-8)
        assert res.pvalues[j] == pytest.approx(fit.pvalues[-1], rel=1e-6)


def test_glm_reports_untestable_markers() -> None:
    G, _, y = _inputs(n=20, m=5, seed=2)
    G[:, 1] = 1
    G[:, 3] = -9
    G[:2, 3] = [0, 2]

    res = GWASKIN_GLM(y, G, CV=G[:, 4].astype(float), verbose=False)

    assert list(res.status) == ["ok", "monomorphic", "ok", "too_few_observations", "collinear"]
    assert np.isnan(res.pvalues[[1, 3, 4]]).all()
    assert res.significance_threshold(0.05) == (pytest.approx(0.025), 2)


def test_glm_collinear_covariates_raise() -> None:
    G, covariates, y = _inputs(n=30, m=3, seed=3)
    duplicated = np.column_stack([covariates[:, 0], 2.0 * covariates[:, 0]])
    with pytest.raises(DegenerateInputError, match="collinear"):
        GWASKIN_GLM(y, G, CV=duplicated, verbose=False)


def test_glm_phenotype_ids_must_follow_genotype_rows() -> None:
    G, _, y = _inputs(n=10, m=3, seed=4)
    ids = [f"s{i}" for i in range(10)]
    geno = GenotypeMatrix(G, sample_ids=ids)

    aligned = Phenotype(pd.DataFrame({"ID": ids, "Trait": y}))
    res = GWASKIN_GLM(aligned, geno, verbose=False)
    assert np.all(np.isfinite(res.pvalues))

    reordered = Phenotype(pd.DataFrame({"ID": ids[::-1], "Trait": y[::-1]}))
    with pytest.raises(AlignmentError):
        GWASKIN_GLM(reordered, geno, verbose=False)


def test_glm_parallel_path_uses_stubbed_joblib(monkeypatch) -> None:
    G, covariates, y = _inputs(n=40, m=9, seed=5)
    G[3, 2] = -9
    serial = GWASKIN_GLM(y, G, CV=covariates, maxLine=2, cpu=1, verbose=False)

    def fake_delayed(func):
        def wrapper(*args, **kwargs):
            return lambda: func(*args, **kwargs)
        return wrapper

    def fake_parallel(n_jobs=None, backend=None):
        def runner(tasks):
            return [task() for task in tasks]
        return runner

    monkeypatch.setattr(glm, "Parallel", fake_parallel)
    monkeypatch.setattr(glm, "delayed", fake_delayed)

    parallel = GWASKIN_GLM(y, G, CV=covariates, maxLine=2, cpu=4, verbose=False)

    np.testing.assert_allclose(parallel.pvalues, serial.pvalues, rtol=1e-12)
    np.testing.assert_array_equal(parallel.status, serial.status)
