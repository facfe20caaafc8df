import numpy as np
import pytest

from gwaskin.matrix.kinship import GWASKIN_K_GCTA
from gwaskin.matrix.spectral import repair_psd
from gwaskin.utils.data_types import GenotypeMatrix


def _simulate_two_populations(n_samples: int, n_markers: int, max_shift: float, seed: int):
    """Genotypes for two subpopulations with allele frequencies base ± shift."""
    rng = np.random.default_rng(seed)
    n_first = n_samples // 2
    labels = np.repeat([1.0, -1.0], [n_first, n_samples - n_first])
    base = rng.uniform(0.3, 0.7, n_markers)
    shift = rng.uniform(-max_shift, max_shift, n_markers)
    freqs = np.where(labels[:, np.newaxis] > 0, base + shift, base - shift)
    genotypes = rng.binomial(2, freqs).astype(np.int8)
    return genotypes, labels


@pytest.fixture(scope="session")
def structured_population():
    """300 samples in two subpopulations, 1000 unlinked markers, repaired GCTA kinship."""
    genotypes, labels = _simulate_two_populations(
        n_samples=300, n_markers=1000, max_shift=0.25, seed=11
    )
    geno = GenotypeMatrix(genotypes)
    kinship = GWASKIN_K_GCTA(geno, verbose=False)
    kinship_repaired, eigenK = repair_psd(kinship, verbose=False)
    return {
        "geno": geno,
        "labels": labels,
        "kinship": kinship,
        "kinship_repaired": kinship_repaired,
        "eigenK": eigenK,
    }
