import anndata
import numpy as np
import pandas as pd
import pytest


def make_adata(counts, genes=None, cells=None):
    """Build a cells x genes AnnData from a dense count array"""
    counts = np.asarray(counts, dtype=np.float32)
    n_cells, n_genes = counts.shape
    genes = genes if genes is not None else [f"Gene{i:03d}" for i in range(n_genes)]
    cells = cells if cells is not None else [f"cell{i:03d}" for i in range(n_cells)]
    return anndata.AnnData(
        X=counts,
        obs=pd.DataFrame(index=pd.Index(cells)),
        var=pd.DataFrame(index=pd.Index(genes)),
    )


@pytest.fixture
def two_population_adata():
    """100 genes x 50 cells, two populations of 25 differing in 10 marker genes"""
    rng = np.random.default_rng(0)
    n_cells, n_genes = 50, 100
    counts = rng.poisson(5, size=(n_cells, n_genes)).astype(float)
    truth = np.repeat([0, 1], n_cells // 2)
    markers = np.arange(10)
    counts[np.ix_(truth == 0, markers)] = rng.poisson(80, size=(25, 10))
    counts[np.ix_(truth == 1, markers)] = rng.poisson(1, size=(25, 10))

    adata = make_adata(counts)
    adata.obs["truth"] = truth
    return adata


@pytest.fixture
def qc_adata():
    """Cells with varied depth and mitochondrial content"""
    rng = np.random.default_rng(1)
    n_cells, n_genes = 40, 60
    genes = [f"MT-{i}" for i in range(3)] + [f"Gene{i:03d}" for i in range(n_genes - 3)]
    depth = rng.uniform(0.05, 3.0, size=(n_cells, 1))
    counts = rng.poisson(depth * np.ones((1, n_genes)))
    # A handful of cells dominated by mitochondrial reads
    counts[:5, :3] += 40
    return make_adata(counts, genes=genes)


@pytest.fixture
def counts_tsv(tmp_path):
    path = tmp_path / "counts.tsv"
    path.write_text(
        "gene\tc1\tc2\tc3\n"
        "GFAP\t0\t3\t1\n"
        "AQP4\t2\t0\t5\n"
        "MT-CO1\t1\t1\t0\n"
    )
    return path


ASTRO_MARKERS = ["GFAP", "AQP4", "SLC1A2", "SLC1A3"]
NEURON_MARKERS = ["SLC17A7", "CAMK2A", "SATB2"]


@pytest.fixture
def brain_adata():
    """120 nuclei x 200 genes: 70 astrocytes then 50 excitatory neurons"""
    rng = np.random.default_rng(7)
    n_astro, n_neuron = 70, 50
    n_cells = n_astro + n_neuron
    genes = ASTRO_MARKERS + NEURON_MARKERS
    genes = genes + [f"Gene{i:03d}" for i in range(200 - len(genes))]
    counts = rng.poisson(5, size=(n_cells, len(genes))).astype(float)

    astro = np.arange(n_cells) < n_astro
    a_idx = np.arange(len(ASTRO_MARKERS))
    n_idx = np.arange(len(ASTRO_MARKERS), len(ASTRO_MARKERS) + len(NEURON_MARKERS))
    counts[np.ix_(astro, a_idx)] = rng.poisson(60, size=(astro.sum(), len(a_idx)))
    counts[np.ix_(~astro, a_idx)] = rng.poisson(1, size=((~astro).sum(), len(a_idx)))
    counts[np.ix_(astro, n_idx)] = rng.poisson(1, size=(astro.sum(), len(n_idx)))
    counts[np.ix_(~astro, n_idx)] = rng.poisson(60, size=((~astro).sum(), len(n_idx)))
    # Two astrocyte states
    counts[:35, 10:20] = rng.poisson(40, size=(35, 10))

    adata = make_adata(counts, genes=genes)
    adata.obs["truth"] = np.where(astro, "Astrocyte", "Excitatory")
    return adata
