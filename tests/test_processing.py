import numpy as np
import pandas as pd
import pytest
import scanpy as sc
from scipy import sparse
from sklearn.metrics import adjusted_rand_score

from ad_snrna.errors import (
    EmptyCellError,
    InsufficientCellsError,
    InsufficientGenesError,
    InvalidThresholdError,
    PipelineError,
)
from ad_snrna.processing import (
    build_graph,
    detect_clusters,
    embed_nonlinear,
    normalize,
    reduce_linear,
    resolution_sweep,
    scale,
    select_features,
)
from tests.conftest import make_adata


def _dense(X):
    return X.toarray() if sparse.issparse(X) else np.asarray(X)


@pytest.fixture
def clustered(two_population_adata):
    normalized = normalize(two_population_adata)
    features = select_features(normalized, n_top_genes=30)
    scaled = scale(normalized, features, clip_max=10)
    reduced, _ = reduce_linear(scaled, n_comps=10)
    graph = build_graph(reduced, n_neighbors=12, n_dims=10)
    return detect_clusters(graph, resolution=0.5, random_state=0)


class TestNormalize:
    def test_round_trip_preserves_proportions(self, two_population_adata):
        normalized = normalize(two_population_adata, target_sum=1e4)

        counts = _dense(two_population_adata.X)
        restored = np.expm1(_dense(normalized.X))
        assert np.allclose(restored.sum(axis=1), 1e4, rtol=1e-4)
        assert np.allclose(
            restored / restored.sum(axis=1, keepdims=True),
            counts / counts.sum(axis=1, keepdims=True),
            rtol=1e-4,
            atol=1e-7,
        )

    def test_keeps_counts_and_input(self, two_population_adata):
        before = _dense(two_population_adata.X).copy()
        normalized = normalize(two_population_adata)

        assert np.array_equal(_dense(two_population_adata.X), before)
        assert np.array_equal(_dense(normalized.layers["counts"]), before)
        assert normalized.raw is not None

    def test_renormalizes_from_counts(self, two_population_adata):
        once = normalize(two_population_adata)
        twice = normalize(once)

        assert np.allclose(_dense(once.X), _dense(twice.X))

    def test_empty_cell(self):
        adata = make_adata([[1, 2], [0, 0]])

        with pytest.raises(EmptyCellError) as excinfo:
            normalize(adata)
        assert excinfo.value.cells == ["cell001"]


class TestSelectFeatures:
    def test_returns_top_n_unique_genes(self, two_population_adata):
        normalized = normalize(two_population_adata)

        features = select_features(normalized, n_top_genes=30)

        assert len(features) == 30
        assert len(set(features)) == 30
        assert set(features) <= set(normalized.var_names)

    def test_matches_seurat_flavor_selection(self, two_population_adata):
        normalized = normalize(two_population_adata)

        features = select_features(normalized, n_top_genes=30)

        reference = sc.pp.highly_variable_genes(
            normalized, flavor="seurat", n_top_genes=30, inplace=False
        )
        selected = np.asarray(reference["highly_variable"], dtype=bool)
        assert set(features) == set(normalized.var_names[selected])

    def test_all_genes(self, two_population_adata):
        normalized = normalize(two_population_adata)

        features = select_features(normalized, n_top_genes=100)

        assert sorted(features) == sorted(normalized.var_names)

    def test_too_few_genes(self, two_population_adata):
        normalized = normalize(two_population_adata)

        with pytest.raises(InsufficientGenesError):
            select_features(normalized, n_top_genes=2000)

    def test_ties_broken_by_gene_id(self):
        rng = np.random.default_rng(3)
        column = rng.poisson(4, size=(30, 1)) + 1
        genes = ["g4", "g1", "g5", "g0", "g3", "g2"]
        adata = normalize(make_adata(np.repeat(column, 6, axis=1), genes=genes))

        assert select_features(adata, n_top_genes=3) == ("g0", "g1", "g2")


class TestScale:
    def test_zero_mean_unit_variance(self, two_population_adata):
        normalized = normalize(two_population_adata)
        features = select_features(normalized, n_top_genes=30)

        scaled = scale(normalized, features)

        assert list(scaled.var_names) == list(features)
        assert np.allclose(scaled.X.mean(axis=0), 0, atol=1e-6)
        assert np.allclose(scaled.X.std(axis=0, ddof=1), 1, atol=1e-6)

    def test_zero_variance_gene_is_zero(self):
        adata = make_adata([[1, 5], [1, 2], [1, 9]], genes=["flat", "var"])

        scaled = scale(adata, ("flat", "var"))

        assert np.array_equal(scaled[:, "flat"].X.ravel(), np.zeros(3))
        assert not np.isnan(scaled.X).any()

    def test_symmetric_clipping(self, two_population_adata):
        normalized = normalize(two_population_adata)
        features = select_features(normalized, n_top_genes=30)

        scaled = scale(normalized, features, clip_max=0.5)

        assert scaled.X.max() <= 0.5
        assert scaled.X.min() >= -0.5

    def test_unknown_gene(self, two_population_adata):
        normalized = normalize(two_population_adata)

        with pytest.raises(InsufficientGenesError):
            scale(normalized, ("NOT_A_GENE",))


class TestReduceLinear:
    def test_variance_descending(self, two_population_adata):
        normalized = normalize(two_population_adata)
        scaled = scale(normalized, select_features(normalized, n_top_genes=30))

        reduced, variance_ratio = reduce_linear(scaled, n_comps=10)

        assert reduced.obsm["X_pca"].shape == (50, 10)
        assert len(variance_ratio) == 10
        assert np.all(np.diff(variance_ratio) <= 1e-12)
        assert "X_pca" not in scaled.obsm

    def test_too_many_components(self, two_population_adata):
        normalized = normalize(two_population_adata)
        scaled = scale(normalized, select_features(normalized, n_top_genes=30))

        with pytest.raises(InsufficientGenesError):
            reduce_linear(scaled, n_comps=30)
        with pytest.raises(InsufficientCellsError):
            reduce_linear(scaled[:10].copy(), n_comps=10)


class TestBuildGraph:
    def _embedded(self, n_cells=20, n_dims=4):
        rng = np.random.default_rng(5)
        adata = make_adata(np.ones((n_cells, 2)))
        adata.obsm["X_pca"] = rng.normal(size=(n_cells, n_dims))
        return adata

    def test_symmetric_knn(self):
        adata = self._embedded()

        graph = build_graph(adata, n_neighbors=3, n_dims=2)

        conn = graph.obsp["connectivities"]
        assert conn.shape == (20, 20)
        assert (conn != conn.T).nnz == 0
        assert conn.diagonal().sum() == 0
        degrees = np.asarray((conn > 0).sum(axis=1)).ravel()
        assert (degrees >= 3).all()
        assert "connectivities" not in adata.obsp

    def test_neighbors_are_nearest(self):
        adata = self._embedded()
        X = adata.obsm["X_pca"][:, :2]

        graph = build_graph(adata, n_neighbors=3, n_dims=2)

        conn = graph.obsp["connectivities"].tocsr()
        for i in range(adata.n_obs):
            dists = np.linalg.norm(X - X[i], axis=1)
            dists[i] = np.inf
            nearest = np.argsort(dists)[:3]
            assert all(conn[i, j] > 0 for j in nearest)

    def test_k_too_large(self):
        with pytest.raises(InsufficientCellsError):
            build_graph(self._embedded(n_cells=5), n_neighbors=5, n_dims=2)

    def test_too_many_dims(self):
        with pytest.raises(InvalidThresholdError):
            build_graph(self._embedded(), n_neighbors=3, n_dims=10)


class TestDetectClusters:
    def test_recovers_two_populations(self, clustered):
        labels = clustered.obs["cluster"].astype(int).to_numpy()

        assert sorted(np.unique(labels)) == [0, 1]
        assert adjusted_rand_score(clustered.obs["truth"], labels) >= 0.95

    def test_total_and_contiguous(self, clustered):
        labels = clustered.obs["cluster"]

        assert labels.notna().all()
        assert list(labels.cat.categories) == list(range(labels.astype(int).max() + 1))

    def test_custom_method_renumbered_by_size(self, clustered):
        def split_first_five(adjacency, resolution, random_state):
            n = adjacency.shape[0]
            return np.array(["small"] * 5 + ["large"] * (n - 5))

        result = detect_clusters(clustered, resolution=1.0, method=split_first_five)

        labels = result.obs["cluster"].astype(int).to_numpy()
        assert (labels[:5] == 1).all()
        assert (labels[5:] == 0).all()
        assert result.uns["cluster"]["params"]["method"] == "split_first_five"

    def test_deterministic(self, clustered):
        again = detect_clusters(clustered, resolution=0.5, random_state=0)

        assert np.array_equal(
            again.obs["cluster"].to_numpy(), clustered.obs["cluster"].to_numpy()
        )

    def test_needs_graph(self, two_population_adata):
        with pytest.raises(KeyError):
            detect_clusters(two_population_adata, resolution=0.5)


def test_resolution_sweep(clustered):
    sweep = resolution_sweep(clustered, resolutions=[0.5, 1.0])

    assert list(sweep["resolution"]) == [0.5, 1.0]
    assert (sweep["n_clusters"] >= 2).all()
    pd.testing.assert_series_equal(
        clustered.obs["cluster"], detect_clusters(clustered, resolution=0.5).obs["cluster"]
    )


def test_embed_nonlinear_leaves_clusters(clustered):
    embedded = embed_nonlinear(clustered, n_components=2, random_state=0)

    assert embedded.obsm["X_umap"].shape == (50, 2)
    assert "X_umap" not in clustered.obsm
    assert np.array_equal(
        embedded.obs["cluster"].to_numpy(), clustered.obs["cluster"].to_numpy()
    )


def test_embed_nonlinear_seeded(clustered):
    first = embed_nonlinear(clustered, random_state=3)
    second = embed_nonlinear(clustered, random_state=3)

    assert np.allclose(first.obsm["X_umap"], second.obsm["X_umap"])


def test_embed_nonlinear_needs_graph(two_population_adata):
    with pytest.raises(PipelineError):
        embed_nonlinear(two_population_adata)
