#!/usr/bin/env python3
"""
Processing utilities for single-nucleus RNA-seq analysis
Handles normalization, feature selection, scaling, PCA, kNN graph, clustering and UMAP

Every function returns a new AnnData snapshot and leaves its input untouched.
"""

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from sklearn.metrics import silhouette_score
from sklearn.neighbors import NearestNeighbors

from ad_snrna.errors import (
    EmptyCellError,
    InsufficientCellsError,
    InsufficientGenesError,
    InvalidThresholdError,
    MissingKeyError,
)


def normalize(adata, target_sum=1e4):
    """Normalize counts per cell to target_sum and log1p transform

    Counts are read from layers["counts"] when present so a normalized
    snapshot can be re-normalized after subsetting.

    Args:
        adata: AnnData object
        target_sum: Total counts per cell after scaling

    Returns:
        New AnnData object; .raw holds the log-normalized full gene space
    """
    print("Normalizing data...")
    if target_sum <= 0:
        raise InvalidThresholdError(f"target_sum must be positive (got {target_sum})")

    adata = adata.copy()
    if "counts" in adata.layers:
        adata.X = adata.layers["counts"].copy()
    else:
        adata.layers["counts"] = adata.X.copy()

    totals = np.asarray(adata.X.sum(axis=1)).ravel()
    if (totals == 0).any():
        raise EmptyCellError(adata.obs_names[totals == 0])

    # Normalize to target_sum reads per cell
    sc.pp.normalize_total(adata, target_sum=target_sum)

    # Log transform
    sc.pp.log1p(adata)

    adata.raw = adata
    adata.uns["normalization"] = {"target_sum": float(target_sum)}
    return adata


def select_features(adata, n_top_genes=2000, n_bins=20):
    """Rank genes by bin-normalized dispersion and keep the top n_top_genes

    Uses the Seurat flavor of highly variable gene selection: genes are binned
    by mean expression and dispersions are z-scored within each bin. Genes with
    no finite dispersion rank last; ties are broken by gene id.

    Args:
        adata: Log-normalized AnnData object
        n_top_genes: Number of genes to keep
        n_bins: Number of mean-expression bins

    Returns:
        FeatureSet, a tuple of gene ids
    """
    print("Finding highly variable genes...")
    if n_top_genes < 1:
        raise InvalidThresholdError(f"n_top_genes must be at least 1 (got {n_top_genes})")
    if adata.n_vars < n_top_genes:
        raise InsufficientGenesError(
            f"n_top_genes={n_top_genes} but matrix has {adata.n_vars} genes "
            f"({adata.n_obs} cells x {adata.n_vars} genes)"
        )

    stats = sc.pp.highly_variable_genes(
        adata, flavor="seurat", n_bins=n_bins, inplace=False
    )
    stats = pd.DataFrame(
        {
            "gene": adata.var_names.astype(str),
            "dispersions_norm": np.asarray(stats["dispersions_norm"], dtype=float),
        }
    )
    stats["dispersions_norm"] = stats["dispersions_norm"].where(
        np.isfinite(stats["dispersions_norm"]), -np.inf
    )
    ranked = stats.sort_values(
        ["dispersions_norm", "gene"], ascending=[False, True], kind="mergesort"
    )
    feature_set = tuple(ranked["gene"].head(n_top_genes))

    print(f"  Selected {len(feature_set)} highly variable genes")
    return feature_set


def mark_features(adata, feature_set):
    """Return a copy of adata with the feature set recorded in .var and .uns"""
    adata = adata.copy()
    adata.var["highly_variable"] = adata.var_names.isin(feature_set)
    adata.uns["feature_set"] = list(feature_set)
    return adata


def scale(adata, feature_set, clip_max=None):
    """Scale each feature to zero mean and unit variance

    Genes with zero standard deviation are set to 0.

    Args:
        adata: Log-normalized AnnData object
        feature_set: Genes to keep
        clip_max: Clip scaled values to [-clip_max, clip_max] (optional)

    Returns:
        New AnnData object restricted to feature_set
    """
    print("Scaling data...")
    missing = [g for g in feature_set if g not in adata.var_names]
    if missing:
        raise InsufficientGenesError(
            f"{len(missing)} feature genes not in matrix, e.g. {missing[:5]}"
        )
    if clip_max is not None and clip_max <= 0:
        raise InvalidThresholdError(f"clip_max must be positive (got {clip_max})")

    sub = adata[:, list(feature_set)].copy()
    if sparse.issparse(sub.X):
        sub.X = sub.X.toarray()
    sub.X = np.asarray(sub.X, dtype=np.float64)

    sc.pp.scale(sub, zero_center=True)
    if clip_max is not None:
        sub.X = np.clip(sub.X, -clip_max, clip_max)

    sub.uns["scale"] = {"clip_max": clip_max}
    return sub


def reduce_linear(adata, n_comps=50, random_state=0):
    """Run PCA on the scaled matrix

    Args:
        adata: Scaled AnnData object
        n_comps: Number of principal components
        random_state: Seed for the ARPACK start vector

    Returns:
        Tuple of (new AnnData object with .obsm["X_pca"], variance ratio per component)
    """
    print("Running PCA...")
    if n_comps < 1:
        raise InvalidThresholdError(f"n_comps must be at least 1 (got {n_comps})")
    if n_comps >= adata.n_obs:
        raise InsufficientCellsError(
            f"n_comps={n_comps} needs more than {n_comps} cells "
            f"({adata.n_obs} cells x {adata.n_vars} genes)"
        )
    if n_comps >= adata.n_vars:
        raise InsufficientGenesError(
            f"n_comps={n_comps} needs more than {n_comps} genes "
            f"({adata.n_obs} cells x {adata.n_vars} genes)"
        )

    adata = adata.copy()
    sc.tl.pca(adata, n_comps=n_comps, svd_solver="arpack", random_state=random_state)

    variance_ratio = np.asarray(adata.uns["pca"]["variance_ratio"])
    # ARPACK already returns components by decreasing variance; enforce it anyway
    order = np.argsort(-variance_ratio, kind="stable")
    if not np.array_equal(order, np.arange(len(order))):
        adata.obsm["X_pca"] = adata.obsm["X_pca"][:, order]
        adata.varm["PCs"] = adata.varm["PCs"][:, order]
        adata.uns["pca"]["variance"] = np.asarray(adata.uns["pca"]["variance"])[order]
        variance_ratio = variance_ratio[order]
        adata.uns["pca"]["variance_ratio"] = variance_ratio

    print(f"  First {min(5, n_comps)} PCs explain {variance_ratio[:5].sum() * 100:.1f}% of variance")
    return adata, variance_ratio


def build_graph(adata, n_neighbors, n_dims, use_rep="X_pca"):
    """Build a symmetric kNN graph in embedding space

    Each cell is linked to its n_neighbors nearest cells (Euclidean, itself
    excluded) in the first n_dims coordinates of .obsm[use_rep]; an edge exists
    when either endpoint lists the other.

    Args:
        adata: AnnData object with an embedding
        n_neighbors: k for the kNN graph
        n_dims: Number of leading coordinates to use
        use_rep: Key in .obsm

    Returns:
        New AnnData object with .obsp["connectivities"] and .obsp["distances"]
    """
    print("Computing neighborhood graph...")
    if use_rep not in adata.obsm:
        raise MissingKeyError(f"Embedding '{use_rep}' not found in adata.obsm")
    X = np.asarray(adata.obsm[use_rep])
    if n_neighbors < 1:
        raise InvalidThresholdError(f"n_neighbors must be at least 1 (got {n_neighbors})")
    if not 1 <= n_dims <= X.shape[1]:
        raise InvalidThresholdError(
            f"n_dims={n_dims} but '{use_rep}' has {X.shape[1]} dimensions"
        )
    if n_neighbors >= adata.n_obs:
        raise InsufficientCellsError(
            f"n_neighbors={n_neighbors} requires more than {n_neighbors} cells "
            f"(got {adata.n_obs})"
        )

    X = X[:, :n_dims]
    nn = NearestNeighbors(n_neighbors=n_neighbors, metric="euclidean").fit(X)
    # With no query the points themselves are excluded from their own neighbors
    distances, indices = nn.kneighbors()

    n = adata.n_obs
    rows = np.repeat(np.arange(n), n_neighbors)
    cols = indices.ravel()
    knn_dist = sparse.csr_matrix((distances.ravel(), (rows, cols)), shape=(n, n))
    knn_conn = sparse.csr_matrix((np.ones(len(rows)), (rows, cols)), shape=(n, n))

    adata = adata.copy()
    adata.obsp["distances"] = knn_dist.maximum(knn_dist.T).tocsr()
    adata.obsp["connectivities"] = knn_conn.maximum(knn_conn.T).tocsr()
    adata.uns["neighbors"] = {
        "connectivities_key": "connectivities",
        "distances_key": "distances",
        "params": {
            "n_neighbors": int(n_neighbors),
            "method": "umap",
            "metric": "euclidean",
            "use_rep": use_rep,
            "n_pcs": int(n_dims),
        },
    }
    return adata


def _relabel_by_size(labels):
    """Renumber labels 0..K-1 by descending size, ties by first appearance"""
    labels = pd.Series(np.asarray(labels)).astype(str)
    first_seen = {lab: i for i, lab in reversed(list(enumerate(labels)))}
    sizes = labels.value_counts()
    order = sorted(sizes.index, key=lambda lab: (-sizes[lab], first_seen[lab]))
    mapping = {lab: i for i, lab in enumerate(order)}
    return labels.map(mapping).to_numpy(dtype=int)


def _leiden(adata, resolution, random_state):
    tmp = sc.AnnData(
        X=sparse.csr_matrix((adata.n_obs, 0)),
        obs=pd.DataFrame(index=adata.obs_names),
    )
    sc.tl.leiden(
        tmp,
        resolution=float(resolution),
        random_state=random_state,
        adjacency=adata.obsp["connectivities"],
        directed=False,
        key_added="leiden",
    )
    return tmp.obs["leiden"].to_numpy()


def detect_clusters(
    adata, resolution, random_state=0, key_added="cluster", method="leiden"
):
    """Partition the kNN graph into clusters

    Args:
        adata: AnnData object with .obsp["connectivities"]
        resolution: Clustering resolution (higher gives more, smaller clusters)
        random_state: Random seed
        key_added: Column in .obs for the cluster ids
        method: "leiden" or a callable (adjacency, resolution, random_state) -> labels

    Returns:
        New AnnData object with integer cluster ids 0..K-1 (largest first) in .obs[key_added]
    """
    print("Clustering...")
    if "connectivities" not in adata.obsp:
        raise MissingKeyError("No neighbor graph found; run build_graph first")
    if resolution <= 0:
        raise InvalidThresholdError(f"resolution must be positive (got {resolution})")

    if callable(method):
        labels = method(adata.obsp["connectivities"], resolution, random_state)
        method_name = getattr(method, "__name__", "custom")
    elif method == "leiden":
        labels = _leiden(adata, resolution, random_state)
        method_name = method
    else:
        raise ValueError(f"Unknown clustering method '{method}'")

    labels = np.asarray(labels)
    if len(labels) != adata.n_obs:
        raise ValueError(
            f"Clustering returned {len(labels)} labels for {adata.n_obs} cells"
        )
    cluster_ids = _relabel_by_size(labels)
    n_clusters = int(cluster_ids.max()) + 1

    adata = adata.copy()
    adata.obs[key_added] = pd.Categorical(cluster_ids, categories=list(range(n_clusters)))
    adata.uns[key_added] = {
        "params": {
            "method": method_name,
            "resolution": float(resolution),
            "random_state": random_state,
        }
    }
    print(f"  Found {n_clusters} clusters at resolution {resolution}")
    return adata


def embed_nonlinear(adata, n_components=2, random_state=0, min_dist=0.5):
    """Compute a UMAP layout from the kNN graph (visualization only)

    Args:
        adata: AnnData object with a neighbor graph
        n_components: 2 or 3
        random_state: Random seed
        min_dist: UMAP min_dist

    Returns:
        New AnnData object with .obsm["X_umap"]
    """
    print("Running UMAP...")
    if "neighbors" not in adata.uns:
        raise MissingKeyError("No neighbor graph found; run build_graph first")

    adata = adata.copy()
    sc.tl.umap(
        adata,
        n_components=int(n_components),
        min_dist=min_dist,
        random_state=random_state,
    )
    return adata


def resolution_sweep(
    adata,
    resolutions=None,
    random_state=0,
    min_cluster_size=20,
    use_rep="X_pca",
):
    """Cluster at a grid of resolutions and report diagnostics

    Helps pick the resolution by hand; nothing is written back to adata.

    Returns:
        DataFrame with resolution, n_clusters, silhouette and small_cluster_fraction
    """
    if resolutions is None:
        resolutions = np.round(np.arange(0.2, 2.05, 0.1), 2)

    n_dims = adata.uns.get("neighbors", {}).get("params", {}).get("n_pcs")
    X = np.asarray(adata.obsm[use_rep])
    if n_dims:
        X = X[:, :n_dims]

    metrics = []
    for res in resolutions:
        labels = detect_clusters(adata, float(res), random_state=random_state).obs["cluster"]
        labels = labels.astype(int).to_numpy()
        n_clusters = len(np.unique(labels))
        small_frac = 0.0
        sil = np.nan
        if n_clusters > 1:
            counts = pd.Series(labels).value_counts()
            small_frac = float(
                counts[counts < max(2, int(min_cluster_size))].sum() / len(labels)
            )
            if n_clusters < len(labels):
                sil = float(silhouette_score(X, labels))

        metrics.append(
            {
                "resolution": float(res),
                "n_clusters": int(n_clusters),
                "silhouette": sil,
                "small_cluster_fraction": small_frac,
            }
        )

    return pd.DataFrame(metrics)
