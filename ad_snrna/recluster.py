#!/usr/bin/env python3
"""
Clustering pipeline and subset re-clustering
The same parameterized pipeline runs on the full dataset and on any subset
"""

import numpy as np
import pandas as pd

from ad_snrna.errors import EmptyGroupError, MissingKeyError
from ad_snrna.parameters import PROCESSING_PARAMS, validate_params
from ad_snrna.processing import (
    build_graph,
    detect_clusters,
    embed_nonlinear,
    mark_features,
    normalize,
    reduce_linear,
    scale,
    select_features,
)


def run_clustering_pipeline(adata, params=None, cluster_key="cluster"):
    """Normalize, select HVGs, scale, PCA, kNN graph, cluster and UMAP

    Args:
        adata: AnnData object with raw counts (in X or layers["counts"])
        params: Dict overriding PROCESSING_PARAMS
        cluster_key: Column in .obs for the cluster ids

    Returns:
        Full-gene log-normalized AnnData object carrying the feature set,
        PCA, graph, clusters and UMAP
    """
    params = {**PROCESSING_PARAMS, **(params or {})}
    validate_params(params)
    print(f"Running clustering pipeline on {adata.n_obs} cells x {adata.n_vars} genes")

    normalized = normalize(adata, target_sum=params["target_sum"])
    feature_set = select_features(normalized, n_top_genes=params["n_top_genes"])
    normalized = mark_features(normalized, feature_set)

    scaled = scale(normalized, feature_set, clip_max=params.get("clip_max"))
    reduced, variance_ratio = reduce_linear(
        scaled, n_comps=params["n_comps"], random_state=params["random_state"]
    )

    # Carry the reduction back onto the full gene space
    result = normalized.copy()
    result.obsm["X_pca"] = reduced.obsm["X_pca"]
    result.uns["pca"] = reduced.uns["pca"]
    pcs = np.zeros((result.n_vars, reduced.varm["PCs"].shape[1]))
    pcs[result.var_names.get_indexer(reduced.var_names)] = reduced.varm["PCs"]
    result.varm["PCs"] = pcs
    result.var["mean"] = reduced.var["mean"].reindex(result.var_names)
    result.var["std"] = reduced.var["std"].reindex(result.var_names)

    result = build_graph(
        result, n_neighbors=params["n_neighbors"], n_dims=params["n_dims"]
    )
    result = detect_clusters(
        result,
        resolution=params["resolution"],
        random_state=params["random_state"],
        key_added=cluster_key,
    )
    result = embed_nonlinear(
        result,
        n_components=params["umap_components"],
        random_state=params["random_state"],
    )
    result.uns["pipeline_params"] = {
        k: v for k, v in params.items() if v is not None
    }

    return result


def _label_mask(values, label):
    """Match a label against a column, so "2" selects 2 in a numeric column"""
    if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values):
        try:
            return (values == float(label)).fillna(False).to_numpy(dtype=bool)
        except (TypeError, ValueError):
            return np.zeros(len(values), dtype=bool)
    return (values.astype(str) == str(label)).to_numpy() & values.notna().to_numpy()


def subset_by_label(
    adata,
    predicate=None,
    label=None,
    clusters=None,
    label_key="celltype",
    cluster_key="cluster",
):
    """Select cells by metadata for focused re-analysis

    Exactly one of predicate, label or clusters should be given.

    Args:
        adata: AnnData object
        predicate: Callable taking adata.obs and returning a boolean mask
        label: Keep cells with obs[label_key] == label
        clusters: Keep cells with obs[cluster_key] in clusters
        label_key: Label column
        cluster_key: Cluster column

    Returns:
        New AnnData object with the selected cells (raw counts preserved)
    """
    given = [x is not None for x in (predicate, label, clusters)]
    if sum(given) != 1:
        raise ValueError("Give exactly one of predicate, label or clusters")

    obs = adata.obs
    if predicate is not None:
        mask = np.asarray(predicate(obs), dtype=bool)
        description = "predicate"
    elif label is not None:
        if label_key not in obs:
            raise MissingKeyError(f"Label key '{label_key}' not found in adata.obs")
        mask = _label_mask(obs[label_key], label)
        description = f"{label_key} == {label!r}"
    else:
        if cluster_key not in obs:
            raise MissingKeyError(f"Cluster key '{cluster_key}' not found in adata.obs")
        wanted = {int(c) for c in clusters}
        mask = obs[cluster_key].astype(int).isin(wanted).to_numpy()
        description = f"{cluster_key} in {sorted(wanted)}"

    if len(mask) != adata.n_obs:
        raise ValueError(f"Mask has {len(mask)} entries for {adata.n_obs} cells")
    if not mask.any():
        raise EmptyGroupError(f"No cells match {description} (of {adata.n_obs} cells)")

    sub = adata[mask].copy()
    print(f"Selected {sub.n_obs:,} of {adata.n_obs:,} cells ({description})")
    return sub


def _map_subset_labels_to_parent(adata, sub, col_name):
    """Map a column from subset back to parent; cells outside the subset get NA"""
    values = pd.Series(pd.NA, index=adata.obs_names, dtype="Int64")
    values.loc[sub.obs_names] = sub.obs[col_name].astype(int).to_numpy()
    adata.obs[col_name] = values


def recluster_subset(adata, mask, subset_name, params=None):
    """Re-cluster a subset of cells and map labels back to parent AnnData

    Args:
        adata: Parent AnnData object (raw counts in layers["counts"])
        mask: Boolean array-like, or a callable on adata.obs, selecting the subset
        subset_name: Short name used in output keys (e.g. "astro")
        params: Dict overriding PROCESSING_PARAMS for the subset

    Returns:
        Tuple of (new parent AnnData with obs["cluster_<subset_name>"], subset AnnData)
    """
    key = f"cluster_{subset_name}"
    predicate = mask if callable(mask) else (lambda obs: np.asarray(mask, dtype=bool))
    sub = subset_by_label(adata, predicate=predicate)

    # Subset-specific HVGs and processing
    sub = run_clustering_pipeline(sub, params=params, cluster_key=key)

    parent = adata.copy()
    _map_subset_labels_to_parent(parent, sub, key)
    print(f"  Mapped {key} back to {sub.n_obs:,} parent cells")
    return parent, sub
