#!/usr/bin/env python3
"""
Cell type annotation utilities for single-nucleus RNA-seq analysis
Applies a cluster -> cell type label map and reports marker gene evidence

Which cluster is which cell type is decided by a person looking at marker
expression; the functions here only apply that decision or summarize the
evidence for it.
"""

import numpy as np
import pandas as pd
import scanpy as sc

from ad_snrna.errors import MissingKeyError
from ad_snrna.parameters import MARKER_GENES


def annotate(adata, label_map, cluster_key="cluster", label_key="celltype"):
    """Label cells from their cluster id

    Args:
        adata: AnnData object with cluster ids in .obs[cluster_key]
        label_map: Mapping cluster id -> label (e.g. {3: "Astrocyte"})
        cluster_key: Cluster column
        label_key: Column to write labels into

    Returns:
        New AnnData object; cells in unmapped clusters get a null label
    """
    if cluster_key not in adata.obs:
        raise MissingKeyError(f"Cluster key '{cluster_key}' not found in adata.obs")

    label_map = {int(k): v for k, v in label_map.items()}
    clusters = adata.obs[cluster_key].astype(int)
    present = set(clusters.unique())

    unknown = sorted(int(c) for c in set(label_map) - present)
    if unknown:
        print(f"  Warning: label map has clusters not present in '{cluster_key}': {unknown}")
    unmapped = sorted(int(c) for c in present - set(label_map))
    if unmapped:
        print(f"  Warning: clusters {unmapped} have no label and stay unassigned")

    adata = adata.copy()
    labels = clusters.map(label_map)
    adata.obs[label_key] = pd.Categorical(labels)
    adata.uns[f"{label_key}_label_map"] = {str(k): v for k, v in label_map.items()}

    print("Cell type summary:")
    print(adata.obs[label_key].value_counts(dropna=False).sort_index())
    return adata


def score_markers(adata, marker_genes=MARKER_GENES, cluster_key="cluster", agg="median"):
    """Aggregate marker module scores per cluster

    Args:
        adata: Log-normalized AnnData object (full gene space in .raw if set)
        marker_genes: Dict of cell type -> marker genes
        cluster_key: Cluster column
        agg: "median" or "mean"

    Returns:
        DataFrame (clusters x cell types) of aggregated scores
    """
    if cluster_key not in adata.obs:
        raise MissingKeyError(f"Cluster key '{cluster_key}' not found in adata.obs")

    use_raw = adata.raw is not None
    var_names = adata.raw.var_names if use_raw else adata.var_names
    scored = adata.copy()

    score_cols = {}
    for label, genes in marker_genes.items():
        genes = [g for g in genes if g in var_names]
        if not genes:
            print(f"  Warning: no markers for {label} found in data")
            continue
        score_name = f"score_{label}"
        sc.tl.score_genes(scored, gene_list=genes, score_name=score_name, use_raw=use_raw)
        score_cols[score_name] = label

    if not score_cols:
        return pd.DataFrame(index=pd.Index([], name=cluster_key))

    grouped = scored.obs.groupby(cluster_key, observed=True)[list(score_cols)]
    table = grouped.median() if agg == "median" else grouped.mean()
    table = table.rename(columns=score_cols)
    table["best_match"] = table[list(score_cols.values())].idxmax(axis=1)
    return table


def compute_top_markers_per_cluster(adata, groupby="cluster", method="wilcoxon", n_top=30):
    """Compute top marker genes per cluster (one vs rest)

    Args:
        adata: Log-normalized AnnData object
        groupby: Column in adata.obs to group by
        method: DE method passed to scanpy (e.g., "wilcoxon", "t-test")
        n_top: Number of top genes to rank per group

    Returns:
        Pandas DataFrame with ranked markers across all groups
    """
    if groupby not in adata.obs:
        raise MissingKeyError(f"Groupby key '{groupby}' not found in adata.obs")

    ranked = adata.copy()
    # rank_genes_groups needs string categories
    ranked.obs[groupby] = ranked.obs[groupby].astype(str).astype("category")
    sc.tl.rank_genes_groups(
        ranked,
        groupby=groupby,
        method=method,
        n_genes=int(n_top),
        use_raw=ranked.raw is not None,
        pts=True,
    )
    markers_df = sc.get.rank_genes_groups_df(ranked, None)
    return markers_df


def marker_overlap(markers_df, panels=MARKER_GENES, top_n=10):
    """Overlap between each cluster's top genes and expected marker panels

    Returns:
        DataFrame (clusters x panels) of precision = overlap / top_n
    """
    sort_key = "scores" if "scores" in markers_df.columns else "logfoldchanges"
    rows = {}
    for group, sub in markers_df.groupby("group", observed=True):
        top = set(sub.sort_values(sort_key, ascending=False).head(int(top_n))["names"])
        rows[group] = {
            panel: len(top & set(genes)) / max(1, len(top))
            for panel, genes in panels.items()
        }
    return pd.DataFrame.from_dict(rows, orient="index").astype(np.float64)
