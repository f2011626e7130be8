#!/usr/bin/env python3
"""
Quality control utilities for single-nucleus RNA-seq analysis
Handles QC metrics calculation and cell/gene filtering
"""

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse

from ad_snrna.parameters import GENE_PATTERNS, validate_cell_filters


def _row_sums(X):
    sums = X.sum(axis=1)
    return np.asarray(sums).ravel()


def calculate_qc_metrics(adata, mito_pattern=GENE_PATTERNS["mt_pattern"]):
    """Calculate QC metrics

    Args:
        adata: AnnData object with raw counts in X
        mito_pattern: Regex matched at the start of gene ids to flag mitochondrial genes

    Returns:
        New AnnData object with n_genes_by_counts, total_counts and percent_mt in .obs
    """
    print("Calculating QC metrics...")
    adata = adata.copy()

    # Mitochondrial genes
    adata.var["mt"] = adata.var_names.str.match(mito_pattern)

    sc.pp.calculate_qc_metrics(
        adata, percent_top=None, log1p=False, inplace=True, var_type="genes"
    )

    mt_counts = _row_sums(adata[:, adata.var["mt"].to_numpy()].X)
    total = adata.obs["total_counts"].to_numpy(dtype=float)
    # Zero-count cells get 0% rather than NaN
    adata.obs["percent_mt"] = np.divide(
        mt_counts * 100, total, out=np.zeros_like(total), where=total > 0
    )

    print(f"  Flagged {int(adata.var['mt'].sum())} mitochondrial genes ('{mito_pattern}')")
    return adata


def _describe(values):
    return f"observed range {np.min(values):.4g} - {np.max(values):.4g}"


def filter_cells(
    adata,
    min_features,
    max_features,
    max_mito_pct,
    mito_pattern=GENE_PATTERNS["mt_pattern"],
    min_counts=None,
    max_counts=None,
):
    """Apply cell-level QC filtering

    Keeps cells with min_features < n_genes_by_counts < max_features and
    percent_mt < max_mito_pct. Optional total-count bounds are inclusive.

    Args:
        adata: AnnData object with raw counts
        min_features: Exclusive lower bound on detected genes per cell
        max_features: Exclusive upper bound on detected genes per cell
        max_mito_pct: Exclusive upper bound on mitochondrial percentage
        mito_pattern: Regex for mitochondrial gene ids
        min_counts: Minimum total counts per cell (optional)
        max_counts: Maximum total counts per cell (optional)

    Returns:
        Tuple of (filtered AnnData, qc_metrics DataFrame for every input cell)
    """
    validate_cell_filters(
        min_features, max_features, max_mito_pct, min_counts=min_counts, max_counts=max_counts
    )

    qc = calculate_qc_metrics(adata, mito_pattern=mito_pattern)
    obs = qc.obs
    print("Applying QC filters...")
    print(f"Starting with {qc.n_obs} cells and {qc.n_vars} genes")

    n_genes = obs["n_genes_by_counts"].to_numpy()
    total = obs["total_counts"].to_numpy()
    pct_mt = obs["percent_mt"].to_numpy()

    criteria = [
        (f"n_genes_by_counts <= {min_features}", n_genes <= min_features, n_genes),
        (f"n_genes_by_counts >= {max_features}", n_genes >= max_features, n_genes),
        (f"percent_mt >= {max_mito_pct}", pct_mt >= max_mito_pct, pct_mt),
    ]
    if min_counts is not None:
        criteria.append((f"total_counts < {min_counts}", total < min_counts, total))
    if max_counts is not None:
        criteria.append((f"total_counts > {max_counts}", total > max_counts, total))

    reasons = pd.Series("", index=obs.index, dtype=object)
    failed = np.zeros(qc.n_obs, dtype=bool)
    for label, mask, metric in criteria:
        n_fail = int(mask.sum())
        if n_fail:
            print(f"  Removing {n_fail:,} cells with {label} ({_describe(metric[mask])})")
            reasons[mask] = [
                f"{r};{label}" if r else label for r in reasons[mask]
            ]
        failed |= mask

    qc_metrics = obs[["n_genes_by_counts", "total_counts", "percent_mt"]].copy()
    qc_metrics["passed_qc"] = ~failed
    qc_metrics["qc_fail_reason"] = reasons

    filtered = qc[~failed].copy()
    print(f"After filtering: {filtered.n_obs} cells and {filtered.n_vars} genes")

    return filtered, qc_metrics


def filter_genes(adata, min_cells):
    """Remove genes detected in fewer than min_cells cells

    Args:
        adata: AnnData object with raw counts
        min_cells: Minimum cells expressing a gene

    Returns:
        New AnnData object
    """
    X = adata.layers["counts"] if "counts" in adata.layers else adata.X
    if sparse.issparse(X):
        n_cells = np.asarray((X > 0).sum(axis=0)).ravel()
    else:
        n_cells = (np.asarray(X) > 0).sum(axis=0)

    keep = n_cells >= min_cells
    print(f"Keeping {int(keep.sum())} of {adata.n_vars} genes detected in >= {min_cells} cells")
    filtered = adata[:, keep].copy()
    filtered.var["n_cells"] = n_cells[keep]
    return filtered
