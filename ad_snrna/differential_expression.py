#!/usr/bin/env python3
"""
Differential expression analysis utilities for single-nucleus RNA-seq analysis
Handles per-gene rank-sum testing between two groups of cells
"""

import numpy as np
import pandas as pd
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests

from ad_snrna.errors import EmptyGroupError, MissingKeyError
from ad_snrna.parameters import DE_PARAMS

RESULT_COLUMNS = [
    "gene",
    "logFC",
    "P.Value",
    "adj.P.Val",
    "AveExpr",
    "mean_a",
    "mean_b",
    "pct_a",
    "pct_b",
    "contrast",
    "significant",
    "upregulated",
    "downregulated",
]

# Genes per dense block when testing a sparse matrix
_CHUNK_SIZE = 1000


def _expression(adata, use_raw):
    if use_raw and adata.raw is not None:
        return adata.raw.X, adata.raw.var_names
    return adata.X, adata.var_names


def _dense_block(X, rows, start, stop):
    block = X[rows][:, start:stop]
    if sparse.issparse(block):
        block = block.toarray()
    return np.asarray(block, dtype=np.float64)


def _test_block(values_a, values_b, method):
    if method == "wilcoxon":
        _, pvals = stats.mannwhitneyu(values_a, values_b, alternative="two-sided", axis=0)
    elif method == "t-test":
        # Welch's t-test (unequal variances)
        _, pvals = stats.ttest_ind(values_a, values_b, equal_var=False, axis=0)
    else:
        raise ValueError(f"Unknown test method '{method}' (use 'wilcoxon' or 't-test')")
    return np.asarray(pvals, dtype=np.float64)


def differential_expression(
    adata,
    group_a=DE_PARAMS["group_a"],
    group_b=DE_PARAMS["group_b"],
    groupby=DE_PARAMS["groupby"],
    method=DE_PARAMS["method"],
    correction=DE_PARAMS["correction"],
    use_raw=True,
    fdr_threshold=DE_PARAMS["fdr_threshold"],
    fc_threshold=DE_PARAMS["fc_threshold"],
):
    """Test every gene for a difference between two groups of cells

    Expression is expected to be log1p-normalized. Genes with zero variance
    in both groups are not tested and do not appear in the result.

    Args:
        adata: AnnData object
        group_a: Value of obs[groupby] for the first group (positive logFC = higher in A)
        group_b: Value of obs[groupby] for the reference group
        groupby: Column in adata.obs holding the group labels
        method: "wilcoxon" (Mann-Whitney U) or "t-test" (Welch)
        correction: statsmodels multipletests method ("fdr_bh", "bonferroni", ...)
        use_raw: Test the full gene space in adata.raw when available
        fdr_threshold: Adjusted p-value cutoff for the significance flags
        fc_threshold: |logFC| cutoff for the significance flags

    Returns:
        DataFrame sorted by adjusted p-value ascending
    """
    if groupby not in adata.obs:
        raise MissingKeyError(f"Grouping field '{groupby}' not found in adata.obs")

    labels = adata.obs[groupby].astype(object)
    mask_a = (labels == group_a).to_numpy()
    mask_b = (labels == group_b).to_numpy()
    for name, mask in ((group_a, mask_a), (group_b, mask_b)):
        if not mask.any():
            found = sorted(map(str, labels.dropna().unique()))
            raise EmptyGroupError(
                f"Group '{name}' has no cells in '{groupby}' (values present: {found})"
            )

    contrast = f"{group_a}_vs_{group_b}"
    print(f"  Testing {contrast} ({mask_a.sum()} vs {mask_b.sum()} cells) [{method}]")

    X, var_names = _expression(adata, use_raw)
    rows_a = np.flatnonzero(mask_a)
    rows_b = np.flatnonzero(mask_b)

    blocks = []
    for start in range(0, len(var_names), _CHUNK_SIZE):
        stop = min(start + _CHUNK_SIZE, len(var_names))
        values_a = _dense_block(X, rows_a, start, stop)
        values_b = _dense_block(X, rows_b, start, stop)

        pooled = np.vstack([values_a, values_b])
        # A gene needs variance in at least one group to be tested
        testable = (values_a.var(axis=0) > 0) | (values_b.var(axis=0) > 0)

        mean_a = values_a.mean(axis=0)
        mean_b = values_b.mean(axis=0)
        pvals = np.full(stop - start, np.nan)
        if testable.any():
            pvals[testable] = _test_block(
                values_a[:, testable], values_b[:, testable], method
            )

        blocks.append(
            pd.DataFrame(
                {
                    "gene": np.asarray(var_names[start:stop]).astype(str),
                    # Same convention as scanpy: fold change of de-logged means
                    "logFC": np.log2(
                        (np.expm1(mean_a) + 1e-9) / (np.expm1(mean_b) + 1e-9)
                    ),
                    "P.Value": pvals,
                    "AveExpr": pooled.mean(axis=0),
                    "mean_a": mean_a,
                    "mean_b": mean_b,
                    "pct_a": (values_a > 0).mean(axis=0),
                    "pct_b": (values_b > 0).mean(axis=0),
                    "testable": testable,
                }
            )
        )

    results = pd.concat(blocks, ignore_index=True)
    n_skipped = int((~results["testable"]).sum())
    if n_skipped:
        print(f"    Excluded {n_skipped:,} genes with no variance in either group")
    results = results[results["testable"]].drop(columns="testable")

    if results.empty:
        print("    Warning: no testable genes")
        return pd.DataFrame(columns=RESULT_COLUMNS)

    # Multiple testing correction
    results["adj.P.Val"] = multipletests(
        results["P.Value"].fillna(1.0).to_numpy(), method=correction
    )[1]
    results["contrast"] = contrast

    # Add significance flags
    results["significant"] = (results["adj.P.Val"] < fdr_threshold) & (
        results["logFC"].abs() > fc_threshold
    )
    results["upregulated"] = results["significant"] & (results["logFC"] > 0)
    results["downregulated"] = results["significant"] & (results["logFC"] < 0)

    results = results.sort_values(
        ["adj.P.Val", "P.Value", "gene"], kind="mergesort"
    ).reset_index(drop=True)

    n_sig = results["significant"].sum()
    n_up = results["upregulated"].sum()
    n_down = results["downregulated"].sum()
    print(f"    {n_sig} significant genes ({n_up} up, {n_down} down) of {len(results):,} tested")

    return results[RESULT_COLUMNS]
