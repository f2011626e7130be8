#!/usr/bin/env python3
"""
Metadata utilities: attach external covariates (diagnosis, subcluster, ...) to cells
"""

import pandas as pd

from ad_snrna.errors import MalformedInputError, MissingKeyError, UnmatchedKeyError


def merge_covariates(adata, covariates, key=None, covariate_key=None, on_unmatched="warn"):
    """Left-join a covariates table onto adata.obs

    Args:
        adata: AnnData object
        covariates: DataFrame with one row per key
        key: Column in adata.obs to match on; None matches on cell ids
        covariate_key: Key column in covariates (defaults to key, or "cell" when key is None)
        on_unmatched: "warn" to report unmatched keys and keep the cells with
            null covariates, "raise" to raise UnmatchedKeyError

    Returns:
        New AnnData object with the covariate columns added to .obs
    """
    if on_unmatched not in ("warn", "raise"):
        raise ValueError(f"on_unmatched must be 'warn' or 'raise' (got {on_unmatched!r})")
    covariate_key = covariate_key or key or "cell"
    if covariate_key not in covariates.columns:
        raise MalformedInputError(
            f"Key column '{covariate_key}' not in covariates table "
            f"(columns: {list(covariates.columns)})"
        )
    if key is not None and key not in adata.obs:
        raise MissingKeyError(f"Key '{key}' not found in adata.obs")

    table = covariates.copy()
    table[covariate_key] = table[covariate_key].astype(str)
    if table[covariate_key].duplicated().any():
        dups = table.loc[table[covariate_key].duplicated(), covariate_key].unique().tolist()
        raise MalformedInputError(f"Duplicated keys in covariates table: {dups[:5]}")
    table = table.set_index(covariate_key)

    overlap = [c for c in table.columns if c in adata.obs.columns]
    if overlap:
        raise MalformedInputError(
            f"Covariate columns already present in adata.obs: {overlap}"
        )

    cell_keys = (
        pd.Series(adata.obs_names, index=adata.obs_names)
        if key is None
        else adata.obs[key].astype(str)
    )
    matched = cell_keys.isin(table.index)
    unmatched_keys = sorted(cell_keys[~matched].unique())

    if unmatched_keys:
        if on_unmatched == "raise":
            raise UnmatchedKeyError(unmatched_keys)
        for k in unmatched_keys:
            n_cells = int((cell_keys == k).sum())
            print(f"  Warning: key '{k}' not found in covariates ({n_cells} cells left without covariates)")

    merged = table.reindex(cell_keys.to_numpy())
    merged.index = adata.obs_names

    adata = adata.copy()
    for col in merged.columns:
        adata.obs[col] = merged[col]
    adata.uns["unmatched_covariate_keys"] = list(unmatched_keys)

    print(
        f"Merged {len(table.columns)} covariate columns onto {int(matched.sum()):,} "
        f"of {adata.n_obs:,} cells"
    )
    return adata
