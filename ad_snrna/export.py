#!/usr/bin/env python3
"""
Export utilities: write results as delimited text for downstream tools
"""

from pathlib import Path

import pandas as pd

from ad_snrna.errors import MissingKeyError


def _sep_for(path):
    return "," if Path(path).suffix.lower() == ".csv" else "\t"


def get_embedding(adata, basis="X_pca"):
    """Return an embedding as a DataFrame indexed by cell id"""
    if basis not in adata.obsm:
        raise MissingKeyError(f"Embedding '{basis}' not found in adata.obsm")
    coords = adata.obsm[basis]
    prefix = basis.replace("X_", "").upper()
    columns = [f"{prefix}_{i + 1}" for i in range(coords.shape[1])]
    return pd.DataFrame(coords, index=adata.obs_names, columns=columns)


def export_differential_results(results, out_path):
    """Write a DifferentialResult table"""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    results.to_csv(out_path, sep=_sep_for(out_path), index=False)
    print(f"  Saved: {out_path}")


def export_clusters(adata, out_path, keys=("cluster",)):
    """Write cluster ids (and any other obs columns in keys) per cell"""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    missing = [k for k in keys if k not in adata.obs]
    if missing:
        raise MissingKeyError(f"Columns not found in adata.obs: {missing}")
    table = adata.obs[list(keys)].copy()
    table.insert(0, "cell", adata.obs_names)
    table.to_csv(out_path, sep=_sep_for(out_path), index=False)
    print(f"  Saved: {out_path}")


def export_embedding(adata, out_path, basis="X_umap"):
    """Write embedding coordinates per cell"""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    table = get_embedding(adata, basis)
    table.insert(0, "cell", adata.obs_names)
    table.to_csv(out_path, sep=_sep_for(out_path), index=False)
    print(f"  Saved: {out_path}")
