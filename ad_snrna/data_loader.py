#!/usr/bin/env python3
"""
Data loading utilities for single-nucleus RNA-seq analysis
Handles delimited count matrices and covariates tables
"""

from pathlib import Path

import anndata
import numpy as np
import pandas as pd
from scipy import sparse

from ad_snrna.errors import MalformedInputError


def _infer_sep(path, sep):
    if sep is not None:
        return sep
    suffixes = [s.lower() for s in Path(path).suffixes]
    return "," if ".csv" in suffixes else "\t"


def _check_unique(ids, what, path):
    ids = pd.Index(ids)
    if ids.has_duplicates:
        dups = ids[ids.duplicated()].unique().tolist()
        raise MalformedInputError(
            f"{path}: {len(dups)} duplicated {what} ids, e.g. {dups[:5]}"
        )


def load_count_matrix(file_path, sep=None):
    """Load a gene-by-cell count matrix from delimited text

    The first row holds cell ids (with or without a leading corner cell) and
    the first column holds gene ids. The body must be non-negative numbers.

    Args:
        file_path: Path to the matrix (.csv, .tsv, .txt, optionally gzipped)
        sep: Field separator; inferred from the extension if None

    Returns:
        AnnData object (cells x genes) with raw counts in X and layers["counts"]
    """
    sep = _infer_sep(file_path, sep)
    print(f"Loading {file_path}")

    try:
        header = pd.read_csv(file_path, sep=sep, header=None, nrows=1, dtype=str)
        body = pd.read_csv(
            file_path, sep=sep, header=None, skiprows=1, index_col=0, dtype={0: str}
        )
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
        raise MalformedInputError(f"{file_path}: could not parse matrix ({e})") from e

    if body.shape[0] == 0 or body.shape[1] == 0:
        raise MalformedInputError(f"{file_path}: matrix has no genes or no cells")

    # Header with a corner cell has one more field than the body has columns
    header_ids = header.iloc[0].tolist()
    if len(header_ids) == body.shape[1] + 1:
        cell_ids = header_ids[1:]
    elif len(header_ids) == body.shape[1]:
        cell_ids = header_ids
    else:
        raise MalformedInputError(
            f"{file_path}: header has {len(header_ids)} fields "
            f"but rows have {body.shape[1]} values"
        )
    if any(pd.isna(c) for c in cell_ids):
        raise MalformedInputError(f"{file_path}: header contains empty cell ids")

    cell_ids = [str(c) for c in cell_ids]
    gene_ids = body.index.astype(str).rename(None)
    if body.index.isna().any():
        raise MalformedInputError(f"{file_path}: empty gene id in first column")
    _check_unique(cell_ids, "cell", file_path)
    _check_unique(gene_ids, "gene", file_path)

    values = body.apply(pd.to_numeric, errors="coerce")
    if values.isna().to_numpy().any():
        n_bad = int(values.isna().to_numpy().sum())
        raise MalformedInputError(
            f"{file_path}: {n_bad} missing or non-numeric values in matrix body"
        )
    counts = values.to_numpy(dtype=np.float32)
    if (counts < 0).any():
        raise MalformedInputError(f"{file_path}: matrix contains negative counts")

    # Stored genes x cells on disk, AnnData wants cells x genes
    X = sparse.csr_matrix(counts.T)
    adata = anndata.AnnData(
        X=X,
        obs=pd.DataFrame(index=pd.Index(cell_ids)),
        var=pd.DataFrame(index=gene_ids),
    )
    adata.layers["counts"] = adata.X.copy()

    print(f"Loaded {adata.n_obs} cells x {adata.n_vars} genes")
    return adata


def load_covariates(file_path, key, sep=None):
    """Load a covariates table (one row per sample or cell)

    Args:
        file_path: Path to the delimited table
        key: Name of the identifier column
        sep: Field separator; inferred from the extension if None

    Returns:
        DataFrame with the key column as strings
    """
    sep = _infer_sep(file_path, sep)
    print(f"Loading covariates from {file_path}")

    try:
        covariates = pd.read_csv(file_path, sep=sep)
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
        raise MalformedInputError(f"{file_path}: could not parse table ({e})") from e

    if key not in covariates.columns:
        raise MalformedInputError(
            f"{file_path}: key column '{key}' not found (columns: {list(covariates.columns)})"
        )
    if covariates[key].isna().any():
        raise MalformedInputError(f"{file_path}: key column '{key}' has empty values")
    covariates[key] = covariates[key].astype(str)
    _check_unique(covariates[key], key, file_path)

    print(f"Loaded {len(covariates)} covariate rows with columns {list(covariates.columns)}")
    return covariates
