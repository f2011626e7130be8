#!/usr/bin/env python3
"""
Analysis parameters for the AD astrocyte snRNA-seq pipeline

This file centralizes all thresholds and settings used in the pipeline.
Modify these values (or pass overrides to the stage functions) to adjust
filtering stringency and clustering granularity.
"""

from ad_snrna.errors import InvalidThresholdError

# Cell-level filters (feature bounds are strict)
CELL_FILTERS = {
    "min_genes": 200,  # Cells must detect more than this many genes
    "max_genes": 2500,  # ...and fewer than this many
    "min_counts": None,  # Minimum total counts per cell (None = no filter)
    "max_counts": None,  # Maximum total counts per cell (None = no filter)
    "max_mt_pct": 5,  # Mitochondrial percentage must stay below this
}

# Gene-level filters
GENE_FILTERS = {
    "min_cells": 3,  # Minimum cells expressing a gene
}

# Mitochondrial gene pattern (regex matched at the start of the gene id)
GENE_PATTERNS = {
    "mt_pattern": "MT-",  # Human mitochondrial genes (use "mt-" for mouse)
}

# Normalization -> HVG -> scaling -> PCA -> kNN graph -> Leiden -> UMAP
PROCESSING_PARAMS = {
    "target_sum": 1e4,  # Counts per cell after library size normalization
    "n_top_genes": 2000,  # Highly variable genes
    "clip_max": 10,  # Clip scaled values to [-10, 10] (None = no clipping)
    "n_comps": 50,  # Principal components computed
    "n_dims": 10,  # PCs retained for the graph (read off the elbow plot)
    "n_neighbors": 20,  # k for the kNN graph
    "resolution": 0.5,  # Leiden resolution
    "umap_components": 2,
    "random_state": 0,
}

# Re-clustering of the astrocyte subset
SUBCLUSTER_PARAMS = {
    **PROCESSING_PARAMS,
    "n_top_genes": 2000,
    "n_dims": 10,
    "n_neighbors": 20,
    "resolution": 0.3,
}

# Differential expression
DE_PARAMS = {
    "groupby": "diagnosis",
    "group_a": "AD",
    "group_b": "Control",
    "method": "wilcoxon",  # "wilcoxon" or "t-test"
    "correction": "fdr_bh",  # Any statsmodels multipletests method, e.g. "bonferroni"
    "fdr_threshold": 0.05,
    "fc_threshold": 0.25,
}

# Marker genes used as evidence when labeling clusters (human cortex)
MARKER_GENES = {
    "Astrocyte": ["GFAP", "AQP4", "SLC1A2", "SLC1A3", "ALDH1L1", "GJA1"],
    "Excitatory": ["SLC17A7", "CAMK2A", "SATB2"],
    "Inhibitory": ["GAD1", "GAD2", "SLC6A1"],
    "Oligodendrocyte": ["PLP1", "MOBP", "MBP", "MOG"],
    "OPC": ["PDGFRA", "CSPG4", "VCAN"],
    "Microglia": ["P2RY12", "CSF1R", "CX3CR1", "C3"],
    "Endothelial": ["CLDN5", "FLT1", "PECAM1"],
}


def get_parameter_summary(
    cell_filters=None, processing_params=None, de_params=None
):
    """Return a formatted summary of current parameter settings"""
    cell_filters = cell_filters or CELL_FILTERS
    processing_params = processing_params or PROCESSING_PARAMS
    de_params = de_params or DE_PARAMS

    summary = [
        "=== Analysis Settings ===",
        "\nCell-level filters:",
        f"  - Genes per cell: ({cell_filters['min_genes']}, {cell_filters['max_genes']})",
        f"  - Max mitochondrial %: {cell_filters['max_mt_pct']}%",
    ]
    if cell_filters.get("min_counts") is not None or cell_filters.get("max_counts") is not None:
        summary.append(
            f"  - Counts per cell: {cell_filters.get('min_counts')} - {cell_filters.get('max_counts')}"
        )

    summary.extend(
        [
            "\nClustering:",
            f"  - HVGs: {processing_params['n_top_genes']}",
            f"  - PCs computed / retained: {processing_params['n_comps']} / {processing_params['n_dims']}",
            f"  - kNN k: {processing_params['n_neighbors']}",
            f"  - Leiden resolution: {processing_params['resolution']}",
            "\nDifferential expression:",
            f"  - {de_params['group_a']} vs {de_params['group_b']} on '{de_params['groupby']}'",
            f"  - Test: {de_params['method']}, correction: {de_params['correction']}",
        ]
    )

    return "\n".join(summary)


def validate_cell_filters(min_genes, max_genes, max_mt_pct, min_counts=None, max_counts=None):
    """Validate QC thresholds, raising InvalidThresholdError on the first problem set"""
    errors = []

    if min_genes < 0:
        errors.append(f"min_genes must be >= 0 (got {min_genes})")
    if min_genes >= max_genes:
        errors.append(
            f"min_genes must be less than max_genes (got {min_genes} >= {max_genes})"
        )
    if not 0 < max_mt_pct <= 100:
        errors.append(f"max_mt_pct must be in (0, 100] (got {max_mt_pct})")
    if min_counts is not None and max_counts is not None and min_counts >= max_counts:
        errors.append(
            f"min_counts must be less than max_counts (got {min_counts} >= {max_counts})"
        )

    if errors:
        raise InvalidThresholdError("QC filter validation failed:\n" + "\n".join(errors))


def validate_params(params=None):
    """Validate that clustering parameters make sense"""
    params = params or PROCESSING_PARAMS
    errors = []

    if params["target_sum"] <= 0:
        errors.append("target_sum must be positive")
    if params["n_top_genes"] < 1:
        errors.append("n_top_genes must be at least 1")
    if params.get("clip_max") is not None and params["clip_max"] <= 0:
        errors.append("clip_max must be positive or None")
    if params["n_dims"] > params["n_comps"]:
        errors.append(
            f"n_dims ({params['n_dims']}) cannot exceed n_comps ({params['n_comps']})"
        )
    if params["n_neighbors"] < 1:
        errors.append("n_neighbors must be at least 1")
    if params["resolution"] <= 0:
        errors.append("resolution must be positive")

    if errors:
        raise InvalidThresholdError("Parameter validation failed:\n" + "\n".join(errors))

    return True
