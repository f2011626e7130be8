#!/usr/bin/env python3
"""
Astrocyte sub-clustering and AD vs control differential expression

This script performs two stages, with a human decision in between:

cluster:
1. Count matrix loading
2. Quality control filtering
3. Normalization, HVGs, scaling, PCA, kNN graph, Leiden and UMAP
4. Marker gene evidence per cluster (to decide which clusters are astrocytes)

subcluster-de:
5. Cluster labeling from a JSON label map
6. Astrocyte subset re-clustering
7. Covariate merge (diagnosis, subcluster)
8. Wilcoxon AD vs control test within one subcluster

python astrocyte_ad_analysis.py cluster --counts counts.tsv --out-dir results
python astrocyte_ad_analysis.py subcluster-de --label-map labels.json \
    --covariates covariates.tsv --subcluster 2 --out-dir results
"""

import argparse
import json
import warnings
from pathlib import Path

import anndata
import scanpy as sc

from ad_snrna.annotation import annotate, compute_top_markers_per_cluster, score_markers
from ad_snrna.data_loader import load_count_matrix, load_covariates
from ad_snrna.differential_expression import differential_expression
from ad_snrna.errors import PipelineError
from ad_snrna.export import export_clusters, export_differential_results, export_embedding
from ad_snrna.metadata import merge_covariates
from ad_snrna.parameters import (
    CELL_FILTERS,
    DE_PARAMS,
    GENE_FILTERS,
    GENE_PATTERNS,
    PROCESSING_PARAMS,
    SUBCLUSTER_PARAMS,
    get_parameter_summary,
)
from ad_snrna.qc_utils import filter_cells, filter_genes
from ad_snrna.recluster import recluster_subset, run_clustering_pipeline, subset_by_label

# Configure scanpy
sc.settings.verbosity = 1

# Suppress warnings
warnings.filterwarnings("ignore", category=FutureWarning)


def run_cluster(args):
    """Stage 1: load, QC, cluster and report marker evidence"""
    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    print("\n" + get_parameter_summary() + "\n")

    adata = load_count_matrix(args.counts, sep=args.sep)

    adata, qc_metrics = filter_cells(
        adata,
        min_features=CELL_FILTERS["min_genes"],
        max_features=CELL_FILTERS["max_genes"],
        max_mito_pct=CELL_FILTERS["max_mt_pct"],
        mito_pattern=GENE_PATTERNS["mt_pattern"],
        min_counts=CELL_FILTERS["min_counts"],
        max_counts=CELL_FILTERS["max_counts"],
    )
    qc_metrics.to_csv(out_dir / "qc_metrics.tsv", sep="\t", index_label="cell")
    adata = filter_genes(adata, min_cells=GENE_FILTERS["min_cells"])

    params = {**PROCESSING_PARAMS}
    if args.n_dims is not None:
        params["n_dims"] = args.n_dims
    if args.resolution is not None:
        params["resolution"] = args.resolution
    adata = run_clustering_pipeline(adata, params=params)

    export_clusters(adata, out_dir / "clusters.tsv")
    export_embedding(adata, out_dir / "umap.tsv", basis="X_umap")
    export_embedding(adata, out_dir / "pca.tsv", basis="X_pca")

    scores = score_markers(adata, cluster_key="cluster")
    scores.to_csv(out_dir / "marker_scores_by_cluster.tsv", sep="\t")
    print(f"  Saved: {out_dir}/marker_scores_by_cluster.tsv")
    markers = compute_top_markers_per_cluster(adata, groupby="cluster")
    markers.to_csv(out_dir / "top_markers_by_cluster.tsv", sep="\t", index=False)
    print(f"  Saved: {out_dir}/top_markers_by_cluster.tsv")

    output_path = out_dir / "clustered.h5ad"
    adata.write(output_path)
    print(f"Saved clustered data to {output_path}")
    print("Write a JSON label map {cluster id: label} and run subcluster-de next.")
    return adata


def run_subcluster_de(args):
    """Stage 2: label, re-cluster astrocytes, merge covariates and test"""
    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    adata = anndata.read_h5ad(args.clustered or out_dir / "clustered.h5ad")
    with open(args.label_map) as f:
        label_map = json.load(f)

    adata = annotate(adata, label_map, cluster_key="cluster", label_key="celltype")

    key = f"cluster_{args.subset_name}"
    params = {**SUBCLUSTER_PARAMS}
    if args.sub_resolution is not None:
        params["resolution"] = args.sub_resolution
    adata, sub = recluster_subset(
        adata,
        mask=lambda obs: (obs["celltype"].astype(object) == args.label).to_numpy(),
        subset_name=args.subset_name,
        params=params,
    )
    export_clusters(sub, out_dir / f"clusters_{args.subset_name}.tsv", keys=(key,))
    export_embedding(sub, out_dir / f"umap_{args.subset_name}.tsv", basis="X_umap")

    covariates = load_covariates(args.covariates, key=args.covariate_key, sep=args.sep)
    sub = merge_covariates(
        sub, covariates, key=args.obs_key, covariate_key=args.covariate_key
    )

    subcluster_field = args.subcluster_field or key
    if subcluster_field == key:
        focus = subset_by_label(sub, clusters=[int(args.subcluster)], cluster_key=key)
    else:
        focus = subset_by_label(
            sub, label=args.subcluster, label_key=subcluster_field
        )

    results = differential_expression(
        focus,
        group_a=args.group_a,
        group_b=args.group_b,
        groupby=args.groupby,
        method=args.method,
        correction=args.correction,
    )
    export_differential_results(
        results, out_dir / f"de_{args.subset_name}_{args.subcluster}.tsv"
    )

    sub.write(out_dir / f"subset_{args.subset_name}.h5ad")
    print("Analysis complete!")
    return results


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="snRNA-seq astrocyte sub-clustering and AD differential expression"
    )
    parser.add_argument("--sep", default=None, help="Field separator (default: from extension)")
    commands = parser.add_subparsers(dest="command", required=True)

    p_cluster = commands.add_parser("cluster", help="QC, clustering and marker evidence")
    p_cluster.add_argument("--counts", required=True, help="Gene x cell count matrix")
    p_cluster.add_argument("--out-dir", default="results")
    p_cluster.add_argument("--n-dims", type=int, default=None, help="PCs retained for the graph")
    p_cluster.add_argument("--resolution", type=float, default=None)
    p_cluster.set_defaults(func=run_cluster)

    p_de = commands.add_parser("subcluster-de", help="Label, re-cluster a cell type and test")
    p_de.add_argument("--clustered", default=None, help="Output of 'cluster' (default: out-dir)")
    p_de.add_argument("--label-map", required=True, help="JSON {cluster id: label}")
    p_de.add_argument("--label", default="Astrocyte", help="Label to re-cluster")
    p_de.add_argument("--subset-name", default="astro")
    p_de.add_argument("--sub-resolution", type=float, default=None)
    p_de.add_argument("--covariates", required=True, help="Covariates table")
    p_de.add_argument("--covariate-key", default="cell", help="Key column in covariates")
    p_de.add_argument("--obs-key", default=None, help="obs column to match (default: cell ids)")
    p_de.add_argument(
        "--subcluster-field",
        default=None,
        help="Column holding subclusters (default: the re-clustering result)",
    )
    p_de.add_argument("--subcluster", required=True, help="Subcluster to test within")
    p_de.add_argument("--groupby", default=DE_PARAMS["groupby"])
    p_de.add_argument("--group-a", default=DE_PARAMS["group_a"])
    p_de.add_argument("--group-b", default=DE_PARAMS["group_b"])
    p_de.add_argument("--method", default=DE_PARAMS["method"], choices=["wilcoxon", "t-test"])
    p_de.add_argument("--correction", default=DE_PARAMS["correction"])
    p_de.add_argument("--out-dir", default="results")
    p_de.set_defaults(func=run_subcluster_de)

    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except PipelineError as e:
        parser.exit(1, f"Error: {e}\n")


if __name__ == "__main__":
    main()
