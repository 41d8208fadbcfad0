"""
conosplot: Plots for Joint Analyses of Multiple Single-Cell Samples
===================================================================
Embedding panels, cluster composition, component variance and
differential-expression heatmaps for several samples sharing one clustering.

    import conosplot
    results = conosplot.load_samples("data.h5ad", sample_key="sample",
                                     cluster_keys="leiden")
    conosplot.plot_cluster_barplots(results)
"""

__version__ = "0.1.0"
__license__ = "MIT"

# ── Containers and loading ─────────────────────────────────────────────────
from .containers import Sample, AnnDataSample, MatrixSample, ConosResults
from .preprocessing import load_samples
from .report import render_report

# ── Style and helpers ──────────────────────────────────────────────────────
from .utils import set_style, named_levels, get_clustering_groups, heatmap_palette

# ── Analysis ───────────────────────────────────────────────────────────────
from .differential import (
    get_differential_genes,
    get_consistent_cluster_markers,
    filter_de,
    select_top_genes,
)
from .variance import score_component_variance
from .heatmap import build_de_heatmap_data, rolling_mean
from .composition import kl_divergence, cluster_sample_table, relative_entropy

# ── Plot functions ─────────────────────────────────────────────────────────
from .plotting import (
    embedding_plot,
    plot_embeddings,
    plot_samples,
    plot_cluster_barplots,
    plot_cluster_boxplots_by_apptype,
    plot_component_variance,
    plot_de_heatmap,
)

__all__ = [
    "Sample",
    "AnnDataSample",
    "MatrixSample",
    "ConosResults",
    "load_samples",
    "render_report",
    "set_style",
    "named_levels",
    "get_clustering_groups",
    "heatmap_palette",
    # analysis
    "get_differential_genes",
    "get_consistent_cluster_markers",
    "filter_de",
    "select_top_genes",
    "score_component_variance",
    "build_de_heatmap_data",
    "rolling_mean",
    "kl_divergence",
    "cluster_sample_table",
    "relative_entropy",
    # plots
    "embedding_plot",
    "plot_embeddings",
    "plot_samples",
    "plot_cluster_barplots",
    "plot_cluster_boxplots_by_apptype",
    "plot_component_variance",
    "plot_de_heatmap",
]
