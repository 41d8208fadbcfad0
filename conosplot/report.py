"""
conosplot Report
================
Default plot set and tables for a joint analysis, written into one folder.
"""

import os
import re
import time
import warnings
import pandas as pd
from typing import Dict, Optional

from .composition import cluster_sample_table
from .utils import as_factor, get_clustering_groups, set_style

# |Z| cut-off of the DE tables written to disk
DE_TABLE_Z = 3.0


def render_report(
    results,
    output_dir: str = "conosplot_results/",
    clustering: Optional[str] = None,
    apptypes: Optional[pd.Series] = None,
    n_genes_per_cluster: int = 10,
    score_variance: bool = True,
    figsize: str = "paper",
    save_tables: bool = True,
    verbose: bool = True,
) -> Dict:
    """Compute markers and write the default plots and tables.

    Args:
        results: ConosResults with at least one clustering.
        output_dir: Plots go to output_dir/plots, tables to output_dir/tables.
        clustering: Clustering to report on (default: the first).
        apptypes: Optional categorical Series sample -> application type;
                  enables the per-apptype boxplots.
        n_genes_per_cluster: Genes per cluster in the DE heatmap.
        score_variance: Score and plot PCA component variance (2+ samples).
        figsize: 'paper' (publication) or 'screen' (larger).
        save_tables: Whether to save result tables as CSV.
        verbose: Print progress.

    Returns:
        dict with keys groups, de (two-sided, |Z| >= 3, as written to the
        tables), markers (upregulated genes, as shown in the heatmap),
        composition.
    """
    from . import plotting as plt_mod
    from .variance import score_component_variance

    t0 = time.time()
    set_style(figsize)
    os.makedirs(output_dir, exist_ok=True)

    def _log(msg):
        if verbose:
            print(msg)

    _log("\n" + "=" * 60)
    _log("conosplot: joint analysis report")
    _log("=" * 60)

    # ── Step 1: Clusters ─────────────────────────────────────────────
    _log("\n[1/4] Resolving clusters ...")
    groups = as_factor(get_clustering_groups(results.clusters, clustering))
    if clustering is None:
        clustering = next(iter(results.clusters))
    composition = cluster_sample_table(groups, results.get_dataset_per_cell())
    _log(f"  {len(composition.columns)} clusters over {len(composition.index)} samples")

    # ── Step 2: Differential expression ──────────────────────────────
    _log("\n[2/4] Differential expression ...")
    de_all = results.get_differential_genes(groups, z_threshold=0, verbose=verbose)
    de = {k: v[v['Z'].abs() >= DE_TABLE_Z].reset_index(drop=True) for k, v in de_all.items()}
    markers = {k: v[v['Z'] >= 0].reset_index(drop=True) for k, v in de_all.items()}

    # ── Step 3: Component variance ───────────────────────────────────
    _log("\n[3/4] Component variance ...")
    if score_variance and len(results.samples) > 1:
        try:
            score_component_variance(results, space='PCA', verbose=verbose)
        except ValueError as e:
            warnings.warn(f"Component variance could not be scored: {e}")
            score_variance = False
    elif score_variance:
        _log("  Skipped (single sample).")
        score_variance = False
    else:
        _log("  Skipped (score_variance=False).")

    # ── Step 4: Save outputs ─────────────────────────────────────────
    _log("\n[4/4] Saving outputs ...")
    if save_tables:
        _save_tables(de, composition, os.path.join(output_dir, 'tables'))
        _log(f"  Tables saved to {os.path.join(output_dir, 'tables')}/")

    _save_default_plots(plt_mod, results, groups, markers, os.path.join(output_dir, 'plots'),
                        clustering=clustering, apptypes=apptypes,
                        n_genes_per_cluster=n_genes_per_cluster, with_variance=score_variance)

    elapsed = time.time() - t0
    _log(f"\n{'=' * 60}")
    _log(f"conosplot report complete in {elapsed:.1f}s")
    _log(f"Results saved to: {output_dir}")
    _log("=" * 60)

    report = {'groups': groups, 'de': de, 'markers': markers, 'composition': composition}
    if verbose:
        _print_summary(report)
    return report


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _file_safe(name) -> str:
    return re.sub(r'[^A-Za-z0-9_.-]+', '_', str(name))


def _save_tables(de: Dict[str, pd.DataFrame], composition: pd.DataFrame, tables_dir: str):
    os.makedirs(tables_dir, exist_ok=True)
    composition.to_csv(os.path.join(tables_dir, 'cluster_composition.csv'))
    frames = []
    for cluster, table in de.items():
        table.to_csv(os.path.join(tables_dir, f'de_{_file_safe(cluster)}.csv'), index=False)
        if len(table):
            frames.append(table.assign(cluster=cluster))
    if frames:
        pd.concat(frames, ignore_index=True).to_csv(
            os.path.join(tables_dir, 'de_all_clusters.csv'), index=False)


def _save_default_plots(plt_mod, results, groups, markers, plots_dir, clustering=None,
                        apptypes=None, n_genes_per_cluster=10, with_variance=True):
    """Save the default set of plots."""
    os.makedirs(plots_dir, exist_ok=True)

    def _try_save(func, name, *args, **kwargs):
        try:
            return func(*args, save_path=os.path.join(plots_dir, name), **kwargs)
        except Exception as e:
            warnings.warn(f"Plot '{name}' failed: {e}")
            return None

    _try_save(plt_mod.plot_samples, 'samples_umap.png', results, groups=groups)
    _try_save(plt_mod.plot_cluster_barplots, 'cluster_barplots.png', results, groups=groups)
    if apptypes is not None:
        _try_save(plt_mod.plot_cluster_boxplots_by_apptype, 'cluster_boxplots_apptype.png',
                  results, clustering=clustering, apptypes=apptypes)
    if with_variance:
        _try_save(plt_mod.plot_component_variance, 'component_variance.png', results)
    _try_save(plt_mod.plot_de_heatmap, 'de_heatmap.png', results, groups, de=markers,
              n_genes_per_cluster=n_genes_per_cluster)

    print(f"  Plots saved to {plots_dir}/")


def _print_summary(report: Dict):
    """Print a text summary to the console."""
    composition = report['composition']
    de = report['de']
    print("\n── conosplot Summary ─────────────────────────────────────")
    print(f"  Cells:        {int(composition.to_numpy().sum()):,}")
    print(f"  Samples:      {composition.shape[0]}")
    print(f"  Clusters:     {composition.shape[1]}")
    for cluster, table in de.items():
        top = ', '.join(table['Gene'].head(3).astype(str)) if len(table) else '-'
        print(f"  {str(cluster):14s}{len(table):5d} genes  top: {top}")
    print("──────────────────────────────────────────────────────────")
