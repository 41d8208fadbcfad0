"""
conosplot Plotting
==================
Plot functions for joint single-cell analyses.

All figure-level functions:
  - Accept save_path=None (show) or str (save to disk)
  - Return the matplotlib Figure (or the documented details structure)
  - Respect set_style("paper"/"screen")
"""

import warnings
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import matplotlib.patches as mpatches
from matplotlib.colors import ListedColormap, Normalize, to_rgba
import seaborn as sns
from typing import Callable, Dict, List, Optional, Sequence, Union

from .composition import (
    kl_divergence, cluster_sample_table, cluster_fractions, relative_entropy,
    cluster_proportions_by_sample, component_variance_table,
)
from .heatmap import build_de_heatmap_data, rolling_mean
from .utils import (
    CONOSPLOT_PALETTE, as_factor, is_factor, hue_palette, grid_shape, save_figure,
    get_clustering_groups, parse_cell_groups,
)
from .variance import SUPPORTED_SPACES


# ---------------------------------------------------------------------------
# ── EMBEDDINGS ────────────────────────────────────────────────────────────
# ---------------------------------------------------------------------------

def embedding_plot(
    embedding: pd.DataFrame,
    groups=None,
    colors=None,
    ax: Optional[plt.Axes] = None,
    point_size: float = 2.0,
    alpha: float = 0.6,
    palette: Optional[Dict] = None,
    mark_groups: bool = True,
    show_legend: bool = False,
    cmap: str = 'viridis',
    plot_na: bool = True,
    raster: bool = False,
    font_size: float = 7,
) -> plt.Axes:
    """Scatter one embedding, coloured by groups, by per-cell values, or plain.

    Cells absent from ``groups``/``colors`` are drawn grey underneath.
    """
    if ax is None:
        _, ax = plt.subplots(figsize=(4, 4))

    coords = embedding.iloc[:, :2].to_numpy(dtype=float)
    scatter_kw = dict(s=point_size, alpha=alpha, linewidths=0, rasterized=raster)

    if groups is not None:
        g = as_factor(groups).reindex(embedding.index)
        na = g.isna().to_numpy()
        if plot_na and na.any():
            ax.scatter(coords[na, 0], coords[na, 1], c=CONOSPLOT_PALETTE['na'], **scatter_kw)
        levels = [lvl for lvl in g.cat.categories if (g == lvl).any()]
        pal = palette if palette is not None else hue_palette(g.cat.categories)
        for lvl in levels:
            mask = (g == lvl).to_numpy()
            ax.scatter(coords[mask, 0], coords[mask, 1], c=pal.get(lvl, CONOSPLOT_PALETTE['na']),
                       label=str(lvl), **scatter_kw)
        if mark_groups:
            for lvl in levels:
                mask = (g == lvl).to_numpy()
                cx, cy = np.median(coords[mask], axis=0)
                ax.text(cx, cy, str(lvl), ha='center', va='center', fontsize=font_size)
        if show_legend and levels:
            ax.legend(loc='upper left', bbox_to_anchor=(1.01, 1), fontsize=6,
                      markerscale=3, frameon=False)
    elif colors is not None:
        c = pd.Series(colors).reindex(embedding.index)
        if pd.api.types.is_numeric_dtype(c):
            na = c.isna().to_numpy()
            if plot_na and na.any():
                ax.scatter(coords[na, 0], coords[na, 1], c=CONOSPLOT_PALETTE['na'], **scatter_kw)
            sc = ax.scatter(coords[~na, 0], coords[~na, 1], c=c.to_numpy()[~na], cmap=cmap,
                            **scatter_kw)
            if show_legend:
                plt.colorbar(sc, ax=ax, shrink=0.6)
        else:
            c = c.fillna(CONOSPLOT_PALETTE['na'])
            ax.scatter(coords[:, 0], coords[:, 1], c=list(c), **scatter_kw)
    else:
        ax.scatter(coords[:, 0], coords[:, 1], c='#404040', **scatter_kw)

    ax.set_xticks([])
    ax.set_yticks([])
    ax.set_xlabel('')
    ax.set_ylabel('')
    return ax


def _label_panel(ax, label: str, title_size: float):
    ax.text(0.01, 0.99, label, transform=ax.transAxes, ha='left', va='top',
            fontsize=title_size,
            bbox=dict(boxstyle='round,pad=0.2', facecolor=CONOSPLOT_PALETTE['label_fill'],
                      alpha=0.6, edgecolor='none'))


def plot_embeddings(
    embeddings: Union[Dict[str, pd.DataFrame], Sequence[pd.DataFrame]],
    groups=None,
    colors=None,
    ncol: Optional[int] = None,
    nrow: Optional[int] = None,
    panel_size: Union[float, tuple, None] = None,
    adjust_func: Optional[Callable] = None,
    title_size: float = 10,
    subset: Optional[Sequence[str]] = None,
    return_plotlist: bool = False,
    save_path: Optional[str] = None,
    dpi: int = 300,
    **kwargs,
) -> Union[plt.Figure, List[plt.Figure]]:
    """Panel of embeddings, one labelled scatter per entry.

    Args:
        embeddings: {panel label: 2-column DataFrame indexed by cell}. A list
                    is labelled "1", "2", ...
        groups: Optional per-cell labels shared by all panels.
        colors: Optional per-cell numeric values (or colour strings).
        ncol, nrow: Grid shape; ceil(sqrt(n)) columns when both are None.
        panel_size: (width, height) in inches of one panel, or one number.
        adjust_func: Called with every panel Axes before composing.
        title_size: Font size of the panel label.
        subset: Only show these cells.
        return_plotlist: Return one Figure per panel instead of the grid.
        **kwargs: Passed to embedding_plot().
    """
    if not isinstance(embeddings, dict):
        embeddings = {str(i + 1): e for i, e in enumerate(embeddings)}
    if len(embeddings) == 0:
        raise ValueError("No embeddings to plot.")

    if panel_size is None:
        panel_size = (3.5, 3.5)
    elif np.isscalar(panel_size):
        panel_size = (panel_size, panel_size)

    title = kwargs.pop('title', None)
    subset_idx = pd.Index(subset) if subset is not None else None

    def _draw(ax, label, emb):
        if subset_idx is not None:
            emb = emb[emb.index.isin(subset_idx)]
        embedding_plot(emb, groups=groups, colors=colors, ax=ax, **kwargs)
        _label_panel(ax, label, title_size)
        if adjust_func is not None:
            adjust_func(ax)

    if return_plotlist:
        figs = []
        for label, emb in embeddings.items():
            fig, ax = plt.subplots(figsize=panel_size)
            _draw(ax, label, emb)
            figs.append(fig)
        return figs

    nrow, ncol = grid_shape(len(embeddings), ncol, nrow)
    fig, axes = plt.subplots(nrow, ncol, figsize=(panel_size[0] * ncol, panel_size[1] * nrow),
                             squeeze=False)
    for idx, (label, emb) in enumerate(embeddings.items()):
        if idx >= nrow * ncol:
            warnings.warn(f"Grid {nrow}x{ncol} holds only {nrow * ncol} of "
                          f"{len(embeddings)} panels; the rest are not shown.")
            break
        _draw(axes[idx // ncol][idx % ncol], label, emb)

    # Hide unused axes
    for idx in range(len(embeddings), nrow * ncol):
        axes[idx // ncol][idx % ncol].axis('off')

    if title:
        fig.suptitle(title)
    plt.tight_layout()
    save_figure(fig, save_path, dpi)
    return fig


def plot_samples(
    samples,
    groups=None,
    colors=None,
    gene: Optional[str] = None,
    embedding_type: Union[str, pd.DataFrame, None] = None,
    **kwargs,
) -> Union[plt.Figure, List[plt.Figure]]:
    """Panel of per-sample embeddings.

    Args:
        samples: {name: Sample}, a list of samples, or a ConosResults.
        groups: Optional per-cell labels.
        colors: Optional per-cell values (ignored when ``gene`` is given).
        gene: Colour cells by the expression of this gene in each sample.
        embedding_type: Embedding name looked up in every sample (default
                        'umap'), or a DataFrame holding one embedding for all
                        cells, split by sample.
        **kwargs: Passed to plot_embeddings().
    """
    if hasattr(samples, 'samples') and isinstance(samples.samples, dict):
        samples = samples.samples
    if not isinstance(samples, dict):
        samples = {str(i + 1): s for i, s in enumerate(samples)}
    if groups is not None:
        groups = as_factor(groups)

    if embedding_type is None:
        embedding_type = 'umap'

    if isinstance(embedding_type, pd.DataFrame):
        embeddings = {}
        for n, s in samples.items():
            emb = embedding_type[embedding_type.index.isin(pd.Index(s.cell_names))].iloc[:, :2]
            if len(emb) > 0:
                embeddings[n] = emb
        if not embeddings:
            raise ValueError("None of the samples' cells are in the supplied embedding")
    else:
        embeddings = {n: s.get_embedding(embedding_type) for n, s in samples.items()}
        no_embedding = [n for n, e in embeddings.items() if e is None]
        if len(no_embedding) == len(embeddings):
            raise ValueError(f"No '{embedding_type}' embedding presented in the samples")
        if no_embedding:
            warnings.warn(f"{len(no_embedding)} of your samples doesn't have '{embedding_type}' "
                          f"embedding: {no_embedding}")
            embeddings = {n: e for n, e in embeddings.items() if e is not None}

    if gene is not None:
        colors = pd.concat([s.get_gene_expression(gene) for s in samples.values()])

    return plot_embeddings(embeddings, groups=groups, colors=colors, **kwargs)


# ---------------------------------------------------------------------------
# ── CLUSTER COMPOSITION ───────────────────────────────────────────────────
# ---------------------------------------------------------------------------

def plot_cluster_barplots(
    results=None,
    clustering: Optional[str] = None,
    groups=None,
    sample_factor=None,
    show_entropy: bool = True,
    show_size: bool = True,
    show_composition: bool = True,
    legend_height: float = 0.2,
    entropy_func: Optional[Callable] = kl_divergence,
    palette: Optional[Dict] = None,
    return_details: bool = False,
    save_path: Optional[str] = None,
    figsize: tuple = (8, 6),
    dpi: int = 300,
    **kwargs,
):
    """Per-cluster sample composition, with optional mixing-entropy and size panels.

    Args:
        results: ConosResults. Needed when ``clustering`` is named or
                 ``groups``/``sample_factor`` are not given.
        clustering: Name of a clustering on ``results`` (default: the first).
        groups: Cell -> cluster labels, used instead of a clustering.
        sample_factor: Cell -> sample (or any category). Defaults to the
                       dataset of every cell.
        show_entropy: Add the relative entropy panel (needs entropy_func).
        show_size: Add the log-scaled cluster size panel.
        show_composition: Draw the composition panel.
        legend_height: Height of the legend row relative to the composition panel.
        entropy_func: KL divergence routine f(pk, qk) in bits.
        palette: {sample: colour}.
        return_details: Also return the sample × cluster table.

    Returns:
        Figure, or (Figure, table) when return_details is True.
    """
    if clustering is not None and results is None:
        raise ValueError("results must be passed if clustering name is specified")
    if groups is None and results is None:
        raise ValueError("Either groups factor on the cells or a results object needs to be "
                         "specified, both cannot be None")
    if show_entropy and entropy_func is None:
        raise ValueError("An entropy_func is needed to use show_entropy=True")
    if not (show_composition or show_entropy or show_size):
        raise ValueError("Nothing to plot: enable at least one of the panels")

    groups = parse_cell_groups(results, clustering, groups)

    if sample_factor is None:
        if results is None:
            raise ValueError("sample_factor must be given when no results object is passed")
        sample_factor = results.get_dataset_per_cell()
    sample_factor = as_factor(sample_factor)

    table = cluster_sample_table(groups, sample_factor)
    clusters = list(table.columns)
    x_pos = np.arange(len(clusters))
    pal = palette if palette is not None else hue_palette(table.index)

    extras = []
    if show_entropy:
        extras.append('entropy')
    if show_size:
        extras.append('size')
    with_legend = show_composition and bool(extras)

    heights = ([legend_height] if with_legend else []) + ([1.0] if show_composition else []) \
        + [0.3] * len(extras)
    fig = plt.figure(figsize=figsize)
    gs = fig.add_gridspec(len(heights), 1, height_ratios=heights, hspace=0.35)
    row = 0
    if with_legend:
        ax_leg = fig.add_subplot(gs[row, 0])
        ax_leg.axis('off')
        row += 1

    if show_composition:
        ax = fig.add_subplot(gs[row, 0])
        row += 1
        frac = cluster_fractions(table)
        bottom = np.zeros(len(clusters))
        handles = []
        for smp in table.index:
            vals = (frac[frac['sample'] == smp].set_index('cluster')['f']
                    .reindex(clusters).fillna(0).to_numpy())
            ax.bar(x_pos, vals, bottom=bottom, color=pal.get(smp), width=0.9, label=str(smp))
            bottom += vals
            handles.append(mpatches.Patch(color=pal.get(smp), label=str(smp)))
        ax.set_xticks(x_pos)
        ax.set_xticklabels([str(c) for c in clusters], rotation=90 if len(clusters) > 20 else 0)
        ax.set_xlim(-0.6, len(clusters) - 0.4)
        ax.set_ylim(0, 1)
        ax.margins(y=0)
        ax.set_xlabel('cluster')
        ax.set_ylabel('fraction of cells')
        ax.set_title(kwargs.get('title', ''))
        if with_legend:
            ax_leg.legend(handles=handles, loc='center', ncol=min(len(handles), 6),
                          frameon=False, title='sample')
        else:
            ax.legend(handles=handles, bbox_to_anchor=(1.01, 1), loc='upper left',
                      fontsize=6, frameon=False, title='sample')

    if show_entropy:
        ax_e = fig.add_subplot(gs[row, 0])
        row += 1
        ne = relative_entropy(table, entropy_func=entropy_func)
        ax_e.bar(x_pos, ne.to_numpy(), color=CONOSPLOT_PALETTE['entropy'], width=0.9)
        ax_e.axhline(1.0, linestyle='--', color=CONOSPLOT_PALETTE['reference_line'], linewidth=0.8)
        ax_e.set_ylim(0, 1)
        ax_e.set_xticks(x_pos)
        ax_e.set_xticklabels([str(c) for c in clusters], fontsize=6)
        ax_e.set_xlim(-0.6, len(clusters) - 0.4)
        ax_e.set_ylabel('entropy')

    if show_size:
        ax_s = fig.add_subplot(gs[row, 0])
        ax_s.bar(x_pos, table.sum(axis=0).to_numpy(), color=CONOSPLOT_PALETTE['size'], width=0.9)
        ax_s.set_yscale('log')
        ax_s.set_xticks(x_pos)
        ax_s.set_xticklabels([str(c) for c in clusters], fontsize=6)
        ax_s.set_xlim(-0.6, len(clusters) - 0.4)
        ax_s.set_ylabel('number of cells')

    save_figure(fig, save_path, dpi)
    if return_details:
        return fig, table
    return fig


def plot_cluster_boxplots_by_apptype(
    results,
    clustering: Optional[str] = None,
    apptypes: Optional[pd.Series] = None,
    value_type: str = 'proportions',
    return_details: bool = False,
    col_wrap: Optional[int] = None,
    save_path: Optional[str] = None,
    height: float = 2.2,
    dpi: int = 300,
    **kwargs,
):
    """Boxplot per cluster of the per-sample share of cells, split by apptype.

    Args:
        results: ConosResults.
        clustering: Clustering name (default 'multi level').
        apptypes: Categorical Series sample name -> application type.
        value_type: 'counts' or 'proportions'.
        return_details: Return {'plot': Figure, 'data': DataFrame}.
        col_wrap: Facets per row (default ceil(sqrt(n clusters))).
        height: Height of one facet in inches.
    """
    if clustering is None:
        clustering = 'multi level'
    if apptypes is None:
        raise ValueError("apptypes must be specified")
    if not is_factor(apptypes):
        raise TypeError("apptypes must be a categorical Series indexed by sample name")
    if value_type not in ('counts', 'proportions'):
        raise ValueError("argument value_type must be either counts or proportions")

    groups = as_factor(get_clustering_groups(results.clusters, clustering))
    plot_df = cluster_proportions_by_sample(results, groups, apptypes, value_type=value_type)

    levels = list(groups.cat.categories)
    if col_wrap is None:
        col_wrap = grid_shape(len(levels))[1]

    g = sns.catplot(
        data=plot_df, x='apptype', y='val', hue='clname', col='clname',
        kind='box', col_wrap=col_wrap, height=height, dodge=False,
        palette=hue_palette(levels), legend=False, sharey=False,
    )
    g.set_titles("{col_name}")
    g.set_axis_labels('apptype', 'counts' if value_type == 'counts' else 'proportion of sample')
    for ax in g.axes.flat:
        plt.setp(ax.get_xticklabels(), rotation=45, ha='right')
    fig = g.figure
    if kwargs.get('title'):
        fig.suptitle(kwargs['title'])
    fig.tight_layout()

    save_figure(fig, save_path, dpi)
    if return_details:
        return {'plot': fig, 'data': plot_df}
    return fig


# ---------------------------------------------------------------------------
# ── COMPONENT VARIANCE ────────────────────────────────────────────────────
# ---------------------------------------------------------------------------

def plot_component_variance(
    results,
    space: str = 'PCA',
    save_path: Optional[str] = None,
    figsize: tuple = (7, 4),
    dpi: int = 300,
    **kwargs,
) -> plt.Figure:
    """Fraction of each dataset's variance explained by successive components.

    Needs score_component_variance() to have been run for ``space``.
    """
    if space not in SUPPORTED_SPACES:
        raise ValueError(f"component variance is only scored for {SUPPORTED_SPACES}, "
                         f"not '{space}'")
    pairs = results.pairs.get(space)
    if not pairs:
        raise ValueError(f"no pairs for space {space} found. Please run "
                         f"score_component_variance(results, space='{space}') first")

    df = component_variance_table(pairs, space)
    datasets = list(pd.unique(df['dataset']))
    pal = hue_palette(datasets)

    fig, ax = plt.subplots(figsize=figsize)
    sns.stripplot(data=df, x='component', y='var', hue='dataset', palette=pal,
                  jitter=True, alpha=0.3, size=3, legend=False, ax=ax)
    sns.lineplot(x=df['component'].cat.codes, y=df['var'], hue=df['dataset'], palette=pal,
                 estimator=None, alpha=0.2, linewidth=1, legend=False, ax=ax)
    sns.boxplot(data=df, x='component', y='var', showfliers=False, color='black',
                boxprops={'facecolor': 'none'}, ax=ax)

    ax.set_xlabel('component number')
    ax.set_ylabel('fraction of variance explained')
    ax.set_title(kwargs.get('title', f'{space} component variance'))
    plt.tight_layout()
    save_figure(fig, save_path, dpi)
    return fig


# ---------------------------------------------------------------------------
# ── DE HEATMAP ────────────────────────────────────────────────────────────
# ---------------------------------------------------------------------------

def plot_de_heatmap(
    con,
    groups,
    de: Optional[Dict[str, pd.DataFrame]] = None,
    min_auc: Optional[float] = None,
    min_specificity: Optional[float] = None,
    min_precision: Optional[float] = None,
    n_genes_per_cluster: int = 10,
    additional_genes: Optional[Sequence[str]] = None,
    exclude_genes: Optional[Sequence[str]] = None,
    labeled_gene_subset: Union[int, Sequence[str], None] = None,
    expression_quantile: float = 0.99,
    pal=None,
    ordering: Union[str, Sequence[str]] = '-AUC',
    column_metadata=None,
    show_gene_clusters: bool = True,
    remove_duplicates: bool = True,
    column_metadata_colors: Optional[Dict] = None,
    show_cluster_legend: bool = True,
    show_heatmap_legend: bool = False,
    border: bool = True,
    return_details: bool = False,
    row_label_font_size: float = 10,
    order_clusters: bool = False,
    split: bool = False,
    split_gap: float = 0,
    cell_order: Optional[Sequence[str]] = None,
    averaging_window: int = 0,
    max_cells: float = np.inf,
    window_averager: Optional[Callable] = rolling_mean,
    random_state=None,
    save_path: Optional[str] = None,
    figsize: tuple = (10, 8),
    dpi: int = 300,
    verbose: bool = False,
    **kwargs,
):
    """Heatmap of the top differentially expressed genes of every cluster.

    Args:
        con: ConosResults or a single Sample.
        groups: Cell -> cluster labels the DE was (or will be) computed on.
        de: {cluster: DE table}. Computed with con.get_differential_genes() if None.
        min_auc, min_specificity, min_precision: Optional strict thresholds.
        n_genes_per_cluster: Genes per cluster; 0 shows only additional_genes.
        additional_genes: Extra genes, each placed with its best-correlated cluster.
        exclude_genes: Genes never shown.
        labeled_gene_subset: Only label these genes (list) or the top-n genes of
                             each cluster (int), instead of all row names.
        expression_quantile: Winsorizing quantile per gene.
        pal: Colormap or list of colours for the expression values.
        ordering: DE column to rank genes by, '-' prefix for descending.
        column_metadata: Extra per-cell annotation (DataFrame or dict of Series).
        show_gene_clusters: Draw the gene -> cluster strip on the left.
        remove_duplicates: Show a gene selected for several clusters once.
        column_metadata_colors: {annotation column: {level: colour}};
                                'clusters' sets cluster colours.
        show_cluster_legend: Legend for the annotation colours.
        show_heatmap_legend: Colour bar for the expression scale.
        border: Frame the heatmap and annotations.
        return_details: Return the intermediate data along with the figure.
        row_label_font_size: Font size of gene labels.
        order_clusters: Reorder clusters by similarity of their expression.
        split: Separate cluster blocks of rows and columns.
        split_gap: Width of the separators in mm.
        cell_order: Explicit cell order (cells not listed are dropped).
        averaging_window: Sliding-window average of neighbouring cells in a cluster.
        max_cells: Maximum cells per cluster (random subsample).
        window_averager: f(cells × genes DataFrame, window) used for averaging.
        random_state: Seed for the subsampling.

    Returns:
        Figure, or with return_details a dict with keys figure, x, annot,
        rannot, expl, pal, column_metadata_colors, labeled_gene_subset.
    """
    data = build_de_heatmap_data(
        con, groups, de=de,
        min_auc=min_auc, min_specificity=min_specificity, min_precision=min_precision,
        n_genes_per_cluster=n_genes_per_cluster, additional_genes=additional_genes,
        exclude_genes=exclude_genes, labeled_gene_subset=labeled_gene_subset,
        expression_quantile=expression_quantile, pal=pal, ordering=ordering,
        column_metadata=column_metadata, remove_duplicates=remove_duplicates,
        column_metadata_colors=column_metadata_colors, order_clusters=order_clusters,
        cell_order=cell_order, averaging_window=averaging_window, max_cells=max_cells,
        window_averager=window_averager, random_state=random_state, verbose=verbose,
    )

    fig = _draw_de_heatmap(
        data,
        show_gene_clusters=show_gene_clusters,
        show_cluster_legend=show_cluster_legend,
        show_heatmap_legend=show_heatmap_legend,
        border=border,
        row_label_font_size=row_label_font_size,
        split=split,
        split_gap=split_gap,
        figsize=figsize,
        title=kwargs.get('title'),
    )
    save_figure(fig, save_path, dpi)

    if return_details:
        return {
            'figure': fig,
            'x': data['x'],
            'annot': data['annot'],
            'rannot': data['rannot'],
            'expl': data['expl'],
            'pal': data['pal'],
            'column_metadata_colors': data['column_metadata_colors'],
            'labeled_gene_subset': data['labeled_gene_subset'],
        }
    return fig


def _annotation_rgba(values: pd.Series, colors: Optional[Dict]) -> np.ndarray:
    """RGBA rows for one annotation track (categorical via dict, numeric via viridis)."""
    na = to_rgba(CONOSPLOT_PALETTE['na'])
    if colors is None and pd.api.types.is_numeric_dtype(values):
        v = values.to_numpy(dtype=float)
        norm = Normalize(vmin=np.nanmin(v), vmax=np.nanmax(v))
        cm = plt.get_cmap('viridis')
        return np.array([na if np.isnan(z) else cm(norm(z)) for z in v])
    colors = colors or {}
    return np.array([
        na if pd.isna(v) else to_rgba(colors.get(v, colors.get(str(v), CONOSPLOT_PALETTE['na'])))
        for v in values
    ])


def _spread_labels(rows: np.ndarray, n_rows: int) -> np.ndarray:
    """Label y positions: the rows themselves, or evenly spread when crowded."""
    if len(rows) < 2:
        return rows.astype(float)
    min_gap = n_rows / 60.0
    if np.all(np.diff(rows) >= min_gap):
        return rows.astype(float)
    return np.linspace(0, n_rows - 1, len(rows))


def _draw_de_heatmap(
    data: Dict,
    show_gene_clusters: bool = True,
    show_cluster_legend: bool = True,
    show_heatmap_legend: bool = False,
    border: bool = True,
    row_label_font_size: float = 10,
    split: bool = False,
    split_gap: float = 0,
    figsize: tuple = (10, 8),
    title: Optional[str] = None,
) -> plt.Figure:
    x = data['x']
    annot = data['annot']
    rannot = data['rannot']
    colors = data['column_metadata_colors']
    labeled = data['labeled_gene_subset']
    cmap = data['pal']
    if not hasattr(cmap, 'N'):
        cmap = ListedColormap(list(cmap))

    n_rows, n_cols = x.shape
    show_legend_col = show_cluster_legend or show_heatmap_legend
    width_ratios = ([0.25] if show_gene_clusters else []) + [10] \
        + ([1.8] if labeled is not None else []) + ([2.2] if show_legend_col else [])
    height_ratios = [0.35] * annot.shape[1] + [10]

    fig = plt.figure(figsize=figsize)
    gs = fig.add_gridspec(len(height_ratios), len(width_ratios), height_ratios=height_ratios,
                          width_ratios=width_ratios, hspace=0.05, wspace=0.03)
    main_col = 1 if show_gene_clusters else 0
    main_row = annot.shape[1]

    # Top annotation tracks
    for i, col in enumerate(annot.columns):
        ax_a = fig.add_subplot(gs[i, main_col])
        rgba = _annotation_rgba(annot[col], colors.get(col))
        ax_a.imshow(rgba[np.newaxis, :, :], aspect='auto', interpolation='nearest')
        ax_a.set_xticks([])
        ax_a.set_yticks([])
        ax_a.text(1.005, 0.5, str(col), transform=ax_a.transAxes, va='center', ha='left',
                  fontsize=7)
        for spine in ax_a.spines.values():
            spine.set_visible(border)

    # Main heatmap
    ax = fig.add_subplot(gs[main_row, main_col])
    im = ax.imshow(x.to_numpy(), aspect='auto', cmap=cmap, vmin=0, vmax=1,
                   interpolation='nearest')
    ax.set_xticks([])
    if labeled is None:
        ax.yaxis.tick_right()
        ax.set_yticks(np.arange(n_rows))
        ax.set_yticklabels(list(x.index), fontsize=row_label_font_size)
    else:
        ax.set_yticks([])
    for spine in ax.spines.values():
        spine.set_visible(border)

    if split:
        lw = max(split_gap * 72.0 / 25.4, 0.8)
        sep_color = 'black' if border else 'white'
        col_labels = annot['clusters'].astype(object).to_numpy()
        for b in np.flatnonzero(col_labels[1:] != col_labels[:-1]) + 1:
            ax.axvline(b - 0.5, color=sep_color, linewidth=lw)
        row_labels = rannot['clusters'].astype(object).to_numpy()
        for b in np.flatnonzero(row_labels[1:] != row_labels[:-1]) + 1:
            ax.axhline(b - 0.5, color=sep_color, linewidth=lw)

    # Gene cluster strip
    if show_gene_clusters:
        ax_r = fig.add_subplot(gs[main_row, 0], sharey=ax)
        rgba = _annotation_rgba(rannot['clusters'], colors.get('clusters'))
        ax_r.imshow(rgba[:, np.newaxis, :], aspect='auto', interpolation='nearest')
        ax_r.set_xticks([])
        ax_r.tick_params(left=False, labelleft=False)
        for spine in ax_r.spines.values():
            spine.set_visible(border)

    next_col = main_col + 1

    # Marked gene labels
    if labeled is not None:
        ax_l = fig.add_subplot(gs[main_row, next_col])
        next_col += 1
        rows = np.array([i for i, g in enumerate(x.index) if g in set(labeled)])
        ax_l.set_ylim(ax.get_ylim())
        ax_l.set_xlim(0, 1)
        ax_l.axis('off')
        for row, ypos in zip(rows, _spread_labels(rows, n_rows)):
            ax_l.plot([0, 0.25], [row, ypos], color='black', linewidth=0.5)
            ax_l.text(0.28, ypos, x.index[row], va='center', ha='left',
                      fontsize=row_label_font_size)

    # Legends
    if show_legend_col:
        ax_g = fig.add_subplot(gs[:, next_col])
        ax_g.axis('off')
        if show_cluster_legend:
            legends = []
            for col in annot.columns:
                cmap_col = colors.get(col)
                if not isinstance(cmap_col, dict):
                    continue
                handles = [mpatches.Patch(color=c, label=str(k)) for k, c in cmap_col.items()]
                leg = ax_g.legend(handles=handles, title=str(col), fontsize=6, title_fontsize=7,
                                  frameon=False, loc='upper left',
                                  bbox_to_anchor=(0, 1 - 0.45 * len(legends)))
                legends.append(leg)
            for leg in legends[:-1]:
                ax_g.add_artist(leg)
        if show_heatmap_legend:
            cax = ax_g.inset_axes([0.05, 0.02, 0.12, 0.25])
            fig.colorbar(im, cax=cax, label='expression')

    if title:
        fig.suptitle(title)
    return fig
