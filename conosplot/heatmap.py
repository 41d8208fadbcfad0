"""
conosplot DE Heatmap Data
=========================
Gene selection, expression matrix assembly, row normalisation and annotation
colours for ``plot_de_heatmap``. Rendering lives in plotting.py.

Matrices here are genes × cells DataFrames; ``expl`` is the per-cluster dict
of such blocks, in display order.
"""

import warnings
import numpy as np
import pandas as pd
import seaborn as sns
from scipy.cluster.hierarchy import linkage, leaves_list
from scipy.spatial.distance import squareform
from typing import Callable, Dict, List, Optional, Sequence, Union

from .differential import filter_de, select_top_genes
from .utils import as_factor, hue_palette, fuzzy_match_gene, heatmap_palette

# genes fetched per cluster when only explicitly requested genes are shown
N_SCRATCH_GENES = 30


def fetch_expression(con, genes: Sequence[str]) -> pd.DataFrame:
    """Genes × cells expression block from a sample or results container."""
    genes = list(genes)
    if not genes:
        return pd.DataFrame(columns=con.cell_names, dtype=float)
    return pd.concat([con.get_gene_expression(g).rename(g) for g in genes], axis=1).T


def _row_correlation(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    """Pearson correlation between every row of A and every row of B.

    Rows that are constant or contain NaN give NaN correlations.
    """
    def _z(M):
        M = np.asarray(M, dtype=np.float64)
        centered = M - M.mean(axis=1, keepdims=True)
        norm = np.sqrt((centered ** 2).sum(axis=1, keepdims=True))
        with np.errstate(divide='ignore', invalid='ignore'):
            return np.where(norm > 0, centered / norm, np.nan)
    return _z(A) @ _z(B).T


def assign_additional_genes(
    expl: Dict[str, pd.DataFrame],
    additional_genes: Sequence[str],
    con,
    additional_only: bool = False,
) -> Dict[str, pd.DataFrame]:
    """Attach each extra gene to the cluster whose genes it correlates with best.

    The score of a gene for a cluster is its mean correlation with that
    cluster's genes (NaN ignored). Genes without any finite score are left
    out. With ``additional_only`` only the requested genes are kept.
    """
    expl = dict(expl)
    additional_genes = list(pd.unique(pd.Series(list(additional_genes), dtype=object)))
    shown = {g for block in expl.values() for g in block.index}
    genes_to_add = [g for g in additional_genes if g not in shown]

    if genes_to_add and expl:
        known = set(con.genes)
        missing = [g for g in genes_to_add if g not in known]
        if missing:
            hints = []
            for g in missing:
                close = fuzzy_match_gene(g, list(known), n=3)
                if close:
                    hints.append(f"{g} (did you mean {', '.join(close)}?)")
            msg = "the following genes are not found in the dataset: " + ' '.join(missing)
            if hints:
                msg += "; " + "; ".join(hints)
            warnings.warn(msg)

        age = fetch_expression(con, genes_to_add)
        scores = {}
        for k, block in expl.items():
            block = block.reindex(columns=age.columns)
            corr = _row_correlation(age.to_numpy(), block.to_numpy())
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', category=RuntimeWarning)
                scores[k] = np.nanmean(corr, axis=1)
        acc = pd.DataFrame(scores, index=age.index).T  # clusters × genes
        acc = acc.loc[:, np.isfinite(acc.to_numpy()).any(axis=0)]

        for gene in acc.columns:
            best = acc[gene].idxmax(skipna=True)
            expl[best] = pd.concat([expl[best], age.loc[[gene]]])

    if additional_only:
        wanted = set(additional_genes)
        expl = {k: v[v.index.isin(wanted)] for k, v in expl.items()}
        expl = {k: v for k, v in expl.items() if len(v) > 0}

    return expl


def exclude_genes_from(expl: Dict[str, pd.DataFrame], exclude_genes: Optional[Sequence[str]]):
    if exclude_genes is None:
        return expl
    exclude = set(exclude_genes)
    return {k: v[~v.index.isin(exclude)] for k, v in expl.items()}


def stack_expression(expl: Dict[str, pd.DataFrame], groups: pd.Series) -> pd.DataFrame:
    """Concatenate blocks, keep labelled cells, drop genes with missing values."""
    blocks = [v for v in expl.values() if len(v) > 0]
    if not blocks:
        raise ValueError("No genes left to show in the heatmap.")
    exp = pd.concat(blocks)
    labelled = groups.dropna().index
    exp = exp.loc[:, exp.columns.isin(labelled)]
    return exp.dropna(axis=0, how='any')


def order_clusters_by_expression(exp: pd.DataFrame, groups: pd.Series) -> List:
    """Cluster order from Ward linkage on 1 - correlation of mean cluster profiles.

    With fewer than three clusters present no linkage is computed and the
    clusters keep their level order.
    """
    labels = groups.reindex(exp.columns)
    xc = exp.T.groupby(labels, observed=True).mean().T  # genes × clusters
    present = list(xc.columns)
    if len(present) < 3:
        return present
    corr = np.corrcoef(xc.to_numpy().T)
    d = np.nan_to_num(1.0 - corr, nan=1.0)
    d = np.clip((d + d.T) / 2.0, 0.0, None)
    np.fill_diagonal(d, 0.0)
    z = linkage(squareform(d, checks=False), method='ward')
    return [present[i] for i in leaves_list(z)]


def subsample_cells(exp: pd.DataFrame, groups: pd.Series, max_cells: int,
                    random_state=None) -> pd.DataFrame:
    """At most ``max_cells`` random cells per cluster, columns grouped by cluster."""
    rng = np.random.default_rng(random_state)
    labels = groups.reindex(exp.columns)
    cols = []
    for lvl in labels.cat.categories:
        idx = np.flatnonzero((labels == lvl).to_numpy())
        if len(idx) > max_cells:
            idx = np.sort(rng.choice(idx, size=int(max_cells), replace=False))
        cols.extend(idx)
    return exp.iloc[:, cols]


def rolling_mean(block: pd.DataFrame, window: int) -> pd.DataFrame:
    """Left-aligned rolling mean down the rows, windows truncated at the end."""
    return block.iloc[::-1].rolling(int(window), min_periods=1).mean().iloc[::-1]


def average_within_groups(exp: pd.DataFrame, groups: pd.Series, window: int,
                          averager: Callable = rolling_mean) -> pd.DataFrame:
    """Sliding-window average of neighbouring cells inside each cluster."""
    labels = groups.reindex(exp.columns)
    parts = []
    for lvl in labels.cat.categories:
        cells = exp.columns[(labels == lvl).to_numpy()]
        if len(cells) == 0:
            continue
        parts.append(averager(exp[cells].T, window).T)
    return pd.concat(parts, axis=1)


def winsorize_bounds(xp: np.ndarray, expression_quantile: float):
    """Clipping bounds at the [1 - q, q] quantiles.

    When the two quantiles coincide the bounds are widened: rows with fewer
    than three distinct values use their full range; then, if more values lie
    below the median than above it, the lower bound becomes the largest value
    below the median, otherwise the upper bound becomes the smallest distinct
    value above the median.
    """
    qs = np.quantile(xp, [1.0 - expression_quantile, expression_quantile])
    if qs[1] - qs[0] == 0:
        xps = np.unique(xp)
        if len(xps) < 3:
            qs = np.array([xp.min(), xp.max()], dtype=float)
        xpm = np.median(xp)
        below = xp < xpm
        above = xp > xpm
        if below.sum() > above.sum():
            qs[0] = xp[below].max()
        else:
            higher = xps[xps > xpm]
            if len(higher):
                qs[1] = higher.min()
    return qs


def normalize_rows(x: pd.DataFrame, expression_quantile: float = 0.99) -> pd.DataFrame:
    """Winsorize each gene (if q < 1), then rescale it to [0, 1]."""
    values = x.to_numpy(dtype=np.float64).copy()
    for i in range(values.shape[0]):
        xp = values[i]
        if expression_quantile < 1:
            lo, hi = winsorize_bounds(xp, expression_quantile)
            xp = np.clip(xp, lo, hi)
        xp = xp - xp.min()
        if xp.max() > 0:
            xp = xp / xp.max()
        values[i] = xp
    return pd.DataFrame(values, index=x.index, columns=x.columns)


def order_cells(x: pd.DataFrame, groups: pd.Series, cell_order: Optional[Sequence[str]] = None):
    if cell_order is not None:
        present = set(x.columns)
        return x.loc[:, [c for c in cell_order if c in present]]
    codes = groups.reindex(x.columns).cat.codes.to_numpy()
    return x.iloc[:, np.argsort(codes, kind='stable')]


def build_column_annotation(cells: pd.Index, groups: pd.Series, column_metadata=None) -> pd.DataFrame:
    """Per-cell annotation table (clusters + extra metadata), columns reversed."""
    annot = pd.DataFrame({'clusters': groups.reindex(cells)}, index=cells)
    if column_metadata is not None:
        if isinstance(column_metadata, pd.DataFrame):
            annot = pd.concat([annot, column_metadata.reindex(cells)], axis=1)
        elif isinstance(column_metadata, dict):
            extra = pd.DataFrame({k: pd.Series(v).reindex(cells) for k, v in column_metadata.items()},
                                 index=cells)
            annot = pd.concat([annot, extra], axis=1)
        else:
            warnings.warn("column_metadata must be either a DataFrame or a dict of cell-named factors")
    return annot.iloc[:, ::-1]


def resolve_annotation_colors(annot: pd.DataFrame, groups: pd.Series,
                              column_metadata_colors=None) -> Dict[str, Dict]:
    """Colour mapping per annotation column; cluster colours always complete.

    Supplied cluster colours must cover every level of ``groups`` and are
    reordered to level order. Without them the present clusters get an evenly
    spaced hue palette. Other categorical columns without colours get a
    default qualitative palette.
    """
    if column_metadata_colors is None:
        colors = {}
    else:
        if not isinstance(column_metadata_colors, dict):
            raise ValueError("column_metadata_colors must be a dict of {column: {level: colour}}")
        colors = {k: dict(v) if isinstance(v, (dict, pd.Series)) else v
                  for k, v in column_metadata_colors.items()}
        if colors.get('clusters') is not None:
            levels = list(groups.cat.categories)
            missing = [lvl for lvl in levels if lvl not in colors['clusters']]
            if missing:
                raise ValueError(
                    "column_metadata_colors['clusters'] must contain a colour for every "
                    f"level of the cell groups; missing: {missing}"
                )
            colors['clusters'] = {lvl: colors['clusters'][lvl] for lvl in levels}

    if colors.get('clusters') is None:
        present = set(annot['clusters'].dropna())
        colors['clusters'] = hue_palette([lvl for lvl in groups.cat.categories if lvl in present])

    for col in annot.columns:
        if col in colors or pd.api.types.is_numeric_dtype(annot[col]):
            continue
        levels = (list(annot[col].cat.categories) if isinstance(annot[col].dtype, pd.CategoricalDtype)
                  else sorted(annot[col].dropna().astype(str).unique()))
        colors[col] = dict(zip(levels, sns.color_palette('Set2', len(levels)).as_hex()))
    return colors


def build_row_annotation(expl: Dict[str, pd.DataFrame], rows: pd.Index,
                         remove_duplicates: bool = True) -> pd.DataFrame:
    """Gene -> cluster it was selected for, one entry per shown row."""
    shown = set(rows)
    pairs = [(g, k) for k, v in expl.items() for g in v.index if g in shown]
    rannot = pd.Series([k for _, k in pairs], index=[g for g, _ in pairs], dtype=object)
    if remove_duplicates:
        rannot = rannot[~rannot.index.duplicated()]
    return pd.DataFrame({'clusters': pd.Categorical(rannot.values, categories=list(expl))},
                        index=rannot.index)


def build_de_heatmap_data(
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
    remove_duplicates: bool = True,
    column_metadata_colors=None,
    order_clusters: bool = False,
    cell_order: Optional[Sequence[str]] = None,
    averaging_window: int = 0,
    max_cells: float = np.inf,
    window_averager: Optional[Callable] = rolling_mean,
    random_state=None,
    verbose: bool = False,
) -> Dict:
    """Everything ``plot_de_heatmap`` draws, without drawing it.

    Returns:
        Dict with keys x (normalised genes × cells matrix in display order),
        groups, annot, rannot, expl, de, pal, column_metadata_colors,
        labeled_gene_subset.
    """
    groups = as_factor(groups)

    if de is None:
        de = con.get_differential_genes(groups, z_threshold=0, upregulated_only=True,
                                        verbose=verbose)

    levels = list(groups.cat.categories)
    de = {k: v for k, v in de.items() if v is not None and len(v) > 0 and k in levels}
    de = {k: de[k] for k in levels if k in de}

    de = filter_de(de, min_auc=min_auc, min_specificity=min_specificity,
                   min_precision=min_precision)

    if n_genes_per_cluster == 0:
        if additional_genes is None:
            raise ValueError("if n_genes_per_cluster is 0, additional_genes must be specified")
        additional_only = True
        n_genes_per_cluster = N_SCRATCH_GENES
    else:
        additional_only = False

    de = select_top_genes(de, n_genes_per_cluster, ordering)
    expl = {k: fetch_expression(con, v['Gene'].astype(str)) for k, v in de.items()}

    if additional_genes is not None:
        expl = assign_additional_genes(expl, additional_genes, con, additional_only=additional_only)

    expl = exclude_genes_from(expl, exclude_genes)
    exp = stack_expression(expl, groups)

    if order_clusters:
        new_levels = order_clusters_by_expression(exp, groups)
        groups = as_factor(groups.astype(object), categories=new_levels)
        expl = {k: expl[k] for k in new_levels if k in expl}
        exp = stack_expression(expl, groups)

    if np.isfinite(max_cells):
        exp = subsample_cells(exp, groups, max_cells, random_state=random_state)

    if averaging_window > 0:
        if window_averager is None:
            warnings.warn("window averaging requires a window averager; skipping.")
        else:
            exp = average_within_groups(exp, groups, averaging_window, averager=window_averager)

    x = normalize_rows(exp, expression_quantile)
    x = order_cells(x, groups, cell_order)

    annot = build_column_annotation(x.columns, groups, column_metadata)
    colors = resolve_annotation_colors(annot, groups, column_metadata_colors)

    rannot = build_row_annotation(expl, x.index, remove_duplicates)
    if remove_duplicates:
        x = x[~x.index.duplicated()]

    if labeled_gene_subset is not None and not isinstance(labeled_gene_subset, str) \
            and np.isscalar(labeled_gene_subset):
        n = int(labeled_gene_subset)
        labeled_gene_subset = list(pd.unique(pd.Series(
            [g for v in de.values() for g in v['Gene'].astype(str).head(n)], dtype=object)))
    elif isinstance(labeled_gene_subset, str):
        labeled_gene_subset = [labeled_gene_subset]

    return {
        'x': x,
        'groups': groups,
        'annot': annot,
        'rannot': rannot,
        'expl': expl,
        'de': de,
        'pal': pal if pal is not None else heatmap_palette(1024),
        'column_metadata_colors': colors,
        'labeled_gene_subset': labeled_gene_subset,
    }
