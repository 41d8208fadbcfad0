"""
conosplot Differential Expression
=================================
One-vs-rest marker statistics per cluster, plus the filtering and top-N
selection used by the DE heatmap.

Each cluster gets a table with columns:

  Gene                gene name
  M                   log2 fold change of mean expression (pseudocount 1)
  Z                   Wilcoxon rank-sum Z score (tie corrected)
  AUC                 U / (n_in * n_out), probability a cluster cell ranks higher
  Specificity         fraction of out-of-cluster cells not expressing the gene
  Precision           fraction of expressing cells that belong to the cluster
  ExpressionFraction  fraction of cluster cells expressing the gene
"""

import warnings
import numpy as np
import pandas as pd
from scipy import sparse, stats
from tqdm import tqdm
from typing import Dict, List, Optional, Sequence, Union

from .utils import as_factor, named_levels

DE_COLUMNS = ['Gene', 'M', 'Z', 'AUC', 'Specificity', 'Precision', 'ExpressionFraction']


def get_differential_genes(
    counts,
    groups: pd.Series,
    cell_names: Sequence[str],
    gene_names: Sequence[str],
    z_threshold: float = 3.0,
    upregulated_only: bool = False,
    chunk_size: int = 1000,
    verbose: bool = True,
) -> Dict[str, pd.DataFrame]:
    """Compute one-vs-rest differential expression for every cluster.

    Rank-sum tests run on ``chunk_size`` genes at a time; group means and
    expressing-cell counts are taken from the (possibly sparse) matrix
    directly, so the full matrix is never densified.

    Args:
        counts: Cells × genes matrix (dense or scipy sparse).
        groups: Cluster labels indexed by cell name. Cells without a label
                are ignored.
        cell_names: Row names of ``counts``.
        gene_names: Column names of ``counts``.
        z_threshold: Minimum |Z| (or Z when upregulated_only) to report a gene.
        upregulated_only: Keep only genes higher in the cluster than outside.
        chunk_size: Genes tested per block.
        verbose: Print progress.

    Returns:
        Dict {cluster label: DataFrame}, in cluster level order, each sorted
        by decreasing Z.
    """
    groups = as_factor(groups)
    labels = groups.reindex(pd.Index(cell_names))
    keep = labels.notna().to_numpy()
    if not keep.any():
        raise ValueError("None of the cells have a group label.")

    rows = np.flatnonzero(keep)
    if sparse.issparse(counts):
        X = sparse.csc_matrix(sparse.csr_matrix(counts)[rows], dtype=np.float64)
    else:
        X = np.asarray(counts)[rows].astype(np.float64)
    codes = labels[keep].cat.codes.to_numpy()
    gene_names = np.asarray(gene_names)
    levels = list(named_levels(groups))
    n, n_genes = X.shape

    # cells x clusters indicator; group sums and expressing counts via one product each
    membership = sparse.csr_matrix((np.ones(n), (np.arange(n), codes)), shape=(n, len(levels)))
    sums = _dense(membership.T @ X)
    expressing = (X > 0).astype(np.float64)
    n_expr_in = _dense(membership.T @ expressing)
    n_expressing = n_expr_in.sum(axis=0)
    totals = sums.sum(axis=0)
    n_in = np.bincount(codes, minlength=len(levels))

    if verbose:
        print(f"[DE] Testing {n_genes} genes in {len(levels)} clusters ({n} cells) ...")

    tested = [i for i in range(len(levels)) if 0 < n_in[i] < n]
    u = np.full((len(levels), n_genes), np.nan)
    pvals = np.full((len(levels), n_genes), np.nan)
    for start in tqdm(range(0, n_genes, chunk_size), desc="Genes", disable=not verbose):
        stop = min(start + chunk_size, n_genes)
        block = _dense(X[:, start:stop])
        for i in tested:
            mask = codes == i
            with warnings.catch_warnings(), np.errstate(divide='ignore', invalid='ignore'):
                warnings.simplefilter('ignore', category=RuntimeWarning)
                res = stats.mannwhitneyu(block[mask], block[~mask], axis=0,
                                         use_continuity=False, alternative='two-sided',
                                         method='asymptotic')
            u[i, start:stop] = res.statistic
            pvals[i, start:stop] = res.pvalue

    result = {}
    for i, lvl in enumerate(levels):
        n1 = int(n_in[i])
        n2 = n - n1
        if i not in tested:
            result[lvl] = pd.DataFrame(columns=DE_COLUMNS)
            continue

        mean_in = sums[i] / n1
        mean_out = (totals - sums[i]) / n2
        expr_in = n_expr_in[i]
        expr_out = n_expressing - expr_in
        with np.errstate(divide='ignore', invalid='ignore'):
            precision = np.where(n_expressing > 0, expr_in / n_expressing, 0.0)

        df = pd.DataFrame({
            'Gene': gene_names,
            'M': np.log2((mean_in + 1.0) / (mean_out + 1.0)),
            'Z': _z_from_mannwhitney(u[i], pvals[i], n1, n2),
            'AUC': u[i] / (n1 * n2),
            'Specificity': 1.0 - expr_out / n2,
            'Precision': precision,
            'ExpressionFraction': expr_in / n1,
        })
        if upregulated_only:
            df = df[df['Z'] >= z_threshold]
        else:
            df = df[df['Z'].abs() >= z_threshold]
        result[lvl] = df.sort_values('Z', ascending=False).reset_index(drop=True)

    return result


def _dense(X) -> np.ndarray:
    return X.toarray() if sparse.issparse(X) else np.asarray(X)


def _z_from_mannwhitney(u: np.ndarray, pvalue: np.ndarray, n1: int, n2: int) -> np.ndarray:
    """Signed normal score of a two-sided asymptotic p-value.

    Genes without variance (NaN p-value) score 0. Where the p-value
    underflows, |Z| saturates at the score of the smallest positive double.
    """
    half = np.clip(pvalue / 2.0, np.finfo(np.float64).tiny, 0.5)
    with np.errstate(invalid='ignore'):
        z = np.sign(u - n1 * n2 / 2.0) * stats.norm.isf(half)
    return np.where(np.isnan(pvalue), 0.0, z)


# ---------------------------------------------------------------------------
# Heatmap gene selection
# ---------------------------------------------------------------------------

_FILTER_HINTS = {
    'AUC': "AUC column lacking in the DE results - recalculate the DE with AUC values",
    'Specificity': "Specificity column lacking in the DE results - recalculate with specificity metrics",
    'Precision': "Precision column lacking in the DE results - recalculate with specificity metrics",
}


def filter_de(
    de: Dict[str, pd.DataFrame],
    min_auc: Optional[float] = None,
    min_specificity: Optional[float] = None,
    min_precision: Optional[float] = None,
) -> Dict[str, pd.DataFrame]:
    """Apply optional strict minimum thresholds on AUC/Specificity/Precision.

    A threshold whose column is missing is skipped with a warning.
    """
    if not de:
        return de
    first = next(iter(de.values()))
    for column, threshold in (('AUC', min_auc),
                              ('Specificity', min_specificity),
                              ('Precision', min_precision)):
        if threshold is None:
            continue
        if column not in first.columns:
            warnings.warn(_FILTER_HINTS[column])
            continue
        de = {k: v[v[column] > threshold] for k, v in de.items()}
    return de


def parse_ordering(ordering: Union[str, Sequence[str]]):
    """'-AUC' -> (['AUC'], [False]); a list gives a multi-key sort."""
    if isinstance(ordering, str):
        ordering = [ordering]
    columns, ascending = [], []
    for key in ordering:
        key = key.strip()
        if key.startswith('-'):
            columns.append(key[1:].strip())
            ascending.append(False)
        else:
            columns.append(key.lstrip('+').strip())
            ascending.append(True)
    return columns, ascending


def select_top_genes(
    de: Dict[str, pd.DataFrame],
    n: int,
    ordering: Union[str, Sequence[str]] = '-AUC',
) -> Dict[str, pd.DataFrame]:
    """Top ``n`` rows per cluster under ``ordering``; empty clusters dropped."""
    columns, ascending = parse_ordering(ordering)
    out = {}
    for k, df in de.items():
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise ValueError(f"Ordering columns {missing} not found in DE results "
                             f"(available: {list(df.columns)}).")
        top = df.sort_values(columns, ascending=ascending, kind='mergesort').head(n)
        if len(top) > 0:
            out[k] = top
    return out


# ---------------------------------------------------------------------------
# Consistent markers across samples
# ---------------------------------------------------------------------------

def get_consistent_cluster_markers(
    results,
    clustering: str = 'multi level',
    min_samples_expressing: int = 0,
    min_percent_samples_expressing: float = 0.0,
    verbose: bool = False,
) -> Dict[str, List[str]]:
    """Genes upregulated in a joint cluster consistently across samples.

    DE is run within each sample on the joint cluster labels of its cells.
    A gene is kept for a cluster when it has Z > 0 in at least
    ``min_samples_expressing`` samples and in at least
    ``min_percent_samples_expressing`` (a fraction) of the samples.

    Returns:
        Dict {cluster: [genes]} in cluster level order.
    """
    from .utils import get_clustering_groups

    groups = as_factor(get_clustering_groups(results.clusters, clustering))
    per_sample = {}
    for name, sample in results.samples.items():
        cells = [c for c in sample.cell_names if c in groups.index]
        if not cells:
            continue
        sample_groups = as_factor(groups.loc[cells], categories=groups.cat.categories)
        per_sample[name] = sample.get_differential_genes(
            sample_groups, z_threshold=0.0, upregulated_only=False, verbose=verbose,
        )

    n_samples = len(per_sample)
    markers = {}
    for lvl in named_levels(groups):
        hits = {}
        for de in per_sample.values():
            res = de.get(lvl)
            if res is None or len(res) == 0:
                continue
            for gene in pd.unique(res.loc[res['Z'] > 0, 'Gene']):
                hits[gene] = hits.get(gene, 0) + 1
        markers[lvl] = [
            g for g, c in hits.items()
            if c >= min_samples_expressing
            and n_samples > 0 and c / n_samples >= min_percent_samples_expressing
        ]
    return markers
