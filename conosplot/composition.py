"""
conosplot Composition Tables
============================
Tabular summaries behind the cluster barplots, the per-apptype boxplots and
the component variance plot.
"""

import numpy as np
import pandas as pd
from scipy import stats
from typing import Callable, Dict, Optional

from .utils import as_factor


def kl_divergence(pk, qk) -> float:
    """Kullback-Leibler divergence D(pk || qk) in bits; inputs are normalised."""
    return float(stats.entropy(pk, qk, base=2))


def cluster_sample_table(groups: pd.Series, sample_factor: pd.Series) -> pd.DataFrame:
    """Sample × cluster contingency table with all-zero rows/columns dropped.

    ``sample_factor`` is matched to ``groups`` by cell name; cells missing from
    either are not counted. Row and column order follow the level order.
    """
    groups = as_factor(groups)
    sample_factor = as_factor(sample_factor)
    df = pd.DataFrame({
        'sample': sample_factor.reindex(groups.index).values,
        'cluster': groups.values,
    }).dropna()

    table = (
        df.groupby(['sample', 'cluster'], observed=False)
        .size()
        .unstack(fill_value=0)
    )
    table = table.loc[table.sum(axis=1) > 0, table.sum(axis=0) > 0]
    table.index.name = 'sample'
    table.columns.name = 'cluster'
    return table


def cluster_fractions(table: pd.DataFrame) -> pd.DataFrame:
    """Long table (sample, cluster, f) with f summing to 1 within each cluster."""
    frac = table.div(table.sum(axis=0), axis=1)
    frac.columns = list(frac.columns)
    return frac.reset_index().melt(id_vars='sample', var_name='cluster', value_name='f')


def relative_entropy(
    table: pd.DataFrame,
    entropy_func: Callable = kl_divergence,
) -> pd.Series:
    """Per-cluster mixing score in [0, 1].

    1 - D(sample distribution in the cluster || overall sample distribution)
    / log2(n_samples). 1 means the cluster mirrors the overall sample mix.
    With a single sample every cluster scores 1.
    """
    n_samples = table.shape[0]
    if n_samples < 2:
        return pd.Series(1.0, index=table.columns, name='entropy')

    overall = table.sum(axis=1).to_numpy(dtype=float)
    kl = np.array([entropy_func(table[c].to_numpy(dtype=float), overall) for c in table.columns])
    ne = 1.0 - kl / np.log2(n_samples)
    return pd.Series(ne, index=table.columns, name='entropy')


def cluster_proportions_by_sample(
    results,
    groups: pd.Series,
    apptypes: pd.Series,
    value_type: str = 'proportions',
) -> pd.DataFrame:
    """Per-sample cluster counts (or proportions) tagged with the sample's apptype.

    Returns:
        DataFrame with columns clname, val, sample, apptype; one row per
        (sample, cluster level), zero counts included.
    """
    groups = as_factor(groups)
    levels = list(groups.cat.categories)
    frames = []
    for name, sample in results.samples.items():
        cells = groups.index.intersection(pd.Index(sample.cell_names))
        counts = groups.loc[cells].value_counts().reindex(levels, fill_value=0)
        val = counts.to_numpy(dtype=float)
        if value_type == 'proportions':
            total = val.sum()
            val = val / total if total > 0 else np.full_like(val, np.nan)
        frames.append(pd.DataFrame({'clname': levels, 'val': val, 'sample': name}))

    plot_df = pd.concat(frames, ignore_index=True)
    plot_df['clname'] = pd.Categorical(plot_df['clname'], categories=levels)
    plot_df['apptype'] = pd.Categorical(
        plot_df['sample'].map(apptypes), categories=list(apptypes.cat.categories)
    )
    return plot_df


def component_variance_table(space_pairs: Optional[Dict], space: str = 'PCA') -> pd.DataFrame:
    """Long table (component, dataset, var) from pairwise 'nv' annotations.

    For PCA a dataset's vector is identical across its pairs, so only the
    first occurrence of each dataset is kept.
    """
    nvs = []
    for pair in (space_pairs or {}).values():
        nv = pair.get('nv') if isinstance(pair, dict) else None
        if nv:
            nvs.extend(nv.items())

    if len(nvs) < 1:
        raise ValueError(
            f"no variance information found for space '{space}'. "
            "Run score_component_variance() first."
        )

    if space == 'PCA':
        seen = set()
        nvs = [(ds, v) for ds, v in nvs if not (ds in seen or seen.add(ds))]

    frames = []
    for ds, v in nvs:
        if isinstance(v, pd.Series):
            components = list(v.index)
            values = v.to_numpy(dtype=float)
        else:
            values = np.asarray(v, dtype=float)
            components = list(range(1, len(values) + 1))
        frames.append(pd.DataFrame({'component': components, 'dataset': ds, 'var': values}))

    df = pd.concat(frames, ignore_index=True)
    df['component'] = pd.Categorical(df['component'], categories=sorted(df['component'].unique()))
    return df
