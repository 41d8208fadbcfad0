"""
conosplot Utilities
===================
Style presets, colour palettes, categorical-factor helpers, clustering lookup.
"""

import os
import math
import numpy as np
import pandas as pd
import matplotlib
import matplotlib.pyplot as plt
import seaborn as sns
from matplotlib.colors import LinearSegmentedColormap
from typing import Optional, List, Dict, Union, Sequence

# ---------------------------------------------------------------------------
# Colours
# ---------------------------------------------------------------------------

CONOSPLOT_PALETTE = {
    "na": "#D9D9D9",
    "entropy": "#A6A6A6",
    "reference_line": "#4D4D4D",
    "size": "#595959",
    "label_fill": "white",
}

# dodgerblue1 -> grey95 -> indianred1
HEATMAP_COLORS = ["#1E90FF", "#F2F2F2", "#FF6A6A"]


def heatmap_palette(n: int = 1024) -> LinearSegmentedColormap:
    """Diverging blue/grey/red colormap used by the DE heatmap."""
    return LinearSegmentedColormap.from_list("conos_de", HEATMAP_COLORS, N=n)


def hue_palette(levels: Sequence) -> Dict:
    """Evenly spaced hue palette, one hex colour per level."""
    levels = list(levels)
    if not levels:
        return {}
    colors = sns.color_palette("hls", len(levels)).as_hex()
    return dict(zip(levels, colors))


# ---------------------------------------------------------------------------
# Matplotlib style helpers
# ---------------------------------------------------------------------------

PAPER_STYLE = {
    "font.family": "sans-serif",
    "font.size": 8,
    "axes.titlesize": 9,
    "axes.labelsize": 8,
    "xtick.labelsize": 7,
    "ytick.labelsize": 7,
    "legend.fontsize": 7,
    "figure.dpi": 150,
    "savefig.dpi": 300,
    "savefig.bbox": "tight",
    "axes.spines.top": False,
    "axes.spines.right": False,
}

SCREEN_STYLE = {
    "font.family": "sans-serif",
    "font.size": 11,
    "axes.titlesize": 13,
    "axes.labelsize": 11,
    "xtick.labelsize": 10,
    "ytick.labelsize": 10,
    "legend.fontsize": 10,
    "figure.dpi": 100,
    "savefig.dpi": 150,
    "savefig.bbox": "tight",
    "axes.spines.top": False,
    "axes.spines.right": False,
}

_current_style = "paper"


def set_style(mode: str = "paper"):
    """Set matplotlib rcParams for publication ('paper') or screen viewing ('screen')."""
    global _current_style
    if mode not in ("paper", "screen"):
        raise ValueError(f"Unknown style '{mode}'. Use 'paper' or 'screen'.")
    _current_style = mode
    style = PAPER_STYLE if mode == "paper" else SCREEN_STYLE
    matplotlib.rcParams.update(style)


def get_style() -> str:
    return _current_style


def save_figure(fig, save_path: Optional[str], dpi: int = 300):
    """Save figure to disk if save_path is given, else show it."""
    if save_path is not None:
        os.makedirs(os.path.dirname(os.path.abspath(save_path)), exist_ok=True)
        fig.savefig(save_path, dpi=dpi, bbox_inches='tight')
        plt.close(fig)
    else:
        plt.show()


def grid_shape(n_plots: int, ncol: Optional[int] = None, nrow: Optional[int] = None):
    """Resolve (nrow, ncol) of a panel grid; ceil(sqrt(n)) columns by default."""
    n_plots = max(n_plots, 1)
    if ncol is None and nrow is None:
        ncol = int(math.ceil(math.sqrt(n_plots)))
    if ncol is None:
        ncol = int(math.ceil(n_plots / nrow))
    if nrow is None:
        nrow = int(math.ceil(n_plots / ncol))
    return nrow, ncol


def fuzzy_match_gene(query: str, gene_list: List[str], n: int = 5) -> List[str]:
    """Return up to n closest gene name matches (for typo handling)."""
    from difflib import get_close_matches
    return get_close_matches(query, gene_list, n=n, cutoff=0.6)


# ---------------------------------------------------------------------------
# Categorical factors
# ---------------------------------------------------------------------------

def is_factor(x) -> bool:
    return isinstance(x, pd.Series) and isinstance(x.dtype, pd.CategoricalDtype)


def as_factor(x, index=None, categories=None) -> pd.Series:
    """Coerce labels to a categorical Series indexed by cell (or sample) name.

    Accepts a Series, a dict name -> label, or an array-like together with
    ``index``. Existing category order is preserved; otherwise levels are the
    sorted unique labels.
    """
    if isinstance(x, dict):
        x = pd.Series(x)
    elif not isinstance(x, pd.Series):
        x = pd.Series(np.asarray(x), index=index)

    if categories is not None:
        return pd.Series(pd.Categorical(x, categories=list(categories)),
                         index=x.index, name=x.name)
    if is_factor(x):
        return x
    return x.astype('category')


def named_levels(f: pd.Series) -> Dict:
    """Levels of a categorical factor, keyed by themselves (handy for loops)."""
    if not is_factor(f):
        raise TypeError("f is not a categorical factor")
    return {lvl: lvl for lvl in f.cat.categories}


def get_clustering_groups(clusters: Dict[str, pd.Series], clustering: Optional[str] = None) -> pd.Series:
    """Pick one clustering out of a clustering-name -> groups mapping."""
    if len(clusters) < 1:
        raise ValueError("generate a joint clustering first")

    if clustering is None:
        return next(iter(clusters.values()))

    if clustering not in clusters:
        raise ValueError(f"clustering '{clustering}' hasn't been calculated")

    return clusters[clustering]


def parse_cell_groups(results=None, clustering: Optional[str] = None,
                      groups: Union[pd.Series, Dict, None] = None) -> Optional[pd.Series]:
    """Explicit ``groups`` if given, else the named clustering of ``results``."""
    if groups is not None:
        return as_factor(groups)
    if results is None:
        return None
    return as_factor(get_clustering_groups(results.clusters, clustering))
