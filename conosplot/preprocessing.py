"""
conosplot Preprocessing
=======================
Load an h5ad, normalize, split into per-sample containers, compute UMAP.
"""

import warnings
import numpy as np
import scanpy as sc
import anndata as ad
from scipy import sparse
from typing import List, Optional, Union

from .containers import AnnDataSample, ConosResults


def load_samples(
    h5ad_path: str,
    sample_key: str,
    cluster_keys: Union[str, List[str], None] = None,
    embedding: bool = True,
    verbose: bool = True,
) -> ConosResults:
    """Load a combined h5ad file as a joint results object.

    Steps:
    1. Load h5ad with scanpy.
    2. Normalize if raw counts detected (max > 50 heuristic).
    3. Split cells into one AnnDataSample per level of ``sample_key``.
    4. Compute neighbor graph + UMAP per sample if not already present.
    5. Register every ``cluster_keys`` column as a joint clustering.

    Args:
        h5ad_path: Path to input h5ad file.
        sample_key: Column in adata.obs naming the sample of every cell.
        cluster_keys: Column(s) in adata.obs holding joint clusterings.
        embedding: Compute a per-sample UMAP where none is stored.
        verbose: Print progress.

    Returns:
        ConosResults with samples in the level order of ``sample_key``.
    """
    if verbose:
        print(f"[Preprocessing] Loading {h5ad_path} ...")
    adata = sc.read_h5ad(h5ad_path)
    if verbose:
        print(f"  Loaded: {adata.n_obs} cells × {adata.n_vars} genes")

    if sample_key not in adata.obs.columns:
        raise ValueError(
            f"Sample column '{sample_key}' not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )
    if isinstance(cluster_keys, str):
        cluster_keys = [cluster_keys]
    cluster_keys = list(cluster_keys or [])
    missing = [k for k in cluster_keys if k not in adata.obs.columns]
    if missing:
        raise ValueError(
            f"Clustering column(s) {missing} not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )

    adata = _maybe_normalize(adata, verbose=verbose)

    labels = adata.obs[sample_key].astype('category')
    samples = {}
    for level in labels.cat.categories:
        mask = (labels == level).to_numpy()
        if not mask.any():
            continue
        sub = adata[mask].copy()
        if embedding:
            sub = _maybe_compute_umap(sub, verbose=verbose)
        samples[str(level)] = AnnDataSample(sub)
    if verbose:
        print(f"  Split into {len(samples)} samples: "
              f"{', '.join(f'{n} ({s.n_cells})' for n, s in samples.items())}")

    results = ConosResults(samples)
    for key in cluster_keys:
        results.add_clustering(key, adata.obs[key])

    if verbose:
        print(f"[Preprocessing] Done. {adata.n_obs} cells ready.")
    return results


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _maybe_normalize(adata: ad.AnnData, verbose: bool = True) -> ad.AnnData:
    """Normalize if raw counts detected (max > 50 heuristic)."""
    X = adata.X
    if sparse.issparse(X):
        max_val = X.max()
    else:
        max_val = np.max(X)

    if max_val > 50:
        if verbose:
            print("  Detected raw counts (max > 50). Normalizing...")
        adata.layers['counts'] = adata.X.copy()
        sc.pp.normalize_total(adata, target_sum=1e4)
        sc.pp.log1p(adata)
        if verbose:
            print("  Normalized to 10,000 counts/cell, log1p applied.")
    elif verbose:
        print("  Data appears pre-normalized (max ≤ 50). Skipping normalization.")
    return adata


def _maybe_compute_umap(adata: ad.AnnData, verbose: bool = True) -> ad.AnnData:
    """Compute neighbor graph + UMAP if not already present."""
    if 'X_umap' in adata.obsm:
        return adata
    if adata.n_obs < 4 or adata.n_vars < 3:
        warnings.warn(f"Sample with {adata.n_obs} cells is too small for UMAP; "
                      f"it will have no embedding.")
        return adata

    if verbose:
        print(f"  Computing PCA → neighbors → UMAP for {adata.n_obs} cells ...")
    sc.pp.pca(adata, n_comps=min(50, adata.n_obs - 1, adata.n_vars - 1))
    sc.pp.neighbors(adata, n_neighbors=min(15, adata.n_obs - 1))
    sc.tl.umap(adata)
    return adata
