"""
conosplot Component Variance
============================
Score how much of each dataset's variance the joint components explain.

For every pair of samples the fraction of a dataset's total variance captured
by each component is stored as

    results.pairs[space]["<a>.vs.<b>"] = {"nv": {a: array, b: array}}

  PCA   one PCA fit on all samples together (shared, most variable genes);
        each dataset's vector is therefore the same in every pair.
  CPCA  per pair, common principal components: eigenvectors of the mean of
        the two datasets' covariance matrices.
"""

from itertools import combinations
import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.decomposition import PCA
from sklearn.utils.sparsefuncs import mean_variance_axis
from tqdm import tqdm
from typing import Dict, List, Optional

SUPPORTED_SPACES = ('PCA', 'CPCA')


def score_component_variance(
    results,
    space: str = 'PCA',
    n_comps: int = 20,
    n_genes: int = 2000,
    verbose: bool = True,
) -> Dict[str, Dict]:
    """Annotate ``results.pairs[space]`` with per-dataset component variance.

    Args:
        results: ConosResults with at least two samples.
        space: 'PCA' or 'CPCA'.
        n_comps: Number of components to score.
        n_genes: Most variable shared genes to use.
        verbose: Print progress.

    Returns:
        The stored ``results.pairs[space]`` dict.
    """
    if space not in SUPPORTED_SPACES:
        raise ValueError(f"space must be one of {SUPPORTED_SPACES}, got '{space}'.")
    names = list(results.samples)
    if len(names) < 2:
        raise ValueError("Component variance needs at least two samples.")

    genes = _shared_variable_genes(results, n_genes)
    if len(genes) < 2:
        raise ValueError("Samples share fewer than two genes.")
    mats = {n: _dense_subset(results.samples[n], genes) for n in names}

    if verbose:
        print(f"[Variance] Scoring {space} components on {len(genes)} shared genes "
              f"for {len(names)} samples ...")

    pairs = {}
    if space == 'PCA':
        nv = _pca_variance(mats, n_comps)
        for a, b in combinations(names, 2):
            pairs[f"{a}.vs.{b}"] = {'nv': {a: nv[a], b: nv[b]}}
    else:
        for a, b in tqdm(list(combinations(names, 2)), desc="Pairs", disable=not verbose):
            pairs[f"{a}.vs.{b}"] = {'nv': _cpca_variance(mats[a], mats[b], a, b, n_comps)}

    results.pairs[space] = pairs
    return pairs


def _shared_variable_genes(results, n_genes: int) -> List[str]:
    samples = list(results.samples.values())
    shared = pd.Index(samples[0].genes)
    for s in samples[1:]:
        shared = shared.intersection(pd.Index(s.genes), sort=False)
    if len(shared) <= n_genes:
        return list(shared)

    variances = np.zeros(len(shared))
    for s in samples:
        variances += _gene_variance(s, list(shared))
    top = np.argsort(-variances, kind='stable')[:n_genes]
    return list(shared[np.sort(top)])


def _gene_variance(sample, genes: List[str]) -> np.ndarray:
    """Per-gene variance over the sample's cells, without densifying sparse input."""
    idx = pd.Index(sample.genes).get_indexer(genes)
    X = sample.get_count_matrix()[:, idx]
    if sparse.issparse(X):
        _, var = mean_variance_axis(sparse.csr_matrix(X, dtype=np.float64), axis=0)
        return var
    return np.asarray(X, dtype=np.float64).var(axis=0)


def _dense_subset(sample, genes: List[str]) -> np.ndarray:
    idx = pd.Index(sample.genes).get_indexer(genes)
    X = sample.get_count_matrix()[:, idx]
    X = X.toarray() if sparse.issparse(X) else np.asarray(X)
    return X.astype(np.float64)


def _fraction_explained(X: np.ndarray, components: np.ndarray) -> np.ndarray:
    """Variance of X along each component (rows of ``components``) over total variance."""
    Xc = X - X.mean(axis=0)
    total = Xc.var(axis=0).sum()
    if total <= 0:
        return np.zeros(components.shape[0])
    proj = Xc @ components.T
    return proj.var(axis=0) / total


def _pca_variance(mats: Dict[str, np.ndarray], n_comps: int) -> Dict[str, np.ndarray]:
    joint = np.vstack(list(mats.values()))
    k = max(1, min(n_comps, joint.shape[0] - 1, joint.shape[1]))
    pca = PCA(n_components=k, svd_solver='full').fit(joint)
    return {n: _fraction_explained(X, pca.components_) for n, X in mats.items()}


def _cpca_variance(Xa: np.ndarray, Xb: np.ndarray, a: str, b: str, n_comps: int) -> Dict[str, np.ndarray]:
    cov = (np.cov(Xa, rowvar=False) + np.cov(Xb, rowvar=False)) / 2.0
    cov = np.atleast_2d(cov)
    evals, evecs = np.linalg.eigh(cov)
    order = np.argsort(evals)[::-1][:max(1, min(n_comps, cov.shape[0]))]
    components = evecs[:, order].T
    return {a: _fraction_explained(Xa, components), b: _fraction_explained(Xb, components)}
