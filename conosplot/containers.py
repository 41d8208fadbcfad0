"""
conosplot Containers
====================
Sample containers and the joint results object consumed by the plots.

Every sample type offers the same capabilities:

  cell_names / genes            row and column names of the count matrix
  get_count_matrix()            cells × genes matrix (dense or sparse)
  get_embedding(type)           2-column DataFrame indexed by cell, or None
  get_gene_expression(gene)     Series over all cells, NaN if gene is absent
  get_differential_genes(...)   per-cluster DE tables (see differential.py)

``ConosResults`` holds several samples plus the joint clusterings and the
pairwise component-variance annotation, and exposes the expression
capabilities over the union of cells so the DE heatmap can take either.
"""

from abc import ABC, abstractmethod
import numpy as np
import pandas as pd
from scipy import sparse
from typing import Dict, List, Optional, Sequence

from .differential import get_differential_genes
from .utils import as_factor


class ExpressionSource(ABC):
    """Anything with cells, genes and per-gene expression vectors."""

    @property
    @abstractmethod
    def cell_names(self) -> List[str]:
        ...

    @property
    @abstractmethod
    def genes(self) -> List[str]:
        ...

    @abstractmethod
    def get_gene_expression(self, gene: str) -> pd.Series:
        ...

    @abstractmethod
    def get_differential_genes(self, groups: pd.Series, z_threshold: float = 3.0,
                               upregulated_only: bool = False,
                               verbose: bool = True) -> Dict[str, pd.DataFrame]:
        ...


class Sample(ExpressionSource):
    """One input dataset."""

    @abstractmethod
    def get_count_matrix(self):
        ...

    @abstractmethod
    def get_embedding(self, embedding_type: str) -> Optional[pd.DataFrame]:
        ...

    @property
    def n_cells(self) -> int:
        return len(self.cell_names)

    def get_gene_expression(self, gene: str) -> pd.Series:
        genes = self._gene_index()
        if gene not in genes:
            return pd.Series(np.nan, index=self.cell_names, name=gene)
        X = self.get_count_matrix()
        col = X[:, genes.get_loc(gene)]
        col = col.toarray().ravel() if sparse.issparse(col) else np.asarray(col).ravel()
        return pd.Series(col.astype(np.float64), index=self.cell_names, name=gene)

    def get_differential_genes(self, groups: pd.Series, z_threshold: float = 3.0,
                               upregulated_only: bool = False,
                               verbose: bool = True) -> Dict[str, pd.DataFrame]:
        return get_differential_genes(
            self.get_count_matrix(), groups, self.cell_names, self.genes,
            z_threshold=z_threshold, upregulated_only=upregulated_only, verbose=verbose,
        )

    def _gene_index(self) -> pd.Index:
        return pd.Index(self.genes)


class AnnDataSample(Sample):
    """Sample backed by an ``anndata.AnnData`` (cells in obs, genes in var)."""

    def __init__(self, adata, layer: Optional[str] = None):
        self.adata = adata
        self.layer = layer

    def __repr__(self):
        return f"AnnDataSample({self.adata.n_obs} cells × {self.adata.n_vars} genes)"

    @property
    def cell_names(self) -> List[str]:
        return list(self.adata.obs_names)

    @property
    def genes(self) -> List[str]:
        return list(self.adata.var_names)

    def _gene_index(self) -> pd.Index:
        return self.adata.var_names

    def get_count_matrix(self):
        if self.layer is not None:
            return self.adata.layers[self.layer]
        return self.adata.X

    def get_embedding(self, embedding_type: str) -> Optional[pd.DataFrame]:
        key = _resolve_obsm_key(self.adata.obsm.keys(), embedding_type)
        if key is None:
            return None
        coords = np.asarray(self.adata.obsm[key])[:, :2]
        return pd.DataFrame(coords, index=self.adata.obs_names, columns=['x', 'y'])


class MatrixSample(Sample):
    """Sample backed by a plain count matrix with explicit names."""

    def __init__(
        self,
        counts,
        cell_names: Sequence[str],
        gene_names: Sequence[str],
        embeddings: Optional[Dict[str, object]] = None,
    ):
        if counts.shape != (len(cell_names), len(gene_names)):
            raise ValueError(
                f"counts has shape {counts.shape} but {len(cell_names)} cell names and "
                f"{len(gene_names)} gene names were given."
            )
        self.counts = counts
        self._cells = list(cell_names)
        self._genes = list(gene_names)
        self.embeddings = {}
        for name, emb in (embeddings or {}).items():
            self.add_embedding(name, emb)

    def __repr__(self):
        return f"MatrixSample({len(self._cells)} cells × {len(self._genes)} genes)"

    @property
    def cell_names(self) -> List[str]:
        return self._cells

    @property
    def genes(self) -> List[str]:
        return self._genes

    def get_count_matrix(self):
        return self.counts

    def add_embedding(self, name: str, emb):
        if not isinstance(emb, pd.DataFrame):
            emb = pd.DataFrame(np.asarray(emb)[:, :2], index=self._cells)
        emb = emb.iloc[:, :2].copy()
        emb.columns = ['x', 'y']
        self.embeddings[name] = emb

    def get_embedding(self, embedding_type: str) -> Optional[pd.DataFrame]:
        key = _resolve_obsm_key(self.embeddings.keys(), embedding_type)
        return None if key is None else self.embeddings[key]


def _resolve_obsm_key(keys, embedding_type: str) -> Optional[str]:
    """Find an embedding by exact name, scanpy 'X_' prefix, or case-insensitively."""
    keys = list(keys)
    for cand in (embedding_type, f"X_{embedding_type}"):
        if cand in keys:
            return cand
    lowered = {k.lower(): k for k in keys}
    for cand in (embedding_type.lower(), f"x_{embedding_type.lower()}"):
        if cand in lowered:
            return lowered[cand]
    return None


# ---------------------------------------------------------------------------
# Joint results
# ---------------------------------------------------------------------------

class ConosResults(ExpressionSource):
    """Joint analysis of several samples.

    Attributes:
        samples: {sample name: Sample}
        clusters: {clustering name: Series cell -> cluster label}
        pairs: {space: {pair key: {'nv': {dataset: variance per component}}}}
    """

    def __init__(self, samples: Dict[str, Sample], clusters: Optional[Dict[str, pd.Series]] = None,
                 pairs: Optional[Dict[str, Dict]] = None):
        if not samples:
            raise ValueError("ConosResults needs at least one sample.")
        self.samples = dict(samples)
        self.clusters = {}
        for name, groups in (clusters or {}).items():
            self.add_clustering(name, groups)
        self.pairs = pairs if pairs is not None else {}

    def __repr__(self):
        return (f"ConosResults({len(self.samples)} samples, {len(self.cell_names)} cells, "
                f"clusterings={list(self.clusters)})")

    def add_clustering(self, name: str, groups):
        self.clusters[name] = as_factor(groups)

    @property
    def cell_names(self) -> List[str]:
        return [c for s in self.samples.values() for c in s.cell_names]

    @property
    def genes(self) -> List[str]:
        seen = {}
        for s in self.samples.values():
            for g in s.genes:
                seen.setdefault(g, None)
        return list(seen)

    def get_dataset_per_cell(self) -> pd.Series:
        """Sample membership of every cell, with samples as ordered levels."""
        names = list(self.samples)
        labels = pd.concat([
            pd.Series(name, index=s.cell_names) for name, s in self.samples.items()
        ])
        return as_factor(labels, categories=names)

    def get_gene_expression(self, gene: str) -> pd.Series:
        expr = pd.concat([s.get_gene_expression(gene) for s in self.samples.values()]).rename(gene)
        # samples lacking a gene measured elsewhere count as zero, like the joint matrix
        if expr.notna().any():
            expr = expr.fillna(0.0)
        return expr

    def get_joint_count_matrix(self) -> sparse.csr_matrix:
        """Cells × genes matrix over all samples on the union of genes (missing genes are 0)."""
        genes = pd.Index(self.genes)
        blocks = []
        for s in self.samples.values():
            X = s.get_count_matrix()
            X = sparse.csr_matrix(X)
            cols = genes.get_indexer(s.genes)
            remap = sparse.csr_matrix(
                (np.ones(len(cols)), (np.arange(len(cols)), cols)),
                shape=(len(cols), len(genes)),
            )
            blocks.append(X @ remap)
        return sparse.vstack(blocks).tocsr()

    def get_differential_genes(self, groups: pd.Series, z_threshold: float = 3.0,
                               upregulated_only: bool = False,
                               verbose: bool = True) -> Dict[str, pd.DataFrame]:
        return get_differential_genes(
            self.get_joint_count_matrix(), groups, self.cell_names, self.genes,
            z_threshold=z_threshold, upregulated_only=upregulated_only, verbose=verbose,
        )
