import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest
import matplotlib.pyplot as plt

from conosplot.containers import MatrixSample, ConosResults

GENES = [f"g{i}" for i in range(20)]
# sample -> (cells in A, cells in B)
LAYOUT = {"s1": (30, 70), "s2": (20, 30), "s3": (10, 15)}


@pytest.fixture(autouse=True)
def _no_show(monkeypatch):
    monkeypatch.setattr(plt, "show", lambda *a, **k: None)
    yield
    plt.close("all")


@pytest.fixture
def rng():
    return np.random.default_rng(0)


def _make_sample(name, n_a, n_b, rng):
    n = n_a + n_b
    cells = [f"{name}_c{i}" for i in range(n)]
    lam = np.ones((n, len(GENES)))
    lam[:n_a, 0:5] = 8.0
    lam[n_a:, 5:10] = 8.0
    counts = rng.poisson(lam).astype(float)
    emb = rng.normal(size=(n, 2))
    emb[:n_a] += 4.0
    sample = MatrixSample(counts, cells, GENES, embeddings={"umap": emb})
    labels = pd.Series(["A"] * n_a + ["B"] * n_b, index=cells)
    return sample, labels


@pytest.fixture
def results(rng):
    samples, labels = {}, []
    for name, (n_a, n_b) in LAYOUT.items():
        samples[name], lab = _make_sample(name, n_a, n_b, rng)
        labels.append(lab)
    groups = pd.concat(labels).astype("category")
    return ConosResults(samples, clusters={"multi level": groups})


@pytest.fixture
def groups(results):
    return results.clusters["multi level"]
