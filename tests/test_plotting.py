import numpy as np
import pandas as pd
import pytest
import matplotlib.pyplot as plt

from conosplot import plotting
from conosplot.containers import MatrixSample
from conosplot.variance import score_component_variance


def _offsets(fig):
    return [c.get_offsets() for ax in fig.axes for c in ax.collections]


def _texts(fig):
    return [t.get_text() for ax in fig.axes for t in ax.texts]


# ---- embeddings ----

def test_plot_embeddings_is_deterministic(results, groups):
    embeddings = {n: s.get_embedding("umap") for n, s in results.samples.items()}
    fig1 = plotting.plot_embeddings(embeddings, groups=groups)
    fig2 = plotting.plot_embeddings(embeddings, groups=groups)
    for a, b in zip(_offsets(fig1), _offsets(fig2)):
        np.testing.assert_array_equal(a, b)
    assert len(fig1.axes) == 4
    assert {"s1", "s2", "s3"} <= set(_texts(fig1))


def test_plot_embeddings_list_is_numbered(results):
    embeddings = [s.get_embedding("umap") for s in results.samples.values()]
    fig = plotting.plot_embeddings(embeddings, ncol=3)
    assert len(fig.axes) == 3
    assert set(_texts(fig)) == {"1", "2", "3"}


def test_plot_embeddings_plotlist_and_subset(results):
    embeddings = {n: s.get_embedding("umap") for n, s in results.samples.items()}
    figs = plotting.plot_embeddings(embeddings, return_plotlist=True,
                                    subset=["s1_c0", "s1_c1", "s2_c0"])
    assert len(figs) == 3
    n_points = [sum(len(c.get_offsets()) for c in f.axes[0].collections) for f in figs]
    assert n_points == [2, 1, 0]


def test_plot_embeddings_requires_embeddings():
    with pytest.raises(ValueError):
        plotting.plot_embeddings({})


def test_embedding_plot_numeric_colors_add_colorbar(results):
    emb = results.samples["s1"].get_embedding("umap")
    values = pd.Series(np.linspace(0, 1, len(emb)), index=emb.index)
    fig, ax = plt.subplots()
    plotting.embedding_plot(emb, colors=values, ax=ax, show_legend=True)
    assert len(fig.axes) == 2


def test_embedding_plot_grey_cells_without_label(results):
    emb = results.samples["s1"].get_embedding("umap")
    groups = pd.Series(["X"] * 10, index=emb.index[:10])
    ax = plotting.embedding_plot(emb, groups=groups, mark_groups=False)
    sizes = [len(c.get_offsets()) for c in ax.collections]
    assert sizes == [90, 10]


def test_plot_samples(results, groups):
    fig = plotting.plot_samples(results, groups=groups)
    assert {"s1", "s2", "s3"} <= set(_texts(fig))

    fig = plotting.plot_samples(results.samples, gene="g0")
    assert len(fig.axes) >= 3


def test_plot_samples_missing_embeddings(results, rng):
    with pytest.raises(ValueError, match="tsne"):
        plotting.plot_samples(results.samples, embedding_type="tsne")

    bare = MatrixSample(rng.poisson(1.0, size=(5, 3)).astype(float),
                        [f"x{i}" for i in range(5)], ["a", "b", "c"])
    samples = dict(results.samples, bare=bare)
    with pytest.warns(UserWarning, match="doesn't have"):
        fig = plotting.plot_samples(samples)
    assert "bare" not in _texts(fig)


def test_plot_samples_with_joint_embedding(results):
    cells = results.cell_names
    joint = pd.DataFrame(np.arange(2 * len(cells), dtype=float).reshape(-1, 2), index=cells)
    fig = plotting.plot_samples(results, embedding_type=joint.iloc[:120])
    assert set(_texts(fig)) >= {"s1", "s2"}
    assert "s3" not in _texts(fig)


# ---- cluster composition ----

def test_plot_cluster_barplots(results):
    fig, table = plotting.plot_cluster_barplots(results, return_details=True)
    assert table.sum(axis=0).tolist() == [60, 115]
    assert len(fig.axes) == 4

    fig = plotting.plot_cluster_barplots(results, show_entropy=False, show_size=False)
    assert len(fig.axes) == 1


def test_plot_cluster_barplots_entropy_panel_bounds(results):
    fig = plotting.plot_cluster_barplots(results, show_size=False)
    entropy_ax = fig.axes[-1]
    assert entropy_ax.get_ylim() == (0.0, 1.0)
    heights = [p.get_height() for p in entropy_ax.patches]
    assert all(0 <= h <= 1 for h in heights)


def test_plot_cluster_barplots_errors(results, groups):
    with pytest.raises(ValueError, match="results must be passed"):
        plotting.plot_cluster_barplots(clustering="multi level", groups=groups)
    with pytest.raises(ValueError, match="cannot be None"):
        plotting.plot_cluster_barplots()
    with pytest.raises(ValueError, match="entropy_func"):
        plotting.plot_cluster_barplots(results, entropy_func=None)
    with pytest.raises(ValueError, match="sample_factor"):
        plotting.plot_cluster_barplots(groups=groups)


def test_plot_cluster_barplots_custom_sample_factor(groups):
    factor = pd.Series(np.where(np.arange(175) % 2 == 0, "even", "odd"), index=groups.index)
    fig, table = plotting.plot_cluster_barplots(groups=groups, sample_factor=factor,
                                                return_details=True)
    assert list(table.index) == ["even", "odd"]


def test_plot_cluster_boxplots_by_apptype(results):
    apptypes = pd.Series({"s1": "tumor", "s2": "normal", "s3": "tumor"}).astype("category")
    details = plotting.plot_cluster_boxplots_by_apptype(results, apptypes=apptypes,
                                                        return_details=True)
    assert set(details) == {"plot", "data"}
    np.testing.assert_allclose(details["data"].groupby("sample")["val"].sum().to_numpy(), 1.0)

    fig = plotting.plot_cluster_boxplots_by_apptype(results, apptypes=apptypes,
                                                    value_type="counts")
    assert len(fig.axes) == 2


def test_plot_cluster_boxplots_errors(results):
    apptypes = pd.Series({"s1": "a", "s2": "b", "s3": "a"}).astype("category")
    with pytest.raises(ValueError, match="apptypes"):
        plotting.plot_cluster_boxplots_by_apptype(results)
    with pytest.raises(TypeError):
        plotting.plot_cluster_boxplots_by_apptype(results, apptypes=apptypes.astype(str))
    with pytest.raises(ValueError, match="counts or proportions"):
        plotting.plot_cluster_boxplots_by_apptype(results, apptypes=apptypes, value_type="pct")
    with pytest.raises(ValueError, match="hasn't been calculated"):
        plotting.plot_cluster_boxplots_by_apptype(results, clustering="leiden", apptypes=apptypes)


# ---- component variance ----

def test_plot_component_variance(results):
    score_component_variance(results, space="PCA", n_comps=5, verbose=False)
    fig = plotting.plot_component_variance(results, space="PCA")
    ax = fig.axes[0]
    assert ax.get_legend() is None
    assert ax.get_xlabel() == "component number"


def test_plot_component_variance_errors(results):
    with pytest.raises(ValueError):
        plotting.plot_component_variance(results, space="UMAP")
    with pytest.raises(ValueError, match="score_component_variance"):
        plotting.plot_component_variance(results, space="CPCA")


# ---- DE heatmap ----

def test_plot_de_heatmap_details(results, groups):
    details = plotting.plot_de_heatmap(results, groups, n_genes_per_cluster=3,
                                       return_details=True)
    assert set(details) == {"figure", "x", "annot", "rannot", "expl", "pal",
                            "column_metadata_colors", "labeled_gene_subset"}
    assert details["x"].shape == (6, 175)
    labels = [t.get_text() for t in details["figure"].axes[1].get_yticklabels()]
    assert labels == list(details["x"].index)


def test_plot_de_heatmap_options(results, groups, tmp_path):
    path = tmp_path / "heatmap.png"
    meta = pd.DataFrame({"sample": results.get_dataset_per_cell()})
    fig = plotting.plot_de_heatmap(
        results, groups, n_genes_per_cluster=4, labeled_gene_subset=["g0", "g5"],
        column_metadata=meta, split=True, split_gap=1, show_heatmap_legend=True,
        show_gene_clusters=False, border=False, pal=["white", "black"], save_path=str(path),
    )
    assert path.exists()
    assert fig is not None


def test_plot_de_heatmap_with_precomputed_de(results, groups):
    de = results.get_differential_genes(groups, z_threshold=0, upregulated_only=True,
                                        verbose=False)
    details = plotting.plot_de_heatmap(results, groups, de={"A": de["A"]},
                                       n_genes_per_cluster=2, return_details=True)
    assert list(details["rannot"]["clusters"].unique()) == ["A"]
