import numpy as np
import pandas as pd
import pytest
import anndata as ad

from conosplot import cli
from conosplot.preprocessing import load_samples
from conosplot.report import render_report


@pytest.fixture
def h5ad_path(tmp_path, rng):
    n = 60
    X = rng.poisson(2.0, size=(n, 15)).astype(np.float32)
    X[:20, :3] += 100
    obs = pd.DataFrame({
        "sample": pd.Categorical(["p1"] * 30 + ["p2"] * 30),
        "leiden": pd.Categorical(["0"] * 20 + ["1"] * 40),
        "tissue": ["lung"] * 30 + ["liver"] * 30,
    }, index=[f"cell{i}" for i in range(n)])
    adata = ad.AnnData(X, obs=obs, var=pd.DataFrame(index=[f"gene{i}" for i in range(15)]))
    adata.obsm["X_umap"] = rng.normal(size=(n, 2))
    path = tmp_path / "data.h5ad"
    adata.write_h5ad(path)
    return str(path)


def test_load_samples(h5ad_path):
    results = load_samples(h5ad_path, sample_key="sample", cluster_keys="leiden", verbose=False)
    assert list(results.samples) == ["p1", "p2"]
    assert results.samples["p2"].n_cells == 30
    assert list(results.clusters) == ["leiden"]
    assert results.samples["p1"].get_embedding("umap").shape == (30, 2)
    assert "counts" in results.samples["p1"].adata.layers


def test_load_samples_missing_columns(h5ad_path):
    with pytest.raises(ValueError, match="Sample column"):
        load_samples(h5ad_path, sample_key="donor", verbose=False)
    with pytest.raises(ValueError, match="Clustering column"):
        load_samples(h5ad_path, sample_key="sample", cluster_keys=["louvain"], verbose=False)


def test_render_report_writes_tables_and_plots(results, tmp_path):
    out = tmp_path / "report"
    report = render_report(results, output_dir=str(out), n_genes_per_cluster=3, verbose=False)

    assert set(report) == {"groups", "de", "markers", "composition"}
    assert all((t["Z"] >= 0).all() for t in report["markers"].values())
    assert all((t["Z"].abs() >= 3).all() for t in report["de"].values())
    assert (report["de"]["A"]["Z"] < 0).any()
    assert (out / "tables" / "cluster_composition.csv").exists()
    assert (out / "tables" / "de_A.csv").exists()
    assert (out / "plots" / "cluster_barplots.png").exists()
    assert (out / "plots" / "de_heatmap.png").exists()
    assert "PCA" in results.pairs


def test_render_report_needs_a_clustering(results, tmp_path):
    results.clusters = {}
    with pytest.raises(ValueError, match="joint clustering"):
        render_report(results, output_dir=str(tmp_path), verbose=False)


def test_apptypes_from_obs(h5ad_path):
    apptypes = cli._apptypes_from_obs(h5ad_path, "sample", "tissue")
    assert apptypes.to_dict() == {"p1": "lung", "p2": "liver"}
    assert isinstance(apptypes.dtype, pd.CategoricalDtype)
    with pytest.raises(ValueError, match="more than one"):
        cli._apptypes_from_obs(h5ad_path, "leiden", "tissue")


def test_cli_requires_columns(capsys):
    with pytest.raises(SystemExit):
        cli.main(["data.h5ad"])
    with pytest.raises(SystemExit) as exc:
        cli.main(["--version"])
    assert exc.value.code == 0


def test_report_heatmap_markers_stay_with_their_cluster(results, tmp_path):
    from conosplot.heatmap import build_de_heatmap_data

    report = render_report(results, output_dir=str(tmp_path), score_variance=False,
                           save_tables=False, verbose=False)
    data = build_de_heatmap_data(results, report["groups"], de=report["markers"],
                                 n_genes_per_cluster=10)
    rannot = data["rannot"]["clusters"]
    for gene in ["g5", "g6", "g7", "g8", "g9"]:
        assert rannot[gene] == "B"
    assert not {"g5", "g6", "g7", "g8", "g9"} & set(data["expl"]["A"].index)
