import numpy as np
import pandas as pd
import pytest

from conosplot.composition import (
    kl_divergence, cluster_sample_table, cluster_fractions, relative_entropy,
    cluster_proportions_by_sample, component_variance_table,
)


def test_cluster_sample_table_counts(results, groups):
    table = cluster_sample_table(groups, results.get_dataset_per_cell())

    assert list(table.index) == ["s1", "s2", "s3"]
    assert list(table.columns) == ["A", "B"]
    assert table.loc["s1", "A"] == 30
    assert table.loc["s2", "B"] == 30
    assert table.loc["s3", "A"] == 10
    assert table.sum(axis=0).tolist() == [60, 115]
    assert table.sum(axis=1).tolist() == [100, 50, 25]


def test_cluster_sample_table_drops_empty_rows_and_columns():
    groups = pd.Series(pd.Categorical(["A", "A", "B"], categories=["A", "B", "C"]),
                       index=["c1", "c2", "c3"])
    samples = pd.Series(pd.Categorical(["s1", "s1", "s1"], categories=["s1", "s2"]),
                        index=["c1", "c2", "c3"])
    table = cluster_sample_table(groups, samples)
    assert list(table.index) == ["s1"]
    assert list(table.columns) == ["A", "B"]
    assert (table.to_numpy() > 0).all()


def test_cluster_fractions_sum_to_one(results, groups):
    table = cluster_sample_table(groups, results.get_dataset_per_cell())
    frac = cluster_fractions(table)
    assert list(frac.columns) == ["sample", "cluster", "f"]
    sums = frac.groupby("cluster", observed=True)["f"].sum()
    np.testing.assert_allclose(sums.to_numpy(), 1.0)
    a_s1 = frac[(frac["sample"] == "s1") & (frac["cluster"] == "A")]["f"].iloc[0]
    assert a_s1 == pytest.approx(30 / 60)


def test_relative_entropy_proportional_cluster_scores_one():
    table = pd.DataFrame({"A": [10, 20], "B": [5, 10]}, index=["s1", "s2"])
    ne = relative_entropy(table)
    np.testing.assert_allclose(ne.to_numpy(), 1.0)


def test_relative_entropy_single_sample_cluster_is_low():
    table = pd.DataFrame({"A": [10, 0], "B": [10, 30]}, index=["s1", "s2"])
    ne = relative_entropy(table)
    assert ne["A"] < ne["B"]
    assert ne["A"] < 0.5


def test_relative_entropy_one_sample():
    table = pd.DataFrame({"A": [10], "B": [3]}, index=["s1"])
    assert relative_entropy(table).tolist() == [1.0, 1.0]


def test_relative_entropy_custom_function_is_used():
    table = pd.DataFrame({"A": [1, 2], "B": [2, 1]}, index=["s1", "s2"])
    ne = relative_entropy(table, entropy_func=lambda p, q: 0.0)
    assert ne.tolist() == [1.0, 1.0]


def test_kl_divergence_bits():
    assert kl_divergence([1, 1], [1, 1]) == pytest.approx(0.0)
    assert kl_divergence([1, 0], [1, 1]) == pytest.approx(1.0)


def test_cluster_proportions_by_sample(results, groups):
    apptypes = pd.Series({"s1": "tumor", "s2": "normal", "s3": "tumor"}).astype("category")

    df = cluster_proportions_by_sample(results, groups, apptypes, value_type="proportions")
    assert list(df.columns) == ["clname", "val", "sample", "apptype"]
    np.testing.assert_allclose(df.groupby("sample")["val"].sum().to_numpy(), 1.0)
    assert df.set_index(["sample", "clname"]).loc[("s3", "A"), "val"] == pytest.approx(10 / 25)
    assert set(df.loc[df["sample"] == "s2", "apptype"]) == {"normal"}

    counts = cluster_proportions_by_sample(results, groups, apptypes, value_type="counts")
    assert counts["val"].sum() == 175


def test_component_variance_table_pca_keeps_each_dataset_once():
    pairs = {
        "s1.vs.s2": {"nv": {"s1": [0.5, 0.2], "s2": [0.4, 0.1]}},
        "s1.vs.s3": {"nv": {"s1": [0.5, 0.2], "s3": [0.3, 0.3]}},
    }
    df = component_variance_table(pairs, "PCA")
    assert sorted(df["dataset"].unique()) == ["s1", "s2", "s3"]
    assert len(df) == 6
    assert list(df["component"].cat.categories) == [1, 2]

    cpca = component_variance_table(pairs, "CPCA")
    assert len(cpca) == 8


def test_component_variance_table_without_information():
    with pytest.raises(ValueError):
        component_variance_table({}, "PCA")
    with pytest.raises(ValueError):
        component_variance_table({"a.vs.b": {"other": 1}}, "PCA")
