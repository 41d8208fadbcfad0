import numpy as np
import pandas as pd
import pytest

from conosplot.differential import (
    DE_COLUMNS, get_differential_genes, filter_de, parse_ordering, select_top_genes,
    get_consistent_cluster_markers,
)


def test_markers_of_each_cluster(results, groups):
    de = results.get_differential_genes(groups, z_threshold=3.0, upregulated_only=True,
                                        verbose=False)
    assert list(de) == ["A", "B"]
    for table in de.values():
        assert list(table.columns) == DE_COLUMNS
        assert table["Z"].is_monotonic_decreasing
        assert ((table["AUC"] >= 0) & (table["AUC"] <= 1)).all()
    a_markers = {f"g{i}" for i in range(5)}
    b_markers = {f"g{i}" for i in range(5, 10)}
    assert a_markers <= set(de["A"]["Gene"])
    assert b_markers <= set(de["B"]["Gene"])
    assert not b_markers & set(de["A"]["Gene"])
    assert set(de["A"]["Gene"].head(5)) == a_markers
    assert (de["A"]["Z"] >= 3.0).all()


def test_statistics_on_a_small_example():
    counts = np.array([[3.0], [4.0], [0.0], [2.0]])
    groups = pd.Series(["in", "in", "out", "out"], index=["a", "b", "c", "d"])
    de = get_differential_genes(counts, groups, ["a", "b", "c", "d"], ["g"], z_threshold=0,
                                verbose=False)
    row = de["in"].iloc[0]
    assert row["AUC"] == pytest.approx(1.0)
    assert row["ExpressionFraction"] == pytest.approx(1.0)
    assert row["Specificity"] == pytest.approx(0.5)
    assert row["Precision"] == pytest.approx(2 / 3)
    assert row["M"] == pytest.approx(np.log2((3.5 + 1) / (1.0 + 1)))
    assert row["Z"] > 0
    assert de["out"].iloc[0]["Z"] == pytest.approx(-row["Z"])


def test_two_sided_threshold_keeps_downregulated_genes(results, groups):
    de = results.get_differential_genes(groups, z_threshold=3.0, verbose=False)
    assert (de["A"]["Z"] < 0).any()


def test_unlabelled_cells_are_ignored_and_empty_levels_give_empty_tables():
    counts = np.array([[1.0], [5.0], [2.0]])
    groups = pd.Series(pd.Categorical(["x", "y"], categories=["x", "y", "z"]), index=["a", "b"])
    de = get_differential_genes(counts, groups, ["a", "b", "c"], ["g"], z_threshold=0,
                                verbose=False)
    assert list(de) == ["x", "y", "z"]
    assert len(de["z"]) == 0
    assert list(de["z"].columns) == DE_COLUMNS


def test_no_labelled_cells():
    with pytest.raises(ValueError):
        get_differential_genes(np.ones((2, 1)), pd.Series(["x"], index=["q"]), ["a", "b"], ["g"],
                               verbose=False)


def _de():
    return {
        "A": pd.DataFrame({"Gene": ["g1", "g2", "g3"], "AUC": [0.9, 0.7, 0.8],
                           "Specificity": [0.9, 0.5, 0.95], "Precision": [0.8, 0.8, 0.6]}),
        "B": pd.DataFrame({"Gene": ["g4"], "AUC": [0.7],
                           "Specificity": [0.99], "Precision": [0.99]}),
    }


def test_filter_de_is_strict():
    out = filter_de(_de(), min_auc=0.7)
    assert list(out["A"]["Gene"]) == ["g1", "g3"]
    assert len(out["B"]) == 0

    out = filter_de(_de(), min_specificity=0.9, min_precision=0.7)
    assert list(out["A"]["Gene"]) == []
    assert list(out["B"]["Gene"]) == ["g4"]


def test_filter_de_missing_column_warns():
    de = {"A": pd.DataFrame({"Gene": ["g1"], "Z": [4.0]})}
    with pytest.warns(UserWarning, match="AUC"):
        out = filter_de(de, min_auc=0.5)
    assert len(out["A"]) == 1


def test_parse_ordering():
    assert parse_ordering("-AUC") == (["AUC"], [False])
    assert parse_ordering(["Specificity", "-Z"]) == (["Specificity", "Z"], [True, False])


def test_select_top_genes():
    top = select_top_genes(_de(), 2, "-AUC")
    assert list(top["A"]["Gene"]) == ["g1", "g3"]
    assert list(top["B"]["Gene"]) == ["g4"]

    top = select_top_genes(filter_de(_de(), min_auc=0.7), 5)
    assert "B" not in top

    with pytest.raises(ValueError, match="not found"):
        select_top_genes(_de(), 2, "-Foo")


def test_consistent_cluster_markers(results):
    markers = get_consistent_cluster_markers(results, min_percent_samples_expressing=1.0)
    assert set(markers) == {"A", "B"}
    assert {f"g{i}" for i in range(5)} <= set(markers["A"])
    assert not {f"g{i}" for i in range(5)} & set(markers["B"])


def test_sparse_chunked_input_matches_dense(results, groups):
    X = results.get_joint_count_matrix()
    dense = get_differential_genes(X.toarray(), groups, results.cell_names, results.genes,
                                   z_threshold=0, verbose=False)
    chunked = get_differential_genes(X, groups, results.cell_names, results.genes,
                                     z_threshold=0, chunk_size=3, verbose=False)
    for lvl in ("A", "B"):
        pd.testing.assert_frame_equal(dense[lvl], chunked[lvl])


def test_statistics_agree_with_mannwhitneyu(results, groups):
    from scipy.stats import mannwhitneyu

    X = results.get_joint_count_matrix().toarray()
    de = get_differential_genes(X, groups, results.cell_names, results.genes, z_threshold=0,
                                verbose=False)
    mask = (groups.reindex(results.cell_names) == "A").to_numpy()
    u = mannwhitneyu(X[mask], X[~mask], axis=0).statistic
    auc = pd.Series(u / (mask.sum() * (~mask).sum()), index=results.genes)
    table = de["A"].set_index("Gene")
    np.testing.assert_allclose(table["AUC"].to_numpy(), auc[table.index].to_numpy())


def test_constant_gene_scores_zero():
    counts = np.array([[1.0, 5.0], [1.0, 6.0], [1.0, 0.0], [1.0, 1.0]])
    groups = pd.Series(["in", "in", "out", "out"], index=["a", "b", "c", "d"])
    de = get_differential_genes(counts, groups, ["a", "b", "c", "d"], ["flat", "g"],
                                z_threshold=0, verbose=False)
    flat = de["in"].set_index("Gene").loc["flat"]
    assert flat["Z"] == 0
    assert flat["AUC"] == pytest.approx(0.5)
