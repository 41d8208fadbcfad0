"""
conosplot quickstart example.

Run with: python examples/quickstart.py /path/to/combined.h5ad sample leiden
"""

import sys
import conosplot

# ── Load and report ────────────────────────────────────────────────────────

h5ad_path = sys.argv[1] if len(sys.argv) > 1 else "combined.h5ad"
sample_col = sys.argv[2] if len(sys.argv) > 2 else "sample"
cluster_col = sys.argv[3] if len(sys.argv) > 3 else "leiden"

results = conosplot.load_samples(h5ad_path, sample_key=sample_col, cluster_keys=cluster_col)

report = conosplot.render_report(
    results,
    output_dir="conosplot_results/",
    clustering=cluster_col,
    n_genes_per_cluster=10,
    score_variance=True,
    figsize="paper",                   # "paper" for publication, "screen" for larger
)

# ── Access results ─────────────────────────────────────────────────────────

print("\nSample × cluster table:")
print(report['composition'].to_string())
first = next(iter(report['de']))
print(f"\nTop markers of cluster {first}:")
print(report['de'][first].head(10)[['Gene', 'AUC', 'Z']].to_string(index=False))

# ── Individual plots ───────────────────────────────────────────────────────

groups = results.clusters[cluster_col]

# Embeddings
conosplot.plot_samples(results, groups=groups, ncol=3)
conosplot.plot_samples(results, gene=report['de'][first]['Gene'].iloc[0])

# Composition
conosplot.plot_cluster_barplots(results, clustering=cluster_col)

# Variance explained by joint components
conosplot.plot_component_variance(results, space='PCA')

# Marker heatmap with a few labelled genes
conosplot.plot_de_heatmap(results, groups, de=report['de'], n_genes_per_cluster=15,
                          labeled_gene_subset=3, split=True, split_gap=1,
                          save_path="de_heatmap.png")
