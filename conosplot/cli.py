"""
conosplot CLI
=============
Command-line interface for the default report on a combined h5ad file.

Usage:
    conosplot data.h5ad -s sample -c leiden -o out/ --apptype-col tissue
"""

import argparse
import sys


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog='conosplot',
        description='conosplot: plots for joint analyses of multiple single-cell samples',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Basic usage
  conosplot data.h5ad -s sample -c leiden -o out/

  # Boxplots of cluster proportions per application type
  conosplot data.h5ad -s sample -c leiden -o out/ --apptype-col tissue

  # Skip component variance (faster)
  conosplot data.h5ad -s sample -c leiden -o out/ --no-variance
        """
    )

    parser.add_argument(
        'h5ad',
        help='Path to input .h5ad file with all samples',
    )
    parser.add_argument(
        '-s', '--sample-col',
        required=True,
        metavar='COL',
        help='Column in adata.obs naming the sample of every cell',
    )
    parser.add_argument(
        '-c', '--cluster-col',
        required=True,
        metavar='COL',
        help='Column in adata.obs with the joint clustering',
    )
    parser.add_argument(
        '-o', '--output',
        default='conosplot_results/',
        metavar='DIR',
        help='Output directory (default: conosplot_results/)',
    )
    parser.add_argument(
        '--apptype-col',
        default=None,
        metavar='COL',
        help='Column in adata.obs with a per-sample application type',
    )
    parser.add_argument(
        '--n-genes',
        type=int,
        default=10,
        metavar='N',
        help='Marker genes per cluster in the DE heatmap (default: 10)',
    )
    parser.add_argument(
        '--no-variance',
        action='store_true',
        help='Skip component variance scoring',
    )
    parser.add_argument(
        '--figsize',
        default='paper',
        choices=['paper', 'screen'],
        help='Figure style: paper (publication) or screen (default: paper)',
    )
    parser.add_argument(
        '--version',
        action='version',
        version='conosplot 0.1.0',
    )

    args = parser.parse_args(argv)

    from conosplot.preprocessing import load_samples
    from conosplot.report import render_report

    results = load_samples(args.h5ad, sample_key=args.sample_col, cluster_keys=args.cluster_col)

    apptypes = None
    if args.apptype_col is not None:
        try:
            apptypes = _apptypes_from_obs(args.h5ad, args.sample_col, args.apptype_col)
        except ValueError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            sys.exit(1)

    render_report(
        results,
        output_dir=args.output,
        clustering=args.cluster_col,
        apptypes=apptypes,
        n_genes_per_cluster=args.n_genes,
        score_variance=not args.no_variance,
        figsize=args.figsize,
    )


def _apptypes_from_obs(h5ad_path: str, sample_col: str, apptype_col: str):
    """Categorical sample -> apptype Series from one obs column (one value per sample)."""
    import anndata as ad

    obs = ad.read_h5ad(h5ad_path, backed='r').obs
    if apptype_col not in obs.columns:
        raise ValueError(f"Column '{apptype_col}' not found in adata.obs. "
                         f"Available columns: {list(obs.columns)}")
    pairs = obs[[sample_col, apptype_col]].astype(str).drop_duplicates()
    ambiguous = pairs[sample_col][pairs[sample_col].duplicated()].unique()
    if len(ambiguous):
        raise ValueError(f"Samples with more than one '{apptype_col}' value: {list(ambiguous)}")
    return pairs.set_index(sample_col)[apptype_col].astype('category')


if __name__ == '__main__':
    main()
