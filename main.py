"""
main.py
--------
Entry point for the Customer Analytics Feature Engine.

Reads a transaction ledger, runs the full feature pipeline, and writes
output to the outputs/ folder.

Usage (from the project root):
    python main.py --input data.csv

    # With optional arguments:
    python main.py --input data.csv --as-of 2011-12-10 --cutoff 2011-09-10
    python main.py --input data.csv --history-days 180 --outcome-days 60
    python main.py --input data.csv --train-models --run-drift-monitor
"""

import sys
import os
import argparse
import logging
import pandas as pd

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from config.config_loader import get_ledger_config, get_temporal_split_config
from core.errors import AnalyticsError
from pipeline import AnalyticsResults, CustomerAnalyticsPipeline


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Customer Analytics Feature Engine: RFM, churn/CLV training tables, cohort retention."
    )
    parser.add_argument(
        "--input", type=str, default=None,
        help="Path to the transactions file. Defaults to data.csv in project root."
    )
    parser.add_argument(
        "--as-of", type=str, default=None,
        help="Instant the customer feature table is computed at. Defaults to the day after the last transaction."
    )
    parser.add_argument(
        "--cutoff", type=str, default=None,
        help="Temporal split cutoff. Defaults to as-of minus the outcome span."
    )
    parser.add_argument(
        "--history-days", type=int, default=None,
        help="History window length in days. Defaults to config value (365)."
    )
    parser.add_argument(
        "--outcome-days", type=int, default=None,
        help="Outcome window length in days. Defaults to config value (90)."
    )
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    parser.add_argument(
        "--train-models", action="store_true", default=False,
        help="Also fit churn and CLV models and write predictions."
    )
    parser.add_argument(
        "--run-drift-monitor", action="store_true", default=False,
        help="Also compare the training population with the as-of population and output a drift report."
    )
    return parser.parse_args(argv)


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None):
    args = parse_args(argv)

    # --- Resolve paths ---
    input_path = args.input or os.path.join(PROJECT_ROOT, "data.csv")
    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")

    if not os.path.exists(input_path):
        logger.error(f"Input file not found: {input_path}")
        sys.exit(1)

    # --- Resolve boundaries ---
    split_config = get_temporal_split_config()
    history_days = args.history_days if args.history_days is not None else split_config["history_days"]
    outcome_days = args.outcome_days if args.outcome_days is not None else split_config["outcome_days"]
    history_span = pd.Timedelta(days=history_days)
    outcome_span = pd.Timedelta(days=outcome_days)
    as_of = pd.Timestamp(args.as_of) if args.as_of else _default_as_of(input_path)
    cutoff = pd.Timestamp(args.cutoff) if args.cutoff else as_of - outcome_span
    logger.info(f"as_of={as_of}  cutoff={cutoff}  history={history_span.days}d  outcome={outcome_span.days}d")

    # --- Run pipeline ---
    pipeline = CustomerAnalyticsPipeline()
    try:
        results = pipeline.run(input_path, as_of, cutoff, history_span, outcome_span)
        if args.train_models:
            pipeline.train_models(results)
    except AnalyticsError as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        sys.exit(1)

    paths = pipeline.export(results, output_dir)

    # --- Print summary ---
    _print_summary(results)

    # --- Optional: Drift Monitoring ---
    if args.run_drift_monitor:
        logger.info("Running drift monitor...")
        report = pipeline.monitor_drift(results)
        logger.info(f"Drift Report: {report.summary}")
        for alert in report.alerts:
            level = {"CRITICAL": logging.ERROR, "WARNING": logging.WARNING}.get(alert.severity, logging.INFO)
            logger.log(level, f"[{alert.alert_type}] {alert.severity}: {alert.message}")

        if report.alerts:
            drift_path = os.path.join(output_dir, f"drift_report_{as_of:%Y%m%d}.csv")
            report.to_frame().to_csv(drift_path, index=False)
            logger.info(f"Drift report saved to: {drift_path}")
        else:
            logger.info("No drift alerts detected.")

    return paths


def _default_as_of(input_path: str) -> pd.Timestamp:
    """Day after the last transaction in the file. Derived from data, not the clock."""
    ledger_config = get_ledger_config()
    column = ledger_config["columns"]["timestamp"]
    stamps = pd.read_csv(
        input_path,
        usecols=[column],
        dtype=str,
        encoding=ledger_config.get("encoding", "utf-8"),
        sep=ledger_config.get("delimiter", ","),
    )[column]
    last = pd.to_datetime(stamps, format=ledger_config.get("timestamp_format") or "mixed", errors="coerce").max()
    if pd.isna(last):
        logger.error(f"No parseable timestamps in {input_path}; pass --as-of explicitly.")
        sys.exit(1)
    as_of = last.normalize() + pd.Timedelta(days=1)
    logger.info(f"--as-of not given; using {as_of.date()} (day after last transaction).")
    return as_of


def _print_summary(results: AnalyticsResults):
    """Prints a clean summary table to the console."""
    features = results.features
    report = results.rejection_report

    print("\n" + "=" * 80)
    print("  CUSTOMER ANALYTICS SUMMARY")
    print(f"  Features window: {results.feature_window}   as_of: {results.as_of}")
    print("=" * 80)

    print("\n  Ledger:")
    print("  " + "-" * 60)
    print(f"    Input rows            {report.total_input_rows:>10,}")
    print(f"    Duplicates collapsed  {report.duplicates_collapsed:>10,}")
    for reason, count in report.reason_counts().items():
        if count:
            print(f"    Rejected: {reason:18s}{count:>8,}")
    quality = results.data_quality
    print(f"    Guest lines           {quality.missing_customer_count:>10,}  ({quality.missing_customer_pct:.2f}%)")
    if quality.return_rate_pct is not None:
        print(f"    Return rate           {quality.return_rate_pct:>9.2f}%")

    if not features.empty:
        print("\n  Segments:")
        print("  " + "-" * 60)
        for segment, count in features["segment"].value_counts().items():
            pct = count / len(features) * 100
            print(f"    {segment:22s}  {count:>7,}  ({pct:.1f}%)")

    rate = results.split.churn_rate()
    print(f"\n  Churn training rows at {results.split.cutoff.date()}: {len(results.churn_training):,}"
          + (f"  (churn rate {rate:.1%})" if rate is not None else ""))
    print(f"  Cohorts: {len(results.cohort_retention):,}")

    for name, model_report in results.model_reports.items():
        print(f"  Model {name:6s}: {model_report.metrics}")
    print("=" * 80 + "\n")


if __name__ == "__main__":
    main()
