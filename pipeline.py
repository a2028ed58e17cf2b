"""
pipeline.py
------------
Main orchestration layer. Wires together:
    1. LedgerLoader                 →  validated ledger + rejection report + quality profile
    2. TransactionClassifier        →  sale / return / cancellation, admin & guest flags
    3. CustomerFeatureAggregator    →  per-customer feature table as of as_of
       + RFMScorer                  →  quintile scores, segment, activity status
    4. TemporalSplitEngine          →  churn / CLV training table at a cutoff
    5. CohortRetentionCalculator    →  cohort × month-offset retention matrix
    6. Output serialization         →  CSV exports tagged with their boundaries

This is the single entry point for running the engine. Everything else
is internal machinery.

Usage:
    from pipeline import CustomerAnalyticsPipeline

    pipeline = CustomerAnalyticsPipeline()
    results = pipeline.run("data.csv", as_of="2011-12-10", cutoff="2011-09-10")
    pipeline.export(results, "outputs")
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

import pandas as pd

from config.config_loader import get_temporal_split_config
from core import models as m
from core.classifier import TransactionClassifier
from core.cohort_retention import CohortRetentionCalculator
from core.errors import ConfigurationError
from core.feature_aggregator import CustomerFeatureAggregator
from core.ledger_loader import LedgerLoader
from core.models import DataQualityReport, RejectionReport, TimeWindow
from core.temporal_split import TemporalSplitEngine, TemporalSplitResult
from modeling.predictors import ChurnModel, CLVModel, ModelReport
from monitoring.feature_drift import DriftReport, FeatureDriftMonitor
from scoring.rfm_scorer import RFMScorer

logger = logging.getLogger(__name__)


@dataclass
class AnalyticsResults:
    """Everything one pipeline run produces."""
    as_of: pd.Timestamp
    feature_window: TimeWindow
    features: pd.DataFrame               # Scored customer feature table
    churn_training: pd.DataFrame         # History features + outcome labels
    cohort_retention: pd.DataFrame       # Ratios, rows = cohort month
    cohort_counts: pd.DataFrame          # Active customers, same shape
    rejection_report: RejectionReport
    data_quality: DataQualityReport
    split: TemporalSplitResult
    model_reports: Dict[str, ModelReport] = field(default_factory=dict)
    predictions: Optional[pd.DataFrame] = None


class CustomerAnalyticsPipeline:
    """
    End-to-end customer feature pipeline.

    Orchestrates load → classify → aggregate / split / cohorts → output
    without exposing internal objects to callers.
    """

    def __init__(self):
        self.loader = LedgerLoader()
        self.classifier = TransactionClassifier()
        self.aggregator = CustomerFeatureAggregator()
        self.split_engine = TemporalSplitEngine(self.aggregator)
        self.cohort_calculator = CohortRetentionCalculator()
        self.scorer = RFMScorer()
        self.split_config = get_temporal_split_config()

        logger.info(
            f"Pipeline initialized. "
            f"Admin patterns: {[p.pattern for p in self.classifier.admin_patterns]}. "
            f"Default split: {self.split_config['history_days']}d history / "
            f"{self.split_config['outcome_days']}d outcome."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(
        self,
        raw: str | pd.DataFrame | Iterable[Mapping[str, Any]],
        as_of,
        cutoff,
        history_span: Optional[pd.Timedelta] = None,
        outcome_span: Optional[pd.Timedelta] = None,
        window_start=None,
    ) -> AnalyticsResults:
        """
        Run the full pipeline.

        Args:
            raw: Path to a delimited file, a raw DataFrame, or raw row mappings.
            as_of: Instant the customer feature table is computed at. Features
                cover [window_start, as_of).
            cutoff: Temporal split instant for the churn training table.
            history_span / outcome_span: Split window lengths. Default to config.
            window_start: Start of the feature window. Defaults to the first
                day of the ledger.

        Returns:
            AnalyticsResults.

        Raises:
            ConfigurationError: Invalid boundaries, raised before any aggregation.
        """
        if history_span is None:
            history_span = pd.Timedelta(days=self.split_config["history_days"])
        if outcome_span is None:
            outcome_span = pd.Timedelta(days=self.split_config["outcome_days"])

        # --- Stage 1: Load & validate ---
        loaded = self.loader.load_csv(raw) if isinstance(raw, str) else self.loader.load(raw)
        if loaded.ledger.empty:
            raise ConfigurationError("No valid transactions remain after validation.")
        logger.info(f"Stage 1 complete. Valid lines: {len(loaded):,}.")

        # --- Stage 2: Classify ---
        classified = self.classifier.classify(loaded.ledger)
        logger.info("Stage 2 complete.")

        # --- Fail fast on every boundary before aggregating anything ---
        as_of = pd.Timestamp(as_of)
        if window_start is None:
            window_start = classified[m.TIMESTAMP].min().normalize()
        feature_window = TimeWindow(window_start, as_of)
        self.split_engine.windows(classified, pd.Timestamp(cutoff), history_span, outcome_span)

        # --- Stage 3: Customer features as of as_of ---
        rows = self.aggregator.aggregate(classified, feature_window, as_of)
        features = self.scorer.score(self.aggregator.to_frame(rows))
        logger.info(f"Stage 3 complete. Customer rows: {len(features):,}.")

        # --- Stage 4: Temporal split ---
        split = self.split_engine.split(classified, cutoff, history_span, outcome_span)
        churn_training = split.to_training_frame()
        logger.info(f"Stage 4 complete. Training rows: {len(churn_training):,}.")

        # --- Stage 5: Cohorts ---
        cohort_counts = self.cohort_calculator.active_counts(classified)
        cohort_retention = self.cohort_calculator.retention(classified)
        logger.info(f"Stage 5 complete. Cohorts: {len(cohort_retention):,}.")

        return AnalyticsResults(
            as_of=as_of,
            feature_window=feature_window,
            features=features,
            churn_training=churn_training,
            cohort_retention=cohort_retention,
            cohort_counts=cohort_counts,
            rejection_report=loaded.report,
            data_quality=loaded.quality,
            split=split,
        )

    def train_models(self, results: AnalyticsResults) -> AnalyticsResults:
        """
        Fit churn and CLV models on the training table and score the
        as_of feature table. Returns the same results object, filled in.
        """
        churn_model = ChurnModel()
        clv_model = CLVModel()
        results.model_reports = {
            "churn": churn_model.fit(results.churn_training),
            "clv": clv_model.fit(results.churn_training),
        }
        results.predictions = churn_model.predict(results.features).merge(
            clv_model.predict(results.features), on=m.CUSTOMER_ID, how="outer"
        )
        results.predictions["as_of"] = results.as_of
        return results

    def monitor_drift(self, results: AnalyticsResults) -> DriftReport:
        """Compares the training population (at cutoff) with the as_of population."""
        baseline = self.aggregator.to_frame(results.split.history_features)
        return FeatureDriftMonitor().run(baseline, results.features)

    def export(self, results: AnalyticsResults, output_dir: str) -> Dict[str, str]:
        """
        Writes the tabular outputs. File names carry the as_of / cutoff they
        were computed at.

        Returns:
            Mapping of output name → written path.
        """
        os.makedirs(output_dir, exist_ok=True)
        as_of_tag = f"{results.as_of:%Y%m%d}"
        cutoff_tag = f"{results.split.cutoff:%Y%m%d}"

        retention = results.cohort_retention.copy()
        retention.index = [f"{ts:%Y-%m}" for ts in retention.index]
        retention.index.name = "cohort_month"

        paths = {
            "customer_features": os.path.join(output_dir, f"customer_features_{as_of_tag}.csv"),
            "churn_training": os.path.join(output_dir, f"churn_training_{cutoff_tag}.csv"),
            "cohort_retention": os.path.join(output_dir, "cohort_retention.csv"),
            "rejections": os.path.join(output_dir, "rejections.csv"),
            "data_quality": os.path.join(output_dir, "data_quality.csv"),
        }
        results.features.to_csv(paths["customer_features"], index=False)
        results.churn_training.to_csv(paths["churn_training"], index=False)
        retention.to_csv(paths["cohort_retention"])
        results.rejection_report.to_frame().to_csv(paths["rejections"], index=False)
        results.data_quality.to_frame().to_csv(paths["data_quality"], index=False)

        if results.predictions is not None:
            paths["predictions"] = os.path.join(output_dir, f"predictions_{as_of_tag}.csv")
            results.predictions.to_csv(paths["predictions"], index=False)

        for name, path in paths.items():
            logger.info(f"Wrote {name} to {path}")
        return paths
