"""
temporal_split.py
------------------
Temporal split engine. Builds leakage-free (features, label) pairs for
supervised models (churn, CLV) around a cutoff instant:

    history_window = [cutoff - history_span, cutoff)   -> features
    outcome_window = [cutoff, cutoff + outcome_span)   -> labels

Design decisions:
    - The ledger is partitioned into two separate DataFrames BEFORE any
      aggregation. Each slice is handed to its own aggregator call; no call
      ever receives rows from both sides, and nothing is accumulated across
      the two calls.
    - After the history call, every feature row is checked against the
      cutoff. A purchase bound at or after the cutoff is a code defect and
      raises LeakageError.
    - Labels exist only for customers with at least one history-window sale.
      Everyone else is not yet a customer as of the cutoff.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

import pandas as pd

from core import models as m
from core.errors import ConfigurationError, LeakageError
from core.feature_aggregator import CustomerFeatureAggregator
from core.models import CustomerFeatureRow, OutcomeLabel, TimeWindow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemporalSplitResult:
    """Features from the history window, labels from the outcome window."""

    cutoff: pd.Timestamp
    history_window: TimeWindow
    outcome_window: TimeWindow
    history_features: List[CustomerFeatureRow] = field(default_factory=list)
    outcome_labels: List[OutcomeLabel] = field(default_factory=list)

    def churn_rate(self) -> Optional[float]:
        if not self.outcome_labels:
            return None
        return sum(label.churned for label in self.outcome_labels) / len(self.outcome_labels)

    def to_training_frame(self) -> pd.DataFrame:
        """
        One row per labeled customer: history features joined with the
        outcome label, tagged with the split boundaries.
        """
        labeled = {label.customer_id: label for label in self.outcome_labels}
        rows = [r for r in self.history_features if r.customer_id in labeled]
        features = CustomerFeatureAggregator.to_frame(rows)

        features["churned"] = [labeled[cid].churned for cid in features[m.CUSTOMER_ID]]
        features["outcome_revenue"] = [labeled[cid].outcome_revenue for cid in features[m.CUSTOMER_ID]]
        features["cutoff"] = self.cutoff
        features["history_start"] = self.history_window.start
        features["outcome_end"] = self.outcome_window.end
        return features


class TemporalSplitEngine:
    """
    Usage:
        engine = TemporalSplitEngine()
        result = engine.split(classified_df, cutoff, pd.Timedelta(days=365), pd.Timedelta(days=90))
        training_df = result.to_training_frame()
    """

    def __init__(self, aggregator: Optional[CustomerFeatureAggregator] = None):
        self.aggregator = aggregator or CustomerFeatureAggregator()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def split(
        self,
        classified: pd.DataFrame,
        cutoff,
        history_span: pd.Timedelta,
        outcome_span: pd.Timedelta,
    ) -> TemporalSplitResult:
        """
        Build history features and outcome labels around a cutoff.

        Raises:
            ConfigurationError: Non-positive spans, empty ledger, or a cutoff
                whose history window holds no transactions.
            LeakageError: If history features ever reach the cutoff.
        """
        m.require_columns(classified, m.CLASSIFIED_COLUMNS)
        cutoff = pd.Timestamp(cutoff)
        history_window, outcome_window = self.windows(classified, cutoff, history_span, outcome_span)

        history_ledger, outcome_ledger = self._partition(classified, history_window, outcome_window)
        logger.info(
            f"Split at {cutoff}: history {history_window} has {len(history_ledger):,} lines, "
            f"outcome {outcome_window} has {len(outcome_ledger):,} lines."
        )

        history_features = self._history_features(history_ledger, history_window)
        outcome_features = self._outcome_features(outcome_ledger, outcome_window)

        labels = self._label(history_features, outcome_features)
        result = TemporalSplitResult(
            cutoff=cutoff,
            history_window=history_window,
            outcome_window=outcome_window,
            history_features=history_features,
            outcome_labels=labels,
        )

        rate = result.churn_rate()
        if rate is None:
            logger.warning(f"No customer had a history-window sale before {cutoff}; no labels produced.")
        else:
            logger.info(f"Labeled {len(labels):,} customers. Churn rate: {rate:.1%}.")
        return result

    # -------------------------------------------------------------------------
    # WINDOWS & PARTITIONING
    # -------------------------------------------------------------------------

    @staticmethod
    def windows(
        classified: pd.DataFrame, cutoff: pd.Timestamp, history_span, outcome_span
    ) -> tuple[TimeWindow, TimeWindow]:
        """Validates the split boundaries and returns (history, outcome) windows. Aggregates nothing."""
        history_span = pd.Timedelta(history_span)
        outcome_span = pd.Timedelta(outcome_span)
        if history_span <= pd.Timedelta(0) or outcome_span <= pd.Timedelta(0):
            raise ConfigurationError(
                f"History and outcome spans must be positive, got {history_span} and {outcome_span}"
            )
        if classified.empty:
            raise ConfigurationError("Cannot split an empty ledger.")
        if pd.isna(cutoff):
            raise ConfigurationError("Cutoff must be a valid timestamp.")

        history_window = TimeWindow(cutoff - history_span, cutoff)
        outcome_window = TimeWindow(cutoff, cutoff + outcome_span)

        # Validity depends on history-window rows alone
        if not history_window.mask(classified[m.TIMESTAMP]).any():
            first_ts = classified[m.TIMESTAMP].min()
            last_ts = classified[m.TIMESTAMP].max()
            raise ConfigurationError(
                f"Cutoff {cutoff} lies outside the ledger's data range ({first_ts} to {last_ts}): "
                f"history window {history_window} holds no transactions"
            )
        return history_window, outcome_window

    @staticmethod
    def _partition(
        classified: pd.DataFrame, history_window: TimeWindow, outcome_window: TimeWindow
    ) -> tuple[pd.DataFrame, pd.DataFrame]:
        """Two independent copies; neither shares rows or memory with the other."""
        timestamps = classified[m.TIMESTAMP]
        history_ledger = classified.loc[history_window.mask(timestamps)].copy()
        outcome_ledger = classified.loc[outcome_window.mask(timestamps)].copy()
        return history_ledger, outcome_ledger

    # -------------------------------------------------------------------------
    # INTERNAL: PER-WINDOW AGGREGATION
    # -------------------------------------------------------------------------

    def _history_features(self, history_ledger: pd.DataFrame, window: TimeWindow) -> List[CustomerFeatureRow]:
        if not history_ledger.empty and history_ledger[m.TIMESTAMP].max() >= window.end:
            raise LeakageError(f"History slice contains lines at or after the cutoff {window.end}")

        rows = self.aggregator.aggregate(history_ledger, window, as_of=window.end)

        for row in rows:
            if row.last_purchase_at is not None and row.last_purchase_at >= window.end:
                raise LeakageError(
                    f"History features for customer {row.customer_id} read a purchase at "
                    f"{row.last_purchase_at}, at or after the cutoff {window.end}"
                )
        return rows

    def _outcome_features(self, outcome_ledger: pd.DataFrame, window: TimeWindow) -> List[CustomerFeatureRow]:
        return self.aggregator.aggregate(outcome_ledger, window, as_of=window.end)

    # -------------------------------------------------------------------------
    # INTERNAL: LABELS
    # -------------------------------------------------------------------------

    @staticmethod
    def _label(
        history_features: List[CustomerFeatureRow], outcome_features: List[CustomerFeatureRow]
    ) -> List[OutcomeLabel]:
        outcome_by_customer = {r.customer_id: r for r in outcome_features}
        labels: List[OutcomeLabel] = []

        for row in history_features:
            if row.frequency < 1:
                continue
            outcome = outcome_by_customer.get(row.customer_id)
            outcome_frequency = outcome.frequency if outcome is not None else 0
            outcome_revenue = outcome.monetary_total if outcome is not None else Decimal(0)
            labels.append(OutcomeLabel(
                customer_id=row.customer_id,
                churned=outcome_frequency == 0,
                outcome_revenue=outcome_revenue,
            ))

        return labels
