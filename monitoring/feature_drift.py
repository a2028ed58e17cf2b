"""
feature_drift.py
-----------------
Drift monitoring between two customer feature snapshots, typically the
training population (history features at the cutoff) and the scoring
population (features at as_of).

Two monitoring dimensions:
    1. Population size: did the number of buying customers change sharply?
    2. Feature distribution shifts, per numeric feature.

Methods:
    - KS test (Kolmogorov-Smirnov): Detects distributional shifts between
      the baseline and comparison snapshots.
    - PSI (Population Stability Index): Quantifies how much a distribution
      has shifted. Industry standard thresholds: <0.1 = stable, 0.1–0.25 = minor
      shift, >0.25 = major shift.

All thresholds come from config.yaml. Timestamps on alerts are the
comparison snapshot's as_of, never wall-clock time.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from config.config_loader import get_drift_monitoring_config
from core import models as m

logger = logging.getLogger(__name__)


@dataclass
class DriftAlert:
    """A single drift detection alert."""
    alert_type: str                  # "POPULATION" | "FEATURE_DISTRIBUTION"
    severity: str                    # "INFO" | "WARNING" | "CRITICAL"
    feature: str                     # Feature name, or "ALL"
    metric_name: str                 # e.g. "ks_p_value", "psi"
    metric_value: float
    threshold: float
    message: str
    detected_at: str = ""            # ISO timestamp of the comparison as_of


@dataclass
class DriftReport:
    """Full drift monitoring report, one per pair of snapshots."""
    baseline_as_of: str
    comparison_as_of: str
    alerts: List[DriftAlert] = field(default_factory=list)
    summary: dict = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        columns = ["alert_type", "severity", "feature", "metric_name",
                   "metric_value", "threshold", "message", "detected_at"]
        return pd.DataFrame([{c: getattr(a, c) for c in columns} for a in self.alerts], columns=columns)


class FeatureDriftMonitor:
    """
    Usage:
        monitor = FeatureDriftMonitor()
        report = monitor.run(training_features_df, scoring_features_df)
    """

    def __init__(self, drift_config: Optional[Dict[str, Any]] = None):
        self.config = drift_config or get_drift_monitoring_config()
        self.ks_alpha = self.config["ks_alpha"]
        self.psi_minor = self.config["psi_minor"]
        self.psi_major = self.config["psi_major"]
        self.min_samples = self.config["min_samples"]
        self.features = list(self.config["features"])

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(self, baseline: pd.DataFrame, comparison: pd.DataFrame) -> DriftReport:
        """
        Compare two feature tables (output of CustomerFeatureAggregator.to_frame).
        Only customers with at least one purchase are compared.
        """
        m.require_columns(baseline, [m.CUSTOMER_ID, "frequency", "as_of"] + self.features)
        m.require_columns(comparison, [m.CUSTOMER_ID, "frequency", "as_of"] + self.features)

        base = baseline[baseline["frequency"] >= 1]
        comp = comparison[comparison["frequency"] >= 1]
        detected_at = _as_of_label(comparison)

        alerts: List[DriftAlert] = []
        alerts.extend(self._check_population(base, comp, detected_at))
        for feature in self.features:
            alerts.extend(self._check_feature(feature, base, comp, detected_at))

        summary = {
            "total_alerts": len(alerts),
            "critical_alerts": sum(1 for a in alerts if a.severity == "CRITICAL"),
            "warning_alerts": sum(1 for a in alerts if a.severity == "WARNING"),
            "info_alerts": sum(1 for a in alerts if a.severity == "INFO"),
            "baseline_customers": len(base),
            "comparison_customers": len(comp),
        }
        logger.info(f"Drift check complete: {summary}")

        return DriftReport(
            baseline_as_of=_as_of_label(baseline),
            comparison_as_of=detected_at,
            alerts=alerts,
            summary=summary,
        )

    # -------------------------------------------------------------------------
    # INTERNAL: POPULATION SIZE
    # -------------------------------------------------------------------------

    def _check_population(self, base: pd.DataFrame, comp: pd.DataFrame, detected_at: str) -> List[DriftAlert]:
        """Flags a >50% change in the number of buying customers."""
        if len(base) == 0:
            return []

        ratio = len(comp) / len(base)
        if 0.5 <= ratio <= 1.5:
            return []

        severity = "CRITICAL" if (ratio > 2.0 or ratio < 0.33) else "WARNING"
        return [DriftAlert(
            alert_type="POPULATION",
            severity=severity,
            feature="ALL",
            metric_name="customer_count_ratio",
            metric_value=round(ratio, 3),
            threshold=1.5,
            message=(
                f"Buying customers changed by {((ratio - 1) * 100):+.0f}%. "
                f"Baseline: {len(base):,}, comparison: {len(comp):,}."
            ),
            detected_at=detected_at,
        )]

    # -------------------------------------------------------------------------
    # INTERNAL: FEATURE DISTRIBUTION
    # -------------------------------------------------------------------------

    def _check_feature(
        self, feature: str, base: pd.DataFrame, comp: pd.DataFrame, detected_at: str
    ) -> List[DriftAlert]:
        baseline_values = _numeric(base[feature])
        comparison_values = _numeric(comp[feature])

        # Need minimum samples for meaningful tests
        if len(baseline_values) < self.min_samples or len(comparison_values) < self.min_samples:
            logger.debug(f"Skipping drift check for {feature}: too few samples.")
            return []

        alerts = []

        # --- KS Test ---
        ks_stat, ks_pvalue = stats.ks_2samp(baseline_values, comparison_values)
        if ks_pvalue < self.ks_alpha:
            alerts.append(DriftAlert(
                alert_type="FEATURE_DISTRIBUTION",
                severity="WARNING",
                feature=feature,
                metric_name="ks_p_value",
                metric_value=round(float(ks_pvalue), 4),
                threshold=self.ks_alpha,
                message=f"Distribution shift in {feature}. KS statistic={ks_stat:.3f}, p-value={ks_pvalue:.4f}.",
                detected_at=detected_at,
            ))

        # --- PSI ---
        psi = self._compute_psi(baseline_values, comparison_values)
        if psi > self.psi_minor:
            severity = "CRITICAL" if psi > self.psi_major else "WARNING"
            alerts.append(DriftAlert(
                alert_type="FEATURE_DISTRIBUTION",
                severity=severity,
                feature=feature,
                metric_name="psi",
                metric_value=round(psi, 4),
                threshold=self.psi_major if severity == "CRITICAL" else self.psi_minor,
                message=(
                    f"PSI={psi:.3f} for {feature}. "
                    f"({'Major' if severity == 'CRITICAL' else 'Minor'} distribution shift.)"
                ),
                detected_at=detected_at,
            ))

        return alerts

    # -------------------------------------------------------------------------
    # INTERNAL: PSI CALCULATION
    # -------------------------------------------------------------------------

    @staticmethod
    def _compute_psi(baseline: np.ndarray, comparison: np.ndarray, n_bins: int = 10) -> float:
        """
        Computes Population Stability Index between two distributions.

        PSI = Σ (P_actual - P_expected) * ln(P_actual / P_expected)

        Bin edges come from baseline percentiles; both samples are mapped
        into those bins.
        """
        bin_edges = np.unique(np.percentile(baseline, np.linspace(0, 100, n_bins + 1)))
        if len(bin_edges) < 3:
            return 0.0  # Not enough variation to compute PSI

        # Open the outer bins so comparison values beyond the baseline range still count
        bin_edges[0], bin_edges[-1] = -np.inf, np.inf
        baseline_counts, _ = np.histogram(baseline, bins=bin_edges)
        comparison_counts, _ = np.histogram(comparison, bins=bin_edges)

        eps = 1e-6
        baseline_freq = (baseline_counts + eps) / (baseline_counts.sum() + eps * len(baseline_counts))
        comparison_freq = (comparison_counts + eps) / (comparison_counts.sum() + eps * len(comparison_counts))

        psi = np.sum((comparison_freq - baseline_freq) * np.log(comparison_freq / baseline_freq))
        return float(psi)


def _numeric(values: pd.Series) -> np.ndarray:
    return values.dropna().astype(float).to_numpy()


def _as_of_label(table: pd.DataFrame) -> str:
    stamps = pd.to_datetime(table["as_of"]).dropna().unique()
    return ", ".join(pd.Timestamp(s).isoformat() for s in sorted(stamps))
