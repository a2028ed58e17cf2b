"""
rfm_scorer.py
--------------
RFM scoring on top of a customer feature table.

Adds, per customer with at least one purchase in the window:
    - r_score / f_score / m_score: 1–5 quantile scores (5 = best).
      Recency is inverted: the most recent buyers score 5.
    - rfm_code: concatenated scores, e.g. "545".
    - rfm_total: r + f + m.
    - segment: business label derived from the scores.
    - activity_status: Active / At Risk / Lapsing / Churned from recency.

Customers whose window activity is returns only keep null scores and the
"No Purchases" label, so they never distort the quantile boundaries.

Scores are computed like SQL NTILE over customers ordered by the metric,
ties broken by customer_id, so reruns give identical scores.
"""

import logging
from typing import Any, Dict, Optional

import pandas as pd

from config.config_loader import get_activity_status_config, get_rfm_config
from core import models as m

logger = logging.getLogger(__name__)

NO_PURCHASES = "No Purchases"

SEGMENTS = [
    "Champions",
    "Loyal Customers",
    "New Customers",
    "Potential Loyalists",
    "Promising",
    "Cannot Lose Them",
    "At Risk",
    "Hibernating",
    "Lost",
]

SCORE_COLUMNS = ["r_score", "f_score", "m_score", "rfm_code", "rfm_total", "segment", "activity_status"]


def assign_segment(r: int, f: int, m_: int) -> str:
    """
    Assign a business segment label from R, F, M scores (1-5).

    - Champions        : bought recently and often
    - Loyal Customers  : regular buyers, still reasonably recent
    - New Customers    : very recent, first order only
    - Potential Loyalists: recent, a second order already
    - Promising        : recent-ish, low frequency
    - Cannot Lose Them : used to buy often and big, gone quiet
    - At Risk          : were regular, now going cold
    - Hibernating      : low recency, low frequency
    - Lost             : oldest and least engaged
    """
    if r >= 4 and f >= 4:
        return "Champions"
    if r >= 3 and f >= 3:
        return "Loyal Customers"
    if r == 5 and f == 1:
        return "New Customers"
    if r >= 4 and f == 2:
        return "Potential Loyalists"
    if r >= 3:
        return "Promising"
    if r == 1 and f >= 4 and m_ >= 4:
        return "Cannot Lose Them"
    if f >= 3:
        return "At Risk"
    if r == 2:
        return "Hibernating"
    return "Lost"


class RFMScorer:
    """
    Usage:
        scorer = RFMScorer()
        scored_df = scorer.score(features_df)
    """

    def __init__(
        self,
        rfm_config: Optional[Dict[str, Any]] = None,
        activity_config: Optional[Dict[str, int]] = None,
    ):
        self.n_quantiles = int((rfm_config or get_rfm_config())["n_quantiles"])
        self.activity_thresholds = activity_config or get_activity_status_config()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def score(self, features: pd.DataFrame) -> pd.DataFrame:
        """
        Returns a copy of the feature table with SCORE_COLUMNS appended.
        Row order of the input is preserved.
        """
        m.require_columns(features, [m.CUSTOMER_ID, "recency_days", "frequency", "monetary_total"])
        df = features.copy()

        buyers = df[df["frequency"] >= 1].sort_values(m.CUSTOMER_ID)
        n = len(buyers)

        r = pd.Series(pd.NA, index=df.index, dtype="Int64")
        f = pd.Series(pd.NA, index=df.index, dtype="Int64")
        mon = pd.Series(pd.NA, index=df.index, dtype="Int64")
        if n:
            # Lower recency is better, so rank descending for R
            r.loc[buyers.index] = self._ntile(buyers["recency_days"].astype(float), ascending=False)
            f.loc[buyers.index] = self._ntile(buyers["frequency"].astype(float), ascending=True)
            mon.loc[buyers.index] = self._ntile(buyers["monetary_total"].astype(float), ascending=True)

        df["r_score"] = r
        df["f_score"] = f
        df["m_score"] = mon
        df["rfm_code"] = [
            f"{a}{b}{c}" if not pd.isna(a) else None for a, b, c in zip(r, f, mon)
        ]
        df["rfm_total"] = r + f + mon
        df["segment"] = [
            assign_segment(int(a), int(b), int(c)) if not pd.isna(a) else NO_PURCHASES
            for a, b, c in zip(r, f, mon)
        ]
        df["activity_status"] = df["recency_days"].map(self.activity_status)

        if n:
            logger.info(f"Scored {n:,} customers. Segments: {df['segment'].value_counts().to_dict()}")
        return df

    def activity_status(self, recency_days) -> str:
        """Maps days since last purchase to an activity label."""
        if recency_days is None or pd.isna(recency_days):
            return NO_PURCHASES
        t = self.activity_thresholds
        if recency_days <= t["active_max_days"]:
            return "Active"
        if recency_days <= t["at_risk_max_days"]:
            return "At Risk"
        if recency_days <= t["lapsing_max_days"]:
            return "Lapsing"
        return "Churned"

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _ntile(self, values: pd.Series, ascending: bool) -> pd.Series:
        """
        1..n_quantiles buckets of equal size over the ordering of values.
        rank(method="first") breaks ties by current row order (customer_id).
        """
        ranks = values.rank(method="first", ascending=ascending).astype("int64")
        return ((ranks - 1) * self.n_quantiles // len(values) + 1).astype("int64")
