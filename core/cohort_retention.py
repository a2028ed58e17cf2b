"""
cohort_retention.py
--------------------
Cohort retention calculator.

Each customer belongs to the cohort of the calendar month of their first sale
across the WHOLE ledger. The cohort is assigned once and never changes. For
every (cohort_month, month_offset) cell we count distinct active customers
and divide by the count at offset 0.

Output matrices: rows = cohort month, columns = month offset (0, 1, 2, ...).
"""

import logging

import pandas as pd

from core import models as m
from core.errors import InvariantViolation

logger = logging.getLogger(__name__)

COHORT_MONTH = "cohort_month"
ACTIVITY_MONTH = "activity_month"
MONTH_OFFSET = "month_offset"


class CohortRetentionCalculator:
    """
    Usage:
        calculator = CohortRetentionCalculator()
        retention_df = calculator.retention(classified_df)
    """

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def assign_cohorts(self, classified: pd.DataFrame) -> pd.Series:
        """
        Maps customer_id -> cohort month (Timestamp at the first of the month)
        from each customer's earliest sale in the full ledger.
        """
        sales = self._customer_sales(classified)
        first_sale = sales.groupby(m.CUSTOMER_ID)[m.TIMESTAMP].min()
        cohorts = _floor_to_month(first_sale)
        cohorts.name = COHORT_MONTH
        return cohorts

    def active_counts(self, classified: pd.DataFrame) -> pd.DataFrame:
        """Distinct active customers per (cohort_month, month_offset)."""
        sales = self._customer_sales(classified)
        if sales.empty:
            return pd.DataFrame(dtype="int64")

        cohorts = self.assign_cohorts(classified)

        activity = pd.DataFrame({
            m.CUSTOMER_ID: sales[m.CUSTOMER_ID].to_numpy(),
            ACTIVITY_MONTH: _floor_to_month(sales[m.TIMESTAMP]).to_numpy(),
        }).drop_duplicates()
        activity[COHORT_MONTH] = activity[m.CUSTOMER_ID].map(cohorts)
        activity[MONTH_OFFSET] = _months_between(activity[COHORT_MONTH], activity[ACTIVITY_MONTH])

        negative = activity[activity[MONTH_OFFSET] < 0]
        if not negative.empty:
            first = negative.iloc[0]
            raise InvariantViolation(
                f"Negative cohort offset for customer {first[m.CUSTOMER_ID]}: activity in "
                f"{first[ACTIVITY_MONTH]:%Y-%m} precedes cohort {first[COHORT_MONTH]:%Y-%m}"
            )

        counts = (
            activity.groupby([COHORT_MONTH, MONTH_OFFSET])[m.CUSTOMER_ID]
            .nunique()
            .unstack(MONTH_OFFSET, fill_value=0)
            .sort_index()
        )
        counts = counts.reindex(columns=range(int(activity[MONTH_OFFSET].max()) + 1), fill_value=0)
        counts.columns.name = MONTH_OFFSET
        return counts

    def cohort_sizes(self, classified: pd.DataFrame) -> pd.Series:
        """Customers per cohort (equals the offset-0 active count)."""
        cohorts = self.assign_cohorts(classified)
        return cohorts.value_counts().sort_index().rename("cohort_size")

    def retention(self, classified: pd.DataFrame) -> pd.DataFrame:
        """
        Retention ratio matrix. Offset 0 is exactly 1.0 for every cohort and
        no cell exceeds 1.0.
        """
        counts = self.active_counts(classified)
        if counts.empty:
            return counts.astype(float)

        base = counts[0]
        if (base <= 0).any():
            raise InvariantViolation("A cohort has no active customers at offset 0.")

        ratios = counts.div(base, axis=0)
        logger.info(f"Computed retention for {len(ratios):,} cohorts over {ratios.shape[1]:,} month offsets.")
        return ratios

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _customer_sales(classified: pd.DataFrame) -> pd.DataFrame:
        m.require_columns(classified, m.CLASSIFIED_COLUMNS)
        keep = (
            (classified[m.TRANSACTION_TYPE] == m.SALE)
            & ~classified[m.IS_ADMIN].astype(bool)
            & ~classified[m.IS_GUEST].astype(bool)
        )
        return classified.loc[keep, [m.CUSTOMER_ID, m.TIMESTAMP]]


def _floor_to_month(timestamps: pd.Series) -> pd.Series:
    return pd.to_datetime(timestamps).dt.to_period("M").dt.to_timestamp()


def _months_between(start: pd.Series, end: pd.Series) -> pd.Series:
    return (end.dt.year - start.dt.year) * 12 + (end.dt.month - start.dt.month)
