"""
feature_aggregator.py
----------------------
Customer feature aggregation. Folds a classified ledger into one behavioral
summary row per customer for a single time window.

This is the shared foundation every downstream analysis consumes (RFM
scoring, churn / CLV training tables, dashboard filters). It only answers
one question:

    "Over [start, end), seen from as_of, how did this customer behave?"

Design decisions:
    - Only rows with start <= timestamp < end, not administrative and not
      guest, are ever read.
    - Monetary sums are integer sums of minor units, converted to Decimal at
      the end. Results are bitwise identical across runs and independent of
      input row order.
    - recency is measured against the explicit as_of, never wall-clock time.
    - A customer with no activity in the window produces no row at all.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pandas as pd

from config.config_loader import get_monetary_config
from core import models as m
from core.errors import ConfigurationError
from core.models import CustomerFeatureRow, TimeWindow

logger = logging.getLogger(__name__)

_ONE_DAY = pd.Timedelta(days=1)


class CustomerFeatureAggregator:
    """
    Computes CustomerFeatureRows over a window.

    Usage:
        aggregator = CustomerFeatureAggregator()
        rows = aggregator.aggregate(classified_df, TimeWindow(start, end), as_of=end)
        features_df = aggregator.to_frame(rows)
    """

    def __init__(self, monetary_config: Optional[Dict[str, Any]] = None):
        self.decimal_places = int((monetary_config or get_monetary_config())["decimal_places"])
        self._quantum = Decimal(1).scaleb(-self.decimal_places)

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def aggregate(self, classified: pd.DataFrame, window: TimeWindow, as_of) -> List[CustomerFeatureRow]:
        """
        Aggregate a classified ledger over a window.

        Args:
            classified: Output of TransactionClassifier.classify().
            window: Half-open [start, end) interval.
            as_of: Instant recency is measured from. Must not precede window.end.

        Returns:
            List of CustomerFeatureRow sorted by customer_id.

        Raises:
            ConfigurationError: If as_of precedes the window end or required
                columns are missing.
        """
        m.require_columns(classified, m.CLASSIFIED_COLUMNS)
        as_of = pd.Timestamp(as_of)
        if pd.isna(as_of) or as_of < window.end:
            raise ConfigurationError(f"as_of ({as_of}) must not precede the window end ({window.end})")

        df = self._select(classified, window)
        if df.empty:
            logger.info(f"No customer activity in window {window}.")
            return []

        rows = self._build_rows(df, window, as_of)
        logger.info(f"Aggregated {len(df):,} lines into {len(rows):,} customer rows for window {window}.")
        return rows

    @staticmethod
    def to_frame(rows: List[CustomerFeatureRow]) -> pd.DataFrame:
        """Flattens feature rows into a DataFrame with the FEATURE_COLUMNS schema."""
        if not rows:
            return pd.DataFrame(columns=m.FEATURE_COLUMNS)
        return pd.DataFrame(
            [{col: getattr(r, col) for col in m.FEATURE_COLUMNS} for r in rows],
            columns=m.FEATURE_COLUMNS,
        )

    # -------------------------------------------------------------------------
    # INTERNAL: SELECTION
    # -------------------------------------------------------------------------

    @staticmethod
    def _select(classified: pd.DataFrame, window: TimeWindow) -> pd.DataFrame:
        keep = (
            window.mask(classified[m.TIMESTAMP])
            & ~classified[m.IS_ADMIN].astype(bool)
            & ~classified[m.IS_GUEST].astype(bool)
        )
        return classified.loc[keep]

    # -------------------------------------------------------------------------
    # INTERNAL: ROW CONSTRUCTION
    # -------------------------------------------------------------------------

    def _build_rows(self, df: pd.DataFrame, window: TimeWindow, as_of: pd.Timestamp) -> List[CustomerFeatureRow]:
        customers = sorted(df[m.CUSTOMER_ID].unique())

        sales = df[df[m.TRANSACTION_TYPE] == m.SALE]
        returns = df[df[m.IS_RETURN].astype(bool)]

        sale_groups = sales.groupby(m.CUSTOMER_ID)
        first_purchase = sale_groups[m.TIMESTAMP].min().reindex(customers)
        last_purchase = sale_groups[m.TIMESTAMP].max().reindex(customers)
        frequency = sale_groups[m.INVOICE_ID].nunique().reindex(customers, fill_value=0)
        monetary_minor = sale_groups[m.LINE_AMOUNT_MINOR].sum().reindex(customers, fill_value=0)
        items_purchased = sale_groups[m.QUANTITY].sum().reindex(customers, fill_value=0)

        return_groups = returns.groupby(m.CUSTOMER_ID)
        return_count = return_groups[m.INVOICE_ID].nunique().reindex(customers, fill_value=0)
        # Return lines carry negative amounts and quantities
        return_minor = (-return_groups[m.LINE_AMOUNT_MINOR].sum()).reindex(customers, fill_value=0)
        items_returned = (-return_groups[m.QUANTITY].sum()).reindex(customers, fill_value=0)

        intervals = self._purchase_intervals(sales).reindex(customers)
        countries = self._primary_countries(df).reindex(customers)

        rows: List[CustomerFeatureRow] = []
        for cid in customers:
            first = first_purchase[cid]
            last = last_purchase[cid]
            has_sales = not pd.isna(last)

            freq = int(frequency[cid])
            monetary = m.minor_to_decimal(monetary_minor[cid], self.decimal_places)
            return_value = m.minor_to_decimal(return_minor[cid], self.decimal_places)
            n_returns = int(return_count[cid])
            avg_gap = intervals.at[cid, "avg_gap"]
            last_gap = intervals.at[cid, "last_gap"]

            rows.append(CustomerFeatureRow(
                customer_id=cid,
                first_purchase_at=first if has_sales else None,
                last_purchase_at=last if has_sales else None,
                recency_days=int((as_of - last) // _ONE_DAY) if has_sales else None,
                lifetime_days=int((last - first) // _ONE_DAY) if has_sales else None,
                avg_purchase_interval_days=None if pd.isna(avg_gap) else float(avg_gap),
                last_purchase_interval_days=None if pd.isna(last_gap) else int(last_gap),
                frequency=freq,
                monetary_total=monetary,
                items_purchased=int(items_purchased[cid]),
                return_count=n_returns,
                return_value=return_value,
                items_returned=int(items_returned[cid]),
                net_revenue=monetary - return_value,
                average_order_value=(monetary / freq).quantize(self._quantum) if freq else None,
                return_rate=(n_returns / freq) if freq else None,
                primary_country=countries[cid],
                window_start=window.start,
                window_end=window.end,
                as_of=as_of,
            ))

        return rows

    @staticmethod
    def _purchase_intervals(sales: pd.DataFrame) -> pd.DataFrame:
        """
        Whole-day gaps between consecutive sale invoices of each customer.
        An invoice is dated by its earliest line.

        Returns:
            DataFrame indexed by customer_id with avg_gap and last_gap.
        """
        if sales.empty:
            return pd.DataFrame(columns=["avg_gap", "last_gap"], dtype=float)

        invoices = (
            sales.groupby([m.CUSTOMER_ID, m.INVOICE_ID])[m.TIMESTAMP].min()
            .reset_index()
            .sort_values([m.CUSTOMER_ID, m.TIMESTAMP, m.INVOICE_ID])
        )
        invoices["gap"] = invoices.groupby(m.CUSTOMER_ID)[m.TIMESTAMP].diff() // _ONE_DAY
        gaps = invoices.dropna(subset=["gap"]).groupby(m.CUSTOMER_ID)["gap"]
        return pd.DataFrame({"avg_gap": gaps.mean(), "last_gap": gaps.last()})

    @staticmethod
    def _primary_countries(df: pd.DataFrame) -> pd.Series:
        """Most frequent country per customer; ties resolve alphabetically."""
        counts = df.groupby([m.CUSTOMER_ID, m.COUNTRY]).size().reset_index(name="n")
        counts = counts.sort_values(
            [m.CUSTOMER_ID, "n", m.COUNTRY], ascending=[True, False, True]
        ).drop_duplicates(m.CUSTOMER_ID)
        return counts.set_index(m.CUSTOMER_ID)[m.COUNTRY]
