"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- TransactionRecord / ClassifiedRecord: one ledger line, before and after
  classification.
- TimeWindow: half-open [start, end) interval every aggregation runs over.
- CustomerFeatureRow: output of the aggregator. One row per customer per window.
- OutcomeLabel: churn / revenue label from an outcome window.
- RejectedRecord / RejectionReport: what the loader refused, and why.
- DataQualityReport: profile of what the loader accepted.

Bulk data moves between stages as DataFrames whose column names are the
constants below, so a typo fails at import time instead of silently
producing NaNs.
"""

from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Optional

import pandas as pd

from core.errors import ConfigurationError


# =============================================================================
# CANONICAL COLUMN SCHEMA
# =============================================================================

INVOICE_ID = "invoice_id"
PRODUCT_CODE = "product_code"
DESCRIPTION = "description"
QUANTITY = "quantity"
UNIT_PRICE = "unit_price"
UNIT_PRICE_MINOR = "unit_price_minor"
CUSTOMER_ID = "customer_id"
COUNTRY = "country"
TIMESTAMP = "timestamp"
LINE_AMOUNT_MINOR = "line_amount_minor"
SOURCE_ROW = "source_row"

# Classifier output
TRANSACTION_TYPE = "transaction_type"
IS_RETURN = "is_return"
IS_ADMIN = "is_admin"
IS_GUEST = "is_guest"

RAW_FIELDS = [
    INVOICE_ID, PRODUCT_CODE, DESCRIPTION, QUANTITY,
    TIMESTAMP, UNIT_PRICE, CUSTOMER_ID, COUNTRY,
]

LEDGER_COLUMNS = [
    SOURCE_ROW, INVOICE_ID, PRODUCT_CODE, DESCRIPTION, QUANTITY,
    UNIT_PRICE, UNIT_PRICE_MINOR, CUSTOMER_ID, COUNTRY, TIMESTAMP,
    LINE_AMOUNT_MINOR,
]

CLASSIFIED_COLUMNS = LEDGER_COLUMNS + [TRANSACTION_TYPE, IS_RETURN, IS_ADMIN, IS_GUEST]

SALE = "sale"
RETURN = "return"
CANCELLATION = "cancellation"


# =============================================================================
# REJECTION REASON CODES
# =============================================================================

MALFORMED_TIMESTAMP = "MalformedTimestamp"
MALFORMED_QUANTITY = "MalformedQuantity"
MALFORMED_PRICE = "MalformedPrice"
NEGATIVE_PRICE = "NegativePrice"
ZERO_QUANTITY = "ZeroQuantity"

REJECTION_REASONS = (
    MALFORMED_TIMESTAMP, MALFORMED_QUANTITY, MALFORMED_PRICE,
    NEGATIVE_PRICE, ZERO_QUANTITY,
)


def minor_to_decimal(minor: int, decimal_places: int) -> Decimal:
    """Converts an integer amount in minor units back to a Decimal."""
    return Decimal(int(minor)).scaleb(-decimal_places)


def require_columns(df: pd.DataFrame, columns) -> None:
    """Raises ConfigurationError naming every required column df lacks."""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ConfigurationError(f"Missing required columns: {missing}")


# =============================================================================
# LEDGER RECORDS
# =============================================================================

@dataclass(frozen=True)
class TransactionRecord:
    """One validated ledger line item."""

    invoice_id: str
    product_code: str
    description: str
    quantity: int                    # Negative = returned units
    unit_price: Decimal              # Always >= 0 after validation
    customer_id: Optional[str]       # None = guest checkout
    country: str
    timestamp: pd.Timestamp

    @property
    def line_amount(self) -> Decimal:
        return self.quantity * self.unit_price

    @property
    def is_return(self) -> bool:
        return self.quantity < 0


@dataclass(frozen=True)
class ClassifiedRecord(TransactionRecord):
    """A TransactionRecord with its classification flags."""

    transaction_type: str = SALE     # "sale" | "return" | "cancellation"
    is_admin: bool = False
    is_guest: bool = False

    @classmethod
    def from_record(
        cls, record: TransactionRecord, transaction_type: str, is_admin: bool, is_guest: bool
    ) -> "ClassifiedRecord":
        values = {f.name: getattr(record, f.name) for f in fields(TransactionRecord)}
        return cls(
            **values,
            transaction_type=transaction_type,
            is_admin=is_admin,
            is_guest=is_guest,
        )


# =============================================================================
# WINDOWS
# =============================================================================

@dataclass(frozen=True)
class TimeWindow:
    """
    Half-open time interval [start, end).

    Construction fails with ConfigurationError when start >= end, so an
    inverted window can never reach an aggregation.
    """

    start: pd.Timestamp
    end: pd.Timestamp

    def __post_init__(self):
        start = pd.Timestamp(self.start)
        end = pd.Timestamp(self.end)
        if pd.isna(start) or pd.isna(end):
            raise ConfigurationError(f"Window bounds must be valid timestamps, got [{self.start}, {self.end})")
        if start >= end:
            raise ConfigurationError(f"Window start must precede end, got [{start}, {end})")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    def mask(self, timestamps: pd.Series) -> pd.Series:
        """Boolean mask of timestamps inside the window."""
        return (timestamps >= self.start) & (timestamps < self.end)

    def contains(self, ts) -> bool:
        return self.start <= pd.Timestamp(ts) < self.end

    def __str__(self) -> str:
        return f"[{self.start}, {self.end})"


# =============================================================================
# AGGREGATOR OUTPUT
# =============================================================================

@dataclass(frozen=True)
class CustomerFeatureRow:
    """
    Behavioral summary of one customer over one window.

    Purchase bounds and recency are None when the customer only returned
    goods inside the window.
    """

    customer_id: str

    # Lifecycle
    first_purchase_at: Optional[pd.Timestamp]
    last_purchase_at: Optional[pd.Timestamp]
    recency_days: Optional[int]      # Whole days from last purchase to as_of
    lifetime_days: Optional[int]     # Whole days from first to last purchase

    # Gaps between consecutive sale invoices, in whole days (None below two invoices)
    avg_purchase_interval_days: Optional[float]
    last_purchase_interval_days: Optional[int]

    # Frequency & monetary
    frequency: int                   # Distinct sale invoices
    monetary_total: Decimal
    items_purchased: int

    # Returns
    return_count: int                # Distinct return invoices
    return_value: Decimal            # Positive value of returned goods
    items_returned: int

    net_revenue: Decimal             # monetary_total - return_value
    average_order_value: Optional[Decimal]
    return_rate: Optional[float]     # return_count / frequency

    primary_country: str

    # Boundaries the row was computed under
    window_start: pd.Timestamp
    window_end: pd.Timestamp
    as_of: pd.Timestamp


FEATURE_COLUMNS = [f.name for f in fields(CustomerFeatureRow)]


@dataclass(frozen=True)
class OutcomeLabel:
    """Supervised-learning label for one customer at one cutoff."""

    customer_id: str
    churned: bool
    outcome_revenue: Decimal


# =============================================================================
# REJECTIONS
# =============================================================================

@dataclass(frozen=True)
class RejectedRecord:
    """A raw row that failed validation."""

    row_number: int                  # 0-based position in the raw input
    reason: str                      # One of REJECTION_REASONS
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RejectionReport:
    """Everything the loader refused or collapsed."""

    total_input_rows: int
    duplicates_collapsed: int
    rejected: tuple = ()

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)

    def reason_counts(self) -> dict:
        counts = {reason: 0 for reason in REJECTION_REASONS}
        for r in self.rejected:
            counts[r.reason] = counts.get(r.reason, 0) + 1
        return counts

    def to_frame(self) -> pd.DataFrame:
        if not self.rejected:
            return pd.DataFrame(columns=["row_number", "reason"] + RAW_FIELDS)
        rows = [{"row_number": r.row_number, "reason": r.reason, **r.raw} for r in self.rejected]
        return pd.DataFrame(rows)


# =============================================================================
# DATA QUALITY PROFILE
# =============================================================================

@dataclass(frozen=True)
class DataQualityReport:
    """
    Profile of the validated ledger: guest share, catalog gaps, date bounds
    and the ledger-level return rate. Computed on rows that passed validation.
    """

    total_lines: int
    missing_customer_count: int
    missing_customer_pct: float                   # 0-100, two decimals
    short_description_count: int                  # Blank or shorter than 3 characters
    earliest_transaction: Optional[pd.Timestamp]
    latest_transaction: Optional[pd.Timestamp]
    sale_line_items: int                          # quantity > 0
    return_line_items: int                        # quantity < 0
    return_rate_pct: Optional[float]              # Return lines per 100 sale lines
    sales_value: Decimal
    return_value: Decimal                         # Positive value of returned lines

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([{f.name: getattr(self, f.name) for f in fields(self)}])
