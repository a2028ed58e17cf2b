"""
ledger_loader.py
-----------------
Ledger loading and validation. This is the leaf stage of the engine.

It turns raw, untrusted rows (strings from a delimited file, or any iterable
of mappings) into the canonical ledger DataFrame plus a RejectionReport.

Design decisions:
    - Every raw field is compared as text when collapsing duplicates. Only
      rows identical in every field are merged; rows that differ merely in
      whitespace or case are distinct records and are kept.
    - A row is never silently dropped. It is either in the ledger or in the
      rejection report with exactly one reason code (first failing check wins).
    - Unit prices are parsed with decimal.Decimal and stored as integer minor
      units, so every downstream monetary sum is exact. A price finer than
      monetary.decimal_places is rejected as MalformedPrice, never rounded.
      Quantities or line amounts outside int64 are rejected as MalformedQuantity.
    - line_amount is always recomputed from quantity and unit price.
    - Timestamps with no configured format are parsed value by value, so a
      file mixing ISO and m/d/Y dates loses nothing.
"""

import logging
import os
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional

import numpy as np
import pandas as pd

from config.config_loader import get_ledger_config, get_monetary_config
from core import models as m
from core.errors import ConfigurationError
from core.models import DataQualityReport, RejectedRecord, RejectionReport, TransactionRecord

logger = logging.getLogger(__name__)

_FLOAT_RENDERED_ID = re.compile(r"^(\d+)\.0+$")

# Quantities and line amounts in minor units are stored as int64
_INT64_LIMIT = 2 ** 63


@dataclass(frozen=True)
class LedgerLoadResult:
    """Validated ledger, rejection report and a quality profile of the accepted rows."""

    ledger: pd.DataFrame
    report: RejectionReport
    decimal_places: int
    quality: DataQualityReport

    def records(self) -> Iterator[TransactionRecord]:
        """Yields the validated ledger as typed TransactionRecords."""
        for row in self.ledger.itertuples(index=False):
            yield TransactionRecord(
                invoice_id=row.invoice_id,
                product_code=row.product_code,
                description=row.description,
                quantity=int(row.quantity),
                unit_price=row.unit_price,
                customer_id=row.customer_id,
                country=row.country,
                timestamp=row.timestamp,
            )

    def __len__(self) -> int:
        return len(self.ledger)


class LedgerLoader:
    """
    Parses and validates raw transaction rows.

    Usage:
        loader = LedgerLoader()
        result = loader.load_csv("data.csv")
        result.ledger, result.report
    """

    def __init__(
        self,
        ledger_config: Optional[Dict[str, Any]] = None,
        monetary_config: Optional[Dict[str, Any]] = None,
    ):
        self.config = ledger_config or get_ledger_config()
        self.columns: Dict[str, str] = self.config["columns"]
        self.timestamp_format = self.config.get("timestamp_format")
        self.decimal_places = int((monetary_config or get_monetary_config())["decimal_places"])
        self._quantum = Decimal(1).scaleb(-self.decimal_places)

        unknown = set(m.RAW_FIELDS) - set(self.columns)
        if unknown:
            raise ConfigurationError(f"Ledger column mapping is missing fields: {sorted(unknown)}")

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def load_csv(self, path: str) -> LedgerLoadResult:
        """
        Read a delimited file and validate it. This is the only I/O the
        loader performs.
        """
        if not os.path.exists(path):
            raise FileNotFoundError(f"Input file not found: {path}")

        logger.info(f"Reading ledger from {path}")
        raw = pd.read_csv(
            path,
            dtype=str,
            keep_default_na=False,
            encoding=self.config.get("encoding", "utf-8"),
            sep=self.config.get("delimiter", ","),
        )
        return self.load(raw)

    def load(self, records: pd.DataFrame | Iterable[Mapping[str, Any]]) -> LedgerLoadResult:
        """
        Validate raw records keyed by the configured raw column names.

        Args:
            records: DataFrame, or any iterable of mappings.

        Returns:
            LedgerLoadResult with the canonical ledger and the rejection report.

        Raises:
            ConfigurationError: If a required raw column is absent.
        """
        raw = self._to_text_frame(records)
        total = len(raw)

        # --- Exact duplicate collapse ---
        dup_mask = raw.duplicated(keep="first")
        duplicates = int(dup_mask.sum())
        raw = raw[~dup_mask]

        # --- Field parsing ---
        timestamps = self._parse_timestamps(raw[m.TIMESTAMP])
        quantities, quantity_ok = self._parse_quantities(raw[m.QUANTITY])
        prices = raw[m.UNIT_PRICE].map(_parse_decimal)
        price_ok = prices.map(self._fits_decimal_places).astype(bool)
        negative_price = prices.map(lambda p: isinstance(p, Decimal) and p < 0).astype(bool)
        amount_overflow = self._amount_overflow(quantities, prices, quantity_ok & price_ok)

        reasons = pd.Series(
            np.select(
                [
                    timestamps.isna().to_numpy(),
                    (~quantity_ok).to_numpy(),
                    (~price_ok).to_numpy(),
                    negative_price.to_numpy(),
                    (quantity_ok & (quantities == 0)).to_numpy(),
                    amount_overflow.to_numpy(),
                ],
                [
                    m.MALFORMED_TIMESTAMP,
                    m.MALFORMED_QUANTITY,
                    m.MALFORMED_PRICE,
                    m.NEGATIVE_PRICE,
                    m.ZERO_QUANTITY,
                    m.MALFORMED_QUANTITY,
                ],
                default="",
            ),
            index=raw.index,
        )
        rejected_mask = reasons != ""

        rejected = tuple(
            RejectedRecord(row_number=int(idx), reason=reason, raw=values)
            for idx, reason, values in zip(
                raw.index[rejected_mask],
                reasons[rejected_mask],
                raw.loc[rejected_mask].to_dict("records"),
            )
        )
        report = RejectionReport(
            total_input_rows=total,
            duplicates_collapsed=duplicates,
            rejected=rejected,
        )

        valid = ~rejected_mask
        ledger = self._build_ledger(raw[valid], timestamps[valid], quantities[valid], prices[valid])

        logger.info(
            f"Ledger validated. Input rows: {total:,}. Duplicates collapsed: {duplicates:,}. "
            f"Rejected: {len(rejected):,}. Valid: {len(ledger):,}."
        )
        if rejected:
            logger.warning(f"Rejections by reason: { {k: v for k, v in report.reason_counts().items() if v} }")

        quality = self._profile(ledger)
        logger.info(
            f"Data quality: {quality.missing_customer_pct:.2f}% guest lines, "
            f"{quality.short_description_count:,} short descriptions, "
            f"dates {quality.earliest_transaction} to {quality.latest_transaction}, "
            f"return rate {quality.return_rate_pct}%."
        )

        return LedgerLoadResult(
            ledger=ledger, report=report, decimal_places=self.decimal_places, quality=quality
        )

    # -------------------------------------------------------------------------
    # INTERNAL: INPUT NORMALIZATION
    # -------------------------------------------------------------------------

    def _to_text_frame(self, records) -> pd.DataFrame:
        """Selects the configured columns, renames them canonically, renders every value as text."""
        if isinstance(records, pd.DataFrame):
            df = records.copy()
        else:
            rows = list(records)
            # An empty sequence still carries the expected schema
            df = pd.DataFrame(rows) if rows else pd.DataFrame(columns=list(self.columns.values()))

        missing = [raw_name for raw_name in self.columns.values() if raw_name not in df.columns]
        if missing:
            raise ConfigurationError(f"Missing required columns: {missing}")

        df = df[[self.columns[name] for name in m.RAW_FIELDS]]
        df.columns = m.RAW_FIELDS
        df = df.reset_index(drop=True)
        return pd.DataFrame(
            {col: df[col].map(_to_text).astype(object) for col in m.RAW_FIELDS},
            index=df.index,
        )

    # -------------------------------------------------------------------------
    # INTERNAL: FIELD PARSERS
    # -------------------------------------------------------------------------

    def _parse_timestamps(self, values: pd.Series) -> pd.Series:
        # Without a configured format each value is parsed on its own
        timestamp_format = self.timestamp_format or "mixed"
        return pd.to_datetime(values.str.strip(), format=timestamp_format, errors="coerce")

    @staticmethod
    def _parse_quantities(values: pd.Series) -> tuple[pd.Series, pd.Series]:
        """Returns (int64 quantities with 0 where invalid, validity mask)."""
        numeric = pd.to_numeric(values.str.strip(), errors="coerce")
        as_float = numeric.to_numpy(dtype=float, na_value=np.nan)
        in_range = np.isfinite(as_float) & (np.abs(np.nan_to_num(as_float)) < _INT64_LIMIT)
        ok = pd.Series(in_range, index=values.index) & (numeric % 1 == 0)
        quantities = numeric.where(ok, 0).astype("int64")
        return quantities, ok

    def _fits_decimal_places(self, price: Optional[Decimal]) -> bool:
        """False for unparsed prices and for prices finer than the configured precision."""
        if not isinstance(price, Decimal):
            return False
        try:
            return price == price.quantize(self._quantum)
        except InvalidOperation:
            return False

    def _amount_overflow(self, quantities: pd.Series, prices: pd.Series, parsed: pd.Series) -> pd.Series:
        """True where quantity x price in minor units does not fit in int64."""
        flags = [
            bool(ok) and abs(Decimal(int(q)) * p.scaleb(self.decimal_places)) >= _INT64_LIMIT
            for q, p, ok in zip(quantities, prices, parsed)
        ]
        return pd.Series(flags, index=quantities.index, dtype=bool)

    # -------------------------------------------------------------------------
    # INTERNAL: CANONICAL LEDGER
    # -------------------------------------------------------------------------

    def _build_ledger(
        self,
        raw: pd.DataFrame,
        timestamps: pd.Series,
        quantities: pd.Series,
        prices: pd.Series,
    ) -> pd.DataFrame:
        quantized = prices.map(lambda p: p.quantize(self._quantum))
        price_minor = quantized.map(lambda p: int(p.scaleb(self.decimal_places))).astype("int64")

        ledger = pd.DataFrame({
            m.SOURCE_ROW: raw.index.astype("int64"),
            m.INVOICE_ID: raw[m.INVOICE_ID].str.strip(),
            m.PRODUCT_CODE: raw[m.PRODUCT_CODE].str.strip(),
            m.DESCRIPTION: raw[m.DESCRIPTION],
            m.QUANTITY: quantities.astype("int64"),
            m.UNIT_PRICE: quantized,
            m.UNIT_PRICE_MINOR: price_minor,
            m.CUSTOMER_ID: raw[m.CUSTOMER_ID].map(_normalize_customer_id),
            m.COUNTRY: raw[m.COUNTRY].str.strip(),
            m.TIMESTAMP: timestamps,
        })
        ledger[m.LINE_AMOUNT_MINOR] = ledger[m.QUANTITY] * ledger[m.UNIT_PRICE_MINOR]
        return ledger[m.LEDGER_COLUMNS].reset_index(drop=True)

    # -------------------------------------------------------------------------
    # INTERNAL: QUALITY PROFILE
    # -------------------------------------------------------------------------

    def _profile(self, ledger: pd.DataFrame) -> DataQualityReport:
        total = len(ledger)
        quantity = ledger[m.QUANTITY]
        amounts = ledger[m.LINE_AMOUNT_MINOR]

        missing = int(ledger[m.CUSTOMER_ID].isna().sum())
        short = int((ledger[m.DESCRIPTION].str.strip().str.len() < 3).sum())
        sale_lines = int((quantity > 0).sum())
        return_lines = int((quantity < 0).sum())

        return DataQualityReport(
            total_lines=total,
            missing_customer_count=missing,
            missing_customer_pct=round(100.0 * missing / total, 2) if total else 0.0,
            short_description_count=short,
            earliest_transaction=ledger[m.TIMESTAMP].min() if total else None,
            latest_transaction=ledger[m.TIMESTAMP].max() if total else None,
            sale_line_items=sale_lines,
            return_line_items=return_lines,
            return_rate_pct=round(100.0 * return_lines / sale_lines, 2) if sale_lines else None,
            sales_value=m.minor_to_decimal(amounts[quantity > 0].sum(), self.decimal_places),
            return_value=m.minor_to_decimal(-amounts[quantity < 0].sum(), self.decimal_places),
        )


# =============================================================================
# VALUE HELPERS
# =============================================================================

def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str) and pd.isna(value):
        return ""
    return str(value)


def _parse_decimal(text: str) -> Optional[Decimal]:
    try:
        value = Decimal(text.strip())
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def _normalize_customer_id(text: str) -> Optional[str]:
    text = text.strip()
    if not text:
        return None
    match = _FLOAT_RENDERED_ID.match(text)
    return match.group(1) if match else text
