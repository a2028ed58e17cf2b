"""
classifier.py
--------------
Transaction classification layer.

Labels every validated ledger line as sale, return or cancellation and flags
administrative line items (postage, discounts, manual adjustments) and guest
checkouts. No error conditions: every valid record classifies deterministically.

Administrative-code detection is driven entirely by config.yaml:

    classification:
      admin_code_patterns: [...]        # regexes, matched with re.search
      treat_unmatched_as_product: true
      product_code_pattern: "..."       # used only when the flag is false

Pattern updates happen in config.yaml.
"""

import logging
import re
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from config.config_loader import get_classification_config, get_ledger_config
from core import models as m
from core.errors import ConfigurationError
from core.models import ClassifiedRecord, TransactionRecord

logger = logging.getLogger(__name__)


class TransactionClassifier:
    """
    Classifies ledger lines.

    Usage:
        classifier = TransactionClassifier()
        classified_df = classifier.classify(ledger_df)
        record = classifier.classify_record(transaction_record)
    """

    def __init__(
        self,
        classification_config: Optional[Dict[str, Any]] = None,
        cancellation_prefix: Optional[str] = None,
    ):
        self.config = classification_config or get_classification_config()
        self.treat_unmatched_as_product = bool(self.config.get("treat_unmatched_as_product", True))

        patterns = self.config.get("admin_code_patterns") or []
        if not patterns and self.treat_unmatched_as_product:
            raise ConfigurationError(
                "admin_code_patterns is empty while treat_unmatched_as_product is true; "
                "administrative line items could never be detected."
            )
        self.admin_patterns = [_compile(p) for p in sorted(set(patterns))]

        self.product_pattern = None
        if not self.treat_unmatched_as_product:
            if not self.config.get("product_code_pattern"):
                raise ConfigurationError(
                    "product_code_pattern is required when treat_unmatched_as_product is false."
                )
            self.product_pattern = _compile(self.config["product_code_pattern"])

        if cancellation_prefix is None:
            cancellation_prefix = get_ledger_config().get("cancellation_prefix", "C")
        self.cancellation_prefix = cancellation_prefix

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def is_admin(self, product_code: str) -> bool:
        """True if the product code denotes an administrative line item."""
        if any(p.search(product_code) for p in self.admin_patterns):
            return True
        if self.treat_unmatched_as_product:
            return False
        return self.product_pattern.search(product_code) is None

    def transaction_type(self, invoice_id: str, quantity: int) -> str:
        if self.cancellation_prefix and invoice_id.startswith(self.cancellation_prefix):
            return m.CANCELLATION
        if quantity < 0:
            return m.RETURN
        return m.SALE

    def classify_record(self, record: TransactionRecord) -> ClassifiedRecord:
        """Pure per-record classification."""
        return ClassifiedRecord.from_record(
            record,
            transaction_type=self.transaction_type(record.invoice_id, record.quantity),
            is_admin=self.is_admin(record.product_code),
            is_guest=record.customer_id is None,
        )

    def classify(self, ledger: pd.DataFrame) -> pd.DataFrame:
        """
        Vectorized classification of a validated ledger.

        Returns a new DataFrame with the CLASSIFIED_COLUMNS schema; the input
        is not modified.
        """
        m.require_columns(ledger, m.LEDGER_COLUMNS)
        df = ledger.copy()

        # Codes repeat heavily, so evaluate the predicate once per distinct code
        codes = df[m.PRODUCT_CODE]
        admin_lookup = {code: self.is_admin(code) for code in codes.unique()}
        df[m.IS_ADMIN] = codes.map(admin_lookup).astype(bool)

        if self.cancellation_prefix:
            cancelled = df[m.INVOICE_ID].str.startswith(self.cancellation_prefix).to_numpy(dtype=bool)
        else:
            cancelled = np.zeros(len(df), dtype=bool)
        negative = (df[m.QUANTITY] < 0).to_numpy()

        df[m.TRANSACTION_TYPE] = np.select(
            [cancelled, negative], [m.CANCELLATION, m.RETURN], default=m.SALE
        )
        df[m.IS_RETURN] = negative
        df[m.IS_GUEST] = df[m.CUSTOMER_ID].isna().to_numpy()

        logger.info(
            f"Classified {len(df):,} lines. "
            f"Types: {df[m.TRANSACTION_TYPE].value_counts().to_dict()}. "
            f"Admin: {int(df[m.IS_ADMIN].sum()):,}. Guest: {int(df[m.IS_GUEST].sum()):,}."
        )
        return df[m.CLASSIFIED_COLUMNS]


def _compile(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigurationError(f"Invalid product code pattern {pattern!r}: {exc}") from exc
