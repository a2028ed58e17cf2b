"""
feature_query.py
-----------------
Read-only filtering of exported feature tables.

Dashboard-style filters (date range, segment, country) are an explicit,
immutable FeatureQuery value passed to apply(). The query also pins the
as_of a table must have been computed at, so features from different
cutoffs are never mixed in one view.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional

import pandas as pd

from core import models as m
from core.errors import ConfigurationError


@dataclass(frozen=True)
class FeatureQuery:
    """
    Filters over a customer feature table. Empty sets mean "all".

    start / end bound last_purchase_at (inclusive).
    """

    start: Optional[pd.Timestamp] = None
    end: Optional[pd.Timestamp] = None
    segments: FrozenSet[str] = field(default_factory=frozenset)
    countries: FrozenSet[str] = field(default_factory=frozenset)
    as_of: Optional[pd.Timestamp] = None

    def __post_init__(self):
        for name in ("start", "end", "as_of"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, pd.Timestamp(value))
        object.__setattr__(self, "segments", frozenset(self.segments))
        object.__setattr__(self, "countries", frozenset(self.countries))

        if self.start is not None and self.end is not None and self.start > self.end:
            raise ConfigurationError(f"Query start {self.start} is after end {self.end}")

    def apply(self, table: pd.DataFrame) -> pd.DataFrame:
        """
        Returns the matching rows as a new DataFrame; the input is untouched.

        Raises:
            ConfigurationError: If the table mixes several as_of values, or its
                as_of differs from the one this query expects.
        """
        m.require_columns(table, [m.CUSTOMER_ID, "as_of", "last_purchase_at"])
        self._check_as_of(table)

        mask = pd.Series(True, index=table.index)
        last_purchase = pd.to_datetime(table["last_purchase_at"])

        if self.start is not None:
            mask &= last_purchase >= self.start
        if self.end is not None:
            mask &= last_purchase <= self.end
        if self.segments:
            m.require_columns(table, ["segment"])
            mask &= table["segment"].isin(self.segments)
        if self.countries:
            m.require_columns(table, ["primary_country"])
            mask &= table["primary_country"].isin(self.countries)

        return table.loc[mask].copy()

    def _check_as_of(self, table: pd.DataFrame) -> None:
        stamps = pd.to_datetime(table["as_of"]).dropna().unique()
        if len(stamps) > 1:
            raise ConfigurationError(
                f"Feature table mixes {len(stamps)} as_of values; filter one snapshot at a time."
            )
        if self.as_of is not None and len(stamps) == 1 and pd.Timestamp(stamps[0]) != self.as_of:
            raise ConfigurationError(
                f"Feature table was computed as of {pd.Timestamp(stamps[0])}, query expects {self.as_of}"
            )
