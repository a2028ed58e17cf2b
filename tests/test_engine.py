"""
test_engine.py
---------------
Test suite for the customer analytics feature engine.

Run from the project root:
    python -m pytest tests/test_engine.py -v

Tests are organized by layer:
    - Config
    - Ledger Loader / Validator
    - Transaction Classifier
    - Customer Feature Aggregator
    - Temporal Split Engine
    - Cohort Retention
    - RFM Scorer & Feature Query
    - Predictors
    - Feature Drift Monitor
    - Full Pipeline & CLI (integration)
"""

import sys
import os
from decimal import Decimal

import pytest
import pandas as pd
import numpy as np
from sklearn.exceptions import NotFittedError

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import (
    load_config, get_classification_config, get_rfm_config, get_ledger_config, reset_config,
)
from core import models as m
from core.classifier import TransactionClassifier
from core.cohort_retention import CohortRetentionCalculator
from core.errors import ConfigurationError, InvariantViolation
from core.feature_aggregator import CustomerFeatureAggregator
from core.feature_query import FeatureQuery
from core.ledger_loader import LedgerLoader
from core.models import TimeWindow, TransactionRecord
from core.temporal_split import TemporalSplitEngine
from modeling.predictors import ChurnModel, CLVModel
from monitoring.feature_drift import FeatureDriftMonitor
from pipeline import CustomerAnalyticsPipeline
from scoring.rfm_scorer import NO_PURCHASES, RFMScorer, assign_segment
import main as cli


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


def _row(
    invoice: str,
    code: str,
    quantity,
    timestamp: str,
    price: str,
    customer: str,
    country: str = "United Kingdom",
    description: str = "WHITE MUG",
) -> dict:
    """Helper: one raw ledger row keyed by the input file's column names."""
    return {
        "InvoiceNo": invoice,
        "StockCode": code,
        "Description": description,
        "Quantity": str(quantity),
        "InvoiceDate": timestamp,
        "UnitPrice": price,
        "CustomerID": customer,
        "Country": country,
    }


def _load(rows):
    return LedgerLoader().load(rows)


def _classify(rows) -> pd.DataFrame:
    return TransactionClassifier().classify(_load(rows).ledger)


def _make_ledger_rows(n_customers: int = 6) -> list:
    """
    Helper: customer i buys once a month from January through month 3 + i,
    so early customers go quiet before June and later ones keep buying.
    Adds postage lines, a guest sale and a cancelled return.
    """
    rows = []
    for i in range(n_customers):
        customer = str(12000 + i)
        country = "France" if i % 3 == 0 else "United Kingdom"
        for month in range(1, 4 + i):
            invoice = str(540000 + i * 100 + month)
            ts = f"2011-{month:02d}-{10 + i:02d} 10:00"
            rows.append(_row(invoice, "85123A", 2 + i, ts, "2.55", customer, country))
            rows.append(_row(invoice, "22423", 1, ts, "12.75", customer, country, "REGENCY CAKESTAND"))
            if i == 0:
                rows.append(_row(invoice, "POST", 1, ts, "18.00", customer, country, "POSTAGE"))
    rows.append(_row("549999", "85123A", 4, "2011-04-02 09:30", "2.55", ""))
    rows.append(_row("C541000", "85123A", -1, "2011-02-20 11:00", "2.55", "12001"))
    return rows


def _buyer_features(n: int = 100, seed: int = 0, scale: float = 1.0, as_of: str = "2011-12-01") -> pd.DataFrame:
    """Helper: synthetic feature table of buying customers for drift tests."""
    rng = np.random.RandomState(seed)
    monetary = rng.gamma(2.0, 150.0, n) * scale
    return pd.DataFrame({
        "customer_id": [str(13000 + i) for i in range(n)],
        "recency_days": rng.randint(0, 300, n),
        "frequency": rng.randint(1, 12, n),
        "monetary_total": monetary,
        "net_revenue": monetary * 0.95,
        "as_of": pd.Timestamp(as_of),
    })


def _training_frame(n: int = 40, seed: int = 7) -> pd.DataFrame:
    """Helper: training table where churners have high recency and low frequency."""
    rng = np.random.RandomState(seed)
    churned = np.array([i % 2 == 0 for i in range(n)])
    recency = np.where(churned, rng.randint(150, 365, n), rng.randint(0, 60, n))
    frequency = np.where(churned, rng.randint(1, 3, n), rng.randint(4, 15, n))
    monetary = frequency * rng.uniform(15, 40, n)
    return pd.DataFrame({
        "customer_id": [str(14000 + i) for i in range(n)],
        "recency_days": recency,
        "frequency": frequency,
        "monetary_total": monetary,
        "return_value": rng.uniform(0, 5, n),
        "lifetime_days": rng.randint(0, 300, n),
        "average_order_value": monetary / frequency,
        "churned": churned,
        "outcome_revenue": np.where(churned, 0.0, monetary / 3),
    })


# =============================================================================
# CONFIG TESTS
# =============================================================================

class TestConfig:
    def test_config_loads_successfully(self):
        config = load_config()
        for section in ["ledger", "monetary", "classification", "rfm",
                        "activity_status", "temporal_split", "modeling", "drift_monitoring"]:
            assert section in config, f"Missing config section: {section}"

    def test_default_admin_patterns(self):
        patterns = get_classification_config()["admin_code_patterns"]
        assert "^POST$" in patterns
        assert get_classification_config()["treat_unmatched_as_product"] is True

    def test_ledger_column_mapping_complete(self):
        columns = get_ledger_config()["columns"]
        assert set(m.RAW_FIELDS) <= set(columns)

    def test_missing_section_raises(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("monetary:\n  decimal_places: 2\n")
        load_config(str(path))
        with pytest.raises(KeyError):
            get_rfm_config()

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "absent.yaml"))


# =============================================================================
# LEDGER LOADER TESTS
# =============================================================================

class TestLedgerLoader:
    def test_valid_rows_pass(self):
        result = _load([
            _row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850"),
            _row("536366", "22633", 6, "2010-12-01 08:28", "1.85", "17850"),
        ])
        assert len(result) == 2
        assert result.report.rejected_count == 0
        assert result.ledger[m.LINE_AMOUNT_MINOR].tolist() == [15300, 11100]

    def test_zero_quantity_rejected(self):
        result = _load([
            _row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850"),
            _row("536366", "22633", 0, "2010-12-01 08:28", "1.85", "17850"),
        ])
        assert len(result) == 1
        assert result.report.rejected_count == 1
        rejected = result.report.rejected[0]
        assert rejected.reason == m.ZERO_QUANTITY
        assert rejected.row_number == 1
        assert result.report.reason_counts()[m.ZERO_QUANTITY] == 1

    @pytest.mark.parametrize("field, value, reason", [
        ("InvoiceDate", "not a date", m.MALFORMED_TIMESTAMP),
        ("InvoiceDate", "", m.MALFORMED_TIMESTAMP),
        ("Quantity", "abc", m.MALFORMED_QUANTITY),
        ("Quantity", "2.5", m.MALFORMED_QUANTITY),
        ("UnitPrice", "abc", m.MALFORMED_PRICE),
        ("UnitPrice", "", m.MALFORMED_PRICE),
        ("UnitPrice", "-11062.06", m.NEGATIVE_PRICE),
    ])
    def test_malformed_fields_rejected_with_reason(self, field, value, reason):
        bad = _row("536366", "22633", 6, "2010-12-01 08:28", "1.85", "17850")
        bad[field] = value
        result = _load([_row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850"), bad])
        assert len(result) == 1
        assert [r.reason for r in result.report.rejected] == [reason]

    def test_first_failing_check_wins(self):
        bad = _row("536366", "22633", 0, "garbage", "-1", "17850")
        result = _load([_row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850"), bad])
        assert result.report.rejected[0].reason == m.MALFORMED_TIMESTAMP

    def test_every_row_accounted_for(self):
        rows = _make_ledger_rows()
        rows.append(_row("536999", "22633", 0, "2011-01-01 10:00", "1.85", "17850"))
        rows.append(rows[0].copy())
        result = _load(rows)
        report = result.report
        assert report.total_input_rows == len(rows)
        assert len(result) + report.rejected_count + report.duplicates_collapsed == len(rows)

    def test_exact_duplicates_collapse(self):
        row = _row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850")
        result = _load([row, dict(row)])
        assert len(result) == 1
        assert result.report.duplicates_collapsed == 1

    def test_near_duplicates_kept(self):
        row = _row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850")
        near = dict(row, Description="white mug")
        padded = dict(row, Description="WHITE MUG ")
        result = _load([row, near, padded])
        assert len(result) == 3
        assert result.report.duplicates_collapsed == 0

    def test_prices_are_exact_decimals(self):
        result = _load([_row("536365", "85123A", 3, "2010-12-01 08:26", "0.10", "17850")])
        record = next(result.records())
        assert isinstance(record, TransactionRecord)
        assert record.unit_price == Decimal("0.1")
        assert record.line_amount == Decimal("0.3")
        assert result.ledger[m.LINE_AMOUNT_MINOR].iloc[0] == 300

    def test_customer_id_normalized(self):
        result = _load([
            _row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850.0"),
            _row("536366", "85123A", 6, "2010-12-01 08:28", "2.55", "  "),
        ])
        assert result.ledger[m.CUSTOMER_ID].iloc[0] == "17850"
        assert result.ledger[m.CUSTOMER_ID].iloc[1] is None

    def test_missing_columns_raises(self):
        row = _row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850")
        del row["UnitPrice"]
        with pytest.raises(ConfigurationError, match="Missing required columns"):
            _load([row])

    def test_load_csv(self, tmp_path):
        path = tmp_path / "data.csv"
        pd.DataFrame(_make_ledger_rows()).to_csv(path, index=False)
        result = LedgerLoader().load_csv(str(path))
        assert len(result) == len(_make_ledger_rows())
        assert result.report.rejected_count == 0

    def test_load_csv_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            LedgerLoader().load_csv(str(tmp_path / "absent.csv"))

    def test_mixed_timestamp_formats_accepted(self):
        result = _load([
            _row("536365", "85123A", 6, "2011-03-01 10:00", "2.55", "17850"),
            _row("536366", "85123A", 6, "2011-03-05", "2.55", "17850"),
            _row("536367", "85123A", 6, "3/7/2011 09:15", "2.55", "17850"),
        ])
        assert result.report.rejected_count == 0
        assert result.ledger[m.TIMESTAMP].tolist() == [
            pd.Timestamp("2011-03-01 10:00"),
            pd.Timestamp("2011-03-05"),
            pd.Timestamp("2011-03-07 09:15"),
        ]

    @pytest.mark.parametrize("quantity, price", [
        ("1e30", "2.55"),
        ("9000000000000000", "1000.00"),
    ])
    def test_quantity_overflow_rejected(self, quantity, price):
        result = _load([
            _row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850"),
            _row("536366", "85123A", quantity, "2010-12-01 08:28", price, "17850"),
        ])
        assert len(result) == 1
        assert [r.reason for r in result.report.rejected] == [m.MALFORMED_QUANTITY]
        assert result.report.rejected[0].row_number == 1

    def test_over_precise_price_rejected(self):
        result = _load([
            _row("536365", "85123A", 6, "2010-12-01 08:26", "0.0004", "17850"),
            _row("536366", "85123A", 6, "2010-12-01 08:28", "2.5500", "17850"),
        ])
        assert len(result) == 1
        assert [r.reason for r in result.report.rejected] == [m.MALFORMED_PRICE]
        assert result.report.rejected[0].raw["unit_price"] == "0.0004"
        assert result.ledger[m.UNIT_PRICE].iloc[0] == Decimal("2.55")

    def test_empty_input_yields_empty_ledger(self):
        result = LedgerLoader().load([])
        assert len(result) == 0
        assert list(result.ledger.columns) == m.LEDGER_COLUMNS
        assert result.report.total_input_rows == 0
        assert result.report.rejected_count == 0
        assert result.quality.total_lines == 0
        assert result.quality.earliest_transaction is None
        assert result.quality.return_rate_pct is None

    def test_data_quality_profile(self):
        result = _load([
            _row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850"),
            _row("536366", "85123A", 2, "2010-12-03 09:00", "2.55", "", description=""),
            _row("536367", "22633", 4, "2010-12-05 10:00", "1.85", "13047", description="AB"),
            _row("C536368", "85123A", -1, "2010-12-07 11:00", "2.55", "17850"),
        ])
        quality = result.quality
        assert quality.total_lines == 4
        assert quality.missing_customer_count == 1
        assert quality.missing_customer_pct == 25.0
        assert quality.short_description_count == 2
        assert quality.earliest_transaction == pd.Timestamp("2010-12-01 08:26")
        assert quality.latest_transaction == pd.Timestamp("2010-12-07 11:00")
        assert quality.sale_line_items == 3
        assert quality.return_line_items == 1
        assert quality.return_rate_pct == pytest.approx(33.33)
        assert quality.sales_value == Decimal("27.80")
        assert quality.return_value == Decimal("2.55")
        assert len(quality.to_frame()) == 1


# =============================================================================
# CLASSIFIER TESTS
# =============================================================================

class TestClassifier:
    def test_sale_return_cancellation(self):
        df = _classify([
            _row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850"),
            _row("536366", "85123A", -2, "2010-12-01 08:28", "2.55", "17850"),
            _row("C536379", "85123A", -1, "2010-12-01 09:41", "2.55", "17850"),
        ])
        assert df[m.TRANSACTION_TYPE].tolist() == [m.SALE, m.RETURN, m.CANCELLATION]
        assert df[m.IS_RETURN].tolist() == [False, True, True]

    def test_admin_codes_flagged(self):
        df = _classify([
            _row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850"),
            _row("536365", "POST", 1, "2010-12-01 08:26", "18.00", "17850"),
            _row("536365", "D", -1, "2010-12-01 08:26", "5.00", "17850"),
            _row("536365", "M", 1, "2010-12-01 08:26", "0.50", "17850"),
        ])
        assert df[m.IS_ADMIN].tolist() == [False, True, True, True]

    def test_guest_flagged(self):
        df = _classify([_row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "")])
        assert bool(df[m.IS_GUEST].iloc[0]) is True

    def test_classify_does_not_mutate_input(self):
        ledger = _load([_row("536365", "85123A", 6, "2010-12-01 08:26", "2.55", "17850")]).ledger
        before = list(ledger.columns)
        TransactionClassifier().classify(ledger)
        assert list(ledger.columns) == before

    def test_classify_record_matches_vectorized(self):
        result = _load([
            _row("C536379", "D", -1, "2010-12-01 09:41", "27.50", "14527"),
            _row("536370", "22728", 24, "2010-12-01 08:45", "3.75", ""),
        ])
        classifier = TransactionClassifier()
        df = classifier.classify(result.ledger)
        for record, (_, row) in zip(result.records(), df.iterrows()):
            classified = classifier.classify_record(record)
            assert classified.transaction_type == row[m.TRANSACTION_TYPE]
            assert classified.is_admin == row[m.IS_ADMIN]
            assert classified.is_guest == row[m.IS_GUEST]

    def test_empty_admin_patterns_raises(self):
        with pytest.raises(ConfigurationError):
            TransactionClassifier({"admin_code_patterns": [], "treat_unmatched_as_product": True})

    def test_product_pattern_mode(self):
        classifier = TransactionClassifier({
            "admin_code_patterns": [],
            "treat_unmatched_as_product": False,
            "product_code_pattern": "^[0-9]{5}[A-Za-z]*$",
        })
        assert classifier.is_admin("85123A") is False
        assert classifier.is_admin("BANK CHARGES") is True

    def test_product_pattern_required_when_flag_false(self):
        with pytest.raises(ConfigurationError):
            TransactionClassifier({"admin_code_patterns": ["^POST$"], "treat_unmatched_as_product": False})

    def test_invalid_regex_raises(self):
        with pytest.raises(ConfigurationError):
            TransactionClassifier({"admin_code_patterns": ["["], "treat_unmatched_as_product": True})


# =============================================================================
# AGGREGATOR TESTS
# =============================================================================

class TestAggregator:
    WINDOW = TimeWindow("2011-01-01", "2011-02-01")

    def test_basic_features(self):
        df = _classify([
            _row("540001", "85123A", 2, "2011-01-10 00:00", "5.00", "C1"),
            _row("540002", "85123A", 3, "2011-01-20 00:00", "5.00", "C1"),
        ])
        rows = CustomerFeatureAggregator().aggregate(df, self.WINDOW, as_of="2011-02-01")
        assert len(rows) == 1
        row = rows[0]
        assert row.customer_id == "C1"
        assert row.frequency == 2
        assert row.monetary_total == Decimal("25")
        assert row.recency_days == 12
        assert row.lifetime_days == 10
        assert row.items_purchased == 5
        assert row.average_order_value == Decimal("12.5")

    def test_returns_admin_and_guests(self):
        df = _classify([
            _row("540001", "85123A", 2, "2011-01-10 00:00", "5.00", "C1"),
            _row("540002", "85123A", 3, "2011-01-20 00:00", "5.00", "C1"),
            _row("540002", "POST", 1, "2011-01-20 00:00", "18.00", "C1"),
            _row("C540003", "85123A", -1, "2011-01-25 00:00", "5.00", "C1"),
            _row("540004", "85123A", 10, "2011-01-21 00:00", "5.00", ""),
        ])
        rows = CustomerFeatureAggregator().aggregate(df, self.WINDOW, as_of="2011-02-01")
        assert [r.customer_id for r in rows] == ["C1"]
        row = rows[0]
        assert row.monetary_total == Decimal("25")
        assert row.return_count == 1
        assert row.return_value == Decimal("5")
        assert row.items_returned == 1
        assert row.net_revenue == Decimal("20")
        assert row.return_rate == pytest.approx(0.5)

    def test_returns_only_customer(self):
        df = _classify([_row("C540003", "85123A", -1, "2011-01-25 00:00", "5.00", "C9")])
        row = CustomerFeatureAggregator().aggregate(df, self.WINDOW, as_of="2011-02-01")[0]
        assert row.frequency == 0
        assert row.first_purchase_at is None
        assert row.recency_days is None
        assert row.average_order_value is None
        assert row.return_value == Decimal("5")

    def test_window_is_half_open(self):
        df = _classify([
            _row("540001", "85123A", 1, "2011-01-01 00:00", "5.00", "C1"),
            _row("540002", "85123A", 1, "2011-02-01 00:00", "5.00", "C1"),
        ])
        row = CustomerFeatureAggregator().aggregate(df, self.WINDOW, as_of="2011-02-01")[0]
        assert row.frequency == 1
        assert row.last_purchase_at == pd.Timestamp("2011-01-01")

    def test_primary_country_ties_alphabetical(self):
        df = _classify([
            _row("540001", "85123A", 1, "2011-01-05 00:00", "5.00", "C1", "Spain"),
            _row("540002", "85123A", 1, "2011-01-06 00:00", "5.00", "C1", "France"),
        ])
        row = CustomerFeatureAggregator().aggregate(df, self.WINDOW, as_of="2011-02-01")[0]
        assert row.primary_country == "France"

    def test_as_of_before_window_end_raises(self):
        df = _classify([_row("540001", "85123A", 1, "2011-01-05 00:00", "5.00", "C1")])
        with pytest.raises(ConfigurationError):
            CustomerFeatureAggregator().aggregate(df, self.WINDOW, as_of="2011-01-15")

    def test_inverted_window_raises(self):
        with pytest.raises(ConfigurationError):
            TimeWindow("2011-02-01", "2011-01-01")
        with pytest.raises(ConfigurationError):
            TimeWindow("2011-01-01", "2011-01-01")

    def test_empty_window_returns_no_rows(self):
        df = _classify([_row("540001", "85123A", 1, "2011-03-05 00:00", "5.00", "C1")])
        aggregator = CustomerFeatureAggregator()
        rows = aggregator.aggregate(df, self.WINDOW, as_of="2011-02-01")
        assert rows == []
        assert list(aggregator.to_frame(rows).columns) == m.FEATURE_COLUMNS

    def test_order_independent(self):
        rows = _make_ledger_rows()
        window = TimeWindow("2011-01-01", "2011-09-01")
        aggregator = CustomerFeatureAggregator()
        expected = aggregator.aggregate(_classify(rows), window, as_of="2011-09-01")

        for seed in (1, 2, 3):
            order = np.random.RandomState(seed).permutation(len(rows))
            shuffled = [rows[i] for i in order]
            assert aggregator.aggregate(_classify(shuffled), window, as_of="2011-09-01") == expected

    def test_monetary_conserved(self):
        rows = _make_ledger_rows()
        window = TimeWindow("2011-01-01", "2011-09-01")
        features = CustomerFeatureAggregator().aggregate(_classify(rows), window, as_of="2011-09-01")

        expected = sum(
            (Decimal(r["Quantity"]) * Decimal(r["UnitPrice"]) for r in rows
             if r["CustomerID"] and r["StockCode"] != "POST" and int(r["Quantity"]) > 0),
            Decimal(0),
        )
        assert sum((f.monetary_total for f in features), Decimal(0)) == expected

    def test_net_revenue_conserved_per_customer(self):
        window = TimeWindow("2011-01-01", "2011-09-01")
        features = CustomerFeatureAggregator().aggregate(
            _classify(_make_ledger_rows()), window, as_of="2011-09-01"
        )
        assert len(features) == 6
        assert any(f.return_value > 0 for f in features)
        for f in features:
            assert f.monetary_total - f.return_value == f.net_revenue

    def test_three_purchases_one_after_window(self):
        df = _classify([
            _row("540001", "85123A", 1, "2011-01-05 00:00", "10.00", "C1"),
            _row("540002", "85123A", 1, "2011-01-20 00:00", "15.00", "C1"),
            _row("540003", "85123A", 1, "2011-02-02 00:00", "5.00", "C1"),
        ])
        rows = CustomerFeatureAggregator().aggregate(df, self.WINDOW, as_of="2011-02-01")
        assert len(rows) == 1
        assert rows[0].frequency == 2
        assert rows[0].monetary_total == Decimal("25")
        assert rows[0].recency_days == 12

    def test_repeated_aggregation_identical(self):
        df = _classify(_make_ledger_rows())
        window = TimeWindow("2011-01-01", "2011-09-01")
        aggregator = CustomerFeatureAggregator()
        first = aggregator.aggregate(df, window, as_of="2011-09-01")
        second = aggregator.aggregate(df, window, as_of="2011-09-01")
        assert first == second
        pd.testing.assert_frame_equal(aggregator.to_frame(first), aggregator.to_frame(second))

    def test_purchase_intervals(self):
        df = _classify([
            _row("540001", "85123A", 2, "2011-01-02 09:00", "5.00", "C1"),
            _row("540001", "22423", 1, "2011-01-02 09:00", "12.75", "C1"),
            _row("540002", "85123A", 3, "2011-01-10 12:00", "5.00", "C1"),
            _row("540003", "85123A", 1, "2011-01-20 18:00", "5.00", "C1"),
            _row("540004", "85123A", 1, "2011-01-15 00:00", "5.00", "C2"),
            _row("C540005", "85123A", -1, "2011-01-25 00:00", "5.00", "C3"),
        ])
        rows = {r.customer_id: r for r in CustomerFeatureAggregator().aggregate(df, self.WINDOW, as_of="2011-02-01")}
        assert rows["C1"].avg_purchase_interval_days == pytest.approx(9.0)
        assert rows["C1"].last_purchase_interval_days == 10
        assert rows["C2"].avg_purchase_interval_days is None
        assert rows["C2"].last_purchase_interval_days is None
        assert rows["C3"].avg_purchase_interval_days is None


# =============================================================================
# TEMPORAL SPLIT TESTS
# =============================================================================

class TestTemporalSplit:
    CUTOFF = pd.Timestamp("2011-06-01")

    def _rows(self):
        return [
            _row("540001", "85123A", 2, "2011-03-01 10:00", "5.00", "C2"),
            _row("540002", "85123A", 1, "2011-03-05 10:00", "5.00", "C1"),
            _row("550001", "85123A", 1, "2011-07-01 10:00", "10.00", "C1"),
        ]

    def _split(self, rows):
        return TemporalSplitEngine().split(
            _classify(rows), self.CUTOFF, pd.Timedelta(days=365), pd.Timedelta(days=90)
        )

    def test_churn_labels(self):
        result = self._split(self._rows())
        labels = {label.customer_id: label for label in result.outcome_labels}
        assert labels["C2"].churned is True
        assert labels["C2"].outcome_revenue == Decimal("0")
        assert labels["C1"].churned is False
        assert labels["C1"].outcome_revenue == Decimal("10")
        assert result.churn_rate() == pytest.approx(0.5)

    def test_history_features_precede_cutoff(self):
        result = self._split(self._rows())
        assert all(r.last_purchase_at < self.CUTOFF for r in result.history_features)
        assert all(r.as_of == self.CUTOFF for r in result.history_features)

    def test_outcome_data_does_not_change_history(self):
        baseline = self._split(self._rows())
        extra = self._rows() + [
            _row("550002", "85123A", 7, "2011-06-15 10:00", "3.00", "C2"),
            _row("550003", "22423", 1, "2011-08-01 10:00", "12.75", "C3"),
        ]
        changed = self._split(extra)
        assert changed.history_features == baseline.history_features
        labels = {label.customer_id: label for label in changed.outcome_labels}
        assert labels["C2"].churned is False
        assert "C3" not in labels

        # Dropping every outcome-window row leaves the history side untouched
        pruned = self._split(self._rows()[:2])
        assert pruned.history_features == baseline.history_features
        assert all(label.churned for label in pruned.outcome_labels)

    def test_training_frame(self):
        frame = self._split(self._rows()).to_training_frame()
        assert sorted(frame[m.CUSTOMER_ID]) == ["C1", "C2"]
        for col in ["churned", "outcome_revenue", "cutoff", "history_start", "outcome_end"]:
            assert col in frame.columns
        assert (frame["cutoff"] == self.CUTOFF).all()

    def test_cutoff_without_history_raises(self):
        engine = TemporalSplitEngine()
        df = _classify(self._rows())
        for cutoff in ["2010-01-01", "2011-03-01 10:00", "2013-06-01"]:
            with pytest.raises(ConfigurationError):
                engine.split(df, cutoff, pd.Timedelta(days=365), pd.Timedelta(days=90))

    def test_cutoff_after_last_transaction_labels_everyone_churned(self):
        result = TemporalSplitEngine().split(
            _classify(self._rows()), "2012-01-01", pd.Timedelta(days=365), pd.Timedelta(days=90)
        )
        assert sorted(r.customer_id for r in result.history_features) == ["C1", "C2"]
        assert [label.churned for label in result.outcome_labels] == [True, True]
        assert result.churn_rate() == pytest.approx(1.0)

    def test_non_positive_span_raises(self):
        with pytest.raises(ConfigurationError):
            TemporalSplitEngine().split(
                _classify(self._rows()), self.CUTOFF, pd.Timedelta(days=0), pd.Timedelta(days=90)
            )


# =============================================================================
# COHORT RETENTION TESTS
# =============================================================================

class TestCohortRetention:
    def test_half_retained(self):
        df = _classify([
            _row("540001", "85123A", 1, "2011-01-05 10:00", "5.00", "A"),
            _row("540002", "85123A", 1, "2011-01-20 10:00", "5.00", "B"),
            _row("541001", "85123A", 1, "2011-02-10 10:00", "5.00", "A"),
        ])
        retention = CohortRetentionCalculator().retention(df)
        cohort = pd.Timestamp("2011-01-01")
        assert retention.loc[cohort, 0] == 1.0
        assert retention.loc[cohort, 1] == 0.5

    def test_cohort_assigned_from_whole_ledger(self):
        df = _classify(_make_ledger_rows())
        cohorts = CohortRetentionCalculator().assign_cohorts(df)
        assert (cohorts == pd.Timestamp("2011-01-01")).all()
        assert "12000" in cohorts.index

    def test_retention_bounds(self):
        retention = CohortRetentionCalculator().retention(_classify(_make_ledger_rows()))
        assert (retention[0] == 1.0).all()
        assert ((retention >= 0) & (retention <= 1)).all().all()

    def test_cohort_sizes_match_offset_zero(self):
        df = _classify(_make_ledger_rows())
        calculator = CohortRetentionCalculator()
        counts = calculator.active_counts(df)
        sizes = calculator.cohort_sizes(df)
        assert counts[0].tolist() == sizes.tolist()

    def test_negative_offset_raises(self, monkeypatch):
        df = _classify([
            _row("540001", "85123A", 1, "2011-01-05 10:00", "5.00", "A"),
            _row("541001", "85123A", 1, "2011-02-10 10:00", "5.00", "A"),
        ])
        calculator = CohortRetentionCalculator()
        monkeypatch.setattr(
            calculator, "assign_cohorts", lambda classified: pd.Series({"A": pd.Timestamp("2011-02-01")})
        )
        with pytest.raises(InvariantViolation):
            calculator.active_counts(df)


# =============================================================================
# RFM SCORER & FEATURE QUERY TESTS
# =============================================================================

class TestRFMScorer:
    def _features(self):
        return pd.DataFrame({
            "customer_id": ["A", "B", "C", "D", "E", "F"],
            "recency_days": [1, 20, 50, 100, 300, None],
            "frequency": [10, 8, 3, 2, 1, 0],
            "monetary_total": [Decimal("500"), Decimal("400"), Decimal("90"),
                               Decimal("40"), Decimal("10"), Decimal("0")],
        })

    def test_quintile_scores(self):
        scored = RFMScorer().score(self._features()).set_index("customer_id")
        assert int(scored.loc["A", "r_score"]) == 5
        assert int(scored.loc["E", "r_score"]) == 1
        assert int(scored.loc["A", "f_score"]) == 5
        assert int(scored.loc["E", "m_score"]) == 1
        assert scored.loc["A", "rfm_code"] == "555"
        assert scored.loc["A", "segment"] == "Champions"

    def test_non_buyers_unscored(self):
        scored = RFMScorer().score(self._features()).set_index("customer_id")
        assert pd.isna(scored.loc["F", "r_score"])
        assert scored.loc["F", "segment"] == NO_PURCHASES
        assert scored.loc["F", "activity_status"] == NO_PURCHASES

    def test_scores_stable_on_rerun(self):
        scorer = RFMScorer()
        first = scorer.score(self._features())
        shuffled = self._features().sample(frac=1.0, random_state=3)
        second = scorer.score(shuffled).set_index("customer_id").loc[first["customer_id"]]
        assert first["rfm_code"].tolist() == second["rfm_code"].tolist()

    @pytest.mark.parametrize("scores, segment", [
        ((5, 5, 5), "Champions"),
        ((3, 3, 1), "Loyal Customers"),
        ((5, 1, 1), "New Customers"),
        ((4, 2, 2), "Potential Loyalists"),
        ((3, 1, 1), "Promising"),
        ((1, 5, 5), "Cannot Lose Them"),
        ((2, 4, 1), "At Risk"),
        ((2, 1, 1), "Hibernating"),
        ((1, 1, 1), "Lost"),
    ])
    def test_segments(self, scores, segment):
        assert assign_segment(*scores) == segment

    def test_activity_status(self):
        scorer = RFMScorer()
        assert scorer.activity_status(10) == "Active"
        assert scorer.activity_status(60) == "At Risk"
        assert scorer.activity_status(120) == "Lapsing"
        assert scorer.activity_status(400) == "Churned"
        assert scorer.activity_status(None) == NO_PURCHASES


class TestFeatureQuery:
    AS_OF = pd.Timestamp("2011-09-01")

    def _table(self):
        df = _classify(_make_ledger_rows())
        aggregator = CustomerFeatureAggregator()
        rows = aggregator.aggregate(df, TimeWindow("2011-01-01", self.AS_OF), as_of=self.AS_OF)
        return RFMScorer().score(aggregator.to_frame(rows))

    def test_country_filter(self):
        table = self._table()
        result = FeatureQuery(countries={"France"}, as_of=self.AS_OF).apply(table)
        assert len(result) > 0
        assert set(result["primary_country"]) == {"France"}

    def test_segment_filter(self):
        table = self._table()
        segment = table["segment"].iloc[0]
        result = FeatureQuery(segments=[segment]).apply(table)
        assert set(result["segment"]) == {segment}

    def test_date_filter_inclusive(self):
        table = self._table()
        last = table["last_purchase_at"].max()
        result = FeatureQuery(start=last, end=last).apply(table)
        assert len(result) >= 1
        assert (result["last_purchase_at"] == last).all()

    def test_does_not_mutate_input(self):
        table = self._table()
        before = len(table)
        FeatureQuery(countries={"France"}).apply(table)
        assert len(table) == before

    def test_inverted_range_raises(self):
        with pytest.raises(ConfigurationError):
            FeatureQuery(start="2011-05-01", end="2011-04-01")

    def test_mixed_as_of_raises(self):
        table = self._table()
        mixed = pd.concat([table, table.assign(as_of=pd.Timestamp("2011-06-01"))])
        with pytest.raises(ConfigurationError):
            FeatureQuery().apply(mixed)

    def test_as_of_mismatch_raises(self):
        with pytest.raises(ConfigurationError):
            FeatureQuery(as_of="2011-06-01").apply(self._table())


# =============================================================================
# PREDICTOR TESTS
# =============================================================================

class TestPredictors:
    def test_churn_model_fits_and_predicts(self):
        frame = _training_frame()
        model = ChurnModel()
        report = model.fit(frame)
        assert report.n_train + report.n_test == len(frame)
        assert report.metrics["accuracy"] is not None

        predictions = model.predict(frame)
        assert len(predictions) == len(frame)
        assert predictions["churn_probability"].between(0, 1).all()

    def test_clv_model_non_negative(self):
        frame = _training_frame()
        model = CLVModel()
        model.fit(frame)
        predictions = model.predict(frame)
        assert (predictions["predicted_revenue"] >= 0).all()

    def test_predict_before_fit_raises(self):
        with pytest.raises(NotFittedError):
            ChurnModel().predict(_training_frame())

    def test_single_class_raises(self):
        frame = _training_frame().assign(churned=True)
        with pytest.raises(ConfigurationError):
            ChurnModel().fit(frame)

    def test_too_few_rows_raises(self):
        with pytest.raises(ConfigurationError):
            ChurnModel().fit(_training_frame(n=10))


# =============================================================================
# DRIFT MONITOR TESTS
# =============================================================================

class TestFeatureDrift:
    def test_no_drift_on_identical_populations(self):
        baseline = _buyer_features(as_of="2011-06-01")
        comparison = _buyer_features(as_of="2011-09-01")
        report = FeatureDriftMonitor().run(baseline, comparison)
        assert report.alerts == []
        assert report.summary["baseline_customers"] == 100

    def test_shift_detected(self):
        baseline = _buyer_features(seed=0, as_of="2011-06-01")
        comparison = _buyer_features(seed=1, scale=10.0, as_of="2011-09-01")
        report = FeatureDriftMonitor().run(baseline, comparison)
        flagged = {a.feature for a in report.alerts}
        assert "monetary_total" in flagged
        assert all(a.detected_at == pd.Timestamp("2011-09-01").isoformat() for a in report.alerts)
        assert len(report.to_frame()) == len(report.alerts)

    def test_population_drop_detected(self):
        baseline = _buyer_features(n=100)
        comparison = _buyer_features(n=40)
        report = FeatureDriftMonitor().run(baseline, comparison)
        assert any(a.alert_type == "POPULATION" for a in report.alerts)

    def test_psi_computation(self):
        rng = np.random.RandomState(0)
        same = rng.normal(0, 1, 1000)
        assert FeatureDriftMonitor._compute_psi(same, same) == pytest.approx(0.0, abs=1e-6)
        assert FeatureDriftMonitor._compute_psi(same, same + 3) > 0.25


# =============================================================================
# PIPELINE & CLI TESTS
# =============================================================================

class TestPipeline:
    def _run(self, rows=None):
        return CustomerAnalyticsPipeline().run(
            pd.DataFrame(rows or _make_ledger_rows()), as_of="2011-09-01", cutoff="2011-06-01"
        )

    def test_pipeline_runs_end_to_end(self):
        results = self._run()
        assert len(results.features) == 6
        assert "segment" in results.features.columns
        assert results.churn_training["churned"].any()
        assert not results.churn_training["churned"].all()
        assert (results.features["as_of"] == pd.Timestamp("2011-09-01")).all()

    def test_guest_and_admin_excluded(self):
        results = self._run()
        row = results.features.set_index("customer_id").loc["12000"]
        # Three invoices of 2 x 2.55 + 12.75, postage excluded
        assert row["monetary_total"] == Decimal("53.55")

    def test_invalid_cutoff_raises(self):
        with pytest.raises(ConfigurationError):
            CustomerAnalyticsPipeline().run(
                pd.DataFrame(_make_ledger_rows()), as_of="2011-09-01", cutoff="2010-01-01"
            )

    def test_empty_input_raises(self):
        rows = [_row("536365", "85123A", 0, "2011-01-01 10:00", "2.55", "17850")]
        with pytest.raises(ConfigurationError):
            self._run(rows)

    def test_train_models_needs_enough_customers(self):
        pipeline = CustomerAnalyticsPipeline()
        results = pipeline.run(pd.DataFrame(_make_ledger_rows()), as_of="2011-09-01", cutoff="2011-06-01")
        with pytest.raises(ConfigurationError):
            pipeline.train_models(results)

    def test_export_writes_tagged_files(self, tmp_path):
        pipeline = CustomerAnalyticsPipeline()
        results = pipeline.run(pd.DataFrame(_make_ledger_rows()), as_of="2011-09-01", cutoff="2011-06-01")
        paths = pipeline.export(results, str(tmp_path))
        assert os.path.basename(paths["customer_features"]) == "customer_features_20110901.csv"
        assert os.path.basename(paths["churn_training"]) == "churn_training_20110601.csv"
        assert "predictions" not in paths
        for path in paths.values():
            assert os.path.exists(path)

        retention = pd.read_csv(paths["cohort_retention"], index_col=0)
        assert retention.index.tolist() == ["2011-01"]

    def test_data_quality_exported(self, tmp_path):
        pipeline = CustomerAnalyticsPipeline()
        results = pipeline.run(pd.DataFrame(_make_ledger_rows()), as_of="2011-09-01", cutoff="2011-06-01")
        assert results.data_quality.missing_customer_count == 1
        assert results.data_quality.return_line_items == 1

        paths = pipeline.export(results, str(tmp_path))
        quality = pd.read_csv(paths["data_quality"])
        assert os.path.basename(paths["data_quality"]) == "data_quality.csv"
        assert len(quality) == 1
        assert quality["total_lines"].iloc[0] == results.data_quality.total_lines

    def test_drift_monitor_runs_without_error(self):
        pipeline = CustomerAnalyticsPipeline()
        results = pipeline.run(pd.DataFrame(_make_ledger_rows()), as_of="2011-09-01", cutoff="2011-06-01")
        report = pipeline.monitor_drift(results)
        assert report.comparison_as_of == pd.Timestamp("2011-09-01").isoformat()


class TestCLI:
    def _write_input(self, tmp_path) -> str:
        path = tmp_path / "data.csv"
        pd.DataFrame(_make_ledger_rows()).to_csv(path, index=False)
        return str(path)

    def test_dates_derived_from_data(self, tmp_path):
        path = self._write_input(tmp_path)
        paths = cli.main(["--input", path, "--output-dir", str(tmp_path / "out")])
        # Last transaction is 2011-08-15, so as_of defaults to the day after
        assert os.path.basename(paths["customer_features"]) == "customer_features_20110816.csv"
        assert os.path.basename(paths["churn_training"]) == "churn_training_20110518.csv"

    def test_missing_input_exits(self, tmp_path):
        with pytest.raises(SystemExit):
            cli.main(["--input", str(tmp_path / "absent.csv")])

    def test_bad_cutoff_exits(self, tmp_path):
        path = self._write_input(tmp_path)
        with pytest.raises(SystemExit):
            cli.main(["--input", path, "--cutoff", "2010-01-01", "--output-dir", str(tmp_path / "out")])

    @pytest.mark.parametrize("flag", ["--history-days", "--outcome-days"])
    def test_zero_span_exits(self, tmp_path, flag):
        path = self._write_input(tmp_path)
        with pytest.raises(SystemExit) as exc:
            cli.main(["--input", path, flag, "0", "--output-dir", str(tmp_path / "out")])
        assert exc.value.code == 1
        assert not (tmp_path / "out").exists()
