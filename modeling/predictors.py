"""
predictors.py
--------------
Churn and CLV models trained on the temporal split's training frame.

Both models read only history-window features (built by TemporalSplitEngine),
so what they learn is available at prediction time. Targets come from the
outcome window:
    - ChurnModel: churned (bool)          -> LogisticRegression
    - CLVModel:   outcome_revenue (money) -> LinearRegression

Feature list, split ratio and seed come from config.yaml.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from sklearn.exceptions import NotFittedError
from sklearn.linear_model import LinearRegression, LogisticRegression
from sklearn.metrics import accuracy_score, mean_absolute_error, r2_score, roc_auc_score
from sklearn.model_selection import train_test_split
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler

from config.config_loader import get_modeling_config
from core import models as m
from core.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class ModelReport:
    """Fit summary for one model."""
    model_name: str
    n_train: int
    n_test: int
    features: List[str]
    metrics: Dict[str, Optional[float]] = field(default_factory=dict)


class BasePredictor(ABC):
    """
    Shared fit / predict plumbing. Subclasses define the target, the
    estimator, the metrics and the output column.
    """

    target: str
    output_column: str

    def __init__(self, modeling_config: Optional[Dict[str, Any]] = None):
        self.config = modeling_config or get_modeling_config()
        self.features: List[str] = list(self.config["features"])
        self.model = None

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def fit(self, training_frame: pd.DataFrame) -> ModelReport:
        """
        Fit on a TemporalSplitResult.to_training_frame() table.

        Raises:
            ConfigurationError: Too few rows, or a target the model cannot learn.
        """
        m.require_columns(training_frame, self.features + [self.target])
        min_rows = int(self.config["min_training_rows"])
        if len(training_frame) < min_rows:
            raise ConfigurationError(
                f"{type(self).__name__} needs at least {min_rows} labeled customers, got {len(training_frame)}"
            )

        X = self._matrix(training_frame)
        y = self._target(training_frame)
        self._check_target(y)

        X_train, X_test, y_train, y_test = train_test_split(
            X, y,
            test_size=self.config["test_size"],
            random_state=self.config["random_state"],
            stratify=self._stratify(y),
        )

        self.model = self._build_estimator()
        self.model.fit(X_train, y_train)

        report = ModelReport(
            model_name=type(self).__name__,
            n_train=len(X_train),
            n_test=len(X_test),
            features=self.features,
            metrics=self._evaluate(X_test, y_test),
        )
        logger.info(f"{report.model_name} fitted on {report.n_train:,} rows. Test metrics: {report.metrics}")
        return report

    def predict(self, features: pd.DataFrame) -> pd.DataFrame:
        """
        Scores every customer with at least one purchase.

        Returns:
            DataFrame with customer_id and the model's output column.
        """
        if self.model is None:
            raise NotFittedError(f"{type(self).__name__} has not been fitted yet.")
        m.require_columns(features, [m.CUSTOMER_ID, "frequency"] + self.features)

        buyers = features[features["frequency"] >= 1]
        out = pd.DataFrame({m.CUSTOMER_ID: buyers[m.CUSTOMER_ID].to_numpy()})
        out[self.output_column] = self._predict(self._matrix(buyers)) if len(buyers) else []
        return out

    # -------------------------------------------------------------------------
    # SUBCLASS HOOKS
    # -------------------------------------------------------------------------

    @abstractmethod
    def _build_estimator(self):
        ...

    @abstractmethod
    def _evaluate(self, X_test: np.ndarray, y_test: np.ndarray) -> Dict[str, Optional[float]]:
        ...

    @abstractmethod
    def _predict(self, X: np.ndarray) -> np.ndarray:
        ...

    def _target(self, frame: pd.DataFrame) -> np.ndarray:
        return frame[self.target].astype(float).to_numpy()

    def _check_target(self, y: np.ndarray) -> None:
        pass

    def _stratify(self, y: np.ndarray):
        return None

    # -------------------------------------------------------------------------
    # SHARED HELPERS
    # -------------------------------------------------------------------------

    def _matrix(self, frame: pd.DataFrame) -> np.ndarray:
        """Decimal / nullable feature columns -> float matrix (nulls as 0)."""
        return np.column_stack([
            frame[col].astype(object).where(frame[col].notna(), 0).astype(float).to_numpy()
            for col in self.features
        ])


# =============================================================================
# CHURN
# =============================================================================

class ChurnModel(BasePredictor):
    """Probability that a customer makes no purchase in the outcome window."""

    target = "churned"
    output_column = "churn_probability"

    def _build_estimator(self):
        return make_pipeline(
            StandardScaler(),
            LogisticRegression(max_iter=1000, class_weight="balanced"),
        )

    def _target(self, frame: pd.DataFrame) -> np.ndarray:
        return frame[self.target].astype(bool).astype(int).to_numpy()

    def _check_target(self, y: np.ndarray) -> None:
        if len(np.unique(y)) < 2:
            raise ConfigurationError(
                "Churn labels contain a single class; choose a cutoff with both churned and retained customers."
            )

    def _stratify(self, y: np.ndarray):
        # Stratify only when every class can appear on both sides of the split
        _, counts = np.unique(y, return_counts=True)
        return y if counts.min() >= 2 else None

    def _evaluate(self, X_test, y_test):
        predicted = self.model.predict(X_test)
        metrics = {"accuracy": round(float(accuracy_score(y_test, predicted)), 4), "roc_auc": None}
        if len(np.unique(y_test)) == 2:
            proba = self.model.predict_proba(X_test)[:, 1]
            metrics["roc_auc"] = round(float(roc_auc_score(y_test, proba)), 4)
        return metrics

    def _predict(self, X):
        return self.model.predict_proba(X)[:, 1]


# =============================================================================
# CLV
# =============================================================================

class CLVModel(BasePredictor):
    """Expected revenue over an outcome window of the same length."""

    target = "outcome_revenue"
    output_column = "predicted_revenue"

    def _build_estimator(self):
        return make_pipeline(StandardScaler(), LinearRegression())

    def _evaluate(self, X_test, y_test):
        predicted = self.model.predict(X_test)
        return {
            "r2": round(float(r2_score(y_test, predicted)), 4) if len(y_test) > 1 else None,
            "mae": round(float(mean_absolute_error(y_test, predicted)), 4),
        }

    def _predict(self, X):
        # Revenue cannot be negative
        return np.clip(self.model.predict(X), 0.0, None)
