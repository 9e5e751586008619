"""
Accuracy metrics for regression predictions.
"""

from typing import Dict

import numpy as np
import pandas as pd
from sklearn.metrics import mean_absolute_error, mean_squared_error

from lst_downscaling.exceptions import DegenerateTargetError, EmptySampleError


def compute_metrics(y_true, y_pred) -> Dict[str, float]:
    """
    RMSE, MAE and R² between observed and predicted values.

    R² is computed as 1 - SSres/SStot with SStot about the observed mean.

    Parameters:
    -----------
    y_true : array-like
        Observed values
    y_pred : array-like
        Predicted values, same length

    Returns:
    --------
    Dict[str, float]
        {'rmse', 'mae', 'r2', 'n'}

    Raises:
    -------
    EmptySampleError
        No values
    DegenerateTargetError
        Observed values have zero variance
    """
    y_true = np.asarray(y_true, dtype=float).ravel()
    y_pred = np.asarray(y_pred, dtype=float).ravel()
    if y_true.shape != y_pred.shape:
        raise ValueError(f"Shape mismatch: {y_true.shape} vs {y_pred.shape}")
    if y_true.size == 0:
        raise EmptySampleError("Cannot compute metrics on an empty sample")

    ss_tot = float(np.sum((y_true - y_true.mean()) ** 2))
    if ss_tot == 0.0:
        raise DegenerateTargetError(
            f"Observed values have zero variance (n={y_true.size}); R² is undefined"
        )
    ss_res = float(np.sum((y_true - y_pred) ** 2))

    return {
        'rmse': float(np.sqrt(mean_squared_error(y_true, y_pred))),
        'mae': float(mean_absolute_error(y_true, y_pred)),
        'r2': 1.0 - ss_res / ss_tot,
        'n': int(y_true.size),
    }


def evaluate(model, rows: pd.DataFrame) -> Dict[str, float]:
    """Predict ``rows`` with a TrainedModel and score against its target column."""
    if len(rows) == 0:
        raise EmptySampleError("Cannot evaluate on an empty partition")
    predictions = model.predict(rows)
    return compute_metrics(rows[model.target].to_numpy(dtype=float), predictions)


def metrics_table(train: Dict[str, float], test: Dict[str, float]) -> pd.DataFrame:
    """
    Two-row table (train, test) plus the test-minus-train RMSE gap.
    """
    table = pd.DataFrame([train, test], index=['train', 'test'])
    table['delta_rmse'] = [0.0, test['rmse'] - train['rmse']]
    return table
