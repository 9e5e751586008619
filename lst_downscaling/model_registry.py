"""
Regressor registry: the four supported algorithm families, their
hyperparameter records and a single factory building scikit-learn
estimators from them.
"""

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd
from sklearn.ensemble import GradientBoostingRegressor, RandomForestRegressor
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.svm import SVR, NuSVR
from sklearn.tree import DecisionTreeRegressor

from lst_downscaling.exceptions import ConfigurationError, EmptySampleError
from lst_downscaling.utils_downscaling import get_config_value


class Algorithm(Enum):
    GBT = 'GBT'
    RF = 'RF'
    SVM = 'SVM'
    CART = 'CART'


@dataclass(frozen=True)
class GBTParams:
    number_of_trees: int = 500
    shrinkage: float = 0.05
    sampling_rate: float = 1.0
    max_nodes: Optional[int] = 25
    loss: str = 'LeastAbsoluteDeviation'


@dataclass(frozen=True)
class RFParams:
    number_of_trees: int = 500
    variables_per_split: Optional[int] = 6
    min_leaf_population: int = 1
    bag_fraction: float = 0.5
    max_nodes: Optional[int] = None


@dataclass(frozen=True)
class SVMParams:
    svm_type: str = 'EPSILON_SVR'
    kernel_type: str = 'RBF'
    cost: float = 100.0
    gamma: float = 0.1


@dataclass(frozen=True)
class CARTParams:
    max_nodes: Optional[int] = 100
    min_leaf_population: int = 10


Params = Union[GBTParams, RFParams, SVMParams, CARTParams]

PARAM_TYPES = {
    Algorithm.GBT: GBTParams,
    Algorithm.RF: RFParams,
    Algorithm.SVM: SVMParams,
    Algorithm.CART: CARTParams,
}

GBT_LOSSES = {
    'LeastSquares': 'squared_error',
    'LeastAbsoluteDeviation': 'absolute_error',
    'Huber': 'huber',
}
SVM_KERNELS = {
    'LINEAR': 'linear',
    'POLY': 'poly',
    'RBF': 'rbf',
    'SIGMOID': 'sigmoid',
}
SVM_TYPES = ('EPSILON_SVR', 'NU_SVR')


def _unlimited(value):
    """-1 or None means no limit."""
    if value is None or value == -1:
        return None
    return int(value)


def resolve_params(algorithm: Union[str, Algorithm], overrides: Optional[Dict] = None) -> Params:
    """
    Build the frozen hyperparameter record of ``algorithm``.

    Parameters:
    -----------
    algorithm : str or Algorithm
        One of GBT, RF, SVM, CART
    overrides : Dict, optional
        Field values replacing the defaults

    Returns:
    --------
    Params
        GBTParams, RFParams, SVMParams or CARTParams

    Raises:
    -------
    ConfigurationError
        Unknown algorithm, unknown hyperparameter or invalid value
    """
    try:
        algorithm = Algorithm(algorithm)
    except ValueError:
        raise ConfigurationError(
            f"Unknown algorithm '{algorithm}'. Choose one of {[a.value for a in Algorithm]}"
        )

    param_type = PARAM_TYPES[algorithm]
    known = {f.name for f in dataclasses.fields(param_type)}
    overrides = dict(overrides or {})
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown {algorithm.value} hyperparameter(s) {unknown}; expected a subset of {sorted(known)}"
        )

    for key in ('max_nodes', 'variables_per_split'):
        if key in overrides:
            overrides[key] = _unlimited(overrides[key])

    params = param_type(**overrides)
    _check_params(algorithm, params)
    return params


def _check_params(algorithm: Algorithm, params: Params):
    if algorithm is Algorithm.GBT and params.loss not in GBT_LOSSES:
        raise ConfigurationError(f"Unknown GBT loss '{params.loss}'; choose one of {list(GBT_LOSSES)}")
    if algorithm is Algorithm.SVM:
        if params.kernel_type not in SVM_KERNELS:
            raise ConfigurationError(f"Unknown SVM kernel '{params.kernel_type}'")
        if params.svm_type not in SVM_TYPES:
            raise ConfigurationError(f"Unknown SVM type '{params.svm_type}'")
    if getattr(params, 'number_of_trees', 1) < 1:
        raise ConfigurationError("number_of_trees must be >= 1")
    max_nodes = getattr(params, 'max_nodes', None)
    if max_nodes is not None and max_nodes < 2:
        raise ConfigurationError("max_nodes must be >= 2 or -1 for unlimited")


def params_from_config(config: Dict, algorithm: Optional[str] = None) -> Params:
    """Hyperparameters of the configured (or given) algorithm."""
    algorithm = algorithm or get_config_value(config, 'models.algorithm', 'RF')
    overrides = get_config_value(config, f'models.hyperparameters.{algorithm}', {})
    return resolve_params(algorithm, overrides)


def build_regressor(algorithm: Union[str, Algorithm], params: Params, seed: int = 0,
                    n_jobs: int = -1, scale_features: bool = False):
    """
    scikit-learn estimator for an algorithm/hyperparameter pair.

    With ``scale_features`` the estimator is wrapped in a pipeline behind a
    StandardScaler.
    """
    algorithm = Algorithm(algorithm)

    if algorithm is Algorithm.GBT:
        model = GradientBoostingRegressor(
            n_estimators=params.number_of_trees,
            learning_rate=params.shrinkage,
            subsample=params.sampling_rate,
            max_leaf_nodes=params.max_nodes,
            loss=GBT_LOSSES[params.loss],
            random_state=seed
        )
    elif algorithm is Algorithm.RF:
        model = RandomForestRegressor(
            n_estimators=params.number_of_trees,
            max_features=params.variables_per_split or 'sqrt',
            min_samples_leaf=params.min_leaf_population,
            max_samples=params.bag_fraction if params.bag_fraction < 1.0 else None,
            max_leaf_nodes=params.max_nodes,
            n_jobs=n_jobs,
            random_state=seed
        )
    elif algorithm is Algorithm.SVM:
        kernel = SVM_KERNELS[params.kernel_type]
        if params.svm_type == 'NU_SVR':
            model = NuSVR(kernel=kernel, C=params.cost, gamma=params.gamma)
        else:
            model = SVR(kernel=kernel, C=params.cost, gamma=params.gamma)
    else:
        model = DecisionTreeRegressor(
            max_leaf_nodes=params.max_nodes,
            min_samples_leaf=params.min_leaf_population,
            random_state=seed
        )

    if scale_features:
        return Pipeline([('scaler', StandardScaler()), ('model', model)])
    return model


@dataclass(frozen=True)
class TrainedModel:
    """A fitted estimator plus everything needed to apply it."""
    estimator: object
    algorithm: Algorithm
    params: Params
    covariates: tuple
    target: str = 'LST_C'

    def _features(self, frame: pd.DataFrame) -> np.ndarray:
        missing = [c for c in self.covariates if c not in frame.columns]
        if missing:
            raise KeyError(f"Missing covariate column(s): {missing}")
        return frame[list(self.covariates)].to_numpy(dtype=float)

    def predict(self, frame: Union[pd.DataFrame, np.ndarray]) -> np.ndarray:
        X = self._features(frame) if isinstance(frame, pd.DataFrame) else np.asarray(frame, dtype=float)
        return np.asarray(self.estimator.predict(X), dtype=float)

    def importance(self) -> Optional[pd.Series]:
        """Impurity-based importance per covariate, or None (SVM)."""
        model = self.estimator
        if isinstance(model, Pipeline):
            model = model.steps[-1][1]
        values = getattr(model, 'feature_importances_', None)
        if values is None:
            return None
        return pd.Series(values, index=list(self.covariates), name='importance').sort_values(ascending=False)


def train_model(rows: pd.DataFrame, algorithm: Union[str, Algorithm], params: Params,
                covariates: Sequence[str], target: str = 'LST_C', seed: int = 0,
                n_jobs: int = -1, scale_features: bool = False) -> TrainedModel:
    """Fit a regressor on ``rows`` (covariate columns -> target column)."""
    if len(rows) == 0:
        raise EmptySampleError("Cannot train on an empty sample")

    estimator = build_regressor(algorithm, params, seed=seed, n_jobs=n_jobs,
                                scale_features=scale_features)
    X = rows[list(covariates)].to_numpy(dtype=float)
    y = rows[target].to_numpy(dtype=float)
    estimator.fit(X, y)

    return TrainedModel(
        estimator=estimator,
        algorithm=Algorithm(algorithm),
        params=params,
        covariates=tuple(covariates),
        target=target
    )
