"""
Grid Search Harness

Trains one model per hyperparameter combination on a fixed train/test split
and ranks the combinations by test RMSE. Combinations are independent and
run through joblib.
"""

import itertools
import json
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from lst_downscaling.covariate_synthesizer import COVARIATES
from lst_downscaling.evaluation import compute_metrics
from lst_downscaling.exceptions import ConfigurationError, DegenerateTargetError
from lst_downscaling.feature_aggregator import TARGET_BAND
from lst_downscaling.model_registry import Algorithm, resolve_params, train_model
from lst_downscaling.utils_downscaling import get_config_value

# Grid axes per algorithm: (hyperparameter, label prefix). Only GBT and RF
# have a third axis.
GRID_AXES = {
    'GBT': [('number_of_trees', 'nT'), ('shrinkage', 'sh'), ('max_nodes', 'mN')],
    'RF': [('number_of_trees', 'nT'), ('variables_per_split', 'vps'), ('min_leaf_population', 'mlp')],
    'SVM': [('cost', 'C'), ('gamma', 'γ')],
    'CART': [('max_nodes', 'mN'), ('min_leaf_population', 'mlp')],
}

STATUS_OK = 'ok'
STATUS_DEGENERATE = 'degenerate_target'


def _format_value(value) -> str:
    if value is None or value == -1:
        return 'none'
    if isinstance(value, (int, float)):
        return f"{value:g}"
    return str(value)


def combination_label(algorithm: str, combo: Dict) -> str:
    """e.g. 'nT=100 sh=0.01' or 'mN=none mlp=5'."""
    prefixes = dict(GRID_AXES[algorithm])
    return ' '.join(f"{prefixes[k]}={_format_value(v)}" for k, v in combo.items())


def _evaluate_combination(index: int, label: str, algorithm: str, params, train: pd.DataFrame,
                          test: pd.DataFrame, seed: int, scale_features: bool) -> Dict:
    record = {'combo_index': index, 'label': label, 'status': STATUS_OK, 'error': None}
    model = train_model(train, algorithm, params, COVARIATES, target=TARGET_BAND,
                        seed=seed, n_jobs=1, scale_features=scale_features)
    y_true = test[TARGET_BAND].to_numpy(dtype=float)
    y_pred = model.predict(test)
    try:
        record.update(compute_metrics(y_true, y_pred))
    except DegenerateTargetError as e:
        # RMSE and MAE stay defined, R² does not
        residual = y_true - y_pred
        record.update({
            'status': STATUS_DEGENERATE,
            'error': str(e),
            'rmse': float(np.sqrt(np.mean(residual ** 2))),
            'mae': float(np.mean(np.abs(residual))),
            'r2': None,
            'n': int(y_true.size),
        })
    return record


class GridSearchTuner:
    """
    Exhaustive grid search for one algorithm on one year's split.
    """

    def __init__(self, config: Dict, algorithm: Optional[str] = None):
        self.config = config
        self.algorithm = algorithm or get_config_value(config, 'models.algorithm', 'RF')
        self.dimensions = get_config_value(config, 'grid_search.dimensions', 2)
        self.n_jobs = get_config_value(config, 'grid_search.n_jobs', 1)
        self.seed = get_config_value(config, 'sampling.seed', 0)
        self.base_params = dict(get_config_value(config, f'models.hyperparameters.{self.algorithm}', {}))
        self.scale_features = self.algorithm in get_config_value(
            config, 'models.scaling.models_needing_scaling', ['SVM'])

        print(f"🔍 Grid Search initialized:")
        print(f"   Algorithm: {self.algorithm}")
        print(f"   Dimensions: {self.dimensions}")
        print(f"   Parallel jobs: {self.n_jobs}")

    def build_grid(self, algorithm: Optional[str] = None,
                   dimensions: Optional[int] = None) -> List[Dict]:
        """
        Cartesian product of the configured grid arrays.

        The first two axes always apply; the third only for GBT and RF when
        ``dimensions == 3``.

        Returns:
        --------
        List[Dict]
            {'label', 'params'} per combination, in grid order
        """
        algorithm = algorithm or self.algorithm
        dimensions = dimensions or self.dimensions
        try:
            Algorithm(algorithm)
        except ValueError:
            raise ConfigurationError(f"Unknown algorithm '{algorithm}'")
        if dimensions not in (2, 3):
            raise ConfigurationError(f"Grid dimensions must be 2 or 3, got {dimensions}")

        axes = GRID_AXES[algorithm][:dimensions]
        grids = get_config_value(self.config, f'grid_search.grids.{algorithm}', {})
        missing = [name for name, _ in axes if name not in grids]
        if missing:
            raise ConfigurationError(f"grid_search.grids.{algorithm} is missing {missing}")

        names = [name for name, _ in axes]
        combos = []
        for values in itertools.product(*(grids[name] for name in names)):
            combo = dict(zip(names, values))
            combos.append({
                'label': combination_label(algorithm, combo),
                'params': combo,
            })
        return combos

    def run(self, train: pd.DataFrame, test: pd.DataFrame,
            year: Optional[int] = None) -> Tuple[pd.DataFrame, List[Dict]]:
        """
        Train and evaluate every combination.

        Returns:
        --------
        ranked : pd.DataFrame
            Results sorted ascending by test RMSE
        records : List[Dict]
            Raw per-combination records in grid order
        """
        grid = self.build_grid()
        print("═" * 50)
        print(f"GRID SEARCH — {self.algorithm} — {year} — {len(grid)} combinations")
        print("═" * 50)

        jobs = []
        for index, combo in enumerate(grid):
            overrides = dict(self.base_params)
            overrides.update(combo['params'])
            params = resolve_params(self.algorithm, overrides)
            jobs.append(delayed(_evaluate_combination)(
                index, combo['label'], self.algorithm, params, train, test,
                self.seed, self.scale_features
            ))

        records = Parallel(n_jobs=self.n_jobs)(jobs)
        records = sorted(records, key=lambda r: r['combo_index'])
        for record, combo in zip(records, grid):
            record.update(combo['params'])

        frame = pd.DataFrame(records)
        valid = frame[frame['status'] == STATUS_OK].sort_values('rmse', kind='stable')
        degenerate = frame[frame['status'] != STATUS_OK]
        ranked = pd.concat([valid, degenerate]).reset_index(drop=True)

        print("Grid search results (sorted by RMSE):")
        print(ranked[['label', 'rmse', 'mae', 'r2', 'status']].to_string(index=False))
        if len(degenerate):
            print(f"⚠️ {len(degenerate)} combinations have a zero-variance test target "
                  f"and are ranked last")
        return ranked, records

    def save_results(self, ranked: pd.DataFrame, records: List[Dict], output_dir: str,
                     year: Optional[int] = None) -> Dict[str, str]:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        stem = f"grid_search_{self.algorithm}_{year}" if year is not None else f"grid_search_{self.algorithm}"

        csv_path = output_dir / f"{stem}.csv"
        ranked.to_csv(csv_path, index=False)

        json_path = output_dir / f"{stem}.json"
        serializable = [
            {k: (None if isinstance(v, float) and np.isnan(v) else v) for k, v in r.items()}
            for r in records
        ]
        with open(json_path, 'w') as f:
            json.dump({'algorithm': self.algorithm, 'year': year, 'results': serializable}, f, indent=2)

        print(f"   ✓ Results saved: {csv_path}")
        return {'csv': str(csv_path), 'json': str(json_path)}

    def plot_results(self, records: List[Dict], output_dir: str,
                     year: Optional[int] = None) -> str:
        """
        Column charts of test RMSE and R² per combination, in grid order.

        Combinations with a zero-variance test target get no R² column.
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        frame = pd.DataFrame(records).sort_values('combo_index')
        r2 = frame['r2'].where(frame['status'] == STATUS_OK).astype(float).fillna(0.0)

        fig, (ax1, ax2) = plt.subplots(2, 1, figsize=(max(8, 0.6 * len(frame)), 9), sharex=True)
        ax1.bar(frame['label'], frame['rmse'], color='#1a73e8')
        ax1.set_ylabel('RMSE (°C)')
        ax1.set_title(f'Grid Search — {self.algorithm} — {year} — Test RMSE')

        ax2.bar(frame['label'], r2, color='#34a853')
        ax2.set_ylabel('R²')
        ax2.set_xlabel('Parameter Combination')
        ax2.set_title(f'Grid Search — {self.algorithm} — {year} — Test R²')
        plt.setp(ax2.get_xticklabels(), rotation=45, ha='right')

        plt.tight_layout()
        plot_path = output_dir / f"grid_search_{self.algorithm}_{year}.png"
        plt.savefig(plot_path, dpi=150, bbox_inches='tight')
        plt.close(fig)
        print(f"   ✓ Plot saved: {plot_path}")
        return str(plot_path)
