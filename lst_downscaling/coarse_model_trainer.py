"""
Coarse-Scale Model Trainer

Samples the coarse target/covariate stack, splits it with an independent
random tag and trains one regressor at the coarse (300 m) scale, where the
target is a true area-weighted observation.
"""

import joblib
import numpy as np
import pandas as pd
import xarray as xr
from pathlib import Path
from typing import Dict, Optional, Tuple

from lst_downscaling.covariate_synthesizer import COVARIATES
from lst_downscaling.evaluation import evaluate, metrics_table
from lst_downscaling.exceptions import EmptySampleError
from lst_downscaling.feature_aggregator import TARGET_BAND
from lst_downscaling.model_registry import (
    Params,
    TrainedModel,
    params_from_config,
    resolve_params,
    train_model,
)
from lst_downscaling.utils_downscaling import get_config_value


class CoarseModelTrainer:
    """
    Train the configured regressor at coarse resolution.
    """

    def __init__(self, config: Dict):
        """
        Initialize trainer.

        Parameters:
        -----------
        config : Dict
            Configuration dictionary
        """
        self.config = config
        self.algorithm = get_config_value(config, 'models.algorithm', 'RF')
        self.params = params_from_config(config, self.algorithm)
        self.num_pixels = get_config_value(config, 'sampling.num_pixels', 40000)
        self.seed = get_config_value(config, 'sampling.seed', 0)
        self.train_fraction = get_config_value(config, 'sampling.train_fraction', 0.7)
        self.n_jobs = get_config_value(config, 'models.n_jobs', -1)
        self.scaled_models = get_config_value(config, 'models.scaling.models_needing_scaling', ['SVM'])
        self.covariates = list(COVARIATES)

        print(f"🔧 Coarse Model Trainer initialized:")
        print(f"   Algorithm: {self.algorithm}")
        print(f"   Hyperparameters: {self.params}")
        print(f"   Sample size: {self.num_pixels:,} (seed={self.seed})")

    def sample_points(self, coarse_target: xr.Dataset, coarse_covariates: xr.Dataset,
                      num_pixels: Optional[int] = None) -> pd.DataFrame:
        """
        Draw unique valid coarse pixels.

        A pixel is eligible when the target and every covariate are valid.
        Each row gets an independent uniform ``random`` tag in [0, 1) used
        for the train/test split.

        Returns:
        --------
        pd.DataFrame
            Columns x, y, LST_C, the covariates and random
        """
        num_pixels = num_pixels or self.num_pixels
        stack = coarse_covariates[self.covariates].assign(
            {TARGET_BAND: coarse_target[TARGET_BAND]}
        )
        frame = stack.to_dataframe().reset_index()
        frame = frame.dropna(subset=[TARGET_BAND] + self.covariates).reset_index(drop=True)
        if frame.empty:
            raise EmptySampleError("No coarse pixel has a valid target and all covariates")

        pick_seq, tag_seq = np.random.SeedSequence(self.seed).spawn(2)
        pick_rng = np.random.default_rng(pick_seq)
        tag_rng = np.random.default_rng(tag_seq)

        n = min(num_pixels, len(frame))
        chosen = np.sort(pick_rng.choice(len(frame), size=n, replace=False))
        samples = frame.iloc[chosen].reset_index(drop=True)
        samples['random'] = tag_rng.random(n)

        print(f"   Sampled {n:,} of {len(frame):,} eligible coarse pixels")
        return samples[['x', 'y', TARGET_BAND] + self.covariates + ['random']]

    def split_train_test(self, samples: pd.DataFrame,
                         cutoff: Optional[float] = None) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """Train rows have random < cutoff, test rows random >= cutoff."""
        cutoff = self.train_fraction if cutoff is None else cutoff
        is_train = samples['random'] < cutoff
        train = samples[is_train].reset_index(drop=True)
        test = samples[~is_train].reset_index(drop=True)

        if train.empty or test.empty:
            raise EmptySampleError(
                f"Empty partition: {len(train)} train / {len(test)} test rows "
                f"from {len(samples)} samples"
            )
        print(f"   Split: {len(train):,} train / {len(test):,} test")
        return train, test

    def train(self, train_rows: pd.DataFrame, algorithm: Optional[str] = None,
              params: Optional[Params] = None) -> TrainedModel:
        algorithm = algorithm or self.algorithm
        if params is None:
            params = self.params if algorithm == self.algorithm else resolve_params(algorithm)
        return train_model(
            train_rows, algorithm, params, self.covariates, target=TARGET_BAND,
            seed=self.seed, n_jobs=self.n_jobs,
            scale_features=algorithm in self.scaled_models
        )

    def evaluate_partitions(self, model: TrainedModel, train: pd.DataFrame,
                            test: pd.DataFrame) -> pd.DataFrame:
        table = metrics_table(evaluate(model, train), evaluate(model, test))
        if get_config_value(self.config, 'output.print_model_stats', True):
            print(f"\n📈 {model.algorithm.value} accuracy:")
            for name, row in table.iterrows():
                print(f"   {name:5s}: RMSE={row['rmse']:.3f} °C  MAE={row['mae']:.3f} °C  R²={row['r2']:.3f}")
            print(f"   ΔRMSE (test - train): {table.loc['test', 'delta_rmse']:.3f} °C")
        return table

    def save_model(self, model: TrainedModel, output_path: str):
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(model, output_path)
        print(f"   ✓ Model saved: {output_path}")

    @staticmethod
    def load_model(path: str) -> TrainedModel:
        return joblib.load(path)
