"""
Fine-Scale Predictor

Applies a coarse-trained model to every pixel of a covariate raster.
"""

import numpy as np
import xarray as xr
from tqdm import tqdm
from typing import Dict

from lst_downscaling.model_registry import TrainedModel
from lst_downscaling.raster import select_bands
from lst_downscaling.utils_downscaling import get_config_value

PREDICTION_BAND = 'prediction'


class FinePredictor:
    """
    Predict a raster in chunks of valid pixels.

    A pixel is predicted only when all of the model's covariates are valid;
    every other pixel is NaN in the output.
    """

    def __init__(self, config: Dict):
        self.config = config
        self.chunk_size = int(get_config_value(config, 'prediction.chunk_size', 1_000_000))

        print(f"🔧 Fine Predictor initialized:")
        print(f"   Chunk size: {self.chunk_size:,} pixels")

    def prepare_features(self, model: TrainedModel, covariates: xr.Dataset):
        """
        Returns:
        --------
        X : np.ndarray
            (n_pixels, n_covariates) feature matrix in model column order
        valid : np.ndarray
            Boolean mask of pixels with every covariate valid
        """
        bands = select_bands(covariates, model.covariates)
        X = np.stack(
            [bands[name].transpose('y', 'x').values.ravel().astype(float) for name in model.covariates],
            axis=1
        )
        valid = ~np.isnan(X).any(axis=1)
        return X, valid

    def predict_raster(self, model: TrainedModel, covariates: xr.Dataset,
                       show_progress: bool = True) -> xr.Dataset:
        """
        Parameters:
        -----------
        model : TrainedModel
            Fitted model
        covariates : xr.Dataset
            Raster holding every covariate the model was trained on

        Returns:
        --------
        xr.Dataset
            Single band 'prediction' on the covariate grid
        """
        X, valid = self.prepare_features(model, covariates)
        ny, nx = covariates.sizes['y'], covariates.sizes['x']
        predictions = np.full(len(X), np.nan)

        index = np.flatnonzero(valid)
        starts = range(0, len(index), self.chunk_size)
        if show_progress and len(starts) > 1:
            starts = tqdm(starts, desc="   Predicting")
        for start in starts:
            chunk = index[start:start + self.chunk_size]
            predictions[chunk] = model.predict(X[chunk])

        print(f"   Predicted {len(index):,} / {len(X):,} pixels "
              f"({100 * len(index) / max(len(X), 1):.1f}%)")

        out = xr.Dataset(
            {PREDICTION_BAND: (('y', 'x'), predictions.reshape(ny, nx))},
            coords={'y': covariates['y'], 'x': covariates['x']}
        )
        out.attrs = dict(covariates.attrs)
        return out
