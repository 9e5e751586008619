"""
Residual Corrector for LST downscaling

Computes residuals between the coarse observed target and the coarse
model prediction, interpolates them bilinearly to the fine grid and adds
them to the fine prediction, so the corrected field stays consistent with
the observation wherever the model is biased.
"""

import numpy as np
import xarray as xr
from typing import Dict

from lst_downscaling.feature_aggregator import TARGET_BAND
from lst_downscaling.fine_predictor import PREDICTION_BAND
from lst_downscaling.raster import from_arrays
from lst_downscaling.resampling import disaggregate
from lst_downscaling.utils_downscaling import get_config_value


class ResidualCorrector:
    """
    Residual correction: fine prediction + bilinear(coarse observed - coarse predicted).
    """

    def __init__(self, config: Dict):
        """
        Initialize residual corrector.

        Parameters:
        -----------
        config : Dict
            Configuration dictionary
        """
        self.config = config
        self.interpolation_method = get_config_value(config, 'residual_correction.interpolation', 'bilinear')

        print(f"🔧 Residual Corrector initialized:")
        print(f"   Interpolation method: {self.interpolation_method}")

    def calculate_residuals_coarse(self, coarse_target: xr.Dataset,
                                   coarse_prediction: xr.Dataset) -> xr.Dataset:
        """
        Residual = observed - predicted, valid where both are.

        Returns:
        --------
        xr.Dataset
            Single band RESIDUAL on the coarse grid
        """
        print("\n📊 Calculating coarse-scale residuals...")
        residual = coarse_target[TARGET_BAND] - coarse_prediction[PREDICTION_BAND]
        values = residual.values[~np.isnan(residual.values)]
        if values.size:
            print(f"   Bias (mean residual): {values.mean():.3f} °C")
            print(f"   RMSE: {np.sqrt(np.mean(values ** 2)):.3f} °C")
        return from_arrays({'RESIDUAL': residual}, coarse_target)

    def interpolate_residuals_to_fine(self, coarse_residual: xr.Dataset,
                                      like: xr.Dataset) -> xr.Dataset:
        """Residuals on the fine grid of ``like``."""
        print(f"🗺️ Interpolating residuals to fine grid ({self.interpolation_method})...")
        return disaggregate(coarse_residual, method=self.interpolation_method, like=like)

    def apply_residual_correction(self, fine_prediction: xr.Dataset,
                                  fine_residual: xr.Dataset) -> xr.DataArray:
        """Corrected prediction; invalid where either input is."""
        corrected = fine_prediction[PREDICTION_BAND] + fine_residual['RESIDUAL']
        values = fine_residual['RESIDUAL'].values
        values = values[~np.isnan(values)]
        if values.size:
            print(f"💡 Mean absolute residual correction: {np.abs(values).mean():.3f} °C")
        return corrected

    def full_residual_workflow(self, coarse_target: xr.Dataset, coarse_prediction: xr.Dataset,
                               fine_prediction: xr.Dataset) -> xr.Dataset:
        """
        Complete residual correction.

        Parameters:
        -----------
        coarse_target : xr.Dataset
            Observed LST_C at the coarse scale
        coarse_prediction : xr.Dataset
            Model prediction at the coarse scale
        fine_prediction : xr.Dataset
            Model prediction at the fine scale

        Returns:
        --------
        xr.Dataset
            LST_C_DS (corrected), LST_C_DS_UNCORRECTED and RESIDUAL on the fine grid
        """
        print("\n" + "=" * 70)
        print("🔄 RESIDUAL CORRECTION")
        print("=" * 70)

        coarse_residual = self.calculate_residuals_coarse(coarse_target, coarse_prediction)
        fine_residual = self.interpolate_residuals_to_fine(coarse_residual, fine_prediction)
        corrected = self.apply_residual_correction(fine_prediction, fine_residual)

        return from_arrays({
            'LST_C_DS': corrected,
            'LST_C_DS_UNCORRECTED': fine_prediction[PREDICTION_BAND],
            'RESIDUAL': fine_residual['RESIDUAL'],
        }, fine_prediction)

