"""
Feature Aggregator: bring the target and the covariates to the coarse grid

The training target is only ever aggregated (area-weighted mean), never
interpolated. The 10 m covariates are aggregated onto the same coarse
grid and masked to the pixels where the target is valid.
"""

import xarray as xr
from typing import Dict

from lst_downscaling.raster import (
    align_to,
    count_valid,
    from_arrays,
    select_bands,
    update_mask,
    valid_mask,
)
from lst_downscaling.resampling import aggregate
from lst_downscaling.utils_downscaling import get_config_value

TARGET_BAND = 'LST_C'


class FeatureAggregator:
    """
    Aggregate the corrected LST composite and the fine covariates to the
    coarse training scale.
    """

    def __init__(self, config: Dict):
        self.config = config
        self.coarse_scale = get_config_value(config, 'resolution.coarse_scale', 300)
        self.max_pixels = get_config_value(config, 'resampling.max_pixels', 1024)

        print(f"🔧 Feature Aggregator initialized:")
        print(f"   Coarse scale: {self.coarse_scale} m")
        print(f"   Max contributing pixels: {self.max_pixels}")

    def aggregate_target(self, corrected_composite: xr.Dataset,
                         band: str = 'LST_C_CORR') -> xr.Dataset:
        """
        Parameters:
        -----------
        corrected_composite : xr.Dataset
            30 m emissivity-corrected composite
        band : str
            Band holding the temperature

        Returns:
        --------
        xr.Dataset
            Single band LST_C at the coarse scale
        """
        target = from_arrays({TARGET_BAND: corrected_composite[band]}, corrected_composite)
        coarse = aggregate(target, self.coarse_scale, max_pixels=self.max_pixels)
        print(f"   Coarse target: {coarse.sizes['y']} × {coarse.sizes['x']}, "
              f"{count_valid(coarse):,} valid pixels")
        return coarse

    def aggregate_covariates(self, fine_covariates: xr.Dataset,
                             coarse_target: xr.Dataset) -> xr.Dataset:
        """Covariates on the coarse target grid, invalid wherever the target is."""
        coarse = aggregate(fine_covariates, self.coarse_scale, max_pixels=self.max_pixels)
        coarse = align_to(coarse, coarse_target)
        coarse = update_mask(coarse, valid_mask(select_bands(coarse_target, [TARGET_BAND])))
        print(f"   Coarse covariates: {len(coarse.data_vars)} bands")
        return coarse
