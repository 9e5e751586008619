"""
Covariate Synthesizer: 10 m predictors from Sentinel-2 and Sentinel-1

Optical indices mix 10 m bands (B2, B3, B4, B8) with 20 m SWIR bands
(B11, B12). How the two resolutions are reconciled is a pluggable
strategy; every strategy yields the same band names.
"""

import math
from enum import Enum
from typing import Dict, Optional

import xarray as xr

from lst_downscaling.raster import (
    align_to,
    from_arrays,
    normalized_difference,
    raster_scale,
    safe_divide,
    select_bands,
)
from lst_downscaling.resampling import aggregate, disaggregate
from lst_downscaling.scene_collection import SceneCollection
from lst_downscaling.utils_downscaling import get_config_value

OPTICAL_COVARIATES = ['NDVI', 'NDBI', 'BSI', 'MNDWI', 'ALBEDO']
RADAR_COVARIATES = ['VV', 'VH', 'VV_VH_RATIO']
COVARIATES = OPTICAL_COVARIATES + RADAR_COVARIATES

FINE_BANDS = ['B2', 'B3', 'B4', 'B8']
SWIR_BANDS = ['B11', 'B12']
REFLECTANCE_SCALE = 1e-4

# Shortwave broadband albedo weights (B2, B3, B4, B8, B11, B12)
ALBEDO_WEIGHTS = {
    'B2': 0.2266,
    'B3': 0.1236,
    'B4': 0.1573,
    'B8': 0.3417,
    'B11': 0.1170,
    'B12': 0.0338,
}


class IndexStrategy(Enum):
    NATIVE_20M = 'NATIVE_20M'
    BILINEAR_BAND = 'BILINEAR_BAND'
    NEAREST = 'NEAREST'


def scale_reflectance(ds: xr.Dataset) -> xr.Dataset:
    out = ds * REFLECTANCE_SCALE
    out.attrs = dict(ds.attrs)
    return out


def ndvi_10m(fine: xr.Dataset) -> xr.DataArray:
    """NDVI from B8/B4 at 10 m; non-positive denominators are masked."""
    return normalized_difference(fine['B8'], fine['B4'], positive_only=True).rename('NDVI')


def swir_indices(bands: xr.Dataset) -> Dict[str, xr.DataArray]:
    """
    NDBI, BSI, MNDWI and ALBEDO from a dataset holding B2, B3, B4, B8,
    B11 and B12 on one grid. Zero denominators are masked.
    """
    b2, b3, b4, b8 = bands['B2'], bands['B3'], bands['B4'], bands['B8']
    b11, b12 = bands['B11'], bands['B12']

    ndbi = normalized_difference(b11, b8)
    bsi = safe_divide((b11 + b4) - (b8 + b2), (b11 + b4) + (b8 + b2))
    mndwi = normalized_difference(b3, b11)
    albedo = sum(ALBEDO_WEIGHTS[name] * bands[name] for name in ALBEDO_WEIGHTS)

    return {
        'NDBI': ndbi.rename('NDBI'),
        'BSI': bsi.rename('BSI'),
        'MNDWI': mndwi.rename('MNDWI'),
        'ALBEDO': albedo.rename('ALBEDO'),
    }


class NativeSwirStrategy:
    """Aggregate the 10 m bands to the SWIR grid, compute there, bilinear back to 10 m."""

    def __init__(self, max_pixels: int = 4):
        self.max_pixels = max_pixels

    def compute(self, fine: xr.Dataset, swir: xr.Dataset) -> Dict[str, xr.DataArray]:
        coarse = aggregate(select_bands(fine, FINE_BANDS), raster_scale(swir),
                           max_pixels=self.max_pixels)
        coarse = align_to(coarse, swir)
        merged = coarse.merge(select_bands(swir, SWIR_BANDS))
        merged.attrs = dict(swir.attrs)

        indices = from_arrays(swir_indices(merged), merged)
        upsampled = disaggregate(indices, method='bilinear', like=fine)
        return {name: upsampled[name] for name in upsampled.data_vars}


class BilinearBandStrategy:
    """Bilinear-upsample B11/B12 to 10 m, compute at 10 m."""

    method = 'bilinear'

    def compute(self, fine: xr.Dataset, swir: xr.Dataset) -> Dict[str, xr.DataArray]:
        swir_fine = disaggregate(select_bands(swir, SWIR_BANDS), method=self.method, like=fine)
        merged = select_bands(fine, FINE_BANDS).merge(swir_fine)
        return swir_indices(merged)


class NearestStrategy(BilinearBandStrategy):
    """Nearest-align B11/B12 to 10 m, compute at 10 m."""

    method = 'nearest'


INDEX_STRATEGIES = {
    IndexStrategy.NATIVE_20M: NativeSwirStrategy,
    IndexStrategy.BILINEAR_BAND: BilinearBandStrategy,
    IndexStrategy.NEAREST: NearestStrategy,
}


def _to_grid(ds: xr.Dataset, like: xr.Dataset) -> xr.Dataset:
    """Bring a raster onto ``like``'s grid whatever its native scale."""
    scale, target = raster_scale(ds), raster_scale(like)
    if math.isclose(scale, target, rel_tol=1e-6):
        return align_to(ds, like)
    if scale > target:
        return disaggregate(ds, method='bilinear', like=like)
    return align_to(aggregate(ds, target, max_pixels=None), like)


class CovariateSynthesizer:
    """
    Build the eight-band 10 m covariate raster of one summer.
    """

    def __init__(self, config: Dict):
        self.config = config
        self.strategy_name = IndexStrategy(
            get_config_value(config, 'covariates.index_strategy', 'NATIVE_20M')
        )
        if self.strategy_name is IndexStrategy.NATIVE_20M:
            self.strategy = NativeSwirStrategy(
                get_config_value(config, 'covariates.swir_max_pixels', 4)
            )
        else:
            self.strategy = INDEX_STRATEGIES[self.strategy_name]()
        self.use_median = get_config_value(config, 'compositing.use_median', False)
        self.s1_step = get_config_value(config, 'sentinel1.subsample_step', 2)

        print(f"🛰️ Covariate Synthesizer initialized:")
        print(f"   Index strategy: {self.strategy_name.value}")
        print(f"   Sentinel-1 subsample step: {self.s1_step}")

    def compute_optical(self, fine_comp: xr.Dataset, swir_comp: xr.Dataset) -> xr.Dataset:
        """
        Optical indices on the 10 m grid of ``fine_comp``.

        Parameters:
        -----------
        fine_comp : xr.Dataset
            10 m composite with B2, B3, B4, B8 (digital numbers)
        swir_comp : xr.Dataset
            20 m composite with B11, B12 (digital numbers)
        """
        fine = scale_reflectance(select_bands(fine_comp, FINE_BANDS))
        swir = scale_reflectance(select_bands(swir_comp, SWIR_BANDS))

        arrays = {'NDVI': ndvi_10m(fine)}
        arrays.update(self.strategy.compute(fine, swir))
        return from_arrays({name: arrays[name] for name in OPTICAL_COVARIATES}, fine)

    def compute_radar(self, s1_collection: SceneCollection, like: xr.Dataset) -> xr.Dataset:
        """VV, VH and their dB difference from a time-sorted, subsampled S1 stack."""
        stack = s1_collection.sort().subsample(self.s1_step)
        print(f"   Sentinel-1: {len(s1_collection)} scenes -> {len(stack)} after subsampling")

        comp = stack.composite(use_median=False, bands=['VV', 'VH'])
        comp = _to_grid(comp, like)
        return from_arrays({
            'VV': comp['VV'],
            'VH': comp['VH'],
            'VV_VH_RATIO': comp['VV'] - comp['VH'],
        }, like)

    def build_covariates(self, s2_collection: SceneCollection, s1_collection: SceneCollection,
                         like: Optional[xr.Dataset] = None) -> xr.Dataset:
        """
        Returns:
        --------
        xr.Dataset
            Bands in COVARIATES order on the 10 m grid
        """
        print(f"\n🧮 Building covariates from {len(s2_collection)} S2 and {len(s1_collection)} S1 scenes...")
        fine_comp = s2_collection.composite(self.use_median, bands=FINE_BANDS)
        swir_comp = s2_collection.composite(self.use_median, bands=SWIR_BANDS, group='swir')
        if like is not None:
            fine_comp = align_to(fine_comp, like)

        optical = self.compute_optical(fine_comp, swir_comp)
        radar = self.compute_radar(s1_collection, optical)

        covariates = optical.merge(radar)
        covariates.attrs = dict(optical.attrs)
        covariates.attrs['resampling_strategy'] = self.strategy_name.value
        return select_bands(covariates, COVARIATES)
