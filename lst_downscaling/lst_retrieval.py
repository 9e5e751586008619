"""
Land surface temperature retrieval from Landsat 8/9 Collection 2 Level-2

Two paths per scene:
- Standard: affine calibration of the ST_B10 product to Celsius (LST_C)
- Emissivity-corrected: NDVI-based vegetation/soil emissivity mixing,
  water override, single-channel radiative transfer inversion and a
  spacecraft-specific Planck inversion (LST_C_CORR)
"""

import numpy as np
import xarray as xr
from typing import Dict, Optional, Sequence, Tuple

from lst_downscaling.cloud_masking import LANDSAT_QA_BAND, landsat_water_mask
from lst_downscaling.raster import (
    bounds_mask,
    clip_to_boundary,
    from_arrays,
    normalized_difference,
    safe_divide,
    update_mask,
)
from lst_downscaling.scene_collection import Scene, SceneCollection
from lst_downscaling.utils_downscaling import get_config_value

KELVIN_OFFSET = 273.15

# Collection 2 Level-2 scaling
ST_SCALE = 0.00341802
ST_OFFSET = 149.0
SR_SCALE = 0.0000275
SR_OFFSET = -0.2
ATRAN_SCALE = 1e-4
RADIANCE_SCALE = 1e-3

EMISSIVITY_VEGETATION = 0.987
EMISSIVITY_SOIL = 0.971
EMISSIVITY_WATER = 0.99

# TIRS band 10 thermal constants (K1, K2)
PLANCK_CONSTANTS = {
    'LANDSAT_8': (774.8853, 1321.0789),
    'LANDSAT_9': (799.0284, 1329.2405),
}


def standard_lst(ds: xr.Dataset) -> xr.DataArray:
    """ST_B10 digital numbers to Celsius."""
    lst = ds['ST_B10'] * ST_SCALE + ST_OFFSET - KELVIN_OFFSET
    return lst.rename('LST_C')


def landsat_ndvi(ds: xr.Dataset) -> xr.DataArray:
    """NDVI from scaled SR_B5 (NIR) and SR_B4 (red). Zero denominators are masked."""
    nir = ds['SR_B5'] * SR_SCALE + SR_OFFSET
    red = ds['SR_B4'] * SR_SCALE + SR_OFFSET
    return normalized_difference(nir, red).rename('NDVI')


def zonal_percentiles(da: xr.DataArray, percentiles: Sequence[float] = (2, 98),
                      region: Optional[xr.DataArray] = None) -> Tuple[float, ...]:
    """
    Percentiles of the valid pixels of ``da`` inside ``region``.

    Returns NaNs when no pixel is valid.
    """
    values = da.where(region) if region is not None else da
    values = values.values[~np.isnan(values.values)]
    if values.size == 0:
        return tuple(np.nan for _ in percentiles)
    return tuple(float(v) for v in np.percentile(values, percentiles))


def vegetation_fraction(ndvi: xr.DataArray, p_low: float, p_high: float) -> xr.DataArray:
    """
    Pv = clamp((NDVI - p_low) / (p_high - p_low), 0, 1) ** 2

    A degenerate range (p_high <= p_low or NaN) masks every pixel.
    """
    if not (np.isfinite(p_low) and np.isfinite(p_high)) or p_high <= p_low:
        return xr.full_like(ndvi, np.nan, dtype=float).rename('PV')
    pv = ((ndvi - p_low) / (p_high - p_low)).clip(0.0, 1.0) ** 2
    return pv.rename('PV')


def mixed_emissivity(pv: xr.DataArray, water: Optional[np.ndarray] = None) -> xr.DataArray:
    """Vegetation/soil mixing by Pv, with a fixed emissivity over water."""
    emis = pv * EMISSIVITY_VEGETATION + (1.0 - pv) * EMISSIVITY_SOIL
    if water is not None:
        emis = xr.where(water, EMISSIVITY_WATER, emis)
    return emis.rename('EMIS')


def planck_constants(spacecraft: Optional[str]) -> Tuple[float, float]:
    """(K1, K2) for LANDSAT_8; every other spacecraft gets the LANDSAT_9 pair."""
    if spacecraft == 'LANDSAT_8':
        return PLANCK_CONSTANTS['LANDSAT_8']
    return PLANCK_CONSTANTS['LANDSAT_9']


def surface_radiance(ds: xr.Dataset, emissivity: xr.DataArray) -> xr.DataArray:
    """
    Invert the single-channel radiative transfer equation:

        Ls = (TRAD - URAD - ATRAN * (1 - e) * DRAD) / (ATRAN * e)

    Non-positive radiances are masked.
    """
    atran = ds['ST_ATRAN'] * ATRAN_SCALE
    urad = ds['ST_URAD'] * RADIANCE_SCALE
    drad = ds['ST_DRAD'] * RADIANCE_SCALE
    trad = ds['ST_TRAD'] * RADIANCE_SCALE

    numerator = trad - urad - atran * (1.0 - emissivity) * drad
    radiance = safe_divide(numerator, atran * emissivity)
    return radiance.where(radiance > 0).rename('LS')


def corrected_lst(ds: xr.Dataset, emissivity: xr.DataArray,
                  spacecraft: Optional[str]) -> xr.DataArray:
    """Emissivity-corrected LST in Celsius via Planck inversion."""
    k1, k2 = planck_constants(spacecraft)
    radiance = surface_radiance(ds, emissivity)
    lst_k = k2 / np.log(1.0 + k1 / radiance)
    return (lst_k - KELVIN_OFFSET).rename('LST_C_CORR')


class LSTRetriever:
    """
    Map both retrieval paths over a Landsat collection and composite them.
    """

    def __init__(self, config: Dict, region_bounds: Optional[Sequence[float]] = None,
                 boundary=None):
        self.config = config
        self.region_bounds = region_bounds
        self.boundary = boundary
        self.use_median = get_config_value(config, 'compositing.use_median', False)

        print(f"🌡️ LST Retriever initialized:")
        print(f"   Composite: {'median' if self.use_median else 'mean'}")

    def add_standard_lst(self, scene: Scene) -> Scene:
        data = scene.data.assign(LST_C=standard_lst(scene.data))
        return scene.replace(data=data)

    def add_emissivity(self, scene: Scene) -> Scene:
        ds = scene.data
        ndvi = landsat_ndvi(ds)
        region = bounds_mask(ds, self.region_bounds) if self.region_bounds is not None else None
        p_low, p_high = zonal_percentiles(ndvi, (2, 98), region)

        pv = vegetation_fraction(ndvi, p_low, p_high)
        water = None
        if LANDSAT_QA_BAND in ds:
            water = xr.DataArray(
                landsat_water_mask(ds[LANDSAT_QA_BAND].transpose('y', 'x').values),
                coords={'y': ds['y'], 'x': ds['x']}, dims=('y', 'x')
            )
        emis = mixed_emissivity(pv, water)

        props = dict(scene.properties)
        props['NDVI_P2'] = p_low
        props['NDVI_P98'] = p_high
        return scene.replace(data=ds.assign(NDVI_L=ndvi, PV=pv, EMIS=emis), properties=props)

    def add_corrected_lst(self, scene: Scene) -> Scene:
        if 'EMIS' not in scene.data:
            scene = self.add_emissivity(scene)
        lst = corrected_lst(scene.data, scene.data['EMIS'], scene.get('SPACECRAFT_ID'))
        return scene.replace(data=scene.data.assign(LST_C_CORR=lst))

    def retrieve(self, collection: SceneCollection) -> Tuple[SceneCollection, SceneCollection]:
        """
        Returns:
        --------
        Tuple[SceneCollection, SceneCollection]
            Standard (band LST_C_STD) and corrected (band LST_C_CORR) collections
        """
        standard = collection.map(self.add_standard_lst).map(
            lambda s: s.replace(data=from_arrays({'LST_C_STD': s.data['LST_C']}, s.data))
        )
        corrected = collection.map(self.add_corrected_lst).map(
            lambda s: s.replace(data=from_arrays({'LST_C_CORR': s.data['LST_C_CORR']}, s.data))
        )
        return standard, corrected

    def composites(self, collection: SceneCollection) -> Tuple[xr.Dataset, xr.Dataset]:
        """
        Standard and corrected composites, masked where no scene had a
        valid standard LST and clipped to the output boundary.
        """
        print(f"\n🛰️ Compositing {len(collection)} Landsat scenes...")
        standard, corrected = self.retrieve(collection)

        count = standard.count(bands=['LST_C_STD'])
        quality = count >= 1

        std_comp = update_mask(standard.composite(self.use_median), quality)
        corr_comp = update_mask(corrected.composite(self.use_median), quality)

        if self.boundary is not None:
            std_comp = clip_to_boundary(std_comp, self.boundary)
            corr_comp = clip_to_boundary(corr_comp, self.boundary)
        return std_comp, corr_comp
