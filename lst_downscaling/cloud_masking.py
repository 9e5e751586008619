"""
Cloud masking for Landsat 8/9 (QA_PIXEL bit flags), Sentinel-2 (SCL classes)
and MODIS (QC_Day), with optional circular buffering of cloud cores.

Every masker exposes ``mask(scene) -> Scene``: pixels failing any exclusion
condition become invalid in every data band.
"""

import numpy as np
import xarray as xr

from lst_downscaling.raster import raster_scale, update_mask
from lst_downscaling.resampling import disaggregate
from lst_downscaling.scene_collection import Scene
from lst_downscaling.utils_downscaling import dilate_2d

LANDSAT_QA_BAND = 'QA_PIXEL'
SCL_BAND = 'SCL'
MODIS_QC_BAND = 'QC_Day'

# QA_PIXEL single-bit flags
FILL_BIT = 0
DILATED_CLOUD_BIT = 1
CIRRUS_BIT = 2
CLOUD_BIT = 3
CLOUD_SHADOW_BIT = 4
SNOW_BIT = 5
WATER_BIT = 7

# QA_PIXEL 2-bit confidence fields: cloud, cloud shadow, snow/ice, cirrus
CONFIDENCE_SHIFTS = (8, 10, 12, 14)
MEDIUM_CONFIDENCE = 2

EXCLUDED_FLAGS = sum(1 << b for b in (FILL_BIT, DILATED_CLOUD_BIT, CIRRUS_BIT,
                                      CLOUD_BIT, CLOUD_SHADOW_BIT, SNOW_BIT))
CLOUD_CORE_FLAGS = sum(1 << b for b in (DILATED_CLOUD_BIT, CLOUD_BIT,
                                        CLOUD_SHADOW_BIT, CIRRUS_BIT))

# SCL: cloud shadow, cloud medium probability, cloud high probability, thin cirrus
SCL_CLOUD_CLASSES = (3, 8, 9, 10)


def qa_to_int(qa) -> np.ndarray:
    """
    Integer view of a quality band. Missing values (NaN after alignment)
    are read as fill.
    """
    values = np.asarray(qa)
    if np.issubdtype(values.dtype, np.floating):
        values = np.where(np.isnan(values), 1 << FILL_BIT, values)
    return values.astype(np.int64)


def landsat_clear_mask(qa) -> np.ndarray:
    """True where no exclusion flag is set and every confidence field is below medium."""
    qa = qa_to_int(qa)
    clear = (qa & EXCLUDED_FLAGS) == 0
    for shift in CONFIDENCE_SHIFTS:
        clear &= (qa & (3 << shift)) < (MEDIUM_CONFIDENCE << shift)
    return clear


def landsat_cloud_core(qa) -> np.ndarray:
    return (qa_to_int(qa) & CLOUD_CORE_FLAGS) != 0


def landsat_water_mask(qa) -> np.ndarray:
    return (qa_to_int(qa) & (1 << WATER_BIT)) != 0


def scl_cloud_core(scl) -> np.ndarray:
    values = np.asarray(scl, dtype=float)
    return np.isin(np.nan_to_num(values, nan=0.0), SCL_CLOUD_CLASSES)


class CloudMasker:
    """Base class: subclasses implement ``mask``."""

    def __init__(self, buffer_m: float = 0.0):
        if buffer_m < 0:
            raise ValueError(f"Cloud buffer must be >= 0, got {buffer_m}")
        self.buffer_m = float(buffer_m)

    def mask(self, scene: Scene) -> Scene:
        raise NotImplementedError


class LandsatQAMasker(CloudMasker):
    """
    Landsat Collection 2 Level-2 QA_PIXEL mask.

    The full flag/confidence predicate always applies. With a buffer, the
    cloud core (dilated cloud, cloud, shadow, cirrus) is additionally grown
    by a circular kernel at the native 30 m scale.
    """

    def __init__(self, buffer_m: float = 0.0, scale: float = 30.0):
        super().__init__(buffer_m)
        self.scale = scale

    def validity(self, qa) -> np.ndarray:
        valid = landsat_clear_mask(qa)
        if self.buffer_m > 0:
            valid &= ~dilate_2d(landsat_cloud_core(qa), self.buffer_m, self.scale)
        return valid

    def mask(self, scene: Scene) -> Scene:
        qa = scene.data[LANDSAT_QA_BAND].transpose('y', 'x').values
        return scene.replace(data=update_mask(scene.data, self.validity(qa)))


class SCLMasker(CloudMasker):
    """
    Sentinel-2 Scene Classification Layer mask.

    SCL is read from the 20 m auxiliary group. The 20 m bands are masked
    with the core at 20 m; the 10 m bands with the core nearest-aligned to
    10 m. A buffer grows each core at its own scale.
    """

    def __init__(self, buffer_m: float = 0.0, group: str = 'swir'):
        super().__init__(buffer_m)
        self.group = group

    def _grow(self, core: np.ndarray, scale: float) -> np.ndarray:
        if self.buffer_m > 0:
            return dilate_2d(core, self.buffer_m, scale)
        return core

    def mask(self, scene: Scene) -> Scene:
        swir = scene.aux[self.group]
        swir_scale = raster_scale(swir)
        core_swir = scl_cloud_core(swir[SCL_BAND].transpose('y', 'x').values)

        core_ds = xr.Dataset(
            {'core': (('y', 'x'), core_swir.astype(float))},
            coords={'y': swir['y'], 'x': swir['x']}, attrs=dict(swir.attrs)
        )
        core_fine = disaggregate(core_ds, method='nearest', like=scene.data)['core'].values > 0.5

        fine = update_mask(scene.data, ~self._grow(core_fine, raster_scale(scene.data)))
        swir = update_mask(swir, ~self._grow(core_swir, swir_scale))

        aux = dict(scene.aux)
        aux[self.group] = swir
        return scene.replace(data=fine, aux=aux)


class ModisQCMasker(CloudMasker):
    """MODIS daily LST QC mask: keep best/good quality (QC_Day & 3 <= 1)."""

    def mask(self, scene: Scene) -> Scene:
        qc_values = scene.data[MODIS_QC_BAND].transpose('y', 'x').values
        qc = np.asarray(qc_values, dtype=float)
        good = np.zeros(qc.shape, dtype=bool)
        present = ~np.isnan(qc)
        good[present] = (qc[present].astype(np.int64) & 3) <= 1

        if self.buffer_m > 0:
            good &= ~dilate_2d(~good, self.buffer_m, raster_scale(scene.data))
        return scene.replace(data=update_mask(scene.data, good))
