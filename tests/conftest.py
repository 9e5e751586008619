"""
Shared synthetic rasters and scenes.

Every sensor is generated from one smooth vegetation pattern sampled at the
sensor's own grid, so LST and the covariates are related the same way at
every scale.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from lst_downscaling.lst_retrieval import SR_OFFSET, SR_SCALE, ST_OFFSET, ST_SCALE
from lst_downscaling.raster import create_raster, grid_template
from lst_downscaling.scene_collection import Scene, SceneCollection
from lst_downscaling.utils_downscaling import build_config

CRS = 'EPSG:32634'
AOI = (600000.0, 5799900.0, 603000.0, 5802900.0)     # multiples of the 300 m coarse scale
YEAR = 2023
SUMMER_DAYS = ['2023-06-10', '2023-07-04', '2023-08-15']

CLEAR_QA = 21824                       # clear, all confidences low
CLOUD_QA = CLEAR_QA | (1 << 3) | (3 << 8)
WATER_QA = CLEAR_QA | (1 << 7)


def vegetation(scale):
    """Smooth pattern in [0, 1] sampled at the pixel centres of the AOI grid."""
    template = grid_template(AOI, scale, CRS)
    xx, yy = np.meshgrid(template['x'].values - AOI[0], template['y'].values - AOI[1])
    return 0.5 + 0.25 * np.sin(xx / 400.0) + 0.2 * np.cos(yy / 550.0)


def _raster(bands, scale):
    return create_raster(bands, scale, CRS, origin=(AOI[0], AOI[3]), bounds=AOI)


def make_landsat_scene(day, spacecraft='LANDSAT_8', cloud_cover=5.0, qa=None):
    v = vegetation(30)
    kelvin = 290.0 + 15.0 * (1.0 - v)
    red = 0.04 + 0.06 * (1.0 - v)
    nir = 0.15 + 0.35 * v
    bands = {
        'ST_B10': (kelvin - ST_OFFSET) / ST_SCALE,
        'SR_B4': (red - SR_OFFSET) / SR_SCALE,
        'SR_B5': (nir - SR_OFFSET) / SR_SCALE,
        'ST_ATRAN': np.full(v.shape, 9000.0),
        'ST_URAD': np.full(v.shape, 1000.0),
        'ST_DRAD': np.full(v.shape, 1600.0),
        'ST_TRAD': (8.0 + 2.0 * (1.0 - v)) / 1e-3,
        'QA_PIXEL': np.full(v.shape, CLEAR_QA, dtype=np.int64) if qa is None else qa,
    }
    return Scene(
        data=_raster(bands, 30),
        time=pd.Timestamp(f'{day} 09:41:12'),
        sensor='landsat',
        properties={'CLOUD_COVER': cloud_cover, 'SPACECRAFT_ID': spacecraft}
    )


def make_sentinel2_scene(day, cloudy=3.0, scl=None):
    v10 = vegetation(10)
    v20 = vegetation(20)
    fine = {
        'B2': (0.04 + 0.02 * (1.0 - v10)) * 1e4,
        'B3': (0.06 + 0.03 * (1.0 - v10)) * 1e4,
        'B4': (0.04 + 0.08 * (1.0 - v10)) * 1e4,
        'B8': (0.20 + 0.30 * v10) * 1e4,
    }
    swir = {
        'B11': (0.15 + 0.10 * (1.0 - v20)) * 1e4,
        'B12': (0.10 + 0.10 * (1.0 - v20)) * 1e4,
        'SCL': np.full(v20.shape, 4, dtype=np.int64) if scl is None else scl,
    }
    return Scene(
        data=_raster(fine, 10),
        time=pd.Timestamp(f'{day} 10:00:31'),
        sensor='sentinel2',
        properties={'CLOUDY_PIXEL_PERCENTAGE': cloudy},
        aux={'swir': _raster(swir, 20)}
    )


def make_sentinel1_scene(day, mode='IW'):
    v = vegetation(10)
    bands = {'VV': -10.0 - 3.0 * v, 'VH': -17.0 - 2.0 * v}
    return Scene(
        data=_raster(bands, 10),
        time=pd.Timestamp(f'{day} 16:30:05'),
        sensor='sentinel1',
        properties={'instrumentMode': mode}
    )


def make_modis_scene(day, sensor='modis_terra', offset_c=0.0):
    template = grid_template(AOI, 1000, CRS)
    shape = (template.sizes['y'], template.sizes['x'])
    kelvin = np.full(shape, 300.0 + offset_c)
    bands = {
        'LST_Day_1km': kelvin / 0.02,
        'QC_Day': np.zeros(shape, dtype=np.int64),
    }
    return Scene(data=_raster(bands, 1000), time=pd.Timestamp(f'{day} 10:30:00'), sensor=sensor)


@pytest.fixture
def landsat_collection():
    spacecraft = ['LANDSAT_8', 'LANDSAT_9', 'LANDSAT_8']
    return SceneCollection([make_landsat_scene(d, s) for d, s in zip(SUMMER_DAYS, spacecraft)],
                           sensor='landsat')


@pytest.fixture
def sentinel2_collection():
    return SceneCollection([make_sentinel2_scene(d) for d in SUMMER_DAYS], sensor='sentinel2')


@pytest.fixture
def sentinel1_collection():
    return SceneCollection([make_sentinel1_scene(d) for d in SUMMER_DAYS], sensor='sentinel1')


@pytest.fixture
def test_config(tmp_path):
    """Small, fast configuration writing into tmp_path."""
    return build_config({
        'study_area': {'aoi_bounds': list(AOI), 'crop_to_boundary': False},
        'crs': {'manual_crs': CRS},
        'temporal': {'years': [YEAR]},
        'sampling': {'num_pixels': 500, 'seed': 7},
        'models': {
            'algorithm': 'RF',
            'n_jobs': 1,
            'hyperparameters': {'RF': {'number_of_trees': 20}},
        },
        'validation': {'modis': {'enabled': False}},
        'output': {'print_scene_info': False, 'print_importance': False},
        'grid_search': {
            'year': YEAR,
            'grids': {
                'RF': {'number_of_trees': [5, 10, 15], 'variables_per_split': [2, 4, 6],
                       'min_leaf_population': [1, 2, 3]},
                'GBT': {'number_of_trees': [5, 10, 15], 'shrinkage': [0.05, 0.1, 0.2],
                        'max_nodes': [4, 8, 16]},
            },
        },
        'paths': {
            'outputs': str(tmp_path / 'downscaled'),
            'results': str(tmp_path / 'results'),
            'figures': str(tmp_path / 'figures'),
            'logs': str(tmp_path / 'logs'),
        },
        'logging': {'save_to_file': False},
    })
