"""
Utility functions for the LST downscaling pipeline
"""

import copy
import logging
import math
import numpy as np
import xarray as xr
import yaml
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Sequence
from scipy import sparse
from scipy.ndimage import binary_dilation, map_coordinates

from lst_downscaling.exceptions import ConfigurationError, ResourceExhaustedError


ALGORITHMS = ('GBT', 'RF', 'SVM', 'CART')
INDEX_STRATEGIES = ('NATIVE_20M', 'BILINEAR_BAND', 'NEAREST')

DEFAULT_CONFIG = {
    'study_area': {
        'aoi_bounds': None,           # [xmin, ymin, xmax, ymax] in the projected CRS
        'aoi_lonlat': [20.75, 52.05, 21.30, 52.40],
        'boundary_path': None,
        'crop_to_boundary': True,
    },
    'crs': {
        'use_auto_utm': False,
        'manual_crs': 'EPSG:2178',
    },
    'temporal': {
        'years': [2021, 2022, 2023, 2024, 2025],
        'summer_start_month': 6,
        'summer_end_month': 8,
    },
    'precipitation': {
        'source': 'local',
        'local_path': 'data/precipitation/waw_precipitation.csv',
        'era5_path': 'data/precipitation/era5_land_total_precipitation.nc',
        'threshold_mm': 1.0,
        'threshold_prev_mm': 1.0,
    },
    'cloud_masking': {
        'cloud_cover_max': 20,
        'buffer_m': 0,
    },
    'compositing': {
        'use_median': False,
    },
    'sentinel1': {
        'instrument_mode': 'IW',
        'subsample_step': 2,
    },
    'covariates': {
        'index_strategy': 'NATIVE_20M',
        'swir_max_pixels': 4,
    },
    'resolution': {
        'landsat_scale': 30,
        'sentinel2_swir_scale': 20,
        'coarse_scale': 300,
        'fine_scale': 10,
        'modis_scale': 1000,
    },
    'resampling': {
        'max_pixels': 1024,
    },
    'sampling': {
        'num_pixels': 40000,
        'seed': 0,
        'train_fraction': 0.7,
    },
    'models': {
        'algorithm': 'RF',
        'n_jobs': -1,
        'hyperparameters': {
            'GBT': {'number_of_trees': 500, 'shrinkage': 0.05, 'sampling_rate': 1.0,
                    'max_nodes': 25, 'loss': 'LeastAbsoluteDeviation'},
            'RF': {'number_of_trees': 500, 'variables_per_split': 6, 'min_leaf_population': 1,
                   'bag_fraction': 0.5, 'max_nodes': None},
            'SVM': {'svm_type': 'EPSILON_SVR', 'kernel_type': 'RBF', 'cost': 100, 'gamma': 0.1},
            'CART': {'max_nodes': 100, 'min_leaf_population': 10},
        },
        'scaling': {
            'models_needing_scaling': ['SVM'],
        },
    },
    'prediction': {
        'chunk_size': 1_000_000,
    },
    'residual_correction': {
        'interpolation': 'bilinear',
    },
    'grid_search': {
        'enabled': False,
        'year': 2025,
        'dimensions': 2,
        'n_jobs': 1,
        'grids': {
            'GBT': {'number_of_trees': [100, 300, 500], 'shrinkage': [0.01, 0.02, 0.05],
                    'max_nodes': [10, 25, 50]},
            'RF': {'number_of_trees': [100, 300, 500], 'variables_per_split': [2, 4, 6],
                   'min_leaf_population': [1, 5, 10]},
            'SVM': {'cost': [1, 10, 100], 'gamma': [0.01, 0.1, 1.0]},
            'CART': {'max_nodes': [-1, 50, 100], 'min_leaf_population': [1, 5, 10]},
        },
    },
    'validation': {
        'modis': {
            'enabled': True,
            'max_pixels': 4096,
            'plot': False,
        },
    },
    'output': {
        'export_downscaled': True,
        'export_predictors': False,
        'export_composites': False,
        'print_scene_info': True,
        'print_model_stats': True,
        'print_importance': True,
        'save_models': False,
    },
    'earth_engine': {
        'project': None,
    },
    'pipeline': {
        'n_jobs': 1,
    },
    'paths': {
        'scenes': {
            'landsat': 'data/scenes/landsat',
            'sentinel2': 'data/scenes/sentinel2',
            'sentinel1': 'data/scenes/sentinel1',
            'modis_terra': 'data/scenes/modis_terra',
            'modis_aqua': 'data/scenes/modis_aqua',
        },
        'outputs': 'results_lst_downscaling/downscaled',
        'results': 'results_lst_downscaling',
        'figures': 'figures_lst_downscaling',
        'logs': 'logs_lst_downscaling',
    },
    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        'save_to_file': True,
    },
    'scientific': {
        'add_metadata': True,
        'metadata': {
            'institution': 'Unknown',
            'source': 'Landsat 8/9 C2L2 + Sentinel-1/2 + ML',
            'method': 'Regression downscaling with residual correction',
        },
    },
}


def _deep_merge(base: Dict, override: Dict) -> Dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: str = "lst_downscaling/config_lst_downscaling.yaml") -> Dict:
    """
    Load configuration from YAML file.

    Values missing from the file are filled from DEFAULT_CONFIG, so every
    optional field has exactly one default, resolved here.
    """
    with open(config_path, 'r') as f:
        user_config = yaml.safe_load(f) or {}
    return build_config(user_config)


def build_config(overrides: Optional[Dict] = None) -> Dict:
    """Merge overrides over DEFAULT_CONFIG and validate the result."""
    config = _deep_merge(DEFAULT_CONFIG, overrides or {})
    validate_config(config)
    return config


def validate_config(config: Dict):
    """
    Fail fast on configuration errors.

    Raises:
    -------
    ConfigurationError
        Unknown algorithm or index strategy, bad grid dimensions,
        inconsistent months or scales.
    """
    algorithm = get_config_value(config, 'models.algorithm')
    if algorithm not in ALGORITHMS:
        raise ConfigurationError(
            f"Unknown algorithm '{algorithm}'. Choose one of {list(ALGORITHMS)}"
        )

    strategy = get_config_value(config, 'covariates.index_strategy')
    if strategy not in INDEX_STRATEGIES:
        raise ConfigurationError(
            f"Unknown index strategy '{strategy}'. Choose one of {list(INDEX_STRATEGIES)}"
        )

    dims = get_config_value(config, 'grid_search.dimensions')
    if dims not in (2, 3):
        raise ConfigurationError(f"grid_search.dimensions must be 2 or 3, got {dims}")

    start = get_config_value(config, 'temporal.summer_start_month')
    end = get_config_value(config, 'temporal.summer_end_month')
    if not (1 <= start <= 12 and 1 <= end <= 12 and start <= end):
        raise ConfigurationError(f"Invalid month range [{start}, {end}]")

    if not get_config_value(config, 'temporal.years'):
        raise ConfigurationError("temporal.years must list at least one year")

    fraction = get_config_value(config, 'sampling.train_fraction')
    if not 0.0 < fraction < 1.0:
        raise ConfigurationError(f"sampling.train_fraction must be in (0, 1), got {fraction}")

    for key in ('landsat_scale', 'coarse_scale', 'fine_scale'):
        if get_config_value(config, f'resolution.{key}') <= 0:
            raise ConfigurationError(f"resolution.{key} must be positive")
    if get_config_value(config, 'resolution.coarse_scale') <= get_config_value(config, 'resolution.landsat_scale'):
        raise ConfigurationError("resolution.coarse_scale must be coarser than the Landsat scale")

    if get_config_value(config, 'sentinel1.subsample_step') < 1:
        raise ConfigurationError("sentinel1.subsample_step must be >= 1")

    if get_config_value(config, 'precipitation.source') not in ('local', 'era5'):
        raise ConfigurationError("precipitation.source must be 'local' or 'era5'")

    if get_config_value(config, 'residual_correction.interpolation') not in ('bilinear', 'nearest'):
        raise ConfigurationError("residual_correction.interpolation must be 'bilinear' or 'nearest'")

    if get_config_value(config, 'sampling.num_pixels', 0) < 1:
        raise ConfigurationError("sampling.num_pixels must be >= 1")
    if get_config_value(config, 'prediction.chunk_size', 0) < 1:
        raise ConfigurationError("prediction.chunk_size must be >= 1")

    from lst_downscaling.model_registry import params_from_config
    params_from_config(config, algorithm)


def get_config_value(config: Dict, key_path: str, default=None):
    """
    Get nested config value using dot notation.

    Example: get_config_value(config, 'sampling.seed', 0)
    """
    keys = key_path.split('.')
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def get_projected_crs(config: Dict) -> str:
    """
    Return the projected CRS used for every raster of a run.

    With crs.use_auto_utm the UTM zone is derived from the centroid of
    study_area.aoi_lonlat, otherwise crs.manual_crs is used.
    """
    if not get_config_value(config, 'crs.use_auto_utm', False):
        return get_config_value(config, 'crs.manual_crs', 'EPSG:2178')

    west, south, east, north = get_config_value(config, 'study_area.aoi_lonlat')
    lon = (west + east) / 2.0
    lat = (south + north) / 2.0
    zone = int(math.floor((lon + 180) / 6) + 1)
    prefix = '326' if lat >= 0 else '327'
    return f"EPSG:{prefix}{zone:02d}"


def create_output_directories(config: Dict):
    """Create all output directories specified in config."""
    paths_to_create = [
        'paths.outputs',
        'paths.results',
        'paths.figures',
        'paths.logs'
    ]

    for path_key in paths_to_create:
        path = get_config_value(config, path_key)
        if path:
            Path(path).mkdir(parents=True, exist_ok=True)
            print(f"✓ Created directory: {path}")


def _overlap_matrix(n_fine: int, fine_scale: float, coarse_scale: float) -> sparse.csr_matrix:
    """
    Sparse (n_coarse, n_fine) matrix of overlap lengths along one axis,
    in units of fine pixels. Both grids start at the same origin.
    """
    n_coarse = int(math.ceil(n_fine * fine_scale / coarse_scale - 1e-9))
    starts = np.arange(n_fine) * fine_scale
    ends = starts + fine_scale

    first = np.floor(starts / coarse_scale + 1e-9).astype(int)
    rows, cols, vals = [], [], []
    # a fine pixel is never wider than a coarse one, so it spans at most two cells
    for shift in (0, 1):
        cell = first + shift
        lo = np.maximum(starts, cell * coarse_scale)
        hi = np.minimum(ends, (cell + 1) * coarse_scale)
        overlap = (hi - lo) / fine_scale
        keep = (overlap > 1e-9) & (cell < n_coarse)
        rows.append(cell[keep])
        cols.append(np.arange(n_fine)[keep])
        vals.append(overlap[keep])

    return sparse.csr_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n_coarse, n_fine)
    )


def coarsen_2d(data: np.ndarray, fine_scale: float, coarse_scale: float,
               max_pixels: Optional[int] = None) -> np.ndarray:
    """
    Area-weighted mean of a 2D array onto a coarser grid with the same origin.

    NaN pixels contribute nothing; a coarse cell without any valid
    contributor stays NaN. Works for non-integer scale ratios.

    Parameters:
    -----------
    data : np.ndarray
        2D fine array (row 0 at the top)
    fine_scale : float
        Pixel size of data (m)
    coarse_scale : float
        Target pixel size (m), must be >= fine_scale
    max_pixels : int, optional
        Maximum number of fine pixels allowed to contribute to one coarse cell

    Returns:
    --------
    np.ndarray
        Coarsened array of shape ceil(shape * fine_scale / coarse_scale)
    """
    if data.ndim != 2:
        raise ValueError("Input must be 2D array")
    if coarse_scale < fine_scale:
        raise ValueError(f"Cannot aggregate {fine_scale} m data to finer {coarse_scale} m")

    ny, nx = data.shape
    wy = _overlap_matrix(ny, fine_scale, coarse_scale)
    wx = _overlap_matrix(nx, fine_scale, coarse_scale)

    if max_pixels is not None:
        per_row = np.diff(wy.indptr).max(initial=0)
        per_col = np.diff(wx.indptr).max(initial=0)
        contributing = int(per_row) * int(per_col)
        if contributing > max_pixels:
            raise ResourceExhaustedError(
                f"Aggregating {fine_scale} m to {coarse_scale} m needs {contributing} "
                f"contributing pixels per cell (limit {max_pixels}). "
                f"Retry with a smaller scale ratio or a larger limit."
            )

    valid = ~np.isnan(data)
    filled = np.where(valid, data, 0.0)

    numerator = (wx @ (wy @ filled).T).T
    weights = (wx @ (wy @ valid.astype(float)).T).T

    result = np.full(numerator.shape, np.nan)
    np.divide(numerator, weights, out=result, where=weights > 0)
    return result


def refine_2d(data: np.ndarray, rows: np.ndarray, cols: np.ndarray,
              method: str = 'bilinear') -> np.ndarray:
    """
    Sample a 2D coarse array at fractional pixel positions.

    Parameters:
    -----------
    data : np.ndarray
        2D coarse array
    rows, cols : np.ndarray
        1D fractional row/column indices of the target pixel centres
    method : str
        'bilinear' or 'nearest'. Positions outside the array take the
        edge values.

    Returns:
    --------
    np.ndarray
        Array of shape (len(rows), len(cols))
    """
    if data.ndim != 2:
        raise ValueError("Input must be 2D array")

    ny, nx = data.shape
    valid = ~np.isnan(data)

    if method == 'nearest':
        ri = np.clip(np.floor(rows + 0.5).astype(int), 0, ny - 1)
        ci = np.clip(np.floor(cols + 0.5).astype(int), 0, nx - 1)
        return data[np.ix_(ri, ci)].astype(float)

    if method != 'bilinear':
        raise ValueError(f"Unknown interpolation method: {method}")

    rr, cc = np.meshgrid(rows, cols, indexing='ij')
    coords = np.array([rr.ravel(), cc.ravel()])

    # Interpolate values and validity separately so masked neighbours
    # drop out of the weighting instead of poisoning it
    values = map_coordinates(np.where(valid, data, 0.0), coords, order=1, mode='nearest')
    weights = map_coordinates(valid.astype(float), coords, order=1, mode='nearest')

    result = np.full(values.shape, np.nan)
    np.divide(values, weights, out=result, where=weights > 1e-12)
    return result.reshape(rr.shape)


def circular_footprint(radius_px: float) -> np.ndarray:
    """Boolean disk of the given radius in pixels."""
    r = int(math.floor(radius_px))
    yy, xx = np.ogrid[-r:r + 1, -r:r + 1]
    return (yy ** 2 + xx ** 2) <= radius_px ** 2


def dilate_2d(mask: np.ndarray, radius_m: float, scale: float) -> np.ndarray:
    """
    Circular maximum filter of a boolean mask.

    Parameters:
    -----------
    mask : np.ndarray
        2D boolean array (True = flagged)
    radius_m : float
        Kernel radius in metres
    scale : float
        Pixel size in metres
    """
    if radius_m <= 0:
        return mask.copy()
    footprint = circular_footprint(radius_m / scale)
    return binary_dilation(mask, structure=footprint)


def add_metadata_to_dataset(ds: xr.Dataset, config: Dict, step_name: str) -> xr.Dataset:
    """
    Add provenance metadata to an output Dataset.

    Parameters:
    -----------
    ds : xr.Dataset
        Dataset to add metadata to
    config : Dict
        Configuration dictionary
    step_name : str
        Name of processing step (for tracking)

    Returns:
    --------
    xr.Dataset
        Copy of the dataset with metadata
    """
    import platform

    if not get_config_value(config, 'scientific.add_metadata', True):
        return ds

    ds = ds.copy()
    ds.attrs['title'] = 'Downscaled Summer Land Surface Temperature'
    ds.attrs['institution'] = get_config_value(config, 'scientific.metadata.institution', 'Unknown')
    ds.attrs['source'] = get_config_value(config, 'scientific.metadata.source', '')
    ds.attrs['method'] = get_config_value(config, 'scientific.metadata.method', '')
    ds.attrs['processing_step'] = step_name
    ds.attrs['creation_date'] = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    ds.attrs['python_version'] = platform.python_version()
    ds.attrs['random_seed'] = get_config_value(config, 'sampling.seed', 0)

    if 'x' in ds.coords:
        ds['x'].attrs['units'] = 'm'
        ds['x'].attrs['long_name'] = 'Easting'
    if 'y' in ds.coords:
        ds['y'].attrs['units'] = 'm'
        ds['y'].attrs['long_name'] = 'Northing'

    return ds


def calculate_statistics(data: np.ndarray) -> Dict:
    """
    Calculate summary statistics for an array, ignoring NaNs.

    Returns dictionary with mean, std, min, max, median, etc.
    """
    data = np.asarray(data, dtype=float)
    valid_data = data[~np.isnan(data)]

    if len(valid_data) == 0:
        return {
            'mean': np.nan,
            'std': np.nan,
            'min': np.nan,
            'max': np.nan,
            'median': np.nan,
            'q25': np.nan,
            'q75': np.nan,
            'n_valid': 0,
            'n_total': int(data.size),
            'pct_valid': 0.0
        }

    return {
        'mean': float(np.mean(valid_data)),
        'std': float(np.std(valid_data)),
        'min': float(np.min(valid_data)),
        'max': float(np.max(valid_data)),
        'median': float(np.median(valid_data)),
        'q25': float(np.percentile(valid_data, 25)),
        'q75': float(np.percentile(valid_data, 75)),
        'n_valid': int(len(valid_data)),
        'n_total': int(data.size),
        'pct_valid': float(100 * len(valid_data) / data.size)
    }


def print_statistics(data: np.ndarray, name: str = "Data"):
    """Pretty print data statistics."""
    stats = calculate_statistics(data)
    print(f"\n📊 Statistics for {name}:")
    if stats['n_valid'] == 0:
        print(f"   No valid pixels (0 / {stats['n_total']:,})")
        return
    print(f"   Mean: {stats['mean']:.4f} ± {stats['std']:.4f}")
    print(f"   Range: [{stats['min']:.4f}, {stats['max']:.4f}]")
    print(f"   Median: {stats['median']:.4f} (Q25={stats['q25']:.4f}, Q75={stats['q75']:.4f})")
    print(f"   Valid: {stats['n_valid']:,} / {stats['n_total']:,} ({stats['pct_valid']:.1f}%)")


def setup_logging(config: Dict, log_name: str = 'pipeline') -> logging.Logger:
    """Setup logging configuration."""
    log_level = get_config_value(config, 'logging.level', 'INFO')
    log_format = get_config_value(config, 'logging.format',
                                  '%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    save_to_file = get_config_value(config, 'logging.save_to_file', True)

    # Create logger
    logger = logging.getLogger(log_name)
    logger.setLevel(getattr(logging, log_level))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, log_level))
    console_formatter = logging.Formatter(log_format)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File handler
    if save_to_file:
        log_dir = Path(get_config_value(config, 'paths.logs', 'logs_lst_downscaling'))
        log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        log_filename = log_dir / f'{log_name}_{timestamp}.log'

        file_handler = logging.FileHandler(log_filename)
        file_handler.setLevel(getattr(logging, log_level))
        file_handler.setFormatter(console_formatter)
        logger.addHandler(file_handler)

        logger.info(f"Logging to file: {log_filename}")

    return logger


def format_timestamps(times: Sequence) -> list:
    """Format acquisition times as 'YYYY-MM-DD HH:MM:SS' strings."""
    return [t.strftime('%Y-%m-%d %H:%M:%S') for t in times]
