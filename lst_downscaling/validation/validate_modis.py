"""
MODIS Validation for retrieved Landsat LST

Compares the emissivity-corrected 30 m Landsat composite, aggregated to
1 km, against MODIS Terra (MOD11A1) and Aqua (MYD11A1) daytime LST
composited over the same acquisition days.
"""

import numpy as np
import pandas as pd
import xarray as xr
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from pathlib import Path
from typing import Dict, Optional, Sequence
from scipy.stats import pearsonr

from lst_downscaling.cloud_masking import ModisQCMasker
from lst_downscaling.dry_day_filter import build_dry_day_filter
from lst_downscaling.evaluation import compute_metrics
from lst_downscaling.exceptions import DegenerateTargetError, EmptySampleError
from lst_downscaling.raster import (
    align_to,
    clip_to_boundary,
    from_arrays,
    grid_template,
    raster_crs,
    raster_scale,
)
from lst_downscaling.resampling import aggregate
from lst_downscaling.scene_collection import Scene, SceneCollection
from lst_downscaling.utils_downscaling import get_config_value

MODIS_LST_SCALE = 0.02
MODIS_BAND = 'LST_MODIS'


def _log(logger, message: str, level: str = 'info'):
    if logger:
        getattr(logger, level)(message)
    else:
        print(message)


def modis_lst(scene: Scene) -> Scene:
    """LST_Day_1km digital numbers to Celsius (band LST_MODIS)."""
    lst = scene.data['LST_Day_1km'] * MODIS_LST_SCALE - 273.15
    return scene.replace(data=from_arrays({MODIS_BAND: lst}, scene.data))


def build_modis_composite(collection: SceneCollection, landsat_dates: Sequence,
                          template: xr.Dataset, use_median: bool = False,
                          buffer_m: float = 0.0, boundary=None) -> Optional[xr.Dataset]:
    """
    QC-masked MODIS LST composite over the Landsat acquisition days.

    Parameters:
    -----------
    collection : SceneCollection
        Daily MODIS scenes with LST_Day_1km and QC_Day
    landsat_dates : Sequence
        Days with a Landsat acquisition
    template : xr.Dataset
        1 km grid the composite is placed on

    Returns:
    --------
    xr.Dataset or None
        Band LST_MODIS, or None when no MODIS scene falls on a Landsat day
    """
    matching = collection.filter(build_dry_day_filter(landsat_dates))
    if len(matching) == 0:
        return None

    masker = ModisQCMasker(buffer_m)
    scenes = matching.map(masker.mask).map(modis_lst)
    scenes = scenes.map(lambda s: s.replace(data=align_to(s.data, template)))
    composite = scenes.composite(use_median=use_median)
    return clip_to_boundary(composite, boundary)


def validate_against_modis(corrected_composite: xr.Dataset, modis_composite: xr.Dataset,
                           max_pixels: int = 4096, band: str = 'LST_C_CORR',
                           logger=None, label: str = 'MODIS') -> Dict:
    """
    Metrics between the aggregated Landsat LST and a MODIS composite on
    jointly valid 1 km pixels.

    Returns:
    --------
    Dict
        rmse, mae, r2, n, bias (Landsat - MODIS) and pearson_r, plus the
        paired arrays under 'landsat' and 'modis'
    """
    if raster_crs(corrected_composite) != raster_crs(modis_composite):
        raise ValueError("Landsat and MODIS composites must share a CRS")

    landsat_1km = aggregate(
        from_arrays({band: corrected_composite[band]}, corrected_composite),
        raster_scale(modis_composite), max_pixels=max_pixels
    )
    landsat_1km = align_to(landsat_1km, modis_composite)

    landsat = landsat_1km[band].values.ravel()
    modis = modis_composite[MODIS_BAND].values.ravel()
    both = ~np.isnan(landsat) & ~np.isnan(modis)
    landsat, modis = landsat[both], modis[both]

    metrics = compute_metrics(modis, landsat)
    metrics['bias'] = float(np.mean(landsat - modis))
    metrics['pearson_r'] = float(pearsonr(landsat, modis)[0]) if landsat.size > 2 else float('nan')

    _log(logger, f"   {label}: RMSE={metrics['rmse']:.3f} °C  MAE={metrics['mae']:.3f} °C  "
                 f"R²={metrics['r2']:.3f}  bias={metrics['bias']:+.3f} °C  (n={metrics['n']})")
    metrics['landsat'] = landsat
    metrics['modis'] = modis
    return metrics


def plot_modis_scatter(results: Dict[str, Dict], year: int, figures_dir: str) -> str:
    """Landsat vs MODIS scatter, one panel per MODIS platform."""
    figures_dir = Path(figures_dir)
    figures_dir.mkdir(parents=True, exist_ok=True)

    fig, axes = plt.subplots(1, len(results), figsize=(6 * len(results), 5.5), squeeze=False)
    for ax, (platform, res) in zip(axes[0], results.items()):
        ax.scatter(res['modis'], res['landsat'], s=6, alpha=0.5)
        lo = float(min(res['modis'].min(), res['landsat'].min()))
        hi = float(max(res['modis'].max(), res['landsat'].max()))
        ax.plot([lo, hi], [lo, hi], 'k--', linewidth=1)
        ax.set_xlabel(f'MODIS {platform} LST (°C)')
        ax.set_ylabel('Landsat corrected LST, 1 km (°C)')
        ax.set_title(f"{platform} {year}: RMSE={res['rmse']:.2f} °C, R²={res['r2']:.2f}")
        ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plot_path = figures_dir / f"modis_validation_{year}.png"
    plt.savefig(plot_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    return str(plot_path)


def run_modis_validation(config: Dict, year: int, corrected_composite: xr.Dataset,
                         landsat_dates: Sequence, terra: Optional[SceneCollection],
                         aqua: Optional[SceneCollection], aoi_bounds, boundary=None,
                         logger=None) -> pd.DataFrame:
    """
    Validate one year's corrected composite against Terra and Aqua.

    Platforms without matching scenes, or without enough jointly valid
    pixels, are skipped with a warning.

    Returns:
    --------
    pd.DataFrame
        One row per validated platform: rmse, mae, r2, n, bias, pearson_r
    """
    _log(logger, "=" * 70)
    _log(logger, f"🔍 MODIS VALIDATION — {year}")
    _log(logger, "=" * 70)

    modis_scale = get_config_value(config, 'resolution.modis_scale', 1000)
    max_pixels = get_config_value(config, 'validation.modis.max_pixels', 4096)
    use_median = get_config_value(config, 'compositing.use_median', False)
    buffer_m = get_config_value(config, 'cloud_masking.buffer_m', 0)
    template = grid_template(aoi_bounds, modis_scale, raster_crs(corrected_composite))

    results = {}
    for platform, collection in (('Terra', terra), ('Aqua', aqua)):
        if collection is None or len(collection) == 0:
            _log(logger, f"   ⚠️ MODIS {platform}: no scenes available", 'warning')
            continue
        composite = build_modis_composite(collection, landsat_dates, template,
                                          use_median=use_median, buffer_m=buffer_m,
                                          boundary=boundary)
        if composite is None:
            _log(logger, f"   ⚠️ MODIS {platform}: no scene on a Landsat acquisition day", 'warning')
            continue
        try:
            results[platform] = validate_against_modis(
                corrected_composite, composite, max_pixels=max_pixels,
                logger=logger, label=f"MODIS {platform}"
            )
        except (EmptySampleError, DegenerateTargetError) as e:
            _log(logger, f"   ⚠️ MODIS {platform} skipped: {e}", 'warning')

    if results and get_config_value(config, 'validation.modis.plot', False):
        plot_path = plot_modis_scatter(results, year, get_config_value(config, 'paths.figures', 'figures'))
        _log(logger, f"   ✓ Scatter plot: {plot_path}")

    rows = {
        platform: {k: v for k, v in res.items() if k not in ('landsat', 'modis')}
        for platform, res in results.items()
    }
    table = pd.DataFrame.from_dict(rows, orient='index')
    table.index.name = 'platform'
    return table
