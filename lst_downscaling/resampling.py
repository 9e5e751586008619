"""
Multi-resolution resampling primitives.

``aggregate`` is the only way a raster is moved to a coarser grid (exact
area-weighted mean). ``disaggregate`` is the only way a raster is moved to
a finer grid and is used for spectral indices and for the residual
surface, never for the training target.
"""

import numpy as np
import xarray as xr
from typing import Optional

from lst_downscaling.raster import (
    grid_template,
    raster_bounds,
    raster_crs,
    raster_scale,
)
from lst_downscaling.utils_downscaling import coarsen_2d, refine_2d


def aggregate(raster: xr.Dataset, target_scale: float, method: str = 'mean',
              max_pixels: Optional[int] = 1024) -> xr.Dataset:
    """
    Area-weighted reduction of every band to ``target_scale``.

    The coarse grid shares the input's upper-left corner. Coarse cells
    with no valid contributing pixel are invalid.

    Parameters:
    -----------
    raster : xr.Dataset
        Fine raster
    target_scale : float
        Coarse pixel size (m)
    method : str
        Only 'mean' is supported
    max_pixels : int, optional
        Limit on contributing fine pixels per coarse cell; exceeding it
        raises ResourceExhaustedError

    Returns:
    --------
    xr.Dataset
        Coarse raster with the same bands
    """
    if method != 'mean':
        raise ValueError(f"Unknown aggregation method: {method}")

    scale = raster_scale(raster)
    xmin = float(raster['x'].values[0]) - scale / 2
    ymax = float(raster['y'].values[0]) + scale / 2

    coarse = {}
    for name in raster.data_vars:
        values = raster[name].transpose('y', 'x').values.astype(float)
        coarse[name] = coarsen_2d(values, scale, target_scale, max_pixels=max_pixels)

    ny, nx = next(iter(coarse.values())).shape
    x = xmin + (np.arange(nx) + 0.5) * target_scale
    y = ymax - (np.arange(ny) + 0.5) * target_scale

    out = xr.Dataset(
        {name: (('y', 'x'), arr) for name, arr in coarse.items()},
        coords={'y': y, 'x': x}
    )
    out.attrs = dict(raster.attrs)
    out.attrs['scale'] = float(target_scale)
    out.attrs['bounds'] = raster_bounds(raster)
    return out


def disaggregate(raster: xr.Dataset, target_scale: Optional[float] = None,
                 method: str = 'bilinear', like: Optional[xr.Dataset] = None) -> xr.Dataset:
    """
    Upsample every band onto a finer grid.

    Parameters:
    -----------
    raster : xr.Dataset
        Coarse raster
    target_scale : float, optional
        Fine pixel size (m); required when ``like`` is not given
    method : str
        'bilinear' (masked neighbours are left out of the weighting) or
        'nearest'
    like : xr.Dataset, optional
        Target grid. Defaults to the raster's field bounds at target_scale,
        so the output never extends past the field the raster describes.

    Returns:
    --------
    xr.Dataset
        Fine raster with the same bands
    """
    if like is None:
        if target_scale is None:
            raise ValueError("Either target_scale or like must be given")
        like = grid_template(raster_bounds(raster), target_scale, raster_crs(raster))
    elif raster_crs(like) and raster_crs(raster) and raster_crs(like) != raster_crs(raster):
        raise ValueError(f"CRS mismatch: {raster_crs(raster)} vs {raster_crs(like)}")

    scale = raster_scale(raster)
    x0 = float(raster['x'].values[0])
    y0 = float(raster['y'].values[0])
    rows = (y0 - like['y'].values) / scale
    cols = (like['x'].values - x0) / scale

    out = xr.Dataset(
        {
            name: (('y', 'x'), refine_2d(raster[name].transpose('y', 'x').values.astype(float),
                                          rows, cols, method=method))
            for name in raster.data_vars
        },
        coords={'y': like['y'], 'x': like['x']}
    )
    out.attrs = dict(raster.attrs)
    out.attrs['scale'] = raster_scale(like)
    out.attrs['bounds'] = raster_bounds(like)
    return out
