"""
Raster value model.

A raster is an ``xarray.Dataset`` with dims ``(y, x)``, pixel-centre
coordinates (``y`` descending) and three attributes:

- ``crs``: projected coordinate reference system, e.g. 'EPSG:2178'
- ``scale``: pixel size in metres
- ``bounds``: (xmin, ymin, xmax, ymax) of the field the raster describes

Each data variable is a named band. A pixel is valid where the band is not
NaN, so arithmetic between bands propagates the AND of their masks.
Integer quality bands (QA_PIXEL, SCL, QC_Day) are carried unmasked and are
decoded by the cloud maskers.

Functions here never modify their inputs in place.
"""

import math
import numpy as np
import xarray as xr
import shapely
from shapely.geometry import box
from typing import Dict, Iterable, Optional, Sequence, Tuple, Union

QUALITY_BANDS = ('QA_PIXEL', 'SCL', 'QC_Day')

Bounds = Tuple[float, float, float, float]


def _is_quality_band(name: str) -> bool:
    return name in QUALITY_BANDS


def create_raster(bands: Dict[str, np.ndarray], scale: float, crs: str,
                  origin: Tuple[float, float] = (0.0, 0.0),
                  bounds: Optional[Bounds] = None,
                  attrs: Optional[Dict] = None) -> xr.Dataset:
    """
    Build a raster from named 2D arrays.

    Parameters:
    -----------
    bands : Dict[str, np.ndarray]
        Band name -> 2D array (row 0 is the northern edge)
    scale : float
        Pixel size in metres
    crs : str
        Coordinate reference system
    origin : Tuple[float, float]
        (xmin, ymax) of the upper-left corner
    bounds : Bounds, optional
        Extent of the field; defaults to the grid extent
    attrs : Dict, optional
        Extra attributes

    Returns:
    --------
    xr.Dataset
        Raster dataset
    """
    if not bands:
        raise ValueError("A raster needs at least one band")

    shapes = {np.shape(arr) for arr in bands.values()}
    if len(shapes) != 1:
        raise ValueError(f"All bands must share one shape, got {shapes}")
    ny, nx = shapes.pop()

    x0, y0 = origin
    x = x0 + (np.arange(nx) + 0.5) * scale
    y = y0 - (np.arange(ny) + 0.5) * scale

    data_vars = {}
    for name, arr in bands.items():
        arr = np.asarray(arr)
        if not _is_quality_band(name):
            arr = arr.astype(float)
        data_vars[name] = (('y', 'x'), arr)

    if bounds is None:
        bounds = (x0, y0 - ny * scale, x0 + nx * scale, y0)

    ds = xr.Dataset(data_vars, coords={'y': y, 'x': x})
    ds.attrs.update(attrs or {})
    ds.attrs['crs'] = crs
    ds.attrs['scale'] = float(scale)
    ds.attrs['bounds'] = tuple(float(b) for b in bounds)
    return ds


def grid_template(bounds: Bounds, scale: float, crs: str) -> xr.Dataset:
    """
    Empty raster whose grid covers ``bounds`` at ``scale``, anchored at
    the upper-left corner of the bounds.
    """
    xmin, ymin, xmax, ymax = bounds
    nx = max(1, int(math.ceil((xmax - xmin) / scale - 1e-9)))
    ny = max(1, int(math.ceil((ymax - ymin) / scale - 1e-9)))
    x = xmin + (np.arange(nx) + 0.5) * scale
    y = ymax - (np.arange(ny) + 0.5) * scale

    ds = xr.Dataset(coords={'y': y, 'x': x})
    ds.attrs['crs'] = crs
    ds.attrs['scale'] = float(scale)
    ds.attrs['bounds'] = tuple(float(b) for b in bounds)
    return ds


def raster_scale(ds: Union[xr.Dataset, xr.DataArray]) -> float:
    return float(ds.attrs['scale'])


def raster_crs(ds: Union[xr.Dataset, xr.DataArray]) -> str:
    return ds.attrs.get('crs')


def raster_bounds(ds: Union[xr.Dataset, xr.DataArray]) -> Bounds:
    """Field extent, falling back to the grid extent."""
    if 'bounds' in ds.attrs:
        return tuple(ds.attrs['bounds'])
    scale = raster_scale(ds)
    x = ds['x'].values
    y = ds['y'].values
    return (x[0] - scale / 2, y[-1] - scale / 2, x[-1] + scale / 2, y[0] + scale / 2)


def grid_origin(ds: Union[xr.Dataset, xr.DataArray]) -> Tuple[float, float]:
    """(xmin, ymax) of the upper-left pixel corner."""
    scale = raster_scale(ds)
    return (float(ds['x'].values[0]) - scale / 2, float(ds['y'].values[0]) + scale / 2)


def data_bands(ds: xr.Dataset) -> list:
    """Names of the non-quality bands."""
    return [name for name in ds.data_vars if not _is_quality_band(name)]


def valid_mask(ds: xr.Dataset, bands: Optional[Sequence[str]] = None) -> xr.DataArray:
    """
    Per-pixel validity: AND of the masks of ``bands`` (default: all
    non-quality bands).
    """
    names = list(bands) if bands is not None else data_bands(ds)
    mask = xr.DataArray(
        np.ones((ds.sizes['y'], ds.sizes['x']), dtype=bool),
        coords={'y': ds['y'], 'x': ds['x']}, dims=('y', 'x')
    )
    for name in names:
        mask = mask & ds[name].notnull()
    return mask


def update_mask(ds: xr.Dataset, mask: Union[xr.DataArray, np.ndarray]) -> xr.Dataset:
    """
    Invalidate pixels where ``mask`` is False in every non-quality band.
    Existing invalid pixels stay invalid.
    """
    if isinstance(mask, np.ndarray):
        mask = xr.DataArray(mask, coords={'y': ds['y'], 'x': ds['x']}, dims=('y', 'x'))

    out = ds.copy()
    for name in data_bands(ds):
        out[name] = ds[name].where(mask)
    out.attrs = dict(ds.attrs)
    return out


def from_arrays(arrays: Dict[str, xr.DataArray], like: xr.Dataset,
                attrs: Optional[Dict] = None) -> xr.Dataset:
    """Assemble named DataArrays on ``like``'s grid into a raster."""
    ds = xr.Dataset({name: da.astype(float) for name, da in arrays.items()})
    ds.attrs = dict(like.attrs)
    ds.attrs.update(attrs or {})
    return ds


def safe_divide(numerator: xr.DataArray, denominator: xr.DataArray,
                positive_only: bool = False) -> xr.DataArray:
    """
    Ratio that masks pixels with a zero (or, with positive_only,
    non-positive) denominator instead of producing inf.
    """
    ok = denominator > 0 if positive_only else denominator != 0
    return numerator / denominator.where(ok)


def normalized_difference(a: xr.DataArray, b: xr.DataArray,
                          positive_only: bool = False) -> xr.DataArray:
    """(a - b) / (a + b) with zero denominators masked."""
    return safe_divide(a - b, a + b, positive_only=positive_only)


def align_to(ds: xr.Dataset, like: xr.Dataset) -> xr.Dataset:
    """
    Place a raster onto the grid of ``like`` (same CRS and scale).

    Pixels are matched to the nearest grid cell within half a pixel;
    cells without a match become invalid.
    """
    if raster_crs(ds) and raster_crs(like) and raster_crs(ds) != raster_crs(like):
        raise ValueError(
            f"CRS mismatch: {raster_crs(ds)} vs {raster_crs(like)}; reproject first"
        )
    scale = raster_scale(like)
    if not math.isclose(raster_scale(ds), scale, rel_tol=1e-6):
        raise ValueError(
            f"Scale mismatch: {raster_scale(ds)} m vs {scale} m; resample first"
        )

    aligned = ds.reindex(y=like['y'], x=like['x'], method='nearest', tolerance=scale / 2)
    aligned = aligned.assign_coords(y=like['y'], x=like['x'])
    aligned.attrs = dict(ds.attrs)
    aligned.attrs['bounds'] = raster_bounds(like)
    return aligned


def geometry_mask(ds: Union[xr.Dataset, xr.DataArray], geometry) -> xr.DataArray:
    """True for pixels whose centre lies inside ``geometry``."""
    xx, yy = np.meshgrid(ds['x'].values, ds['y'].values)
    inside = shapely.contains_xy(geometry, xx, yy)
    return xr.DataArray(inside, coords={'y': ds['y'], 'x': ds['x']}, dims=('y', 'x'))


def bounds_mask(ds: Union[xr.Dataset, xr.DataArray], bounds: Bounds) -> xr.DataArray:
    """True for pixels whose centre lies inside the rectangle ``bounds``."""
    xmin, ymin, xmax, ymax = bounds
    inside_x = (ds['x'] >= xmin) & (ds['x'] <= xmax)
    inside_y = (ds['y'] >= ymin) & (ds['y'] <= ymax)
    return (inside_y & inside_x).transpose('y', 'x')


def clip_to_boundary(ds: xr.Dataset, boundary) -> xr.Dataset:
    """
    Mask everything outside ``boundary`` (a shapely geometry or a
    (xmin, ymin, xmax, ymax) tuple).
    """
    if boundary is None:
        return ds
    if isinstance(boundary, (tuple, list)):
        boundary = box(*boundary)
    return update_mask(ds, geometry_mask(ds, boundary))


def select_bands(ds: xr.Dataset, names: Iterable[str]) -> xr.Dataset:
    names = list(names)
    missing = [n for n in names if n not in ds.data_vars]
    if missing:
        raise KeyError(f"Bands not found: {missing}")
    out = ds[names]
    out.attrs = dict(ds.attrs)
    return out


def count_valid(ds: Union[xr.Dataset, xr.DataArray]) -> int:
    """Number of valid pixels (all non-quality bands valid)."""
    if isinstance(ds, xr.DataArray):
        return int(ds.notnull().sum())
    return int(valid_mask(ds).sum())
