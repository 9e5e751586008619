"""
Scene providers, study-area geometry and export sinks.

Scenes are read from per-sensor directories holding GeoTIFFs plus a
``manifest.csv`` (written by ``scene_downloader`` or by hand):

    file,time,bands,aux_file,aux_bands,CLOUD_COVER,SPACECRAFT_ID,...

``bands`` lists the band names of the file separated by ';'. ``aux_file``
and ``aux_bands`` describe the 20 m SWIR/SCL group of Sentinel-2 scenes.
Every other column becomes scene metadata.
"""

import math
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import geopandas as gpd
import pandas as pd
import rioxarray
import xarray as xr
from pyproj import Transformer
from rasterio.enums import Resampling
from rasterio.transform import from_origin
from shapely.geometry import box
from shapely.ops import unary_union

from lst_downscaling.exceptions import ConfigurationError
from lst_downscaling.raster import Bounds, create_raster
from lst_downscaling.scene_collection import Scene, SceneCollection
from lst_downscaling.utils_downscaling import get_config_value

SENSORS = ('landsat', 'sentinel2', 'sentinel1', 'modis_terra', 'modis_aqua')
MANIFEST_NAME = 'manifest.csv'
RESERVED_COLUMNS = ('file', 'time', 'bands', 'aux_file', 'aux_bands')


# ---------------------------------------------------------------------------
# Study area
# ---------------------------------------------------------------------------

def resolve_aoi_bounds(config: Dict, crs: str) -> Bounds:
    """
    Study-area rectangle in the projected CRS.

    Uses study_area.aoi_bounds when given, otherwise projects
    study_area.aoi_lonlat. The corner is snapped outward to a multiple of
    the coarse scale so every grid of the run shares one origin.
    """
    bounds = get_config_value(config, 'study_area.aoi_bounds')
    if bounds is None:
        west, south, east, north = get_config_value(config, 'study_area.aoi_lonlat')
        transformer = Transformer.from_crs('EPSG:4326', crs, always_xy=True)
        bounds = transformer.transform_bounds(west, south, east, north, densify_pts=21)

    xmin, ymin, xmax, ymax = (float(b) for b in bounds)
    if xmin >= xmax or ymin >= ymax:
        raise ConfigurationError(f"Degenerate study area bounds: {bounds}")

    step = float(get_config_value(config, 'resolution.coarse_scale', 300))
    return (math.floor(xmin / step) * step, math.floor(ymin / step) * step,
            math.ceil(xmax / step) * step, math.ceil(ymax / step) * step)


def load_boundary(config: Dict, crs: str, aoi_bounds: Optional[Bounds] = None):
    """
    Geometry outputs are clipped to: the union of the boundary file's
    polygons when study_area.boundary_path is set, else the AOI rectangle.
    Returns None when study_area.crop_to_boundary is off.
    """
    if not get_config_value(config, 'study_area.crop_to_boundary', True):
        return None

    path = get_config_value(config, 'study_area.boundary_path')
    if path:
        if not Path(path).exists():
            raise ConfigurationError(f"Boundary file not found: {path}")
        gdf = gpd.read_file(path)
        if gdf.crs is not None:
            gdf = gdf.to_crs(crs)
        print(f"📍 Boundary loaded: {path} ({len(gdf)} features)")
        return unary_union(gdf.geometry)

    if aoi_bounds is None:
        aoi_bounds = resolve_aoi_bounds(config, crs)
    return box(*aoi_bounds)


# ---------------------------------------------------------------------------
# Scene providers
# ---------------------------------------------------------------------------

class SceneProvider(ABC):
    """Source of timestamped scenes per sensor."""

    @abstractmethod
    def get_collection(self, sensor: str, start=None, end=None,
                       bounds: Optional[Bounds] = None, predicate=None) -> SceneCollection:
        """
        Scenes of ``sensor`` acquired in [start, end), intersecting
        ``bounds`` and accepted by ``predicate``.
        """


class InMemorySceneProvider(SceneProvider):
    """Provider over already-built collections."""

    def __init__(self, collections: Mapping[str, SceneCollection]):
        self.collections = dict(collections)

    def get_collection(self, sensor: str, start=None, end=None,
                       bounds: Optional[Bounds] = None, predicate=None) -> SceneCollection:
        collection = self.collections.get(sensor, SceneCollection([], sensor=sensor))
        if start is not None and end is not None:
            collection = collection.filter_date(start, end)
        if bounds is not None:
            collection = collection.filter_bounds(bounds)
        if predicate is not None:
            collection = collection.filter(predicate)
        return collection


def _parse_properties(row: pd.Series) -> Dict:
    props = {}
    for key, value in row.items():
        if key in RESERVED_COLUMNS or pd.isna(value):
            continue
        props[key] = value.item() if hasattr(value, 'item') else value
    return props


class GeoTiffSceneProvider(SceneProvider):
    """
    Reads scenes from ``<root>/manifest.csv`` and GeoTIFFs, reprojected
    (nearest neighbour) onto the study grid at each sensor's scale.
    """

    def __init__(self, roots: Mapping[str, str], crs: str, aoi_bounds: Bounds,
                 scales: Mapping[str, float], swir_scale: float = 20.0):
        self.roots = {k: Path(v) for k, v in roots.items()}
        self.crs = crs
        self.aoi_bounds = aoi_bounds
        self.scales = dict(scales)
        self.swir_scale = swir_scale

    @classmethod
    def from_config(cls, config: Dict, crs: str, aoi_bounds: Bounds) -> 'GeoTiffSceneProvider':
        landsat = get_config_value(config, 'resolution.landsat_scale', 30)
        fine = get_config_value(config, 'resolution.fine_scale', 10)
        modis = get_config_value(config, 'resolution.modis_scale', 1000)
        scales = {
            'landsat': landsat,
            'sentinel2': fine,
            'sentinel1': fine,
            'modis_terra': modis,
            'modis_aqua': modis,
        }
        return cls(
            roots=get_config_value(config, 'paths.scenes', {}),
            crs=crs,
            aoi_bounds=aoi_bounds,
            scales=scales,
            swir_scale=get_config_value(config, 'resolution.sentinel2_swir_scale', 20)
        )

    def read_manifest(self, sensor: str) -> pd.DataFrame:
        root = self.roots.get(sensor)
        if root is None:
            raise ConfigurationError(f"No scene directory configured for sensor '{sensor}'")
        path = root / MANIFEST_NAME
        if not path.exists():
            print(f"   ⚠️ No manifest for {sensor}: {path}")
            return pd.DataFrame(columns=['file', 'time', 'bands'])

        manifest = pd.read_csv(path)
        missing = [c for c in ('file', 'time', 'bands') if c not in manifest.columns]
        if missing:
            raise ConfigurationError(f"{path} is missing column(s) {missing}")
        manifest['time'] = pd.to_datetime(manifest['time'])
        return manifest

    def read_raster(self, path: Path, bands: Sequence[str], scale: float) -> xr.Dataset:
        """One GeoTIFF on the study grid at ``scale``."""
        da = rioxarray.open_rasterio(path, masked=True)
        if da.sizes.get('band', 1) != len(bands):
            raise ConfigurationError(
                f"{path.name}: {da.sizes.get('band', 1)} bands in file, {len(bands)} named in manifest"
            )

        xmin, ymin, xmax, ymax = self.aoi_bounds
        nx = int(math.ceil((xmax - xmin) / scale - 1e-9))
        ny = int(math.ceil((ymax - ymin) / scale - 1e-9))
        da = da.rio.reproject(
            self.crs,
            shape=(ny, nx),
            transform=from_origin(xmin, ymax, scale, scale),
            resampling=Resampling.nearest
        )

        arrays = {name: da.isel(band=i).values for i, name in enumerate(bands)}
        return create_raster(arrays, scale, self.crs, origin=(xmin, ymax), bounds=self.aoi_bounds)

    def get_collection(self, sensor: str, start=None, end=None,
                       bounds: Optional[Bounds] = None, predicate=None) -> SceneCollection:
        manifest = self.read_manifest(sensor)
        if start is not None and end is not None:
            manifest = manifest[(manifest['time'] >= pd.Timestamp(start)) &
                                (manifest['time'] < pd.Timestamp(end))]

        root = self.roots[sensor]
        scenes: List[Scene] = []
        for _, row in manifest.iterrows():
            header = Scene(data=None, time=pd.Timestamp(row['time']), sensor=sensor,
                           properties=_parse_properties(row))
            # predicates only look at time and metadata, so skip reading rejected files
            if predicate is not None and not predicate(header):
                continue

            data = self.read_raster(root / row['file'], str(row['bands']).split(';'),
                                    self.scales[sensor])
            aux = {}
            if 'aux_file' in row and isinstance(row['aux_file'], str):
                aux['swir'] = self.read_raster(root / row['aux_file'],
                                               str(row['aux_bands']).split(';'), self.swir_scale)
            scenes.append(header.replace(data=data, aux=aux))

        collection = SceneCollection(scenes, sensor=sensor)
        if bounds is not None:
            collection = collection.filter_bounds(bounds)
        print(f"   📂 {sensor}: {len(collection)} scenes loaded from {root}")
        return collection


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def downscaled_export_name(algorithm: str, strategy: str, year: int) -> str:
    return f"Downscaled_LST_{algorithm}_{strategy}_Summer_{year}"


def predictor_export_name(band: str, year: int) -> str:
    return f"{band}_Summer_{year}"


def composite_export_name(kind: str, year: int) -> str:
    """kind: 'Standard', 'Corrected', 'MODIS_Terra' or 'MODIS_Aqua'."""
    return f"{kind}_LST_Summer_{year}"


class ExportSink(ABC):
    @abstractmethod
    def export(self, ds: xr.Dataset, name: str) -> str:
        """Persist ``ds`` under ``name`` and return its location."""


class NetCDFExportSink(ExportSink):
    """zlib-compressed netCDF files in one directory."""

    def __init__(self, output_dir: str, complevel: int = 4):
        self.output_dir = Path(output_dir)
        self.complevel = complevel

    def export(self, ds: xr.Dataset, name: str) -> str:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"{name}.nc"

        ds = ds.copy()
        # netCDF attributes must be scalars, strings or flat lists
        ds.attrs = {k: (list(v) if isinstance(v, tuple) else v)
                    for k, v in ds.attrs.items() if v is not None}
        encoding = {var: {'zlib': True, 'complevel': self.complevel, 'dtype': 'float32'}
                    for var in ds.data_vars}
        ds.to_netcdf(path, encoding=encoding)
        print(f"   💾 Exported {name} -> {path}")
        return str(path)
