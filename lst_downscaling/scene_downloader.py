"""
Download summer scenes from Google Earth Engine into the local scene
directories read by GeoTiffSceneProvider.

For every sensor and year the matching images are exported as GeoTIFFs in
the projected CRS and a ``manifest.csv`` row is written per image with its
acquisition time, band names and filtering metadata.

Usage:
    python -m lst_downscaling.scene_downloader --config config.yaml --sensors landsat sentinel2
"""

import argparse
from pathlib import Path
from typing import Dict, List, Optional

import ee
import geemap
import pandas as pd

from lst_downscaling.data_loader import MANIFEST_NAME, SENSORS
from lst_downscaling.utils_downscaling import get_config_value, get_projected_crs, load_config

SENSOR_SPECS = {
    'landsat': {
        'collections': ['LANDSAT/LC08/C02/T1_L2', 'LANDSAT/LC09/C02/T1_L2'],
        'bands': ['SR_B4', 'SR_B5', 'ST_B10', 'ST_ATRAN', 'ST_URAD', 'ST_DRAD', 'ST_TRAD', 'QA_PIXEL'],
        'scale': 30,
        'properties': ['CLOUD_COVER', 'SPACECRAFT_ID'],
    },
    'sentinel2': {
        'collections': ['COPERNICUS/S2_SR_HARMONIZED'],
        'bands': ['B2', 'B3', 'B4', 'B8'],
        'scale': 10,
        'aux_bands': ['B11', 'B12', 'SCL'],
        'aux_scale': 20,
        'properties': ['CLOUDY_PIXEL_PERCENTAGE'],
    },
    'sentinel1': {
        'collections': ['COPERNICUS/S1_GRD'],
        'bands': ['VV', 'VH'],
        'scale': 10,
        'properties': ['instrumentMode'],
    },
    'modis_terra': {
        'collections': ['MODIS/061/MOD11A1'],
        'bands': ['LST_Day_1km', 'QC_Day'],
        'scale': 1000,
        'properties': [],
    },
    'modis_aqua': {
        'collections': ['MODIS/061/MYD11A1'],
        'bands': ['LST_Day_1km', 'QC_Day'],
        'scale': 1000,
        'properties': [],
    },
}

# Earth Engine initialization state
_ee_initialized = False


def initialize_earth_engine(project: Optional[str] = None):
    """Initialize Earth Engine with lazy loading."""
    global _ee_initialized
    if _ee_initialized:
        return

    try:
        ee.Initialize(project=project)
    except Exception:
        print("⚠️ Attempting Earth Engine authentication...")
        ee.Authenticate()
        ee.Initialize(project=project)
    _ee_initialized = True


def build_collection(sensor: str, region, year: int, start_month: int, end_month: int):
    spec = SENSOR_SPECS[sensor]
    collection = ee.ImageCollection(spec['collections'][0])
    for extra in spec['collections'][1:]:
        collection = collection.merge(ee.ImageCollection(extra))

    collection = (collection
                  .filterBounds(region)
                  .filter(ee.Filter.calendarRange(year, year, 'year'))
                  .filter(ee.Filter.calendarRange(start_month, end_month, 'month')))

    if sensor == 'sentinel1':
        collection = (collection
                      .filter(ee.Filter.listContains('transmitterReceiverPolarisation', 'VV'))
                      .filter(ee.Filter.listContains('transmitterReceiverPolarisation', 'VH')))
    return collection.sort('system:time_start')


def _file_stem(index: str) -> str:
    return index.replace('/', '_')


def export_sensor_year(config: Dict, sensor: str, year: int, region, crs: str) -> List[Dict]:
    """
    Export one sensor/year and return its manifest rows.
    """
    spec = SENSOR_SPECS[sensor]
    out_dir = Path(get_config_value(config, f'paths.scenes.{sensor}'))
    out_dir.mkdir(parents=True, exist_ok=True)

    collection = build_collection(
        sensor, region, year,
        get_config_value(config, 'temporal.summer_start_month', 6),
        get_config_value(config, 'temporal.summer_end_month', 8)
    )

    ids = collection.aggregate_array('system:index').getInfo()
    if not ids:
        print(f"   ⚠️ {sensor} {year}: no scenes")
        return []
    times = collection.aggregate_array('system:time_start').getInfo()
    props = {p: collection.aggregate_array(p).getInfo() for p in spec['properties']}
    stems = [_file_stem(i) for i in ids]
    print(f"   {sensor} {year}: exporting {len(ids)} scenes to {out_dir}")

    geemap.ee_export_image_collection(
        collection.select(spec['bands']),
        out_dir=str(out_dir),
        scale=spec['scale'],
        crs=crs,
        region=region,
        file_per_band=False,
        filenames=stems
    )
    if 'aux_bands' in spec:
        geemap.ee_export_image_collection(
            collection.select(spec['aux_bands']),
            out_dir=str(out_dir),
            scale=spec['aux_scale'],
            crs=crs,
            region=region,
            file_per_band=False,
            filenames=[f"{s}_swir" for s in stems]
        )

    rows = []
    for i, stem in enumerate(stems):
        row = {
            'file': f"{stem}.tif",
            'time': pd.to_datetime(times[i], unit='ms').strftime('%Y-%m-%d %H:%M:%S'),
            'bands': ';'.join(spec['bands']),
        }
        if 'aux_bands' in spec:
            row['aux_file'] = f"{stem}_swir.tif"
            row['aux_bands'] = ';'.join(spec['aux_bands'])
        for name, values in props.items():
            row[name] = values[i] if i < len(values) else None
        rows.append(row)
    return rows


def write_manifest(directory: str, rows: List[Dict]):
    """Merge ``rows`` into the directory's manifest, newest row per file wins."""
    path = Path(directory) / MANIFEST_NAME
    frame = pd.DataFrame(rows)
    if path.exists():
        frame = pd.concat([pd.read_csv(path), frame], ignore_index=True)
    frame = frame.drop_duplicates(subset='file', keep='last').sort_values('time')
    frame.to_csv(path, index=False)
    print(f"   ✓ Manifest updated: {path} ({len(frame)} scenes)")


def download_scenes(config: Dict, sensors: Optional[List[str]] = None,
                    years: Optional[List[int]] = None):
    """Export every requested sensor/year and update the manifests."""
    initialize_earth_engine(get_config_value(config, 'earth_engine.project'))

    sensors = sensors or list(SENSORS)
    years = years or get_config_value(config, 'temporal.years', [])
    crs = get_projected_crs(config)
    region = ee.Geometry.Rectangle(get_config_value(config, 'study_area.aoi_lonlat'))

    for sensor in sensors:
        rows = []
        for year in years:
            try:
                rows.extend(export_sensor_year(config, sensor, year, region, crs))
            except Exception as e:
                print(f"❌ Failed to export {sensor} {year}: {e}")
                raise
        if rows:
            write_manifest(get_config_value(config, f'paths.scenes.{sensor}'), rows)

    print("✅ Scene download complete")


def main():
    parser = argparse.ArgumentParser(description="Download summer scenes for LST downscaling")
    parser.add_argument('--config', type=str, default='lst_downscaling/config_lst_downscaling.yaml')
    parser.add_argument('--sensors', nargs='+', choices=list(SENSORS) + ['all'], default=['all'])
    parser.add_argument('--years', nargs='+', type=int, default=None)
    args = parser.parse_args()

    config = load_config(args.config)
    sensors = None if 'all' in args.sensors else args.sensors
    download_scenes(config, sensors=sensors, years=args.years)


if __name__ == '__main__':
    main()
