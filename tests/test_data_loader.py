"""
Tests for study-area geometry, scene providers and export sinks.
"""

import numpy as np
import pandas as pd
import pytest
import rasterio
import xarray as xr
from rasterio.transform import from_origin

from conftest import AOI, CLEAR_QA, CRS, SUMMER_DAYS
from lst_downscaling.data_loader import (
    GeoTiffSceneProvider,
    InMemorySceneProvider,
    NetCDFExportSink,
    composite_export_name,
    downscaled_export_name,
    load_boundary,
    predictor_export_name,
    resolve_aoi_bounds,
)
from lst_downscaling.exceptions import ConfigurationError
from lst_downscaling.raster import create_raster
from lst_downscaling.scene_collection import PropertyLessThan
from lst_downscaling.utils_downscaling import build_config


class TestStudyArea:
    def test_bounds_snapped_outward(self):
        config = build_config({'study_area': {'aoi_bounds': [600010, 5800050, 602990, 5802950]}})
        assert resolve_aoi_bounds(config, CRS) == (600000.0, 5799900.0, 603000.0, 5803200.0)

    def test_bounds_from_lonlat(self):
        config = build_config({'study_area': {'aoi_lonlat': [20.95, 52.20, 21.05, 52.25]}})
        xmin, ymin, xmax, ymax = resolve_aoi_bounds(config, CRS)
        assert xmin < xmax and ymin < ymax
        assert all(v % 300 == 0 for v in (xmin, ymin, xmax, ymax))
        assert 5_700_000 < ymin < 5_900_000

    def test_degenerate_bounds(self):
        config = build_config({'study_area': {'aoi_bounds': [600000, 5800000, 600000, 5803000]}})
        with pytest.raises(ConfigurationError):
            resolve_aoi_bounds(config, CRS)

    def test_boundary_defaults_to_rectangle(self):
        config = build_config({'study_area': {'aoi_bounds': list(AOI)}})
        assert load_boundary(config, CRS).bounds == AOI

    def test_boundary_disabled(self):
        config = build_config({'study_area': {'aoi_bounds': list(AOI), 'crop_to_boundary': False}})
        assert load_boundary(config, CRS) is None

    def test_missing_boundary_file(self, tmp_path):
        config = build_config({'study_area': {'aoi_bounds': list(AOI),
                                              'boundary_path': str(tmp_path / 'missing.geojson')}})
        with pytest.raises(ConfigurationError):
            load_boundary(config, CRS)


class TestInMemorySceneProvider:
    def test_filters(self, landsat_collection):
        provider = InMemorySceneProvider({'landsat': landsat_collection})
        july = provider.get_collection('landsat', start='2023-07-01', end='2023-08-01')
        assert len(july) == 1

        clear = provider.get_collection('landsat', predicate=PropertyLessThan('CLOUD_COVER', 1))
        assert len(clear) == 0

        elsewhere = provider.get_collection('landsat', bounds=(0.0, 0.0, 300.0, 300.0))
        assert len(elsewhere) == 0

    def test_unknown_sensor_is_empty(self):
        assert len(InMemorySceneProvider({}).get_collection('sentinel1')) == 0


def _write_tif(path, arrays, scale):
    ny, nx = arrays[0].shape
    profile = {
        'driver': 'GTiff', 'height': ny, 'width': nx, 'count': len(arrays),
        'dtype': 'float32', 'crs': CRS, 'transform': from_origin(AOI[0], AOI[3], scale, scale),
    }
    with rasterio.open(path, 'w', **profile) as dst:
        for i, arr in enumerate(arrays, start=1):
            dst.write(arr.astype('float32'), i)


class TestGeoTiffSceneProvider:
    @pytest.fixture
    def landsat_dir(self, tmp_path):
        thermal = np.linspace(40000, 46000, 100 * 100).reshape(100, 100)
        qa = np.full((100, 100), CLEAR_QA)
        rows = []
        for i, day in enumerate(SUMMER_DAYS):
            name = f'LC08_{day}.tif'
            _write_tif(tmp_path / name, [thermal + i, qa], 30)
            rows.append({'file': name, 'time': f'{day} 09:41:12', 'bands': 'ST_B10;QA_PIXEL',
                         'CLOUD_COVER': 5.0 * (i + 1), 'SPACECRAFT_ID': 'LANDSAT_8'})
        pd.DataFrame(rows).to_csv(tmp_path / 'manifest.csv', index=False)
        return tmp_path

    def _provider(self, root):
        config = build_config({'paths': {'scenes': {'landsat': str(root)}}})
        return GeoTiffSceneProvider.from_config(config, CRS, AOI)

    def test_reads_scenes_onto_grid(self, landsat_dir):
        collection = self._provider(landsat_dir).get_collection('landsat')
        assert len(collection) == 3

        scene = collection[0]
        assert scene.get('SPACECRAFT_ID') == 'LANDSAT_8'
        assert scene.time == pd.Timestamp('2023-06-10 09:41:12')
        assert scene.data.sizes['y'] == 100 and scene.data.sizes['x'] == 100
        assert scene.data.attrs['bounds'] == AOI
        np.testing.assert_allclose(scene.data['ST_B10'].values[0, :3], [40000, 40000.6, 40001.2],
                                   rtol=1e-6)

    def test_date_and_predicate_filters(self, landsat_dir):
        provider = self._provider(landsat_dir)
        assert len(provider.get_collection('landsat', start='2023-07-01', end='2023-09-01')) == 2
        assert len(provider.get_collection('landsat', predicate=PropertyLessThan('CLOUD_COVER', 12))) == 2

    def test_band_count_mismatch(self, landsat_dir):
        manifest = pd.read_csv(landsat_dir / 'manifest.csv')
        manifest['bands'] = 'ST_B10'
        manifest.to_csv(landsat_dir / 'manifest.csv', index=False)
        with pytest.raises(ConfigurationError):
            self._provider(landsat_dir).get_collection('landsat')

    def test_missing_manifest_is_empty(self, tmp_path):
        assert len(self._provider(tmp_path).get_collection('landsat')) == 0

    def test_unconfigured_sensor(self, landsat_dir):
        provider = GeoTiffSceneProvider({}, CRS, AOI, scales={'landsat': 30})
        with pytest.raises(ConfigurationError):
            provider.get_collection('landsat')


class TestExport:
    def test_names(self):
        assert downscaled_export_name('RF', 'NATIVE_20M', 2023) == 'Downscaled_LST_RF_NATIVE_20M_Summer_2023'
        assert predictor_export_name('NDVI', 2021) == 'NDVI_Summer_2021'
        assert composite_export_name('Corrected', 2022) == 'Corrected_LST_Summer_2022'

    def test_netcdf_sink(self, tmp_path):
        values = np.arange(12, dtype=float).reshape(3, 4)
        values[0, 0] = np.nan
        ds = create_raster({'LST_C_DS': values}, 10, CRS, origin=(AOI[0], AOI[3]),
                           attrs={'year': 2023, 'unused': None})

        path = NetCDFExportSink(str(tmp_path / 'out')).export(ds, 'Downscaled_LST_RF_NATIVE_20M_Summer_2023')
        with xr.open_dataset(path) as saved:
            np.testing.assert_allclose(saved['LST_C_DS'].values, values)
            assert int(saved.attrs['year']) == 2023
            assert 'unused' not in saved.attrs
            assert list(saved.attrs['bounds']) == list(ds.attrs['bounds'])
