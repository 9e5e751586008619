"""
Tests for the MODIS validation of the retrieved Landsat LST.
"""

import numpy as np
import pandas as pd
import pytest

from conftest import AOI, CRS, SUMMER_DAYS, make_modis_scene
from lst_downscaling.exceptions import DegenerateTargetError
from lst_downscaling.lst_retrieval import LSTRetriever
from lst_downscaling.raster import create_raster, grid_template
from lst_downscaling.resampling import aggregate
from lst_downscaling.scene_collection import SceneCollection
from lst_downscaling.utils_downscaling import build_config
from lst_downscaling.validation.validate_modis import (
    MODIS_BAND,
    build_modis_composite,
    modis_lst,
    run_modis_validation,
    validate_against_modis,
)


def _varying_modis_scene(day, sensor='modis_terra', offset_c=0.0):
    """MODIS scene with a 1 °C step between neighbouring columns."""
    scene = make_modis_scene(day, sensor=sensor, offset_c=offset_c)
    dn = scene.data['LST_Day_1km']
    steps = np.tile(np.arange(dn.sizes['x'], dtype=float), (dn.sizes['y'], 1)) / 0.02
    return scene.replace(data=scene.data.assign(LST_Day_1km=dn + steps))


@pytest.fixture
def corrected_composite(landsat_collection):
    _, corrected = LSTRetriever(build_config()).composites(landsat_collection)
    return corrected


class TestModisComposite:
    def test_digital_numbers_to_celsius(self):
        scene = modis_lst(make_modis_scene(SUMMER_DAYS[0]))
        np.testing.assert_allclose(scene.data[MODIS_BAND].values, 300.0 - 273.15)

    def test_only_landsat_days_composited(self):
        collection = SceneCollection([
            make_modis_scene(SUMMER_DAYS[0], offset_c=0.0),
            make_modis_scene(SUMMER_DAYS[1], offset_c=5.0),
        ], sensor='modis_terra')
        template = grid_template(AOI, 1000, CRS)
        composite = build_modis_composite(collection, [pd.Timestamp(SUMMER_DAYS[0])], template)
        np.testing.assert_allclose(composite[MODIS_BAND].values, 300.0 - 273.15)

    def test_no_matching_day(self):
        collection = SceneCollection([make_modis_scene(SUMMER_DAYS[0])], sensor='modis_terra')
        template = grid_template(AOI, 1000, CRS)
        assert build_modis_composite(collection, [pd.Timestamp('2023-06-11')], template) is None

    def test_poor_quality_pixels_dropped(self):
        scene = make_modis_scene(SUMMER_DAYS[0])
        qc = scene.data['QC_Day'].values.copy()
        qc[1, 1] = 3
        scene = scene.replace(data=scene.data.assign(QC_Day=(('y', 'x'), qc)))
        composite = build_modis_composite(SceneCollection([scene]), [pd.Timestamp(SUMMER_DAYS[0])],
                                          grid_template(AOI, 1000, CRS))
        assert np.isnan(composite[MODIS_BAND].values[1, 1])
        assert np.isfinite(composite[MODIS_BAND].values).sum() == 8


class TestModisAgreement:
    def test_offset_shows_up_as_bias(self, corrected_composite):
        landsat_1km = aggregate(corrected_composite, 1000, max_pixels=4096)
        modis = create_raster({MODIS_BAND: landsat_1km['LST_C_CORR'].values - 1.5}, 1000, CRS,
                              origin=(AOI[0], AOI[3]), bounds=AOI)

        metrics = validate_against_modis(corrected_composite, modis)
        assert metrics['bias'] == pytest.approx(1.5)
        assert metrics['rmse'] == pytest.approx(1.5)
        assert metrics['pearson_r'] == pytest.approx(1.0)
        assert metrics['n'] == 9

    def test_crs_mismatch(self, corrected_composite):
        modis = create_raster({MODIS_BAND: np.ones((3, 3))}, 1000, 'EPSG:2178')
        with pytest.raises(ValueError):
            validate_against_modis(corrected_composite, modis)

    def test_constant_modis_is_degenerate(self, corrected_composite):
        modis = create_raster({MODIS_BAND: np.full((3, 3), 25.0)}, 1000, CRS,
                              origin=(AOI[0], AOI[3]), bounds=AOI)
        with pytest.raises(DegenerateTargetError):
            validate_against_modis(corrected_composite, modis)

    def test_run_validation(self, corrected_composite, tmp_path):
        config = build_config({'validation': {'modis': {'plot': True}},
                               'paths': {'figures': str(tmp_path)}})
        terra = SceneCollection([_varying_modis_scene(d) for d in SUMMER_DAYS], sensor='modis_terra')
        aqua = SceneCollection([make_modis_scene(d, sensor='modis_aqua') for d in SUMMER_DAYS],
                               sensor='modis_aqua')
        dates = [pd.Timestamp(d) for d in SUMMER_DAYS]

        table = run_modis_validation(config, 2023, corrected_composite, dates, terra, aqua, AOI)

        # constant Aqua LST has no variance and is skipped
        assert list(table.index) == ['Terra']
        assert {'rmse', 'mae', 'r2', 'n', 'bias', 'pearson_r'} <= set(table.columns)
        assert (tmp_path / 'modis_validation_2023.png').exists()

    def test_run_validation_without_scenes(self, corrected_composite):
        table = run_modis_validation(build_config(), 2023, corrected_composite,
                                     [pd.Timestamp(SUMMER_DAYS[0])], None,
                                     SceneCollection([], sensor='modis_aqua'), AOI)
        assert table.empty
