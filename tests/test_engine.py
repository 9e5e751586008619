"""
Tests for prediction, residual correction and the per-year engine.
"""

import logging
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest
import xarray as xr
from shapely.geometry import box

import pipeline_lst_downscaling as pipeline
from conftest import AOI, CLOUD_QA, CRS, SUMMER_DAYS, YEAR, make_landsat_scene
from lst_downscaling.covariate_synthesizer import COVARIATES
from lst_downscaling.data_loader import InMemorySceneProvider
from lst_downscaling.downscaling_engine import LSTDownscaler, YearInputs
from lst_downscaling.dry_day_filter import build_dry_day_filter
from lst_downscaling.exceptions import NoScenesError, NoTrainingDataError
from lst_downscaling.feature_aggregator import FeatureAggregator
from lst_downscaling.fine_predictor import PREDICTION_BAND, FinePredictor
from lst_downscaling.model_registry import RFParams, train_model
from lst_downscaling.raster import count_valid, create_raster
from lst_downscaling.residual_corrector import ResidualCorrector
from lst_downscaling.scene_collection import SceneCollection
from lst_downscaling.utils_downscaling import build_config


def _grid(bands, scale):
    return create_raster(bands, scale, CRS, origin=(AOI[0], AOI[3]), bounds=AOI)


def _training_rows(n=200):
    rng = np.random.default_rng(0)
    rows = pd.DataFrame(rng.normal(size=(n, len(COVARIATES))), columns=COVARIATES)
    rows['LST_C'] = 25.0 + 3.0 * rows['NDVI']
    return rows


def _inputs(landsat, sentinel2, sentinel1):
    return YearInputs(landsat=landsat, sentinel2=sentinel2, sentinel1=sentinel1)


# ======================================================================== #
#  Fine prediction and residual correction                                  #
# ======================================================================== #

class TestFinePredictor:
    def _model(self):
        return train_model(_training_rows(), 'RF', RFParams(number_of_trees=20), COVARIATES, n_jobs=1)

    def test_invalid_covariate_gives_nan(self):
        rng = np.random.default_rng(3)
        bands = {name: rng.normal(size=(20, 20)) for name in COVARIATES}
        bands['NDVI'][4, 5] = np.nan
        covariates = _grid(bands, 10)

        out = FinePredictor(build_config()).predict_raster(self._model(), covariates)
        values = out[PREDICTION_BAND].values
        assert np.isnan(values[4, 5])
        assert np.isfinite(values).sum() == 20 * 20 - 1
        assert out.attrs['scale'] == covariates.attrs['scale']

    def test_chunking_does_not_change_result(self):
        rng = np.random.default_rng(4)
        covariates = _grid({name: rng.normal(size=(15, 15)) for name in COVARIATES}, 10)
        model = self._model()

        whole = FinePredictor(build_config()).predict_raster(model, covariates)
        chunked = FinePredictor(build_config({'prediction': {'chunk_size': 7}})).predict_raster(
            model, covariates)
        np.testing.assert_array_equal(whole[PREDICTION_BAND].values, chunked[PREDICTION_BAND].values)


def _coarse_and_fine(offset):
    rng = np.random.default_rng(5)
    coarse_prediction = rng.normal(25.0, 2.0, size=(10, 10))
    coarse_target = _grid({'LST_C': coarse_prediction + offset}, 300)
    coarse_pred = _grid({PREDICTION_BAND: coarse_prediction}, 300)
    fine_pred = _grid({PREDICTION_BAND: rng.normal(25.0, 2.0, size=(300, 300))}, 10)
    return coarse_target, coarse_pred, fine_pred


class TestResidualCorrector:
    def test_zero_residual_leaves_prediction_unchanged(self):
        target, coarse_pred, fine_pred = _coarse_and_fine(0.0)
        out = ResidualCorrector(build_config()).full_residual_workflow(target, coarse_pred, fine_pred)

        assert list(out.data_vars) == ['LST_C_DS', 'LST_C_DS_UNCORRECTED', 'RESIDUAL']
        np.testing.assert_array_equal(out['LST_C_DS'].values, fine_pred[PREDICTION_BAND].values)

    def test_constant_residual_shifts_prediction(self):
        target, coarse_pred, fine_pred = _coarse_and_fine(2.0)
        out = ResidualCorrector(build_config()).full_residual_workflow(target, coarse_pred, fine_pred)
        np.testing.assert_allclose(out['LST_C_DS'].values, fine_pred[PREDICTION_BAND].values + 2.0)
        np.testing.assert_allclose(out['RESIDUAL'].values, 2.0)

    def test_masked_coarse_cell_filled_from_neighbours(self):
        target, coarse_pred, fine_pred = _coarse_and_fine(1.0)
        target['LST_C'].values[4, 4] = np.nan
        out = ResidualCorrector(build_config()).full_residual_workflow(target, coarse_pred, fine_pred)
        # the residual is 1 everywhere it is defined, so the gap is bridged exactly
        np.testing.assert_allclose(out['RESIDUAL'].values, 1.0)

    def test_nearest_interpolation(self):
        target, coarse_pred, fine_pred = _coarse_and_fine(0.0)
        target['LST_C'].values[0, 0] += 3.0
        corrector = ResidualCorrector(build_config({'residual_correction': {'interpolation': 'nearest'}}))
        residual = corrector.full_residual_workflow(target, coarse_pred, fine_pred)['RESIDUAL'].values
        np.testing.assert_allclose(residual[:30, :30], 3.0)
        np.testing.assert_allclose(residual[30:, 30:], 0.0)


class TestFeatureAggregator:
    def test_covariates_masked_to_target(self):
        corrected = _grid({'LST_C_CORR': np.full((100, 100), 25.0)}, 30)
        corrected['LST_C_CORR'].values[:10, :10] = np.nan
        covariates = _grid({name: np.ones((300, 300)) for name in COVARIATES}, 10)

        aggregator = FeatureAggregator(build_config())
        target = aggregator.aggregate_target(corrected)
        coarse = aggregator.aggregate_covariates(covariates, target)

        assert target.sizes['y'] == 10 and target.sizes['x'] == 10
        assert np.isnan(target['LST_C'].values[0, 0])
        assert np.isnan(coarse['NDVI'].values[0, 0])
        assert count_valid(coarse['NDVI']) == count_valid(target['LST_C'])


# ======================================================================== #
#  Engine                                                                   #
# ======================================================================== #

class TestLSTDownscaler:
    def test_process_year(self, test_config, landsat_collection, sentinel2_collection,
                          sentinel1_collection):
        engine = LSTDownscaler(test_config, AOI, dry_filter=build_dry_day_filter(SUMMER_DAYS))
        result = engine.process_year(YEAR, _inputs(landsat_collection, sentinel2_collection,
                                                   sentinel1_collection))

        ds = result.downscaled
        assert ds.sizes['y'] == 300 and ds.sizes['x'] == 300
        assert ds.attrs['year'] == YEAR
        assert ds.attrs['algorithm'] == 'RF'
        assert ds.attrs['resampling_strategy'] == 'NATIVE_20M'
        assert count_valid(ds['LST_C_DS']) > 0.9 * 300 * 300

        target_mean = float(result.data.coarse_target['LST_C'].mean())
        assert abs(float(ds['LST_C_DS'].mean()) - target_mean) < 1.5

        assert list(result.metrics.index) == ['train', 'test']
        assert set(result.importance.index) == set(COVARIATES)
        assert result.data.scene_info['Landsat 8']['count'] == 2
        assert result.data.scene_info['Landsat 9']['count'] == 1
        assert result.data.scene_info['Sentinel-1']['dates'][0] == '2023-06-10 16:30:05'
        assert len(result.data.landsat_dates) == 3

    def test_dry_filter_limits_scenes(self, test_config, landsat_collection,
                                      sentinel2_collection, sentinel1_collection):
        engine = LSTDownscaler(test_config, AOI, dry_filter=build_dry_day_filter(SUMMER_DAYS[:2]))
        data = engine.prepare_year(YEAR, _inputs(landsat_collection, sentinel2_collection,
                                                 sentinel1_collection))
        assert data.landsat_dates == [pd.Timestamp(d) for d in SUMMER_DAYS[:2]]
        assert len(data.train) + len(data.test) == len(data.samples)

    def test_cloudy_scenes_filtered_out(self, test_config, sentinel2_collection,
                                        sentinel1_collection):
        cloudy = SceneCollection([make_landsat_scene(d, cloud_cover=60.0) for d in SUMMER_DAYS],
                                 sensor='landsat')
        engine = LSTDownscaler(test_config, AOI)
        with pytest.raises(NoScenesError):
            engine.prepare_year(YEAR, _inputs(cloudy, sentinel2_collection, sentinel1_collection))

    def test_no_dry_days_means_no_scenes(self, test_config, landsat_collection,
                                         sentinel2_collection, sentinel1_collection):
        engine = LSTDownscaler(test_config, AOI, dry_filter=build_dry_day_filter([]))
        with pytest.raises(NoScenesError):
            engine.prepare_year(YEAR, _inputs(landsat_collection, sentinel2_collection,
                                              sentinel1_collection))

    def test_fully_clouded_target(self, test_config, sentinel2_collection, sentinel1_collection):
        qa = np.full((100, 100), CLOUD_QA, dtype=np.int64)
        clouded = SceneCollection([make_landsat_scene(d, qa=qa) for d in SUMMER_DAYS],
                                  sensor='landsat')
        engine = LSTDownscaler(test_config, AOI)
        with pytest.raises(NoTrainingDataError):
            engine.prepare_year(YEAR, _inputs(clouded, sentinel2_collection, sentinel1_collection))

    def test_boundary_clips_output(self, test_config, landsat_collection,
                                   sentinel2_collection, sentinel1_collection):
        boundary = box(AOI[0], AOI[1], AOI[0] + 1500.0, AOI[3])
        engine = LSTDownscaler(test_config, AOI, boundary=boundary)
        result = engine.process_year(YEAR, _inputs(landsat_collection, sentinel2_collection,
                                                   sentinel1_collection))
        values = result.downscaled['LST_C_DS'].values
        assert np.isnan(values[:, 160:]).all()
        assert np.isfinite(values[:, :140]).mean() > 0.9


# ======================================================================== #
#  Pipeline steps                                                           #
# ======================================================================== #

def _patch_provider(monkeypatch, collections):
    provider = InMemorySceneProvider(collections)
    monkeypatch.setattr(pipeline, 'GeoTiffSceneProvider',
                        SimpleNamespace(from_config=lambda *args, **kwargs: provider))


def _write_precipitation(config, tmp_path, wet=None):
    """Daily records around the 2023 summer, dry unless listed in ``wet``."""
    precip = pd.Series(0.0, index=pd.date_range('2023-05-31', '2023-09-01'))
    for day, amount in (wet or {}).items():
        precip[pd.Timestamp(day)] = amount
    path = tmp_path / 'precip.csv'
    pd.DataFrame({'date': precip.index.strftime('%Y-%m-%d'),
                  'daily_precip_mm': precip.values}).to_csv(path, index=False)
    config['precipitation']['local_path'] = str(path)


class TestPipeline:
    logger = logging.getLogger('test_pipeline')

    def test_year_exported(self, test_config, monkeypatch, landsat_collection,
                           sentinel2_collection, sentinel1_collection):
        _patch_provider(monkeypatch, {'landsat': landsat_collection,
                                      'sentinel2': sentinel2_collection,
                                      'sentinel1': sentinel1_collection})
        test_config['output']['save_models'] = True
        summary = pipeline.process_single_year(test_config, YEAR, AOI, None,
                                               build_dry_day_filter(SUMMER_DAYS), self.logger)

        assert summary['status'] == 'ok'
        assert np.isfinite(summary['test_rmse'])
        path = summary['exports'][0]
        assert path.endswith('Downscaled_LST_RF_NATIVE_20M_Summer_2023.nc')
        with xr.open_dataset(path) as ds:
            assert set(ds.data_vars) == {'LST_C_DS', 'LST_C_DS_UNCORRECTED', 'RESIDUAL'}
            assert int(ds.attrs['year']) == YEAR
            assert ds.attrs['processing_step'] == 'residual_correction'

        models_dir = pipeline.Path(test_config['paths']['results']) / 'models'
        assert (models_dir / 'RF_2023.joblib').exists()

    def test_year_without_scenes_is_skipped(self, test_config, monkeypatch,
                                            sentinel2_collection, sentinel1_collection):
        _patch_provider(monkeypatch, {'sentinel2': sentinel2_collection,
                                      'sentinel1': sentinel1_collection})
        summary = pipeline.process_single_year(test_config, YEAR, AOI, None, None, self.logger)
        assert summary['status'] == 'skipped'
        assert 'Landsat' in summary['reason']

    def test_resource_limit_fails_year(self, test_config, monkeypatch, caplog, landsat_collection,
                                       sentinel2_collection, sentinel1_collection):
        _patch_provider(monkeypatch, {'landsat': landsat_collection,
                                      'sentinel2': sentinel2_collection,
                                      'sentinel1': sentinel1_collection})
        test_config['resampling']['max_pixels'] = 10
        with caplog.at_level(logging.ERROR):
            summary = pipeline.process_single_year(test_config, YEAR, AOI, None, None, self.logger)
        assert summary['status'] == 'failed'
        assert 'Retry with smaller parameters' in caplog.text

    def test_dry_days_then_downscale(self, test_config, tmp_path, monkeypatch, landsat_collection,
                                     sentinel2_collection, sentinel1_collection):
        _patch_provider(monkeypatch, {'landsat': landsat_collection,
                                      'sentinel2': sentinel2_collection,
                                      'sentinel1': sentinel1_collection})
        _write_precipitation(test_config, tmp_path)

        assert pipeline.run_dry_day_selection(test_config, self.logger)
        saved = pd.read_csv(tmp_path / 'results' / 'dry_days.csv')
        assert len(saved) == 92

        assert pipeline.run_downscaling(test_config, self.logger)
        table = pd.read_csv(tmp_path / 'results' / 'summary_RF.csv', index_col='year')
        assert table.loc[YEAR, 'status'] == 'ok'
        assert table.loc[YEAR, 'landsat_days'] == 3

    def test_dry_days_follow_current_threshold(self, test_config, tmp_path, monkeypatch,
                                               landsat_collection, sentinel2_collection,
                                               sentinel1_collection):
        _patch_provider(monkeypatch, {'landsat': landsat_collection,
                                      'sentinel2': sentinel2_collection,
                                      'sentinel1': sentinel1_collection})
        _write_precipitation(test_config, tmp_path, wet={'2023-07-04': 5.0})
        summary_path = tmp_path / 'results' / 'summary_RF.csv'

        assert pipeline.run_dry_day_selection(test_config, self.logger)
        assert pipeline.run_downscaling(test_config, self.logger)
        assert pd.read_csv(summary_path, index_col='year').loc[YEAR, 'landsat_days'] == 2

        # the exported list from the first run must not be reused
        test_config['precipitation']['threshold_mm'] = 10.0
        assert pipeline.run_downscaling(test_config, self.logger)
        assert pd.read_csv(summary_path, index_col='year').loc[YEAR, 'landsat_days'] == 3

    def test_constant_target_year_is_degenerate(self, test_config, tmp_path, monkeypatch,
                                                landsat_collection, sentinel2_collection,
                                                sentinel1_collection):
        _patch_provider(monkeypatch, {'landsat': landsat_collection,
                                      'sentinel2': sentinel2_collection,
                                      'sentinel1': sentinel1_collection})
        _write_precipitation(test_config, tmp_path)
        aggregate_target = FeatureAggregator.aggregate_target

        def constant_target(aggregator, corrected):
            target = aggregate_target(aggregator, corrected)
            return target.assign(LST_C=target['LST_C'].where(target['LST_C'].isnull(), 25.0))

        monkeypatch.setattr(FeatureAggregator, 'aggregate_target', constant_target)

        summary = pipeline.process_single_year(test_config, YEAR, AOI, None,
                                               build_dry_day_filter(SUMMER_DAYS), self.logger)
        assert summary['status'] == 'degenerate'
        assert 'zero variance' in summary['reason']

        # a degenerate year does not fail the step
        assert pipeline.run_downscaling(test_config, self.logger)
        table = pd.read_csv(tmp_path / 'results' / 'summary_RF.csv', index_col='year')
        assert table.loc[YEAR, 'status'] == 'degenerate'

    def test_main_rejects_bad_config(self, tmp_path, monkeypatch):
        path = tmp_path / 'config.yaml'
        path.write_text("models:\n  algorithm: XGB\n")
        monkeypatch.setattr('sys.argv', ['pipeline_lst_downscaling.py', '--config', str(path)])
        assert pipeline.main() == 1
