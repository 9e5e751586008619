"""
Per-year LST downscaling engine

For one summer:
1. Filter Landsat, Sentinel-2 and Sentinel-1 to dry, low-cloud scenes
2. Cloud-mask and composite standard and emissivity-corrected LST (30 m)
3. Build the eight 10 m covariates
4. Aggregate target and covariates to the coarse scale and sample them
5. Train, evaluate, predict at 10 m and apply residual correction
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd
import xarray as xr

from lst_downscaling.cloud_masking import LandsatQAMasker, SCLMasker
from lst_downscaling.coarse_model_trainer import CoarseModelTrainer
from lst_downscaling.covariate_synthesizer import CovariateSynthesizer
from lst_downscaling.exceptions import NoScenesError, NoTrainingDataError
from lst_downscaling.feature_aggregator import FeatureAggregator
from lst_downscaling.fine_predictor import FinePredictor
from lst_downscaling.lst_retrieval import LSTRetriever
from lst_downscaling.model_registry import Params, TrainedModel
from lst_downscaling.raster import (
    Bounds,
    align_to,
    clip_to_boundary,
    count_valid,
    grid_template,
    raster_scale,
)
from lst_downscaling.residual_corrector import ResidualCorrector
from lst_downscaling.scene_collection import (
    AllOf,
    CalendarRange,
    PropertyEquals,
    PropertyLessThan,
    Scene,
    SceneCollection,
    ScenePredicate,
    split_by_property,
)
from lst_downscaling.utils_downscaling import (
    format_timestamps,
    get_config_value,
    get_projected_crs,
    print_statistics,
)


@dataclass
class YearInputs:
    """Unfiltered scene collections available for one year."""
    landsat: SceneCollection
    sentinel2: SceneCollection
    sentinel1: SceneCollection
    modis_terra: Optional[SceneCollection] = None
    modis_aqua: Optional[SceneCollection] = None


@dataclass
class YearData:
    """Everything prepared for training and prediction of one year."""
    year: int
    standard_composite: xr.Dataset
    corrected_composite: xr.Dataset
    fine_covariates: xr.Dataset
    coarse_target: xr.Dataset
    coarse_covariates: xr.Dataset
    samples: pd.DataFrame
    train: pd.DataFrame
    test: pd.DataFrame
    landsat_dates: List[pd.Timestamp] = field(default_factory=list)
    scene_info: Dict = field(default_factory=dict)


@dataclass
class YearResult:
    year: int
    downscaled: xr.Dataset
    metrics: pd.DataFrame
    model: TrainedModel
    importance: Optional[pd.Series] = None
    data: Optional[YearData] = None


def _align_scene(scene: Scene, template: xr.Dataset, swir_template: Optional[xr.Dataset] = None) -> Scene:
    """Snap a scene (and its SWIR group) onto the study grid when the scales match."""
    data = scene.data
    if math.isclose(raster_scale(data), raster_scale(template), rel_tol=1e-6):
        data = align_to(data, template)
    aux = dict(scene.aux)
    if swir_template is not None and 'swir' in aux:
        aux['swir'] = align_to(aux['swir'], swir_template)
    return scene.replace(data=data, aux=aux)


class LSTDownscaler:
    """
    Downscale one summer of Landsat LST from 30 m to 10 m.
    """

    def __init__(self, config: Dict, aoi_bounds: Bounds,
                 dry_filter: Optional[ScenePredicate] = None, boundary=None):
        """
        Parameters:
        -----------
        config : Dict
            Configuration dictionary
        aoi_bounds : Bounds
            Study rectangle in the projected CRS; every grid starts at its
            upper-left corner
        dry_filter : ScenePredicate, optional
            Dry-day predicate applied to every optical and radar collection
        boundary : shapely geometry, optional
            Outputs are clipped to it
        """
        self.config = config
        self.crs = get_projected_crs(config)
        self.aoi_bounds = tuple(aoi_bounds)
        self.dry_filter = dry_filter
        self.boundary = boundary

        self.start_month = get_config_value(config, 'temporal.summer_start_month', 6)
        self.end_month = get_config_value(config, 'temporal.summer_end_month', 8)
        self.cloud_cover_max = get_config_value(config, 'cloud_masking.cloud_cover_max', 20)
        self.instrument_mode = get_config_value(config, 'sentinel1.instrument_mode', 'IW')
        self.algorithm = get_config_value(config, 'models.algorithm', 'RF')

        buffer_m = get_config_value(config, 'cloud_masking.buffer_m', 0)
        landsat_scale = get_config_value(config, 'resolution.landsat_scale', 30)
        self.landsat_template = grid_template(self.aoi_bounds, landsat_scale, self.crs)
        self.fine_template = grid_template(
            self.aoi_bounds, get_config_value(config, 'resolution.fine_scale', 10), self.crs)
        self.swir_template = grid_template(
            self.aoi_bounds, get_config_value(config, 'resolution.sentinel2_swir_scale', 20), self.crs)

        self.landsat_masker = LandsatQAMasker(buffer_m, scale=landsat_scale)
        self.scl_masker = SCLMasker(buffer_m)
        self.retriever = LSTRetriever(config, region_bounds=self.aoi_bounds, boundary=boundary)
        self.synthesizer = CovariateSynthesizer(config)
        self.aggregator = FeatureAggregator(config)
        self.trainer = CoarseModelTrainer(config)
        self.predictor = FinePredictor(config)
        self.corrector = ResidualCorrector(config)

        print(f"🌍 LST Downscaler initialized:")
        print(f"   CRS: {self.crs}")
        print(f"   AOI bounds: {self.aoi_bounds}")
        print(f"   Algorithm: {self.algorithm}")

    # ------------------------------------------------------------------
    # Scene filtering
    # ------------------------------------------------------------------

    def _summer(self, year: int, *extra: ScenePredicate) -> ScenePredicate:
        predicates = [CalendarRange(year, year, 'year'),
                      CalendarRange(self.start_month, self.end_month, 'month')]
        predicates.extend(extra)
        if self.dry_filter is not None:
            predicates.append(self.dry_filter)
        return AllOf(predicates)

    def filter_landsat(self, collection: SceneCollection, year: int) -> SceneCollection:
        predicate = self._summer(year, PropertyLessThan('CLOUD_COVER', self.cloud_cover_max))
        filtered = collection.filter_bounds(self.aoi_bounds).filter(predicate)
        return filtered.map(lambda s: self.landsat_masker.mask(_align_scene(s, self.landsat_template)))

    def filter_sentinel2(self, collection: SceneCollection, year: int) -> SceneCollection:
        predicate = self._summer(year, PropertyLessThan('CLOUDY_PIXEL_PERCENTAGE', self.cloud_cover_max))
        filtered = collection.filter_bounds(self.aoi_bounds).filter(predicate)
        return filtered.map(
            lambda s: self.scl_masker.mask(_align_scene(s, self.fine_template, self.swir_template))
        )

    def filter_sentinel1(self, collection: SceneCollection, year: int) -> SceneCollection:
        predicate = self._summer(year, PropertyEquals('instrumentMode', self.instrument_mode))
        filtered = collection.filter_bounds(self.aoi_bounds).filter(predicate)
        return filtered.map(lambda s: _align_scene(s, self.fine_template))

    def scene_info(self, collection: SceneCollection, sensor_name: str, year: int) -> Dict:
        """Scene count and acquisition timestamps ('YYYY-MM-DD HH:MM:SS')."""
        info = {
            'count': len(collection),
            'dates': format_timestamps(collection.sort().timestamps),
        }
        if get_config_value(self.config, 'output.print_scene_info', True):
            print("-" * 40)
            print(f"Scene info — {sensor_name} — {year} — count: {info['count']}")
            print(f"Scene info — {sensor_name} — {year} — dates: {info['dates']}")
        return info

    def _landsat_info(self, landsat: SceneCollection, year: int) -> Dict:
        info = {}
        for spacecraft, scenes in sorted(split_by_property(landsat, 'SPACECRAFT_ID').items(),
                                         key=lambda kv: str(kv[0])):
            label = str(spacecraft).replace('LANDSAT_', 'Landsat ')
            info[label] = self.scene_info(scenes, label, year)
        return info

    # ------------------------------------------------------------------
    # Year processing
    # ------------------------------------------------------------------

    def prepare_year(self, year: int, inputs: YearInputs) -> YearData:
        """
        Composites, covariates and coarse training samples of one year.

        Raises:
        -------
        NoScenesError
            A required collection is empty after filtering
        NoTrainingDataError
            The coarse target has no valid pixel
        EmptySampleError
            Sampling or partitioning produced no rows
        """
        print("\n" + "=" * 70)
        print(f"☀️ SUMMER {year}")
        print("=" * 70)

        landsat = self.filter_landsat(inputs.landsat, year)
        sentinel2 = self.filter_sentinel2(inputs.sentinel2, year)
        sentinel1 = self.filter_sentinel1(inputs.sentinel1, year)

        scene_info = dict(self._landsat_info(landsat, year))
        scene_info['Sentinel-2'] = self.scene_info(sentinel2, 'Sentinel-2', year)
        scene_info['Sentinel-1'] = self.scene_info(sentinel1, 'Sentinel-1', year)

        if len(landsat) == 0:
            raise NoScenesError(f"No Landsat scenes for summer {year} after filtering")
        if len(sentinel2) == 0:
            raise NoScenesError(f"No Sentinel-2 scenes for summer {year} after filtering")
        if len(sentinel1) == 0:
            raise NoScenesError(f"No Sentinel-1 scenes for summer {year} after filtering")

        standard, corrected = self.retriever.composites(landsat)

        fine_covariates = self.synthesizer.build_covariates(sentinel2, sentinel1, like=self.fine_template)

        coarse_target = self.aggregator.aggregate_target(corrected)
        if count_valid(coarse_target) == 0:
            raise NoTrainingDataError(
                f"No valid training data for {year}: the coarse LST target is fully masked"
            )
        coarse_covariates = self.aggregator.aggregate_covariates(fine_covariates, coarse_target)

        samples = self.trainer.sample_points(coarse_target, coarse_covariates)
        train, test = self.trainer.split_train_test(samples)

        landsat_dates = sorted({t.normalize() for t in landsat.timestamps})

        return YearData(
            year=year,
            standard_composite=standard,
            corrected_composite=corrected,
            fine_covariates=clip_to_boundary(fine_covariates, self.boundary),
            coarse_target=coarse_target,
            coarse_covariates=coarse_covariates,
            samples=samples,
            train=train,
            test=test,
            landsat_dates=landsat_dates,
            scene_info=scene_info
        )

    def downscale(self, data: YearData, algorithm: Optional[str] = None,
                  params: Optional[Params] = None) -> YearResult:
        """Train on the coarse samples and produce the corrected 10 m field."""
        algorithm = algorithm or self.algorithm

        print(f"\n🤖 Training {algorithm} on {len(data.train):,} coarse samples...")
        model = self.trainer.train(data.train, algorithm, params)
        metrics = self.trainer.evaluate_partitions(model, data.train, data.test)

        importance = model.importance()
        if importance is not None and get_config_value(self.config, 'output.print_importance', True):
            print(f"\n🔍 Variable importance — {algorithm} — {data.year}:")
            for name, value in importance.items():
                print(f"   {name:12s} {value:.4f}")

        print(f"\n🔮 Predicting at fine resolution...")
        fine_prediction = self.predictor.predict_raster(model, data.fine_covariates)
        coarse_prediction = self.predictor.predict_raster(model, data.coarse_covariates,
                                                          show_progress=False)

        downscaled = self.corrector.full_residual_workflow(
            data.coarse_target, coarse_prediction, fine_prediction
        )
        downscaled = clip_to_boundary(downscaled, self.boundary)
        downscaled.attrs['year'] = int(data.year)
        downscaled.attrs['algorithm'] = algorithm
        downscaled.attrs['resampling_strategy'] = self.synthesizer.strategy_name.value

        if get_config_value(self.config, 'output.print_model_stats', True):
            print_statistics(downscaled['LST_C_DS'].values, f"LST_C_DS {algorithm} {data.year}")

        return YearResult(
            year=data.year,
            downscaled=downscaled,
            metrics=metrics,
            model=model,
            importance=importance,
            data=data
        )

    def process_year(self, year: int, inputs: YearInputs) -> YearResult:
        return self.downscale(self.prepare_year(year, inputs))
