#!/usr/bin/env python3
"""
Summer LST Downscaling Pipeline (Landsat 30 m -> 10 m)

This pipeline:
1. Selects dry summer days from daily precipitation records
2. Composites cloud-masked, emissivity-corrected Landsat 8/9 LST per summer
3. Builds eight 10 m covariates from Sentinel-2 and Sentinel-1
4. Trains a regression model at the coarse scale (300 m)
5. Predicts at 10 m and applies bilinear residual correction
6. Validates the Landsat composite against MODIS Terra/Aqua LST

Usage:
    python pipeline_lst_downscaling.py --steps all
    python pipeline_lst_downscaling.py --steps download --sensors landsat sentinel2
    python pipeline_lst_downscaling.py --steps dry_days,downscale --years 2023 2024
    python pipeline_lst_downscaling.py --grid-search --algorithm GBT
"""

import argparse
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
from joblib import Parallel, delayed

from lst_downscaling.data_loader import (
    SENSORS,
    GeoTiffSceneProvider,
    NetCDFExportSink,
    composite_export_name,
    downscaled_export_name,
    load_boundary,
    predictor_export_name,
    resolve_aoi_bounds,
)
from lst_downscaling.downscaling_engine import LSTDownscaler, YearInputs, YearResult
from lst_downscaling.dry_day_filter import DryDayFilterEngine
from lst_downscaling.exceptions import (
    ConfigurationError,
    DataSparsityError,
    DegenerateTargetError,
    ResourceExhaustedError,
)
from lst_downscaling.grid_search import STATUS_OK, GridSearchTuner
from lst_downscaling.raster import from_arrays
from lst_downscaling.utils_downscaling import (
    add_metadata_to_dataset,
    create_output_directories,
    get_config_value,
    get_projected_crs,
    load_config,
    setup_logging,
    validate_config,
)
from lst_downscaling.validation.validate_modis import run_modis_validation

DRY_DAYS_FILE = 'dry_days.csv'


def _dry_days_path(config: dict) -> Path:
    return Path(get_config_value(config, 'paths.results', 'results_lst_downscaling')) / DRY_DAYS_FILE


def load_dry_filter(config: dict, logger):
    """
    Dry-day predicate rebuilt from the precipitation records of this run.

    The saved dry_days.csv is an export only and is never read back.
    """
    logger.info("Building dry-day filter from precipitation records")
    return DryDayFilterEngine(config).build_filter()


def load_year_inputs(config: dict, provider, year: int, aoi_bounds) -> YearInputs:
    """All scenes of one calendar year, per sensor."""
    start = pd.Timestamp(year=year, month=1, day=1)
    end = pd.Timestamp(year=year + 1, month=1, day=1)
    modis_enabled = get_config_value(config, 'validation.modis.enabled', True)

    def collection(sensor):
        return provider.get_collection(sensor, start=start, end=end, bounds=aoi_bounds)

    return YearInputs(
        landsat=collection('landsat'),
        sentinel2=collection('sentinel2'),
        sentinel1=collection('sentinel1'),
        modis_terra=collection('modis_terra') if modis_enabled else None,
        modis_aqua=collection('modis_aqua') if modis_enabled else None
    )


def export_year(config: dict, result: YearResult, sink: NetCDFExportSink, logger) -> List[str]:
    """Write the downscaled field and, when enabled, predictors and composites."""
    year = result.year
    algorithm = result.downscaled.attrs.get('algorithm')
    strategy = result.downscaled.attrs.get('resampling_strategy')
    paths = []

    if get_config_value(config, 'output.export_downscaled', True):
        ds = add_metadata_to_dataset(result.downscaled, config, 'residual_correction')
        paths.append(sink.export(ds, downscaled_export_name(algorithm, strategy, year)))

    if get_config_value(config, 'output.export_predictors', False):
        covariates = result.data.fine_covariates
        for band in covariates.data_vars:
            ds = add_metadata_to_dataset(from_arrays({band: covariates[band]}, covariates),
                                         config, 'covariates')
            paths.append(sink.export(ds, predictor_export_name(band, year)))

    if get_config_value(config, 'output.export_composites', False):
        for kind, composite in (('Standard', result.data.standard_composite),
                                ('Corrected', result.data.corrected_composite)):
            ds = add_metadata_to_dataset(composite, config, 'lst_retrieval')
            paths.append(sink.export(ds, composite_export_name(kind, year)))

    for path in paths:
        logger.info(f"   ✓ Exported: {path}")
    return paths


def process_single_year(config: dict, year: int, aoi_bounds, boundary, dry_filter,
                        logger) -> Dict:
    """
    Downscale, export and validate one summer.

    Data sparsity skips the year and a zero-variance target marks it
    degenerate; any other failure marks it failed. The returned summary
    never raises, so years stay independent.
    """
    summary = {'year': year, 'status': 'failed'}
    crs = get_projected_crs(config)
    try:
        provider = GeoTiffSceneProvider.from_config(config, crs, aoi_bounds)
        inputs = load_year_inputs(config, provider, year, aoi_bounds)

        engine = LSTDownscaler(config, aoi_bounds, dry_filter=dry_filter, boundary=boundary)
        result = engine.process_year(year, inputs)

        sink = NetCDFExportSink(get_config_value(config, 'paths.outputs'))
        summary['landsat_days'] = len(result.data.landsat_dates)
        summary['exports'] = export_year(config, result, sink, logger)

        if get_config_value(config, 'output.save_models', False):
            models_dir = Path(get_config_value(config, 'paths.results')) / 'models'
            model_path = models_dir / f"{result.model.algorithm.value}_{year}.joblib"
            engine.trainer.save_model(result.model, str(model_path))

        for partition, row in result.metrics.iterrows():
            for metric in ('rmse', 'mae', 'r2', 'n'):
                summary[f'{partition}_{metric}'] = row[metric]
        summary['delta_rmse'] = result.metrics.loc['test', 'delta_rmse']

        if get_config_value(config, 'validation.modis.enabled', True):
            modis = run_modis_validation(
                config, year, result.data.corrected_composite, result.data.landsat_dates,
                inputs.modis_terra, inputs.modis_aqua, aoi_bounds,
                boundary=boundary, logger=logger
            )
            for platform, row in modis.iterrows():
                summary[f'modis_{platform.lower()}_rmse'] = row['rmse']
                summary[f'modis_{platform.lower()}_bias'] = row['bias']

        summary['status'] = 'ok'
        logger.info(f"✅ Summer {year} complete: test RMSE={summary['test_rmse']:.3f} °C, "
                    f"R²={summary['test_r2']:.3f}")

    except DataSparsityError as e:
        summary['status'] = 'skipped'
        summary['reason'] = str(e)
        logger.warning(f"⚠️ Skipping summer {year}: {e}")

    except DegenerateTargetError as e:
        summary['status'] = 'degenerate'
        summary['reason'] = str(e)
        logger.warning(f"⚠️ Summer {year} has a constant LST target, accuracy is undefined: {e}")

    except (ResourceExhaustedError, MemoryError) as e:
        summary['reason'] = str(e)
        logger.error(f"❌ Summer {year} ran out of resources: {e}")
        logger.error("   Retry with smaller parameters (resampling.max_pixels, "
                     "sampling.num_pixels, prediction.chunk_size) or a smaller study area")

    except Exception as e:
        summary['reason'] = str(e)
        logger.error(f"❌ Summer {year} failed: {e}")
        logger.error(traceback.format_exc())

    return summary


def run_scene_download(config: dict, logger, sensors: Optional[List[str]] = None) -> bool:
    """Step 0: Export summer scenes from Earth Engine."""
    logger.info("="*70)
    logger.info("STEP 0: SCENE DOWNLOAD")
    logger.info("="*70)

    try:
        from lst_downscaling.scene_downloader import download_scenes

        download_scenes(config, sensors=sensors)
        logger.info("✅ Scene download complete")
        return True

    except Exception as e:
        logger.error(f"Scene download failed: {e}")
        logger.error(traceback.format_exc())
        return False


def run_dry_day_selection(config: dict, logger) -> bool:
    """Step 1: Select dry summer days and export the list for inspection."""
    logger.info("="*70)
    logger.info("STEP 1: DRY-DAY SELECTION")
    logger.info("="*70)

    try:
        engine = DryDayFilterEngine(config)
        days = engine.dry_days()
        if not days:
            logger.warning("⚠️ No dry days found - every year will be skipped. "
                           "Consider raising precipitation.threshold_prev_mm")

        path = _dry_days_path(config)
        path.parent.mkdir(parents=True, exist_ok=True)
        pd.DataFrame({'date': [d.strftime('%Y-%m-%d') for d in days]}).to_csv(path, index=False)
        logger.info(f"✓ Saved {len(days)} dry days: {path}")
        return True

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return False
    except Exception as e:
        logger.error(f"Dry-day selection failed: {e}")
        logger.error(traceback.format_exc())
        return False


def run_downscaling(config: dict, logger) -> bool:
    """Step 2: Downscale every configured summer."""
    logger.info("="*70)
    logger.info("STEP 2: SUMMER LST DOWNSCALING")
    logger.info("="*70)

    try:
        crs = get_projected_crs(config)
        aoi_bounds = resolve_aoi_bounds(config, crs)
        boundary = load_boundary(config, crs, aoi_bounds)
        dry_filter = load_dry_filter(config, logger)
    except Exception as e:
        logger.error(f"Setup failed: {e}")
        logger.error(traceback.format_exc())
        return False

    years = list(get_config_value(config, 'temporal.years', []))
    if not years:
        logger.error("No years configured (temporal.years)")
        return False
    n_jobs = get_config_value(config, 'pipeline.n_jobs', 1)
    logger.info(f"CRS: {crs}")
    logger.info(f"AOI bounds: {aoi_bounds}")
    logger.info(f"Years: {years} (parallel jobs: {n_jobs})")

    if n_jobs == 1:
        summaries = [process_single_year(config, year, aoi_bounds, boundary, dry_filter, logger)
                     for year in years]
    else:
        summaries = Parallel(n_jobs=n_jobs)(
            delayed(process_single_year)(config, year, aoi_bounds, boundary, dry_filter, logger)
            for year in years
        )

    table = pd.DataFrame(summaries).set_index('year')
    results_dir = Path(get_config_value(config, 'paths.results'))
    results_dir.mkdir(parents=True, exist_ok=True)
    algorithm = get_config_value(config, 'models.algorithm')
    table_path = results_dir / f"summary_{algorithm}.csv"
    table.to_csv(table_path)

    logger.info("\n📊 Per-year summary:")
    for year, row in table.iterrows():
        logger.info(f"   {year}: {row['status']}")
    logger.info(f"✓ Summary saved: {table_path}")

    failed = table.index[table['status'] == 'failed'].tolist()
    if failed:
        logger.error(f"Failed years: {failed}")
        return False
    return True


def run_grid_search(config: dict, logger) -> bool:
    """Grid search for the configured algorithm on one year's split."""
    logger.info("="*70)
    logger.info("GRID SEARCH")
    logger.info("="*70)

    year = get_config_value(config, 'grid_search.year')
    try:
        crs = get_projected_crs(config)
        aoi_bounds = resolve_aoi_bounds(config, crs)
        boundary = load_boundary(config, crs, aoi_bounds)
        dry_filter = load_dry_filter(config, logger)

        provider = GeoTiffSceneProvider.from_config(config, crs, aoi_bounds)
        inputs = load_year_inputs(config, provider, year, aoi_bounds)
        engine = LSTDownscaler(config, aoi_bounds, dry_filter=dry_filter, boundary=boundary)
        data = engine.prepare_year(year, inputs)

        tuner = GridSearchTuner(config)
        ranked, records = tuner.run(data.train, data.test, year=year)
        results_dir = get_config_value(config, 'paths.results')
        tuner.save_results(ranked, records, results_dir, year=year)
        tuner.plot_results(records, get_config_value(config, 'paths.figures'), year=year)

        best = ranked.iloc[0]
        if best['status'] == STATUS_OK:
            logger.info(f"🏆 Best combination: {best['label']} "
                        f"(RMSE={best['rmse']:.3f} °C, R²={best['r2']:.3f})")
        else:
            logger.warning(f"⚠️ Test target of {year} has zero variance, R² is undefined. "
                           f"Lowest RMSE: {best['label']} ({best['rmse']:.3f} °C)")
        return True

    except DataSparsityError as e:
        logger.error(f"Grid search year {year} has no usable data: {e}")
        return False
    except (ResourceExhaustedError, MemoryError) as e:
        logger.error(f"Grid search ran out of resources: {e}")
        logger.error("   Retry with smaller parameters or fewer grid values")
        return False
    except Exception as e:
        logger.error(f"Grid search failed: {e}")
        logger.error(traceback.format_exc())
        return False


def main():
    """Main pipeline execution."""
    parser = argparse.ArgumentParser(
        description="Summer LST Downscaling Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument(
        '--config',
        default='lst_downscaling/config_lst_downscaling.yaml',
        help='Configuration file path'
    )

    parser.add_argument(
        '--steps',
        type=str,
        default='all',
        help='Steps to run: download, dry_days, downscale, grid_search, all'
    )

    parser.add_argument(
        '--years',
        nargs='+',
        type=int,
        default=None,
        help='Override temporal.years'
    )

    parser.add_argument(
        '--algorithm',
        choices=['GBT', 'RF', 'SVM', 'CART'],
        default=None,
        help='Override models.algorithm'
    )

    parser.add_argument(
        '--strategy',
        choices=['NATIVE_20M', 'BILINEAR_BAND', 'NEAREST'],
        default=None,
        help='Override covariates.index_strategy'
    )

    parser.add_argument(
        '--grid-search',
        action='store_true',
        help='Run the grid search instead of downscaling'
    )

    parser.add_argument(
        '--sensors',
        nargs='+',
        choices=list(SENSORS),
        default=None,
        help='Sensors for the download step (default: all)'
    )

    args = parser.parse_args()

    # Load configuration
    print("📋 Loading configuration...")
    try:
        config = load_config(args.config)
        if args.years:
            config['temporal']['years'] = args.years
        if args.algorithm:
            config['models']['algorithm'] = args.algorithm
        if args.strategy:
            config['covariates']['index_strategy'] = args.strategy
        if args.grid_search:
            config['grid_search']['enabled'] = True
        validate_config(config)
    except ConfigurationError as e:
        print(f"❌ Configuration error: {e}")
        return 1

    # Create output directories
    create_output_directories(config)

    # Setup logging
    logger = setup_logging(config, 'pipeline_lst_downscaling')

    logger.info("="*70)
    logger.info("🚀 SUMMER LST DOWNSCALING PIPELINE")
    logger.info("="*70)
    logger.info(f"Configuration: {args.config}")
    logger.info(f"Algorithm: {get_config_value(config, 'models.algorithm')}")
    logger.info(f"Index strategy: {get_config_value(config, 'covariates.index_strategy')}")
    logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    # Parse steps
    if args.steps.lower() == 'all':
        if get_config_value(config, 'grid_search.enabled', False):
            steps = ['dry_days', 'grid_search']
        else:
            steps = ['dry_days', 'downscale']
    else:
        steps = [s.strip().lower() for s in args.steps.split(',')]

    logger.info(f"Pipeline steps: {steps}")

    # Define step functions
    step_functions = {
        'download': lambda: run_scene_download(config, logger, sensors=args.sensors),
        'dry_days': lambda: run_dry_day_selection(config, logger),
        'downscale': lambda: run_downscaling(config, logger),
        'grid_search': lambda: run_grid_search(config, logger)
    }

    # Execute steps
    failed_steps = []
    successful_steps = []

    for step in steps:
        if step not in step_functions:
            logger.warning(f"Unknown step '{step}' - skipping")
            continue

        logger.info(f"\n{'='*70}")
        logger.info(f"🎯 Executing step: {step.upper()}")
        logger.info(f"{'='*70}")

        success = step_functions[step]()

        if success:
            successful_steps.append(step)
        else:
            failed_steps.append(step)
            logger.error(f"Step '{step}' failed - stopping pipeline")
            break

    # Summary
    logger.info("\n" + "="*70)
    logger.info("📊 PIPELINE SUMMARY")
    logger.info("="*70)
    logger.info(f"Successful steps: {successful_steps}")

    if failed_steps:
        logger.error(f"Failed steps: {failed_steps}")
        logger.error("❌ Pipeline completed with errors")
        return 1

    logger.info("✅ Pipeline completed successfully!")

    logger.info("\n📁 OUTPUT FILES:")
    output_files = {
        'Downscaled LST': get_config_value(config, 'paths.outputs'),
        'Results': get_config_value(config, 'paths.results'),
        'Figures': get_config_value(config, 'paths.figures')
    }
    for name, path in output_files.items():
        if path and Path(path).exists():
            logger.info(f"  ✓ {name}: {path}")

    logger.info(f"\nEnd time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info("="*70)
    return 0


if __name__ == "__main__":
    sys.exit(main())
