"""
Dry-Day Filter: select summer days without rain on the day and the day before

A precipitation record is joined with itself (previous-day lookup) and the
surviving days become an OR-chain of whole-day date ranges that can be
applied to any scene collection, regardless of acquisition time of day.
"""

import pandas as pd
import xarray as xr
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from lst_downscaling.exceptions import ConfigurationError, NoDryDaysError
from lst_downscaling.scene_collection import DateRange, ScenePredicate, any_of
from lst_downscaling.utils_downscaling import get_config_value

DATE_COLUMN = 'date'
PRECIP_COLUMN = 'daily_precip_mm'
PREV_PRECIP_COLUMN = 'prev_precip_mm'


def validate_precipitation_records(records: pd.DataFrame) -> pd.DataFrame:
    """
    Check the schema of a daily precipitation table and normalise it.

    Parameters:
    -----------
    records : pd.DataFrame
        Table with a 'date' column (YYYY-MM-DD strings or datetimes) and a
        numeric 'daily_precip_mm' column

    Returns:
    --------
    pd.DataFrame
        Columns 'date' (midnight timestamps) and 'daily_precip_mm', sorted by date

    Raises:
    -------
    ConfigurationError
        Missing columns, unparseable dates or amounts, or duplicate days
    """
    missing = [c for c in (DATE_COLUMN, PRECIP_COLUMN) if c not in records.columns]
    if missing:
        raise ConfigurationError(
            f"Precipitation records are missing column(s) {missing}; "
            f"expected '{DATE_COLUMN}' and '{PRECIP_COLUMN}'"
        )

    if pd.api.types.is_datetime64_any_dtype(records[DATE_COLUMN]):
        dates = records[DATE_COLUMN]
    else:
        dates = pd.to_datetime(records[DATE_COLUMN], format='%Y-%m-%d', errors='coerce')
    if dates.isna().any():
        bad = records.loc[dates.isna(), DATE_COLUMN].head(3).tolist()
        raise ConfigurationError(f"Unparseable precipitation dates (expected YYYY-MM-DD): {bad}")

    amounts = pd.to_numeric(records[PRECIP_COLUMN], errors='coerce')
    if amounts.isna().any():
        bad = records.loc[amounts.isna(), PRECIP_COLUMN].head(3).tolist()
        raise ConfigurationError(f"Non-numeric precipitation amounts: {bad}")

    clean = pd.DataFrame({DATE_COLUMN: dates.dt.normalize(), PRECIP_COLUMN: amounts.astype(float)})
    duplicated = clean[DATE_COLUMN].duplicated()
    if duplicated.any():
        days = clean.loc[duplicated, DATE_COLUMN].dt.strftime('%Y-%m-%d').head(3).tolist()
        raise ConfigurationError(f"Duplicate precipitation days: {days}")

    return clean.sort_values(DATE_COLUMN).reset_index(drop=True)


def load_precipitation_csv(path: str) -> pd.DataFrame:
    """Load a local daily precipitation CSV ('date', 'daily_precip_mm')."""
    try:
        records = pd.read_csv(path)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ConfigurationError(f"Cannot read precipitation file {path}: {e}") from e
    return validate_precipitation_records(records)


def era5_daily_areal_mean(dataset: xr.Dataset,
                          lonlat_bounds: Optional[Sequence[float]] = None,
                          start=None, end=None,
                          variable: str = 'total_precipitation') -> pd.DataFrame:
    """
    Daily areal-mean precipitation from hourly reanalysis fields.

    Hourly values (metres) are summed per day and grid cell, averaged over
    the area of interest and converted to millimetres. Days in [start, end)
    without any hourly field get 0 mm.

    Parameters:
    -----------
    dataset : xr.Dataset
        Hourly reanalysis with ``variable`` on (time, latitude, longitude)
    lonlat_bounds : Sequence[float], optional
        [west, south, east, north] of the area of interest
    start, end : date-like, optional
        Day range [start, end); defaults to the data's own range
    variable : str
        Name of the precipitation variable

    Returns:
    --------
    pd.DataFrame
        Validated records with 'date' and 'daily_precip_mm'
    """
    if variable not in dataset:
        raise ConfigurationError(f"Variable '{variable}' not found in reanalysis dataset")

    da = dataset[variable]
    time_dim = 'valid_time' if 'valid_time' in da.dims else 'time'
    lat_dim = 'latitude' if 'latitude' in da.dims else 'lat'
    lon_dim = 'longitude' if 'longitude' in da.dims else 'lon'

    if lonlat_bounds is not None:
        west, south, east, north = lonlat_bounds
        inside = ((da[lat_dim] >= south) & (da[lat_dim] <= north) &
                  (da[lon_dim] >= west) & (da[lon_dim] <= east))
        da = da.where(inside, drop=True)

    daily = da.resample({time_dim: '1D'}).sum(min_count=1)
    areal = daily.mean(dim=[lat_dim, lon_dim], skipna=True) * 1000.0
    series = areal.to_series().fillna(0.0)
    series.index = pd.DatetimeIndex(series.index).normalize()

    first = pd.Timestamp(start).normalize() if start is not None else series.index.min()
    last = (pd.Timestamp(end).normalize() - pd.Timedelta(days=1)) if end is not None else series.index.max()
    days = pd.date_range(first, last, freq='D')
    series = series.reindex(days, fill_value=0.0)

    return validate_precipitation_records(
        pd.DataFrame({DATE_COLUMN: series.index, PRECIP_COLUMN: series.values})
    )


def add_previous_precipitation(records: pd.DataFrame) -> pd.DataFrame:
    """
    Attach the previous day's amount to every record.

    Each record's date is decremented by one day and equality-joined with
    the original dates. A missing previous day counts as 0 mm (dry).
    """
    left = records[[DATE_COLUMN, PRECIP_COLUMN]].copy()
    left['_lookup'] = left[DATE_COLUMN] - pd.Timedelta(days=1)

    right = records[[DATE_COLUMN, PRECIP_COLUMN]].rename(
        columns={DATE_COLUMN: '_lookup', PRECIP_COLUMN: PREV_PRECIP_COLUMN}
    )

    joined = left.merge(right, on='_lookup', how='left', validate='one_to_one')
    joined[PREV_PRECIP_COLUMN] = joined[PREV_PRECIP_COLUMN].fillna(0.0)
    return joined.drop(columns='_lookup')


def find_dry_days(records: pd.DataFrame, threshold: float, threshold_prev: float,
                  start_month: int, end_month: int) -> List[pd.Timestamp]:
    """
    Days with ``current < threshold`` and ``previous < threshold_prev``
    inside the month range [start_month, end_month].

    Returns:
    --------
    List[pd.Timestamp]
        Sorted, unique midnight timestamps
    """
    joined = add_previous_precipitation(validate_precipitation_records(records))
    months = joined[DATE_COLUMN].dt.month
    keep = ((joined[PRECIP_COLUMN] < threshold) &
            (joined[PREV_PRECIP_COLUMN] < threshold_prev) &
            (months >= start_month) & (months <= end_month))
    days = joined.loc[keep, DATE_COLUMN].drop_duplicates().sort_values()
    return [pd.Timestamp(d) for d in days]


def build_dry_day_filter(days: Sequence) -> ScenePredicate:
    """OR-chain of whole-day ranges. No days gives a predicate that matches nothing."""
    return any_of([DateRange.day(d) for d in days])


class DryDayFilterEngine:
    """
    Build the dry-day scene predicate from the configured precipitation source.
    """

    def __init__(self, config: Dict):
        self.config = config
        self.source = get_config_value(config, 'precipitation.source', 'local')
        self.threshold = get_config_value(config, 'precipitation.threshold_mm', 1.0)
        self.threshold_prev = get_config_value(config, 'precipitation.threshold_prev_mm', 1.0)
        self.start_month = get_config_value(config, 'temporal.summer_start_month', 6)
        self.end_month = get_config_value(config, 'temporal.summer_end_month', 8)
        self.years = list(get_config_value(config, 'temporal.years', []))

        print(f"🌧️ Dry-day filter initialized:")
        print(f"   Source: {self.source}")
        print(f"   Thresholds: day < {self.threshold} mm, previous day < {self.threshold_prev} mm")
        print(f"   Months: {self.start_month}-{self.end_month}")

    def record_window(self):
        """[start, end) covering every summer plus one day on each side."""
        if not self.years:
            raise ConfigurationError("temporal.years must list at least one year")
        first, last = min(self.years), max(self.years)
        start = pd.Timestamp(year=first, month=self.start_month, day=1) - pd.Timedelta(days=1)
        end = (pd.Timestamp(year=last, month=self.end_month, day=1)
               + pd.offsets.MonthEnd(0) + pd.Timedelta(days=2))
        return start, end

    def load_records(self) -> pd.DataFrame:
        if self.source == 'local':
            path = get_config_value(self.config, 'precipitation.local_path')
            print(f"📂 Loading local precipitation: {path}")
            return load_precipitation_csv(path)

        path = get_config_value(self.config, 'precipitation.era5_path')
        if not Path(path).exists():
            raise ConfigurationError(f"Reanalysis precipitation file not found: {path}")
        print(f"📂 Loading reanalysis precipitation: {path}")
        start, end = self.record_window()
        with xr.open_dataset(path) as ds:
            return era5_daily_areal_mean(
                ds,
                lonlat_bounds=get_config_value(self.config, 'study_area.aoi_lonlat'),
                start=start, end=end
            )

    def dry_days(self, records: Optional[pd.DataFrame] = None) -> List[pd.Timestamp]:
        if records is None:
            records = self.load_records()
        days = find_dry_days(records, self.threshold, self.threshold_prev,
                             self.start_month, self.end_month)

        per_year = pd.Series([d.year for d in days], dtype=int).value_counts().sort_index()
        print(f"☀️ Dry days found: {len(days)}")
        for year, n in per_year.items():
            print(f"   {year}: {n}")
        return days

    def build_filter(self, records: Optional[pd.DataFrame] = None,
                     strict: bool = False) -> ScenePredicate:
        """
        Dry-day predicate for scene collections.

        With ``strict`` an empty day list raises NoDryDaysError instead of
        returning a predicate that matches nothing.
        """
        days = self.dry_days(records)
        if not days and strict:
            raise NoDryDaysError(
                "No dry days found; try raising precipitation.threshold_prev_mm "
                "or precipitation.threshold_mm"
            )
        return build_dry_day_filter(days)

