"""
Timestamped scene collections and composable scene predicates.
"""

import dataclasses
import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd
import xarray as xr

from lst_downscaling.exceptions import NoScenesError
from lst_downscaling.raster import raster_bounds, select_bands, valid_mask


@dataclass(frozen=True, eq=False)
class Scene:
    """One acquisition: a primary raster plus scalar metadata.

    ``aux`` holds rasters of the same acquisition at other native scales,
    e.g. the 20 m SWIR/SCL group of a Sentinel-2 scene.
    """
    data: xr.Dataset
    time: pd.Timestamp
    sensor: str
    properties: Mapping = field(default_factory=dict)
    aux: Mapping[str, xr.Dataset] = field(default_factory=dict)

    def get(self, key: str, default=None):
        return self.properties.get(key, default)

    def replace(self, **changes) -> 'Scene':
        return dataclasses.replace(self, **changes)


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

class ScenePredicate:
    """Boolean test over a scene's metadata. Combine with ``&`` and ``|``."""

    def __call__(self, scene: Scene) -> bool:
        raise NotImplementedError

    def __and__(self, other: 'ScenePredicate') -> 'ScenePredicate':
        return AllOf([self, other])

    def __or__(self, other: 'ScenePredicate') -> 'ScenePredicate':
        return AnyOf([self, other])


class MatchNothing(ScenePredicate):
    def __call__(self, scene: Scene) -> bool:
        return False

    def __repr__(self):
        return 'MatchNothing()'


class AnyOf(ScenePredicate):
    """OR-chain. An empty chain matches nothing."""

    def __init__(self, predicates: Iterable[ScenePredicate]):
        self.predicates = tuple(predicates)

    def __call__(self, scene: Scene) -> bool:
        return any(p(scene) for p in self.predicates)

    def __repr__(self):
        return f'AnyOf({list(self.predicates)!r})'


class AllOf(ScenePredicate):
    """AND-chain. An empty chain matches everything."""

    def __init__(self, predicates: Iterable[ScenePredicate]):
        self.predicates = tuple(predicates)

    def __call__(self, scene: Scene) -> bool:
        return all(p(scene) for p in self.predicates)

    def __repr__(self):
        return f'AllOf({list(self.predicates)!r})'


class DateRange(ScenePredicate):
    """Acquisition time in [start, end)."""

    def __init__(self, start, end):
        self.start = pd.Timestamp(start)
        self.end = pd.Timestamp(end)

    @classmethod
    def day(cls, date) -> 'DateRange':
        """Whole calendar day containing ``date``, whatever the time of day."""
        start = pd.Timestamp(date).normalize()
        return cls(start, start + pd.Timedelta(days=1))

    def __call__(self, scene: Scene) -> bool:
        return self.start <= scene.time < self.end

    def __repr__(self):
        return f'DateRange({self.start.date()}, {self.end.date()})'


class CalendarRange(ScenePredicate):
    """Calendar field of the acquisition time (e.g. month, year) in [start, end]."""

    def __init__(self, start: int, end: int, field: str = 'month'):
        if field not in ('month', 'year', 'dayofyear'):
            raise ValueError(f"Unsupported calendar field: {field}")
        self.start = start
        self.end = end
        self.field = field

    def __call__(self, scene: Scene) -> bool:
        return self.start <= getattr(scene.time, self.field) <= self.end


class PropertyLessThan(ScenePredicate):
    """Scene metadata value strictly below a threshold. Missing values fail."""

    def __init__(self, name: str, value: float):
        self.name = name
        self.value = value

    def __call__(self, scene: Scene) -> bool:
        prop = scene.get(self.name)
        return prop is not None and prop < self.value


class PropertyEquals(ScenePredicate):
    def __init__(self, name: str, value):
        self.name = name
        self.value = value

    def __call__(self, scene: Scene) -> bool:
        return scene.get(self.name) == self.value


def any_of(predicates: Sequence[ScenePredicate]) -> ScenePredicate:
    """OR-chain that degrades to MatchNothing when empty."""
    predicates = list(predicates)
    if not predicates:
        return MatchNothing()
    if len(predicates) == 1:
        return predicates[0]
    return AnyOf(predicates)


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------

class SceneCollection:
    """Immutable ordered collection of scenes from one sensor."""

    def __init__(self, scenes: Iterable[Scene] = (), sensor: Optional[str] = None):
        self._scenes = tuple(scenes)
        self.sensor = sensor or (self._scenes[0].sensor if self._scenes else None)

    def __len__(self) -> int:
        return len(self._scenes)

    def __iter__(self):
        return iter(self._scenes)

    def __getitem__(self, index):
        return self._scenes[index]

    def __repr__(self):
        return f'SceneCollection(sensor={self.sensor!r}, size={len(self)})'

    @property
    def size(self) -> int:
        return len(self._scenes)

    @property
    def timestamps(self) -> List[pd.Timestamp]:
        return [s.time for s in self._scenes]

    def _derive(self, scenes: Iterable[Scene]) -> 'SceneCollection':
        return SceneCollection(scenes, sensor=self.sensor)

    def filter(self, predicate: Callable[[Scene], bool]) -> 'SceneCollection':
        return self._derive(s for s in self._scenes if predicate(s))

    def filter_date(self, start, end) -> 'SceneCollection':
        return self.filter(DateRange(start, end))

    def filter_bounds(self, bounds) -> 'SceneCollection':
        """Keep scenes whose extent intersects the rectangle ``bounds``."""
        xmin, ymin, xmax, ymax = bounds

        def intersects(scene: Scene) -> bool:
            sx0, sy0, sx1, sy1 = raster_bounds(scene.data)
            return sx0 < xmax and sx1 > xmin and sy0 < ymax and sy1 > ymin

        return self.filter(intersects)

    def sort(self, key: str = 'time', reverse: bool = False) -> 'SceneCollection':
        if key == 'time':
            return self._derive(sorted(self._scenes, key=lambda s: s.time, reverse=reverse))
        return self._derive(sorted(self._scenes, key=lambda s: s.get(key), reverse=reverse))

    def subsample(self, step: int) -> 'SceneCollection':
        """Every ``step``-th scene, starting with the first."""
        if step < 1:
            raise ValueError(f"Subsample step must be >= 1, got {step}")
        return self._derive(self._scenes[::step])

    def map(self, fn: Callable[[Scene], Scene]) -> 'SceneCollection':
        return self._derive(fn(s) for s in self._scenes)

    def merge(self, other: 'SceneCollection') -> 'SceneCollection':
        return self._derive(self._scenes + tuple(other))

    def select(self, bands: Sequence[str]) -> 'SceneCollection':
        return self.map(lambda s: s.replace(data=select_bands(s.data, bands)))

    def aggregate_array(self, name: str) -> list:
        """Metadata value of every scene, in collection order."""
        return [s.get(name) for s in self._scenes]

    def _rasters(self, group: Optional[str]) -> List[xr.Dataset]:
        if group is None:
            return [s.data for s in self._scenes]
        return [s.aux[group] for s in self._scenes]

    def _stack(self, bands: Optional[Sequence[str]], group: Optional[str]) -> xr.Dataset:
        if not self._scenes:
            raise NoScenesError(f"No {self.sensor or 'sensor'} scenes to composite")
        rasters = self._rasters(group)
        if bands is not None:
            rasters = [select_bands(r, bands) for r in rasters]
        stack = xr.concat(rasters, dim='time', join='outer', combine_attrs='override')
        return stack.assign_coords(time=[s.time for s in self._scenes])

    def count(self, bands: Optional[Sequence[str]] = None, group: Optional[str] = None) -> xr.DataArray:
        """Per-pixel number of scenes with all selected bands valid."""
        stack = self._stack(bands, group)
        per_scene = [valid_mask(stack.isel(time=i)) for i in range(stack.sizes['time'])]
        return xr.concat(per_scene, dim='time').sum('time')

    def composite(self, use_median: bool = False, bands: Optional[Sequence[str]] = None,
                  group: Optional[str] = None) -> xr.Dataset:
        """
        Per-pixel mean (or median) over time of the valid observations.

        Pixels without any valid observation stay invalid.
        """
        stack = self._stack(bands, group)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', category=RuntimeWarning)
            if use_median:
                comp = stack.median('time', skipna=True, keep_attrs=True)
            else:
                comp = stack.mean('time', skipna=True, keep_attrs=True)
        comp.attrs = dict(self._rasters(group)[0].attrs)
        return comp


def split_by_property(collection: SceneCollection, name: str) -> Dict:
    """Group a collection by a metadata value."""
    groups: Dict = {}
    for scene in collection:
        groups.setdefault(scene.get(name), []).append(scene)
    return {key: SceneCollection(scenes, sensor=collection.sensor) for key, scenes in groups.items()}
