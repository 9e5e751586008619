"""
Unit tests for the raster model and the multi-resolution resampler.
Run with:  python -m pytest tests/ -v
"""

import numpy as np
import pytest

from conftest import AOI, CRS
from lst_downscaling.exceptions import ResourceExhaustedError
from lst_downscaling.raster import (
    align_to,
    clip_to_boundary,
    count_valid,
    create_raster,
    grid_origin,
    grid_template,
    normalized_difference,
    raster_bounds,
    safe_divide,
    update_mask,
)
from lst_downscaling.resampling import aggregate, disaggregate


def _ramp(ny, nx, scale=30.0):
    values = np.arange(ny * nx, dtype=float).reshape(ny, nx)
    return create_raster({'LST_C': values, 'B': values * 2}, scale, CRS,
                         origin=(AOI[0], AOI[3]))


# ======================================================================== #
#  Raster model                                                             #
# ======================================================================== #

class TestRaster:
    def test_grid_template_anchored_at_upper_left(self):
        template = grid_template(AOI, 300, CRS)
        assert template.sizes['x'] == 10 and template.sizes['y'] == 10
        assert template['x'].values[0] == pytest.approx(AOI[0] + 150)
        assert template['y'].values[0] == pytest.approx(AOI[3] - 150)
        assert template.attrs['crs'] == CRS
        assert grid_origin(template) == (AOI[0], AOI[3])

    def test_safe_divide_masks_zero_denominator(self):
        ds = create_raster({'a': np.array([[1.0, 2.0]]), 'b': np.array([[0.0, 4.0]])}, 10, CRS)
        ratio = safe_divide(ds['a'], ds['b'])
        assert np.isnan(ratio.values[0, 0])
        assert ratio.values[0, 1] == pytest.approx(0.5)
        assert not np.isinf(ratio.values).any()

    def test_normalized_difference_positive_only(self):
        ds = create_raster({'a': np.array([[-1.0, 3.0]]), 'b': np.array([[0.0, 1.0]])}, 10, CRS)
        nd = normalized_difference(ds['a'], ds['b'], positive_only=True)
        assert np.isnan(nd.values[0, 0])
        assert nd.values[0, 1] == pytest.approx(0.5)

    def test_update_mask_keeps_quality_bands(self):
        ds = create_raster({'LST_C': np.ones((2, 2)), 'QA_PIXEL': np.full((2, 2), 7)}, 30, CRS)
        masked = update_mask(ds, np.array([[True, False], [True, True]]))
        assert np.isnan(masked['LST_C'].values[0, 1])
        assert masked['QA_PIXEL'].values[0, 1] == 7
        assert not np.isnan(ds['LST_C'].values).any()

    def test_align_to_rejects_scale_mismatch(self):
        with pytest.raises(ValueError):
            align_to(_ramp(4, 4, scale=30), grid_template(AOI, 10, CRS))

    def test_align_to_rejects_crs_mismatch(self):
        with pytest.raises(ValueError):
            align_to(_ramp(4, 4), grid_template(AOI, 30, 'EPSG:2178'))

    def test_clip_to_rectangle(self):
        ds = _ramp(4, 4)
        clipped = clip_to_boundary(ds, (AOI[0], AOI[3] - 60, AOI[0] + 60, AOI[3]))
        assert count_valid(clipped) == 4


# ======================================================================== #
#  Aggregation / disaggregation                                             #
# ======================================================================== #

class TestResampling:
    def test_aggregate_is_area_weighted_mean(self):
        ds = _ramp(10, 10)
        coarse = aggregate(ds, 300)
        assert coarse['LST_C'].shape == (1, 1)
        assert coarse['LST_C'].values[0, 0] == pytest.approx(ds['LST_C'].values.mean())
        assert coarse.attrs['scale'] == 300

    def test_aggregate_ignores_masked_pixels(self):
        values = np.array([[1.0, np.nan], [3.0, np.nan]])
        ds = create_raster({'LST_C': values}, 10, CRS)
        coarse = aggregate(ds, 20)
        assert coarse['LST_C'].values[0, 0] == pytest.approx(2.0)

    def test_fully_masked_stays_masked(self):
        ds = create_raster({'LST_C': np.full((20, 20), np.nan)}, 30, CRS,
                           origin=(AOI[0], AOI[3]))
        coarse = aggregate(ds, 300)
        assert np.isnan(coarse['LST_C'].values).all()

    def test_non_integer_ratio(self):
        ds = create_raster({'LST_C': np.full((40, 40), 5.0)}, 30, CRS)
        coarse = aggregate(ds, 1000, max_pixels=4096)
        assert coarse['LST_C'].shape == (2, 2)
        np.testing.assert_allclose(coarse['LST_C'].values, 5.0)

    def test_too_many_contributing_pixels(self):
        ds = create_raster({'LST_C': np.ones((100, 100))}, 10, CRS)
        with pytest.raises(ResourceExhaustedError):
            aggregate(ds, 1000, max_pixels=1024)

    def test_roundtrip_keeps_extent_and_bands(self):
        ds = _ramp(20, 20)
        back = disaggregate(aggregate(ds, 300), target_scale=30)
        assert set(back.data_vars) == set(ds.data_vars)
        assert dict(back.sizes) == dict(ds.sizes)
        xmin, ymin, xmax, ymax = raster_bounds(ds)
        assert back['x'].values.min() >= xmin and back['x'].values.max() <= xmax
        assert back['y'].values.min() >= ymin and back['y'].values.max() <= ymax

    def test_bilinear_constant_field(self):
        coarse = create_raster({'RESIDUAL': np.full((3, 3), 2.5)}, 300, CRS,
                               origin=(AOI[0], AOI[3]))
        fine = disaggregate(coarse, like=grid_template((AOI[0], AOI[3] - 900, AOI[0] + 900, AOI[3]),
                                                       10, CRS))
        np.testing.assert_allclose(fine['RESIDUAL'].values, 2.5)

    def test_bilinear_skips_masked_neighbours(self):
        coarse = create_raster({'R': np.array([[1.0, np.nan], [1.0, 1.0]])}, 20, CRS)
        fine = disaggregate(coarse, target_scale=10)
        valid = fine['R'].values[~np.isnan(fine['R'].values)]
        np.testing.assert_allclose(valid, 1.0)

    def test_nearest(self):
        coarse = create_raster({'R': np.array([[1.0, 2.0]])}, 20, CRS)
        fine = disaggregate(coarse, target_scale=10, method='nearest')
        np.testing.assert_array_equal(fine['R'].values, [[1.0, 1.0, 2.0, 2.0], [1.0, 1.0, 2.0, 2.0]])
