from __future__ import annotations

import os
import threading
import warnings

import numpy as np
import pytest

import sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from accumulators import ACC
from catalog import build_catalog
from config import CatalogConfig, SBLimitConfig, UpperLimitConfig
from errors import InputShapeError, MeasurementWarning, RunCancelled
from finalize import finalize


def _cfg(**kw) -> CatalogConfig:
    kw.setdefault("threads", 1)
    return CatalogConfig(**kw)


def _blobs(n: int = 64, nobj: int = 12, seed: int = 7):
    """Noise image with ``nobj`` square objects, each split into two clumps
    by a river column."""
    rng = np.random.default_rng(seed)
    values = rng.normal(0.0, 1.0, size=(n, n))
    objects = np.zeros((n, n), dtype=np.int32)
    clumps = np.zeros((n, n), dtype=np.int32)
    side = 5
    per_row = (n - 2) // (side + 3)
    for o in range(nobj):
        y0 = 2 + (o // per_row) * (side + 3)
        x0 = 2 + (o % per_row) * (side + 3)
        objects[y0:y0 + side, x0:x0 + side] = o + 1
        values[y0:y0 + side, x0:x0 + side] += rng.uniform(3.0, 9.0)
        clumps[y0:y0 + side, x0:x0 + 2] = 1
        clumps[y0:y0 + side, x0 + 2] = -1
        clumps[y0:y0 + side, x0 + 3:x0 + side] = 2
    return values, objects, clumps


def test_e1_single_object_2d():
    values = np.zeros((5, 5))
    values[2, 2] = 10.0
    values[2, 3] = 6.0
    objects = np.ones((5, 5), dtype=np.int32)
    cols = ["AREA", "SUM", "MEAN", "X", "Y", "SEMIMAJOR", "SEMIMINOR",
            "AXISRATIO", "POSITIONANGLE"]
    res = build_catalog(values, objects, cols, sky=0.0, std=1.0, config=_cfg())
    col = res.column
    assert col("AREA")[0] == 25
    assert np.isclose(col("SUM")[0], 16.0)
    assert np.isclose(col("MEAN")[0], 0.64)
    assert np.isclose(col("X")[0], 3.375), col("X")
    assert np.isclose(col("Y")[0], 3.0), col("Y")
    assert col("SEMI_MAJOR")[0] > col("SEMI_MINOR")[0]
    assert col("AXIS_RATIO")[0] < 1.0
    assert abs(col("POSITION_ANGLE")[0]) < 1e-3


def test_e2_two_disjoint_labels():
    values = np.ones((10, 10))
    objects = np.zeros((10, 10), dtype=np.int32)
    objects[0:4] = 1
    objects[6:10] = 2
    res = build_catalog(values, objects, ["OBJID", "AREA"], config=_cfg())
    rows = list(zip(res.column("OBJ_ID").tolist(), res.column("AREA").tolist()))
    assert rows == [(1, 40), (2, 40)], rows


def test_e3_clump_with_river():
    rng = np.random.default_rng(1)
    values = rng.uniform(1.0, 5.0, size=(10, 10))
    objects = np.zeros((10, 10), dtype=np.int32)
    objects[2:7, 2:8] = 1
    clumps = np.zeros((10, 10), dtype=np.int32)
    clumps[2:4, 2:8] = 1
    clumps[4, 2:8] = -1
    clumps[5:7, 2:8] = 2
    res = build_catalog(values, objects, ["SUM", "SUMNORIVER", "RIVERNUM", "RIVERMEAN",
                                          "AREA"],
                        clumps=clumps, config=_cfg())
    riv_num = res.column("RIVER_NUM", "clumps")
    assert riv_num.tolist() == [6, 6], riv_num
    river_mean = values[4, 2:8].mean()
    assert np.allclose(res.column("RIVER_MEAN", "clumps"), river_mean, rtol=1e-5)
    raw = res.column("NO_RIVER_SUM", "clumps").astype(np.float64)
    area = res.column("AREA", "clumps").astype(np.float64)
    expected = raw - river_mean * area
    assert np.allclose(res.column("SUM", "clumps"), expected, rtol=1e-5), "river subtraction"
    assert np.isclose(raw[0], values[2:4, 2:8].sum(), rtol=1e-5)


def test_e4_area_in_slice():
    values = np.full((4, 4, 4), np.nan)
    values[1:3] = 1.0
    objects = np.ones((4, 4, 4), dtype=np.int32)
    res = build_catalog(values, objects, ["AREA-IN-SLICE", "SUM-IN-SLICE"], config=_cfg())
    area = res.column("AREA-IN-SLICE")
    assert area.shape == (1, 4)
    assert area[0].tolist() == [0, 16, 16, 0], area
    sums = res.column("SUM-IN-SLICE")[0]
    assert np.isnan(sums[0]) and np.isnan(sums[3]) and sums[1] == 16.0


def test_projected_slices_see_other_labels():
    values = np.ones((3, 4, 4))
    objects = np.zeros((3, 4, 4), dtype=np.int32)
    objects[0, 1:3, 1:3] = 1
    objects[2, 1:3, 1:3] = 2
    res = build_catalog(values, objects, ["AREA-PROJ-IN-SLICE", "AREA-OTHER-IN-SLICE",
                                          "AREAXY"], config=_cfg())
    assert res.column("AREA-PROJ-IN-SLICE")[0].tolist() == [4, 4, 4]
    assert res.column("AREA-OTHER-IN-SLICE")[0].tolist() == [0, 0, 4]
    assert res.column("AREAXY").tolist() == [4, 4]


def test_e5_upper_limit_stability():
    rng = np.random.default_rng(5)
    values = rng.normal(0.0, 1.0, size=(300, 300))
    yy, xx = np.mgrid[:300, :300]
    objects = (((yy - 150) ** 2 + (xx - 150) ** 2) <= 4).astype(np.int32)
    up = UpperLimitConfig(n_tries=4000, sigma_multiple=3.0, rng_seed=9)
    res = build_catalog(values, objects, ["UPPERLIMITONESIGMA", "UPPERLIMIT", "GEOAREA"],
                        config=_cfg(upper_limit=up))
    area = res.column("AREA_FULL")[0]
    assert area == 13
    one_sigma = res.column("UPPERLIMIT_ONE_SIGMA")[0]
    assert abs(one_sigma / np.sqrt(area) - 1.0) < 0.05, one_sigma
    assert np.isclose(res.column("UPPERLIMIT")[0], 3.0 * one_sigma)


def test_e5_upper_limit_with_500_tries():
    rng = np.random.default_rng(5)
    values = rng.normal(0.0, 1.0, size=(300, 300))
    yy, xx = np.mgrid[:300, :300]
    objects = (((yy - 150) ** 2 + (xx - 150) ** 2) <= 4).astype(np.int32)
    # One run of 500 placements scatters by about 3 %; the median of nine
    # independently seeded runs is held to the 5 % band.
    runs = []
    for seed in range(9):
        up = UpperLimitConfig(n_tries=500, rng_seed=seed)
        res = build_catalog(values, objects, ["UPPERLIMITONESIGMA"],
                            config=_cfg(upper_limit=up))
        runs.append(res.column("UPPERLIMIT_ONE_SIGMA")[0])
    ratio = np.median(runs) / np.sqrt(13.0)
    assert abs(ratio - 1.0) < 0.05, runs
    assert all(abs(r / np.sqrt(13.0) - 1.0) < 0.15 for r in runs), runs


def test_upper_limit_failure_sets_flag_and_tally():
    values = np.ones((6, 6))
    objects = np.ones((6, 6), dtype=np.int32)
    up = UpperLimitConfig(n_tries=10, failure_budget=5)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MeasurementWarning)
        res = build_catalog(values, objects, ["UPPERLIMIT", "AREA"],
                            config=_cfg(upper_limit=up, quiet=True))
    assert np.isnan(res.column("UPPERLIMIT")[0])
    assert res.orows[0, ACC.UPPERLIMIT_FLAG] == 1
    assert res.tally.objects.tolist() == [1]
    assert res.tally.total == 1


def test_sum_error_and_signal_to_noise():
    values = np.zeros((4, 4))
    values[1:3, 1:3] = 1.0
    objects = np.zeros((4, 4), dtype=np.int32)
    objects[1:3, 1:3] = 1
    cfg = _cfg(sky_already_subtracted=True, zeropoint=22.5)
    res = build_catalog(values, objects, ["SUM", "SUMERROR", "SN", "MAGNITUDE", "SKYSTD"],
                        std=2.0, config=cfg)
    # sqrt(SUM + 4 pixels * 4 * 2)
    assert np.isclose(res.column("SUM_ERROR")[0], 6.0)
    assert np.isclose(res.column("SN")[0], 4.0 / 6.0)
    assert np.isclose(res.column("MAGNITUDE")[0], 22.5 - 2.5 * np.log10(4.0))
    assert np.isclose(res.column("SKY_STD")[0], 2.0)


def test_missing_noise_gives_nan_errors():
    values = np.ones((3, 3))
    objects = np.ones((3, 3), dtype=np.int32)
    res = build_catalog(values, objects, ["SUM", "SUMERROR"], config=_cfg())
    assert res.column("SUM")[0] == 9.0
    assert np.isnan(res.column("SUM_ERROR")[0])


def test_clump_table_identifiers():
    values, objects, clumps = _blobs(nobj=3)
    res = build_catalog(values, objects, ["OBJID", "NUMCLUMPS", "HOSTOBJID", "IDINHOSTOBJ"],
                        clumps=clumps, config=_cfg())
    assert res.column("NUM_CLUMPS").tolist() == [2, 2, 2]
    assert res.column("HOST_OBJ_ID", "clumps").tolist() == [1, 1, 2, 2, 3, 3]
    assert res.column("ID_IN_HOST_OBJ", "clumps").tolist() == [1, 2, 1, 2, 1, 2]


def test_results_do_not_depend_on_thread_count():
    values, objects, clumps = _blobs()
    cols = ["OBJID", "SUM", "X", "Y", "MEDIAN", "SIGCLIPMEAN", "UPPERLIMIT",
            "UPPERLIMITQUANTILE", "RIVERMEAN", "HALFMAXAREA"]
    up = UpperLimitConfig(n_tries=50)
    one = build_catalog(values, objects, cols, clumps=clumps, std=1.0,
                        config=_cfg(threads=1, upper_limit=up))
    many = build_catalog(values, objects, cols, clumps=clumps, std=1.0,
                         config=_cfg(threads=5, upper_limit=up))
    for table in ("objects", "clumps"):
        for a, b in zip(one.plan.columns(table), many.plan.columns(table)):
            assert a.array.tobytes() == b.array.tobytes(), f"{table} {a.name} differs"


def test_finalize_is_idempotent():
    values, objects, clumps = _blobs(nobj=4)
    cfg = _cfg(frac_max=(0.5, 0.1))
    cols = ["SUM", "SN", "MAGNITUDE", "SEMIMAJOR", "POSITIONANGLE", "FWHM", "RIVERMEAN",
            "FRACMAX1RADIUS", "STD", "MINX", "MAXVALX"]
    res = build_catalog(values, objects, cols, clumps=clumps, std=1.0, config=cfg)
    first = [c.array.copy() for c in res.objects + res.clumps]
    finalize(res.plan, res.orows, res.crows, res.slices, res.lo, res.hi,
             res.clump_count, cfg)
    second = [c.array for c in res.objects + res.clumps]
    for a, b in zip(first, second):
        assert a.tobytes() == b.tobytes(), "finalize is not idempotent"


def test_cancelled_run_raises():
    values, objects, _ = _blobs(nobj=4)
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(RunCancelled):
        build_catalog(values, objects, ["SUM"], config=_cfg(threads=2), cancel=cancel)


def test_bounding_box_columns():
    values = np.ones((6, 7))
    objects = np.zeros((6, 7), dtype=np.int32)
    objects[1:4, 2:6] = 1
    clumps = np.zeros((6, 7), dtype=np.int32)
    clumps[2, 3:5] = 1
    res = build_catalog(values, objects, ["MINX", "MAXX", "MINY", "MAXY"], clumps=clumps,
                        config=_cfg())
    assert [res.column(n)[0] for n in ("MIN_X", "MAX_X", "MIN_Y", "MAX_Y")] == [3, 6, 2, 4]
    assert [res.column(n, "clumps")[0] for n in ("MIN_X", "MAX_X", "MIN_Y", "MAX_Y")] \
        == [4, 5, 3, 3]


def test_upper_limit_mask_keeps_placements_off_masked_pixels():
    rng = np.random.default_rng(11)
    values = rng.normal(0.0, 1.0, size=(60, 60))
    values[:, 30:] += 1000.0 * rng.normal(size=(60, 30))
    objects = np.zeros((60, 60), dtype=np.int32)
    objects[10:12, 10:12] = 1
    mask = np.zeros((60, 60), dtype=np.uint8)
    mask[:, 30:] = 1
    up = UpperLimitConfig(n_tries=200, rng_seed=3)
    cols = ["UPPERLIMITONESIGMA"]
    wild = build_catalog(values, objects, cols, config=_cfg(upper_limit=up))
    tame = build_catalog(values, objects, cols, upmask=mask, config=_cfg(upper_limit=up))
    assert tame.column("UPPERLIMIT_ONE_SIGMA")[0] < 5.0
    assert wild.column("UPPERLIMIT_ONE_SIGMA")[0] > 100.0


def test_fully_masked_image_exhausts_the_failure_budget():
    values = np.zeros((10, 10))
    objects = np.zeros((10, 10), dtype=np.int32)
    objects[0, 0] = 1
    mask = np.ones((10, 10), dtype=bool)
    up = UpperLimitConfig(n_tries=5, failure_budget=20)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MeasurementWarning)
        res = build_catalog(values, objects, ["UPPERLIMIT"], upmask=mask,
                            config=_cfg(upper_limit=up, quiet=True))
    assert res.orows[0, ACC.UPPERLIMIT_FLAG] == 1


def test_upper_limit_mask_shape_is_checked():
    values = np.zeros((6, 6))
    objects = np.ones((6, 6), dtype=np.int32)
    with pytest.raises(InputShapeError):
        build_catalog(values, objects, ["UPPERLIMIT"], upmask=np.zeros((5, 6)), config=_cfg())


def test_surface_brightness_limit_without_pixel_area():
    values = np.ones((5, 5))
    objects = np.ones((5, 5), dtype=np.int32)
    res = build_catalog(values, objects, ["AREA"], std=2.0,
                        config=_cfg(zeropoint=20.0, sb_limit=SBLimitConfig(nsigma=3.0)))
    assert res.meta["SBLSTD"] == 2.0 and res.meta["SBLNSIG"] == 3.0
    assert np.isclose(res.meta["SBLMAGPX"], 20.0 - 2.5 * np.log10(6.0))
    assert "SBLMAG" not in res.meta
    quiet = build_catalog(values, objects, ["AREA"], config=_cfg())
    assert "SBLSTD" not in quiet.meta
