from __future__ import annotations

import os

import numpy as np
import pytest
from astropy.io import fits
from astropy.wcs import WCS

import sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from catalog import build_catalog
from config import CatalogConfig, SBLimitConfig
from errors import MeasurementWarning
from finalize import finalize
from wcs_batch import CATEGORIES, WCSService, convert_pools, pixel_area_arcsec2


def _tan_wcs(scale_arcsec: float = 1.0) -> WCS:
    w = WCS(naxis=2)
    w.wcs.ctype = ["RA---TAN", "DEC--TAN"]
    w.wcs.crpix = [20.5, 20.5]
    w.wcs.crval = [150.0, 2.2]
    w.wcs.cdelt = [-scale_arcsec / 3600.0, scale_arcsec / 3600.0]
    w.wcs.cunit = ["deg", "deg"]
    return w


class CountingWCS(WCSService):
    def __init__(self, wcs):
        super().__init__(wcs)
        self.calls = []

    def pixel_to_world(self, pix):
        self.calls.append(np.shape(pix))
        return super().pixel_to_world(pix)


class BrokenWCS(WCSService):
    def pixel_to_world(self, pix):
        raise ValueError("projection failed")


class PartialWCS(WCSService):
    def pixel_to_world(self, pix):
        world = super().pixel_to_world(pix)
        world[:, 0] = np.nan
        return world


def _scene(n: int = 40, seed: int = 8):
    rng = np.random.default_rng(seed)
    values = rng.normal(0.0, 0.1, size=(n, n))
    objects = np.zeros((n, n), dtype=np.int32)
    for o, (y, x) in enumerate([(5, 6), (12, 30), (25, 15), (33, 33)]):
        objects[y:y + 4, x:x + 5] = o + 1
        values[y:y + 4, x:x + 5] += rng.uniform(1.0, 4.0, size=(4, 5))
    return values, objects


def test_service_reads_header_metadata():
    header = _tan_wcs(0.5).to_header()
    service = WCSService(fits.Header(header))
    assert service.ndim == 2
    assert service.ctype(1) == "RA" and service.ctype(2) == "DEC"
    assert service.cunit(1) == "deg"
    assert np.isclose(service.pixel_scale(1), 0.5 / 3600.0)
    assert np.isclose(pixel_area_arcsec2(service), 0.25)


def test_centroid_round_trip_through_the_sky():
    values, objects = _scene()
    service = WCSService(_tan_wcs())
    res = build_catalog(values, objects, ["X", "Y", "GEOX", "GEOY", "RA", "DEC",
                                          "GEOW1", "GEOW2"],
                        wcs=service, config=CatalogConfig(threads=2))
    for ra, dec, x, y in (("RA", "DEC", "X", "Y"), ("GEO_RA", "GEO_DEC", "GEO_X", "GEO_Y")):
        px, py = service.wcs.all_world2pix(res.column(ra), res.column(dec), 1)
        assert np.allclose(px, res.column(x), atol=1e-3), f"{x} round trip"
        assert np.allclose(py, res.column(y), atol=1e-3), f"{y} round trip"


def test_e6_ra_dec_use_one_batched_call():
    values, objects = _scene()
    service = CountingWCS(_tan_wcs())
    res = build_catalog(values, objects, ["RA", "DEC"], wcs=service,
                        config=CatalogConfig(threads=1))
    assert res.plan.wcs_binding == {"RA": "W1", "DEC": "W2"}
    assert [c.spec.code for c in res.objects] == ["W1", "W2"]
    assert service.calls == [(2, 4)], service.calls
    assert np.all(np.isfinite(res.column("RA")))


def test_one_call_per_centroid_pool():
    values, objects = _scene()
    clumps = np.where(objects > 0, 1, 0).astype(np.int32)
    service = CountingWCS(_tan_wcs())
    build_catalog(values, objects, ["RA", "DEC", "GEOW1", "CLUMPSW1"], clumps=clumps,
                  wcs=service, config=CatalogConfig(threads=1))
    # objects:V, objects:G, objects:VC, clumps:V and clumps:G
    assert len(service.calls) == 5, service.calls


def test_failed_conversion_gives_nan_and_warning():
    values, objects = _scene()
    with pytest.warns(MeasurementWarning):
        res = build_catalog(values, objects, ["RA", "DEC", "AREA"],
                            wcs=BrokenWCS(_tan_wcs()),
                            config=CatalogConfig(threads=1, quiet=True))
    assert np.all(np.isnan(res.column("RA")))
    assert res.column("AREA").tolist() == [20, 20, 20, 20]
    assert res.tally.objects.tolist() == [1, 1, 1, 1]


def test_failed_rows_are_tallied():
    values, objects = _scene()
    with pytest.warns(MeasurementWarning):
        res = build_catalog(values, objects, ["RA"], wcs=PartialWCS(_tan_wcs()),
                            config=CatalogConfig(threads=1, quiet=True))
    ra = res.column("RA")
    assert np.isnan(ra[0]) and np.all(np.isfinite(ra[1:]))
    assert res.tally.objects.tolist() == [1, 0, 0, 0]


def test_convert_pools_keeps_blank_rows_blank():
    service = WCSService(_tan_wcs())
    pix = np.array([[1.0, np.nan], [1.0, np.nan]])
    world = convert_pools({"objects:V": pix}, service)["objects:V"]
    assert np.all(np.isfinite(world[:, 0])) and np.all(np.isnan(world[:, 1]))


def test_area_and_surface_brightness_use_the_pixel_area():
    values = np.zeros((40, 40))
    objects = np.zeros((40, 40), dtype=np.int32)
    objects[10:14, 10:14] = 1
    values[10:14, 10:14] = 1.0
    service = WCSService(_tan_wcs(0.5))
    res = build_catalog(values, objects, ["AREA", "AREAARCSEC2", "SB"], wcs=service,
                        config=CatalogConfig(threads=1, zeropoint=20.0))
    assert np.isclose(res.column("AREA_ARCSEC2")[0], 16 * 0.25)
    expected = 20.0 - 2.5 * np.log10(16.0) + 2.5 * np.log10(16 * 0.25)
    assert np.isclose(res.column("SURFACE_BRIGHTNESS")[0], expected, atol=1e-5)
    assert np.isclose(res.meta["PIXAREA"], 0.25)


def test_world_columns_need_a_service_when_finalizing():
    values, objects = _scene()
    cfg = CatalogConfig(threads=1)
    res = build_catalog(values, objects, ["RA", "AREA"], wcs=WCSService(_tan_wcs()), config=cfg)
    assert res.plan.needs_wcs()
    with pytest.raises(ValueError):
        finalize(res.plan, res.orows, res.crows, res.slices, res.lo, res.hi,
                 res.clump_count, cfg)
    plain = build_catalog(values, objects, ["AREA"], config=cfg)
    assert not plain.plan.needs_wcs()


def test_pool_categories_cover_every_world_column():
    values, objects = _scene()
    clumps = np.where(objects > 0, 1, 0).astype(np.int32)
    res = build_catalog(values, objects, ["RA", "GEOW1", "CLUMPSW1", "CLUMPSGEOW1"],
                        clumps=clumps, wcs=WCSService(_tan_wcs()),
                        config=CatalogConfig(threads=1))
    used = {c.spec.wcs_category for c in res.objects + res.clumps}
    assert used == set(CATEGORIES), used


def test_surface_brightness_limit_over_an_area():
    values = np.ones((40, 40))
    objects = np.zeros((40, 40), dtype=np.int32)
    objects[5:8, 5:8] = 1
    std = np.full((4, 4), 2.0)
    std[0, 0] = 50.0
    cfg = CatalogConfig(threads=1, zeropoint=20.0, sb_limit=SBLimitConfig(nsigma=3.0, area=100.0))
    res = build_catalog(values, objects, ["AREA"], std=std, wcs=WCSService(_tan_wcs(0.5)),
                        config=cfg)
    meta = res.meta
    assert meta["SBLSTD"] == 2.0, "median of the std tiles"
    assert np.isclose(meta["SBLMAGPX"], 20.0 - 2.5 * np.log10(6.0))
    assert meta["SBLAREA"] == 100.0
    assert np.isclose(meta["SBLMAG"], 20.0 - 2.5 * np.log10(6.0 / np.sqrt(25.0)))
