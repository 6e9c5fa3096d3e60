"""
catalog.py

End-to-end measurement: validate inputs, plan the columns, reduce every
object on the worker threads, finalize the columns and convert centroids to
world coordinates.

Primary API
-----------

    from catalog import build_catalog, write_result

    result = build_catalog(values, objects, ["OBJID", "AREA", "X", "Y", "SUM"],
                           clumps=clumps, sky=0.0, std=std,
                           wcs=WCSService(header), config=CatalogConfig())
    write_result(result, "cat.fits")
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from accumulators import allocate_clump_rows, allocate_object_rows, allocate_slices
from config import CatalogConfig
from errors import InputShapeError, WarningTally
from finalize import finalize
from io_bridge import NoiseModel, clump_path, write_catalog
from planner import CatalogPlan, OutputColumn, plan_catalog
from reducer import as_cube, build_context, check_labels, measure_object, prescan_labels
from scheduler import run_objects
from wcs_batch import WCSService

log = logging.getLogger(__name__)


@dataclass
class CatalogResult:
    """Columns and intermediate state of one run.

    - plan: planned columns (``plan.objects`` and ``plan.clumps`` hold the data)
    - orows, crows, slices: accumulator rows after the reduction
    - lo, hi: object bounding boxes along (z, y, x)
    - clump_count: clumps per object
    - tally: measurement warnings per row
    - meta: table metadata (zero point, pixel area, clipping and upper-limit
      settings, surface-brightness limit)
    """

    plan: CatalogPlan
    orows: np.ndarray
    crows: np.ndarray
    slices: Optional[np.ndarray]
    lo: np.ndarray
    hi: np.ndarray
    clump_count: np.ndarray
    tally: WarningTally
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def objects(self) -> List[OutputColumn]:
        return self.plan.objects

    @property
    def clumps(self) -> List[OutputColumn]:
        return self.plan.clumps

    def column(self, name: str, table: str = "objects") -> np.ndarray:
        for col in self.plan.columns(table):
            if col.name == name:
                return col.array
        raise KeyError(f"no {table} column named {name!r}")


def catalog_meta(plan: CatalogPlan, config: CatalogConfig,
                 median_std: float = np.nan) -> Dict[str, Any]:
    """Keywords written with both tables.

    The surface-brightness limit (SBL*) needs a positive ``median_std``; its
    value over ``sb_limit.area`` also needs the pixel area.
    """
    meta: Dict[str, Any] = {"ZEROPNT": config.zeropoint, "CPSCORR": config.cpscorr}
    if np.isfinite(plan.pixel_area):
        meta["PIXAREA"] = plan.pixel_area
    if config.sigma_clip is not None:
        meta["SCLIPK"], meta["SCLIPP"] = config.sigma_clip
    if config.frac_max is not None:
        meta["FRACMAX1"], meta["FRACMAX2"] = config.frac_max
    up = config.upper_limit
    meta.update({"UPNTRIES": up.n_tries, "UPSIGMUL": up.sigma_multiple,
                 "UPSEED": up.rng_seed, "UPBLANK": up.blank_fraction_max})

    sbl = config.sb_limit
    if np.isfinite(median_std) and median_std > 0:
        level = sbl.nsigma * median_std
        meta["SBLSTD"] = median_std
        meta["SBLNSIG"] = sbl.nsigma
        meta["SBLMAGPX"] = config.zeropoint - 2.5 * np.log10(level)
        if np.isfinite(plan.pixel_area):
            meta["SBLAREA"] = sbl.area
            meta["SBLMAG"] = (config.zeropoint
                              - 2.5 * np.log10(level / np.sqrt(sbl.area * plan.pixel_area)))
    return meta


def _label_array(arr) -> np.ndarray:
    return np.asarray(arr).astype(np.int32, copy=False)


def build_catalog(values: np.ndarray, objects: np.ndarray, columns: Iterable[str], *,
                  clumps: Optional[np.ndarray] = None,
                  sky=0.0,
                  std=np.nan,
                  wcs: Optional[WCSService] = None,
                  config: Optional[CatalogConfig] = None,
                  values_unit: str = "",
                  upmask: Optional[np.ndarray] = None,
                  cancel: Optional[threading.Event] = None) -> CatalogResult:
    """Measure every object (and clump) of a labelled 2D or 3D image.

    Parameters
    ----------
    values : ndarray
        Sky-subtracted image; NaN marks blank pixels.
    objects : ndarray of int
        Object labels, 0 for background, 1..NObj for objects.
    columns : iterable of str
        Requested column codes.
    clumps : ndarray of int, optional
        Clump labels 1..n inside each object, -1 for river pixels.
    sky, std : scalar or ndarray
        Sky level and its standard deviation (or variance, see
        ``config.std_is_variance``) as scalars, images or tile grids. Without
        ``std`` the errors are NaN.
    wcs : WCSService, optional
    config : CatalogConfig, optional
    values_unit : str
        Unit of ``values`` for the columns measured in it.
    upmask : ndarray, optional
        Non-zero pixels never host a random upper-limit placement.
    cancel : threading.Event, optional
        Set it to stop the workers; ``RunCancelled`` is raised.

    Returns
    -------
    CatalogResult
    """
    config = config or CatalogConfig()
    noise = NoiseModel(sky, std, config.std_is_variance, config.sky_already_subtracted)
    t0 = time.time()

    values = np.asarray(values)
    if not np.issubdtype(values.dtype, np.floating):
        values = values.astype(np.float64)
    if values.ndim not in (2, 3):
        raise InputShapeError(f"only 2D and 3D images are supported, got ndim={values.ndim}")
    objects = np.asarray(objects)
    if objects.shape != values.shape:
        raise InputShapeError(
            f"object labels {objects.shape} do not match values {values.shape}")
    if clumps is not None:
        clumps = np.asarray(clumps)
    check_labels(objects, clumps)
    objects = _label_array(objects)
    if clumps is not None:
        clumps = _label_array(clumps)

    sky_px = noise.sky_array(values.shape)
    var_px = noise.variance_array(values.shape)

    V = as_cube(values, "values")
    O = as_cube(objects, "objects")
    C = as_cube(clumps, "clumps") if clumps is not None else None
    S = as_cube(sky_px, "sky")
    VAR = as_cube(var_px, "std")
    M = None
    if upmask is not None:
        upmask = np.asarray(upmask)
        if upmask.shape != values.shape:
            raise InputShapeError(
                f"upper-limit mask {upmask.shape} does not match values {values.shape}")
        M = as_cube((upmask != 0).astype(np.uint8), "upmask")

    nobj = int(O.max()) if O.size else 0
    lo, hi, clump_count = prescan_labels(O, C, nobj)
    nclumps = int(clump_count.sum())
    nslices = V.shape[0]
    log.info("%d objects, %d clumps in a %dD image %s",
             nobj, nclumps, values.ndim, values.shape)

    plan = plan_catalog(columns, ndim=values.ndim, nobj=nobj, nclumps=nclumps,
                        nslices=nslices, has_clumps=C is not None, wcs=wcs,
                        config=config, values_unit=values_unit)

    orows = allocate_object_rows(nobj)
    crows = allocate_clump_rows(nclumps)
    slices = allocate_slices(nobj, nslices) if values.ndim == 3 else None
    tally = WarningTally(nobj, nclumps)

    ctx = build_context(V, O, C, S, VAR, noise.var_factor, orows, crows, slices,
                        plan.oiflag, plan.ciflag, lo, hi, clump_count, config, tally,
                        upmask=M)
    run_objects(partial(measure_object, ctx), nobj, config.threads, cancel)

    t1 = time.time()
    finalize(plan, orows, crows, slices, lo, hi, clump_count, config, wcs, tally)
    log.info("finalized columns in %.2f s", time.time() - t1)

    if tally.total and not config.quiet:
        log.warning(tally.summary())
    log.info("catalog built in %.2f s", time.time() - t0)
    return CatalogResult(plan=plan, orows=orows, crows=crows, slices=slices,
                         lo=lo, hi=hi, clump_count=clump_count, tally=tally,
                         meta=catalog_meta(plan, config, noise.median_std()))


def write_result(result: CatalogResult, path: str, format: Optional[str] = None) -> None:
    """Write the object table to ``path`` and, when present, the clump table
    to ``<stem>_clumps<ext>``."""
    write_catalog(path, result.objects, result.meta, format=format)
    if result.plan.has_clumps and result.clumps:
        write_catalog(clump_path(path), result.clumps, result.meta, format=format)


__all__ = ["CatalogResult", "build_catalog", "write_result", "catalog_meta"]
