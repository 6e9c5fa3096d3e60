"""
finalize.py

Derived-column finalizer: fills every planned output column from the
accumulator rows with closed-form, vectorised expressions, then converts the
pooled pixel centroids to world coordinates with one WCS call per pool.

``finalize`` only reads the rows and overwrites the column arrays, so running
it twice gives identical columns.
"""

from __future__ import annotations

import logging
from functools import cached_property
from typing import Callable, Dict, Optional

import numpy as np

from accumulators import CCOL, OCOL, SLICE
from config import CatalogConfig
from errors import WarningTally
from planner import CLUMPS, OBJECTS, CatalogPlan, OutputColumn
from wcs_batch import CATEGORIES, WCSService, convert_pools

log = logging.getLogger(__name__)

_LN10 = np.log(10.0)
_RADIUS_MIN = 1e-6


def ratio(a, b):
    """a / b where b != 0, NaN elsewhere."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    shape = np.broadcast(a, b).shape
    return np.divide(a, b, out=np.full(shape, np.nan), where=b != 0)


class _Rows:
    """Read-only view of one table's accumulator rows with the derived
    quantities shared by several columns."""

    def __init__(self, rows: np.ndarray, layout, table: str, shift: np.ndarray,
                 config: CatalogConfig, pixel_area: float):
        self.rows = rows
        self.layout = layout
        self.table = table
        self.clump = table == CLUMPS
        # Second moments were accumulated relative to the bounding-box start.
        self.kx = shift[:, 2] + 1.0
        self.ky = shift[:, 1] + 1.0
        self.config = config
        self.pixel_area = pixel_area

    def __call__(self, slot: str) -> np.ndarray:
        return self.rows[:, self.layout[slot]]

    def __len__(self) -> int:
        return self.rows.shape[0]

    @cached_property
    def empty(self) -> np.ndarray:
        return self("NUMALL") == 0

    # -- magnitudes ---------------------------------------------------------

    def mag(self, b) -> np.ndarray:
        b = np.asarray(b, dtype=np.float64)
        out = np.full(b.shape, np.nan)
        good = b > 0
        out[good] = -2.5 * np.log10(b[good]) + self.config.zeropoint
        return out

    def sb(self, b, area) -> np.ndarray:
        b = np.broadcast_to(np.asarray(b, dtype=np.float64), (len(self),))
        area = np.broadcast_to(np.asarray(area, dtype=np.float64), (len(self),))
        out = np.full(len(self), np.nan)
        good = (b > 0) & (area > 0)
        out[good] = (self.mag(b[good])
                     + 2.5 * np.log10(area[good] * self.pixel_area))
        return out

    # -- rivers and brightness ----------------------------------------------

    @cached_property
    def has_rivers(self) -> np.ndarray:
        if not self.clump:
            return np.zeros(len(self), dtype=bool)
        return self("RIV_NUM") > 0

    @cached_property
    def river_mean(self) -> np.ndarray:
        if not self.clump:
            return np.zeros(len(self))
        return ratio(self("RIV_SUM"), self("RIV_NUM"))

    @cached_property
    def river_offset(self) -> np.ndarray:
        """River level scaled to the label area, 0 without rivers."""
        return np.where(self.has_rivers, self.river_mean * self("NUM"), 0.0)

    @cached_property
    def brightness(self) -> np.ndarray:
        out = self("SUM") - self.river_offset
        return np.where(self("NUM") > 0, out, np.nan)

    @cached_property
    def sum_error(self) -> np.ndarray:
        num = self("NUM")
        shot = np.maximum(self("SUM") + self.river_offset, 0.0) * self.config.cpscorr
        var = self("SUM_VAR").copy()
        if self.clump:
            var += np.where(self.has_rivers, self("RIV_SUM_VAR"), 0.0)
        err = np.sqrt(shot + var)
        return np.where((num > 0) & (num == self("SUM_VAR_NUM")), err, np.nan)

    @cached_property
    def sn(self) -> np.ndarray:
        return ratio(self("SUM") - self.river_offset, self.sum_error)

    @cached_property
    def mag_error(self) -> np.ndarray:
        sn = np.where(self.sn > 0, self.sn, np.nan)
        return 2.5 / (sn * _LN10)

    # -- positions and shapes -----------------------------------------------

    def position(self, axis: str, prefix: str = "") -> np.ndarray:
        """Flux weighted centre, geometric where there is no positive flux."""
        wht = self(prefix + "SUMWHT")
        geo = ratio(self(prefix + "G" + axis), self(prefix + "NUMALL"))
        return np.where(wht > 0, ratio(self(prefix + "V" + axis), wht), geo)

    def geo_position(self, axis: str, prefix: str = "") -> np.ndarray:
        return ratio(self(prefix + "G" + axis), self(prefix + "NUMALL"))

    def _moments(self, kind: str):
        denom = self("SUMWHT") if kind == "V" else self("NUMALL")
        x = ratio(self(kind + "X"), denom)
        y = ratio(self(kind + "Y"), denom)
        dx, dy = x - self.kx, y - self.ky
        xx = ratio(self(kind + "XX"), denom) - dx * dx
        yy = ratio(self(kind + "YY"), denom) - dy * dy
        xy = ratio(self(kind + "XY"), denom) - dx * dy
        return xx, yy, xy

    def _ellipse(self, kind: str) -> Dict[str, np.ndarray]:
        xx, yy, xy = self._moments(kind)
        mid = (xx + yy) / 2
        root = np.sqrt(((xx - yy) / 2) ** 2 + xy * xy)
        major = np.sqrt(np.maximum(mid + root, 0.0))
        minor = np.sqrt(np.maximum(mid - root, 0.0))
        return {
            "major": major,
            "minor": minor,
            "q": ratio(minor, major),
            "pa": 0.5 * np.arctan2(2 * xy, xx - yy) * 180.0 / np.pi,
        }

    @cached_property
    def ellipse(self) -> Dict[str, np.ndarray]:
        return self._ellipse("V")

    @cached_property
    def geo_ellipse(self) -> Dict[str, np.ndarray]:
        return self._ellipse("G")

    def radius(self, area) -> np.ndarray:
        r = np.sqrt(ratio(area, self.ellipse["q"] * np.pi))
        return np.where(r < _RADIUS_MIN, np.nan, r)


# ---------------------------------------------------------------------------
# Column fillers: code -> f(rows, ctx) -> values
# ---------------------------------------------------------------------------

_FILLERS: Dict[str, Callable] = {}


def _filler(*codes):
    def deco(func):
        for code in codes:
            _FILLERS[code] = func
        return func
    return deco


def _simple(code: str, fn: Callable[[_Rows], np.ndarray]) -> None:
    _FILLERS[code] = lambda t, ctx: fn(t)


@_filler("OBJID")
def _objid(t, ctx):
    return np.arange(1, len(t) + 1)


@_filler("HOSTOBJID")
def _host(t, ctx):
    return ctx["host"] + 1


@_filler("IDINHOSTOBJ")
def _id_in_host(t, ctx):
    return np.arange(len(t)) - ctx["clump_start"][ctx["host"]] + 1


@_filler("NUMCLUMPS")
def _numclumps(t, ctx):
    return ctx["clump_count"]


_simple("AREA", lambda t: t("NUM"))
_simple("AREAARCSEC2", lambda t: t("NUM") * t.pixel_area)
_simple("SB", lambda t: t.sb(t.brightness, t("NUM")))
_simple("SBERROR", lambda t: t.mag_error
        + 2.5 / _LN10 * ratio(t.config.spatial_resolution, t("NUM")))
_simple("AREAXY", lambda t: t("NUMXY"))
_simple("CLUMPSAREA", lambda t: t("C_NUM"))
_simple("WEIGHTAREA", lambda t: t("NUMWHT"))
_simple("GEOAREA", lambda t: t("NUMALL"))
_simple("GEOAREAXY", lambda t: t("NUMALLXY"))

_NUMPY_AXIS = {"X": 2, "Y": 1, "Z": 0}

for _ax in ("X", "Y", "Z"):
    _simple(_ax, lambda t, a=_ax: t.position(a))
    _simple("GEO" + _ax, lambda t, a=_ax: t.geo_position(a))
    _simple("CLUMPS" + _ax, lambda t, a=_ax: t.position(a, "C_"))
    _simple("CLUMPSGEO" + _ax, lambda t, a=_ax: t.geo_position(a, "C_"))
    for _ext in ("MIN", "MAX"):
        _simple(f"{_ext}VAL{_ax}",
                lambda t, a=_ax, e=_ext: ratio(t(f"{e}V{a}"), t(f"{e}VNUM")))

        def _extent(t, ctx, a=_ax, e=_ext):
            if t.clump:
                return np.where(t.empty, 0, t(f"{e}{a}"))
            d = _NUMPY_AXIS[a]
            edge = ctx["lo"][:, d] + 1 if e == "MIN" else ctx["hi"][:, d]
            return np.where(t.empty, 0, edge)

        _FILLERS[f"{_ext}{_ax}"] = _extent

_simple("MINVALNUM", lambda t: t("MINVNUM"))
_simple("MAXVALNUM", lambda t: t("MAXVNUM"))

_simple("SUM", lambda t: t.brightness)
_simple("SUMERROR", lambda t: t.sum_error)
_simple("CLUMPSSUM", lambda t: np.where(t("C_NUM") > 0, t("C_SUM"), np.nan))
_simple("SUMNORIVER", lambda t: np.where(t("NUM") > 0, t("SUM"), np.nan))
_simple("MEAN", lambda t: ratio(t.brightness, t("NUM")))
_simple("STD", lambda t: np.sqrt(np.maximum(
    ratio(t("SUMP2"), t("NUM")) - ratio(t("SUM"), t("NUM")) ** 2, 0.0)))
_simple("MEDIAN", lambda t: np.where(t("NUM") > 0, t("MEDIAN"), np.nan))
_simple("MAXIMUM", lambda t: np.where(t("NUM") > 0, t("MAXIMUM"), np.nan))
_simple("SIGCLIPNUMBER", lambda t: t("SIGCLIPNUM"))
_simple("SIGCLIPMEDIAN", lambda t: t("SIGCLIPMEDIAN"))
_simple("SIGCLIPMEAN", lambda t: t("SIGCLIPMEAN"))
_simple("SIGCLIPSTD", lambda t: t("SIGCLIPSTD"))
_simple("SIGCLIPMEANSB", lambda t: t.sb(t("SIGCLIPMEAN"), 1.0))
_simple("SIGCLIPSTDSB", lambda t: t.sb(t("SIGCLIPSTD"), 1.0))
_simple("SIGCLIPMEANSBDELTA", lambda t: np.where(
    t("SIGCLIPMEAN") > 0,
    2.5 / _LN10 * ratio(t("SIGCLIPSTD"), t("SIGCLIPMEAN")), np.nan))

_simple("MAGNITUDE", lambda t: t.mag(t.brightness))
_simple("MAGNITUDEERROR", lambda t: t.mag_error)
_simple("CLUMPSMAGNITUDE", lambda t: t.mag(np.where(t("C_NUM") > 0, t("C_SUM"), np.nan)))
_simple("UPPERLIMIT", lambda t: t("UPPERLIMIT_B"))
_simple("UPPERLIMITMAG", lambda t: t.mag(t("UPPERLIMIT_B")))
_simple("UPPERLIMITSB", lambda t: t.sb(t("UPPERLIMIT_B"), t("NUMALL")))
_simple("UPPERLIMITONESIGMA", lambda t: t("UPPERLIMIT_S"))
_simple("UPPERLIMITSIGMA", lambda t: ratio(t.brightness, t("UPPERLIMIT_S")))
_simple("UPPERLIMITQUANTILE", lambda t: t("UPPERLIMIT_Q"))
_simple("UPPERLIMITSKEW", lambda t: t("UPPERLIMIT_SKEW"))
_simple("RIVERMEAN", lambda t: t.river_mean)
_simple("RIVERNUM", lambda t: t("RIV_NUM"))
_simple("SN", lambda t: t.sn)
_simple("SKY", lambda t: ratio(t("SUMSKY"), t("NUMSKY")))
_simple("SKYSTD", lambda t: np.sqrt(ratio(t("SUMVAR"), t("NUMVAR"))))

for _geo, _prop in (("", "ellipse"), ("GEO", "geo_ellipse")):
    _simple(_geo + "SEMIMAJOR", lambda t, p=_prop: getattr(t, p)["major"])
    _simple(_geo + "SEMIMINOR", lambda t, p=_prop: getattr(t, p)["minor"])
    _simple(_geo + "AXISRATIO", lambda t, p=_prop: getattr(t, p)["q"])
    _simple(_geo + "POSITIONANGLE", lambda t, p=_prop: getattr(t, p)["pa"])

_simple("HALFSUMAREA", lambda t: t("HALFSUMNUM"))
_simple("HALFMAXAREA", lambda t: t("HALFMAXNUM"))
_simple("HALFMAXSUM", lambda t: t("HALFMAXSUM"))
_simple("HALFMAXSB", lambda t: t.sb(t("HALFMAXSUM"), t("HALFMAXNUM")))
_simple("HALFSUMSB", lambda t: t.sb(t("SUM") / 2.0, t("HALFSUMNUM")))
for _i in (1, 2):
    _simple(f"FRACMAX{_i}SUM", lambda t, i=_i: t(f"FRACMAX{i}SUM"))
    _simple(f"FRACMAX{_i}AREA", lambda t, i=_i: t(f"FRACMAX{i}NUM"))
    _simple(f"FRACMAX{_i}RADIUS", lambda t, i=_i: t.radius(t(f"FRACMAX{i}NUM")))
_simple("FWHM", lambda t: 2.0 * t.radius(t("HALFMAXNUM")))
_simple("HALFMAXRADIUS", lambda t: t.radius(t("HALFMAXNUM")))
_simple("HALFSUMRADIUS", lambda t: t.radius(t("HALFSUMNUM")))


def _slice_filler(kind: str, what: str):
    num_kind = SLICE["NUM" + kind]
    sum_kind = SLICE["SUM" + kind]
    var_kind = SLICE["SUM" + kind + "VAR"]

    def fill(t, ctx):
        s = ctx["slices"]
        num = s[num_kind]
        if what == "AREA":
            return num
        vals = s[sum_kind] if what == "SUM" else np.sqrt(s[var_kind])
        return np.where(num > 0, vals, np.nan)
    return fill


for _kind in ("", "PROJ", "OTHER"):
    _FILLERS[f"SUM{_kind}INSLICE"] = _slice_filler(_kind, "SUM")
    _FILLERS[f"SUM{_kind}ERRINSLICE"] = _slice_filler(_kind, "ERR")
    _FILLERS[f"AREA{_kind}INSLICE"] = _slice_filler(_kind, "AREA")

_ELLIPSE_CODES = {"SEMIMAJOR", "SEMIMINOR", "AXISRATIO", "POSITIONANGLE",
                  "FWHM", "HALFMAXRADIUS", "HALFSUMRADIUS", "FRACMAX1RADIUS",
                  "FRACMAX2RADIUS"}


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

def _store(col: OutputColumn, values, empty: np.ndarray) -> None:
    values = np.broadcast_to(np.asarray(values, dtype=np.float64), col.array.shape)
    if np.issubdtype(col.array.dtype, np.floating):
        mask = empty[:, None] if col.array.ndim == 2 else empty
        values = np.where(mask, np.nan, values)
    else:
        values = np.nan_to_num(values, nan=0.0, posinf=0.0, neginf=0.0)
    col.array[...] = values.astype(col.array.dtype)


def _pixel_pool(t: _Rows, category: str, ndim: int) -> np.ndarray:
    if category not in CATEGORIES:
        raise ValueError(f"unknown centroid pool '{category}'")
    axes = ("X", "Y", "Z")[:ndim]
    if category == "V":
        return np.stack([t.position(a) for a in axes])
    if category == "G":
        return np.stack([t.geo_position(a) for a in axes])
    if category == "VC":
        return np.stack([t.position(a, "C_") for a in axes])
    return np.stack([t.geo_position(a, "C_") for a in axes])


def _warn_moments(t: _Rows, cols, tally: Optional[WarningTally]) -> None:
    if tally is None or not any(c.code in _ELLIPSE_CODES for c in cols):
        return
    undefined = ~t.empty & (t("SUMWHT") == 0)
    if undefined.any():
        tally.add(t.table, undefined, "second-order moments undefined (no positive values)")


def finalize(plan: CatalogPlan, orows: np.ndarray, crows: np.ndarray,
             slices: Optional[np.ndarray], lo: np.ndarray, hi: np.ndarray,
             clump_count: np.ndarray, config: CatalogConfig,
             wcs: Optional[WCSService] = None,
             tally: Optional[WarningTally] = None) -> None:
    """Fill all planned columns from the accumulator rows.

    Parameters
    ----------
    plan : CatalogPlan
        Its column arrays are overwritten.
    orows, crows : ndarray
        Object and clump accumulator rows.
    slices : ndarray or None
        Slice vectors, (SLICE_NUMKINDS, NObj, nslices).
    lo, hi : ndarray
        Object bounding boxes [lo, hi) along (z, y, x).
    clump_count : ndarray
        Clumps per object.
    config : CatalogConfig
    wcs : WCSService, optional
        Required when the plan has world-coordinate columns.
    tally : WarningTally, optional
        Receives rows whose measurements are undefined or failed.
    """
    if wcs is None and plan.needs_wcs():
        raise ValueError("world-coordinate columns were planned without a WCS")
    clump_start = np.zeros_like(clump_count)
    if clump_count.size:
        clump_start[1:] = np.cumsum(clump_count)[:-1]
    host = np.repeat(np.arange(clump_count.size), clump_count)

    tables = {OBJECTS: _Rows(orows, OCOL, OBJECTS, lo, config, plan.pixel_area)}
    ctx = {OBJECTS: {"lo": lo, "hi": hi, "clump_count": clump_count, "slices": slices}}
    if plan.has_clumps:
        tables[CLUMPS] = _Rows(crows, CCOL, CLUMPS, lo[host], config, plan.pixel_area)
        ctx[CLUMPS] = {"host": host, "clump_start": clump_start}

    pools: Dict[str, np.ndarray] = {}
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        for table, t in tables.items():
            cols = plan.columns(table)
            _warn_moments(t, cols, tally)
            for col in cols:
                if col.spec.wcs_category is not None:
                    key = f"{table}:{col.spec.wcs_category}"
                    if key not in pools:
                        pools[key] = _pixel_pool(t, col.spec.wcs_category, plan.ndim)
                    continue
                _store(col, _FILLERS[col.code](t, ctx[table]), t.empty)

    if not pools:
        return
    log.info("converting %d centroid pools to world coordinates", len(pools))
    world = convert_pools(pools, wcs)
    for table, t in tables.items():
        for col in plan.columns(table):
            if col.spec.wcs_category is None:
                continue
            key = f"{table}:{col.spec.wcs_category}"
            _store(col, world[key][col.spec.wcs_axis - 1], t.empty)
    if tally is not None:
        for key, pix in pools.items():
            bad = np.all(np.isfinite(pix), axis=0) & ~np.all(np.isfinite(world[key]), axis=0)
            if bad.any():
                tally.add(key.split(":")[0], bad, "WCS conversion failed", emit=False)


__all__ = ["finalize", "ratio"]
