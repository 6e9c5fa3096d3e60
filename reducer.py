"""
reducer.py

Per-object reduction of labelled pixels into accumulator rows.

Primary API
- prescan_labels(objects, clumps, nobj) -> (lo, hi, clump_count)
- build_context(...) -> ReduceContext
- measure_object(ctx, obj): pass 1, slice pass, order statistics and upper
  limits for one object and all clumps inside it
- order_statistics(row, values, total, sigma_clip, frac_max)

Notes
- Arrays are handled as (z, y, x); 2D images are viewed as (1, ny, nx).
  Coordinates written into the rows are FITS 1-based: x = k + 1, y = j + 1,
  z = i + 1.
- Second-order moments are accumulated relative to the object's bounding-box
  start (sx = k - lo_x, sy = j - lo_y) and corrected in the finalizer.
- A river pixel (C < 0) belongs to its object and updates the object row.
  It updates no clump row, only the river accumulators of every distinct
  face-adjacent clump of the same object.
- The kernels only touch the rows of the object they were called for and of
  its clumps, so workers owning disjoint objects never share a row.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from numba import njit

from accumulators import (
    ACC, CCOL, OCOL, ORDER_SLOTS, RIVER_SLOTS, SLICE, SLICE_OF_OCOL,
    UPPERLIMIT_SLOTS, allocate_scratch,
)
from clipping import median_sorted, sigma_clip
from config import CatalogConfig
from errors import InputShapeError, WarningTally
import upper_limit as UL


# Plain integer slot indices for the numba kernels.
_NUMALL = int(ACC.NUMALL)
_NUM = int(ACC.NUM)
_NUMWHT = int(ACC.NUMWHT)
_NUMSKY = int(ACC.NUMSKY)
_NUMVAR = int(ACC.NUMVAR)
_NUMXY = int(ACC.NUMXY)
_NUMALLXY = int(ACC.NUMALLXY)
_SUM = int(ACC.SUM)
_SUMP2 = int(ACC.SUMP2)
_SUMWHT = int(ACC.SUMWHT)
_SUMSKY = int(ACC.SUMSKY)
_SUMVAR = int(ACC.SUMVAR)
_SUM_VAR = int(ACC.SUM_VAR)
_SUM_VAR_NUM = int(ACC.SUM_VAR_NUM)
_VX, _VY, _VZ = int(ACC.VX), int(ACC.VY), int(ACC.VZ)
_GX, _GY, _GZ = int(ACC.GX), int(ACC.GY), int(ACC.GZ)
_VXX, _VYY, _VXY = int(ACC.VXX), int(ACC.VYY), int(ACC.VXY)
_GXX, _GYY, _GXY = int(ACC.GXX), int(ACC.GYY), int(ACC.GXY)
_MINVAL, _MINVNUM = int(ACC.MINVAL), int(ACC.MINVNUM)
_MINVX, _MINVY, _MINVZ = int(ACC.MINVX), int(ACC.MINVY), int(ACC.MINVZ)
_MAXVAL, _MAXVNUM = int(ACC.MAXVAL), int(ACC.MAXVNUM)
_MAXVX, _MAXVY, _MAXVZ = int(ACC.MAXVX), int(ACC.MAXVY), int(ACC.MAXVZ)

_C_NUMALL = int(OCOL.C_NUMALL)
_C_NUM = int(OCOL.C_NUM)
_C_SUM = int(OCOL.C_SUM)
_C_NUMWHT = int(OCOL.C_NUMWHT)
_C_SUMWHT = int(OCOL.C_SUMWHT)
_C_VX, _C_VY, _C_VZ = int(OCOL.C_VX), int(OCOL.C_VY), int(OCOL.C_VZ)
_C_GX, _C_GY, _C_GZ = int(OCOL.C_GX), int(OCOL.C_GY), int(OCOL.C_GZ)

_MINX, _MAXX = int(CCOL.MINX), int(CCOL.MAXX)
_MINY, _MAXY = int(CCOL.MINY), int(CCOL.MAXY)
_MINZ, _MAXZ = int(CCOL.MINZ), int(CCOL.MAXZ)
_RIV_NUM = int(CCOL.RIV_NUM)
_RIV_SUM = int(CCOL.RIV_SUM)
_RIV_SUM_VAR = int(CCOL.RIV_SUM_VAR)

_S_NUM, _S_SUM, _S_SUMVAR = int(SLICE.NUM), int(SLICE.SUM), int(SLICE.SUMVAR)
_S_NUMPROJ, _S_SUMPROJ, _S_SUMPROJVAR = (
    int(SLICE.NUMPROJ), int(SLICE.SUMPROJ), int(SLICE.SUMPROJVAR))
_S_NUMOTHER, _S_SUMOTHER, _S_SUMOTHERVAR = (
    int(SLICE.NUMOTHER), int(SLICE.SUMOTHER), int(SLICE.SUMOTHERVAR))

# Face neighbours (dz, dy, dx); at most 2 * ndim distinct clumps per river pixel.
_FACES = np.array([(-1, 0, 0), (1, 0, 0), (0, -1, 0), (0, 1, 0),
                   (0, 0, -1), (0, 0, 1)], dtype=np.int64)

# Pass-1 update groups; a group is skipped when no needed slot falls in it.
# NUMALL, NUM and SUM are always accumulated.
_UPDATE_GROUPS = (
    ("GX", "GY", "GZ"),
    ("GXX", "GYY", "GXY"),
    ("SUMP2",),
    ("NUMSKY", "SUMSKY"),
    ("NUMVAR", "SUMVAR", "SUM_VAR", "SUM_VAR_NUM"),
    ("NUMWHT", "SUMWHT", "VX", "VY", "VZ"),
    ("VXX", "VYY", "VXY"),
    ("MINVAL", "MINVNUM", "MINVX", "MINVY", "MINVZ"),
    ("MAXVAL", "MAXVNUM", "MAXVX", "MAXVY", "MAXVZ"),
)
_G_GEO, _G_GEO2, _G_P2, _G_SKY, _G_VAR, _G_WHT, _G_WHT2, _G_MIN, _G_MAX = range(9)
_CLUMP_AGGREGATE = ("C_NUMALL", "C_NUM", "C_SUM", "C_NUMWHT", "C_SUMWHT",
                    "C_VX", "C_VY", "C_VZ", "C_GX", "C_GY", "C_GZ")


def update_groups(flags: np.ndarray, layout) -> np.ndarray:
    """Which pass-1 update groups the needed bitmap ``flags`` asks for."""
    return np.array([bool(flags[[layout[n] for n in names]].any())
                     for names in _UPDATE_GROUPS], dtype=np.uint8)


# ---------------------------------------------------------------------------
# Input normalisation
# ---------------------------------------------------------------------------

def as_cube(arr: np.ndarray, what: str) -> np.ndarray:
    """View a 2D or 3D array as (z, y, x)."""
    if arr.ndim == 2:
        return arr.reshape((1,) + arr.shape)
    if arr.ndim == 3:
        return arr
    raise InputShapeError(f"{what}: only 2D and 3D images are supported, got ndim={arr.ndim}")


def check_labels(objects: np.ndarray, clumps: Optional[np.ndarray]) -> None:
    if not np.issubdtype(objects.dtype, np.integer):
        raise InputShapeError(f"object labels must be integers, got {objects.dtype}")
    if objects.size and objects.min() < 0:
        raise InputShapeError("object labels must be >= 0")
    if clumps is None:
        return
    if not np.issubdtype(clumps.dtype, np.integer):
        raise InputShapeError(f"clump labels must be integers, got {clumps.dtype}")
    if clumps.shape != objects.shape:
        raise InputShapeError(
            f"clump labels {clumps.shape} do not match object labels {objects.shape}")
    if np.any((clumps > 0) & (objects == 0)):
        raise InputShapeError("clump pixels found outside of any object")


# ---------------------------------------------------------------------------
# Pre-scan: bounding boxes and clumps per object
# ---------------------------------------------------------------------------

@njit(nogil=True, cache=True)
def _prescan(O, C, has_clumps, lo, hi, nclumps):
    nz, ny, nx = O.shape
    nobj = lo.shape[0]
    for i in range(nz):
        for j in range(ny):
            for k in range(nx):
                o = O[i, j, k]
                if o <= 0 or o > nobj:
                    continue
                r = o - 1
                if i < lo[r, 0]:
                    lo[r, 0] = i
                if i + 1 > hi[r, 0]:
                    hi[r, 0] = i + 1
                if j < lo[r, 1]:
                    lo[r, 1] = j
                if j + 1 > hi[r, 1]:
                    hi[r, 1] = j + 1
                if k < lo[r, 2]:
                    lo[r, 2] = k
                if k + 1 > hi[r, 2]:
                    hi[r, 2] = k + 1
                if has_clumps:
                    c = C[i, j, k]
                    if c > nclumps[r]:
                        nclumps[r] = c


def prescan_labels(objects: np.ndarray, clumps: Optional[np.ndarray],
                   nobj: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Bounding boxes [lo, hi) per object along (z, y, x) and the number of
    clumps in each object (its largest clump label).

    Objects that do not occur get lo == hi == 0.
    """
    O = as_cube(objects, "objects")
    lo = np.empty((nobj, 3), dtype=np.int64)
    lo[:] = np.asarray(O.shape, dtype=np.int64)
    hi = np.zeros((nobj, 3), dtype=np.int64)
    nclumps = np.zeros(nobj, dtype=np.int64)
    has_clumps = clumps is not None
    C = as_cube(clumps, "clumps") if has_clumps else _DUMMY_LABELS
    _prescan(O, C, has_clumps, lo, hi, nclumps)
    missing = np.any(hi <= lo, axis=1)
    lo[missing] = 0
    hi[missing] = 0
    return lo, hi, nclumps


# ---------------------------------------------------------------------------
# Pass 1
# ---------------------------------------------------------------------------

@njit(inline='always')
def _add_pixel(row, g, v, sky, var, vfac, x, y, z, sx, sy):
    row[_NUMALL] += 1
    if g[_G_GEO]:
        row[_GX] += x
        row[_GY] += y
        row[_GZ] += z
    if g[_G_GEO2]:
        row[_GXX] += sx * sx
        row[_GYY] += sy * sy
        row[_GXY] += sx * sy
    if v != v:
        return
    row[_NUM] += 1
    row[_SUM] += v
    if g[_G_P2]:
        row[_SUMP2] += v * v
    if g[_G_SKY] and sky == sky:
        row[_NUMSKY] += 1
        row[_SUMSKY] += sky
    if g[_G_VAR] and var == var:
        row[_NUMVAR] += 1
        row[_SUMVAR] += var
        row[_SUM_VAR_NUM] += 1
        row[_SUM_VAR] += var * vfac
    if v > 0:
        if g[_G_WHT]:
            row[_NUMWHT] += 1
            row[_SUMWHT] += v
            row[_VX] += v * x
            row[_VY] += v * y
            row[_VZ] += v * z
        if g[_G_WHT2]:
            row[_VXX] += v * sx * sx
            row[_VYY] += v * sy * sy
            row[_VXY] += v * sx * sy
    if g[_G_MIN]:
        if v < row[_MINVAL]:
            row[_MINVAL] = v
            row[_MINVX] = x
            row[_MINVY] = y
            row[_MINVZ] = z
            row[_MINVNUM] = 1
        elif v == row[_MINVAL]:
            row[_MINVX] += x
            row[_MINVY] += y
            row[_MINVZ] += z
            row[_MINVNUM] += 1
    if g[_G_MAX]:
        if v > row[_MAXVAL]:
            row[_MAXVAL] = v
            row[_MAXVX] = x
            row[_MAXVY] = y
            row[_MAXVZ] = z
            row[_MAXVNUM] = 1
        elif v == row[_MAXVAL]:
            row[_MAXVX] += x
            row[_MAXVY] += y
            row[_MAXVZ] += z
            row[_MAXVNUM] += 1


@njit(inline='always')
def _add_clump_aggregate(orow, v, x, y, z):
    orow[_C_NUMALL] += 1
    orow[_C_GX] += x
    orow[_C_GY] += y
    orow[_C_GZ] += z
    if v != v:
        return
    orow[_C_NUM] += 1
    orow[_C_SUM] += v
    if v > 0:
        orow[_C_NUMWHT] += 1
        orow[_C_SUMWHT] += v
        orow[_C_VX] += v * x
        orow[_C_VY] += v * y
        orow[_C_VZ] += v * z


@njit(inline='always')
def _update_bbox(crow, x, y, z):
    if crow[_NUMALL] == 1:
        crow[_MINX] = crow[_MAXX] = x
        crow[_MINY] = crow[_MAXY] = y
        crow[_MINZ] = crow[_MAXZ] = z
        return
    if x < crow[_MINX]:
        crow[_MINX] = x
    if x > crow[_MAXX]:
        crow[_MAXX] = x
    if y < crow[_MINY]:
        crow[_MINY] = y
    if y > crow[_MAXY]:
        crow[_MAXY] = y
    if z < crow[_MINZ]:
        crow[_MINZ] = z
    if z > crow[_MAXZ]:
        crow[_MAXZ] = z


@njit(inline='always')
def _add_river(O, C, crows, obj, i, j, k, v, var, vfac, seen):
    nz, ny, nx = O.shape
    nseen = 0
    for t in range(_FACES.shape[0]):
        ii = i + _FACES[t, 0]
        jj = j + _FACES[t, 1]
        kk = k + _FACES[t, 2]
        if ii < 0 or jj < 0 or kk < 0 or ii >= nz or jj >= ny or kk >= nx:
            continue
        if O[ii, jj, kk] != obj:
            continue
        cn = C[ii, jj, kk]
        if cn <= 0:
            continue
        dup = False
        for u in range(nseen):
            if seen[u] == cn:
                dup = True
                break
        if dup:
            continue
        seen[nseen] = cn
        nseen += 1
        crow = crows[cn - 1]
        crow[_RIV_NUM] += 1
        crow[_RIV_SUM] += v
        if var == var:
            crow[_RIV_SUM_VAR] += var * vfac


@njit(nogil=True, cache=True)
def _object_pass(V, O, C, S, VAR, vfac, has_clumps, obj, lo, hi,
                 orow, crows, oxy, cxy, ogrp, cgrp, need_aggregate, need_rivers,
                 mark_obj, mark_clumps):
    lz, ly, lx = lo[0], lo[1], lo[2]
    hz, hy, hx = hi[0], hi[1], hi[2]
    seen = np.zeros(_FACES.shape[0], dtype=np.int64)
    for i in range(lz, hz):
        for j in range(ly, hy):
            for k in range(lx, hx):
                if O[i, j, k] != obj:
                    continue
                v = V[i, j, k]
                sky = S[i, j, k]
                var = VAR[i, j, k]
                x = k + 1.0
                y = j + 1.0
                z = i + 1.0
                sx = float(k - lx)
                sy = float(j - ly)
                _add_pixel(orow, ogrp, v, sky, var, vfac, x, y, z, sx, sy)
                mark = 2 if v == v else 1
                if mark_obj and oxy[j - ly, k - lx] < mark:
                    oxy[j - ly, k - lx] = mark
                if not has_clumps:
                    continue
                c = C[i, j, k]
                if c > 0:
                    crow = crows[c - 1]
                    _add_pixel(crow, cgrp, v, sky, var, vfac, x, y, z, sx, sy)
                    _update_bbox(crow, x, y, z)
                    if need_aggregate:
                        _add_clump_aggregate(orow, v, x, y, z)
                    if mark_clumps and cxy[c - 1, j - ly, k - lx] < mark:
                        cxy[c - 1, j - ly, k - lx] = mark
                elif c < 0 and need_rivers and v == v:
                    _add_river(O, C, crows, obj, i, j, k, v, var, vfac, seen)

    if mark_obj:
        orow[_NUMALLXY] = np.count_nonzero(oxy)
        orow[_NUMXY] = np.count_nonzero(oxy == 2)
    if mark_clumps:
        for c in range(crows.shape[0]):
            crows[c, _NUMALLXY] = np.count_nonzero(cxy[c])
            crows[c, _NUMXY] = np.count_nonzero(cxy[c] == 2)


@njit(nogil=True, cache=True)
def _slice_pass(V, O, VAR, vfac, obj, lo, hi, oxy, out):
    """Walk every slice inside the object's projected (y, x) box."""
    nz = V.shape[0]
    ly, lx = lo[1], lo[2]
    for i in range(nz):
        for j in range(ly, hi[1]):
            for k in range(lx, hi[2]):
                v = V[i, j, k]
                if v != v:
                    continue
                o = O[i, j, k]
                var = VAR[i, j, k] * vfac
                if var != var:
                    var = 0.0
                if o == obj:
                    out[_S_NUM, i] += 1
                    out[_S_SUM, i] += v
                    out[_S_SUMVAR, i] += var
                if oxy[j - ly, k - lx] == 2:
                    out[_S_NUMPROJ, i] += 1
                    out[_S_SUMPROJ, i] += v
                    out[_S_SUMPROJVAR, i] += var
                    if o > 0 and o != obj:
                        out[_S_NUMOTHER, i] += 1
                        out[_S_SUMOTHER, i] += v
                        out[_S_SUMOTHERVAR, i] += var


@njit(nogil=True, cache=True)
def _gather(V, O, C, has_clumps, obj, lo, hi, objbuf, offsets, clumpbuf):
    """Copy the valued pixels of the object into ``objbuf`` and those of each
    clump c into ``clumpbuf[offsets[c-1]:offsets[c]]``."""
    n = 0
    pos = offsets[:-1].copy()
    fill_obj = objbuf.shape[0] > 0
    fill_clumps = has_clumps and clumpbuf.shape[0] > 0
    for i in range(lo[0], hi[0]):
        for j in range(lo[1], hi[1]):
            for k in range(lo[2], hi[2]):
                if O[i, j, k] != obj:
                    continue
                v = V[i, j, k]
                if v != v:
                    continue
                if fill_obj:
                    objbuf[n] = v
                    n += 1
                if fill_clumps:
                    c = C[i, j, k]
                    if c > 0:
                        clumpbuf[pos[c - 1]] = v
                        pos[c - 1] += 1
    return n


# ---------------------------------------------------------------------------
# Order statistics
# ---------------------------------------------------------------------------

def _half_sum_count(csum: np.ndarray, half: float) -> int:
    """Length of the shortest prefix whose running sum reaches ``half``
    (all of them when none does)."""
    reached = csum >= half
    return int(np.argmax(reached)) + 1 if reached.any() else int(csum.size)


def _above(desc: np.ndarray, csum: np.ndarray, level: float) -> Tuple[int, float]:
    """Number and sum of the values strictly above ``level``."""
    count = int(np.count_nonzero(desc > level))
    return count, (float(csum[count - 1]) if count else 0.0)


def order_statistics(row: np.ndarray, values: np.ndarray, total: float,
                     sclip: Optional[Tuple[float, float]],
                     frac_max: Optional[Tuple[float, float]]) -> None:
    """Fill the order-based slots of ``row`` from the label's valued pixels."""
    n = values.size
    if n == 0:
        for slot in (ACC.MEDIAN, ACC.MAXIMUM, ACC.HALFMAXSUM, ACC.FRACMAX1SUM,
                     ACC.FRACMAX2SUM, ACC.SIGCLIPMEAN, ACC.SIGCLIPMEDIAN):
            row[slot] = np.nan
        for slot in (ACC.HALFSUMNUM, ACC.HALFMAXNUM, ACC.FRACMAX1NUM,
                     ACC.FRACMAX2NUM, ACC.SIGCLIPNUM, ACC.SIGCLIPSTD):
            row[slot] = 0.0
        return

    asc = np.sort(values)
    desc = asc[::-1]
    csum = np.cumsum(desc)

    row[ACC.MEDIAN] = median_sorted(asc)
    mx = float(desc[:3].mean()) if n > 3 else float(desc[0])
    row[ACC.MAXIMUM] = mx

    row[ACC.HALFSUMNUM] = _half_sum_count(csum, total / 2.0)
    row[ACC.HALFMAXNUM], row[ACC.HALFMAXSUM] = _above(desc, csum, mx / 2.0)

    if frac_max is not None:
        for f, num_slot, sum_slot in ((frac_max[0], ACC.FRACMAX1NUM, ACC.FRACMAX1SUM),
                                      (frac_max[1], ACC.FRACMAX2NUM, ACC.FRACMAX2SUM)):
            row[num_slot], row[sum_slot] = _above(desc, csum, f * mx)

    if sclip is not None:
        num, med, mean, std = sigma_clip(asc, sclip[0], sclip[1], presorted=True)
        row[ACC.SIGCLIPNUM] = num
        row[ACC.SIGCLIPMEDIAN] = med
        row[ACC.SIGCLIPMEAN] = mean
        row[ACC.SIGCLIPSTD] = std


# ---------------------------------------------------------------------------
# Per-object worker
# ---------------------------------------------------------------------------

_DUMMY_LABELS = np.zeros((1, 1, 1), dtype=np.int32)
_DUMMY_XY = np.zeros((1, 1), dtype=np.int8)
_DUMMY_CXY = np.zeros((1, 1, 1), dtype=np.int8)
_EMPTY = np.zeros(0, dtype=np.float64)


@dataclass
class ReduceContext:
    """Everything a worker needs, shared read-only except the rows.

    - values, objects, clumps, sky, variance: (z, y, x) arrays
    - var_factor: 2 when the sky was already subtracted, else 1
    - lo, hi: object bounding boxes [lo, hi) along (z, y, x)
    - clump_count, clump_start: clumps per object and their first clump row
    - orows, crows, slices: accumulator storage written by the workers
    - upmask: uint8 cube of pixels excluded from upper-limit placements
    - object_groups, clump_groups: pass-1 update groups in use
    - flags that select the optional passes, derived from the needed bitmaps
    """

    values: np.ndarray
    objects: np.ndarray
    clumps: Optional[np.ndarray]
    sky: np.ndarray
    variance: np.ndarray
    var_factor: float
    lo: np.ndarray
    hi: np.ndarray
    clump_count: np.ndarray
    clump_start: np.ndarray
    orows: np.ndarray
    crows: np.ndarray
    slices: Optional[np.ndarray]
    config: CatalogConfig
    tally: WarningTally
    upmask: Optional[np.ndarray] = None
    object_groups: Optional[np.ndarray] = None
    clump_groups: Optional[np.ndarray] = None
    need_clump_aggregate: bool = False
    need_xy: bool = False
    need_rivers: bool = False
    need_slices: bool = False
    need_order_objects: bool = False
    need_order_clumps: bool = False
    need_upper_objects: bool = False
    need_upper_clumps: bool = False

    @property
    def nobj(self) -> int:
        return self.orows.shape[0]

    @property
    def has_clumps(self) -> bool:
        return self.clumps is not None


def build_context(values, objects, clumps, sky, variance, var_factor,
                  orows, crows, slices, oiflag, ciflag, lo, hi, clump_count,
                  config: CatalogConfig, tally: WarningTally,
                  upmask: Optional[np.ndarray] = None) -> ReduceContext:
    """Derive the pass switches from the needed bitmaps and bundle the
    shared state of one run."""
    clump_start = np.zeros_like(clump_count)
    if clump_count.size:
        clump_start[1:] = np.cumsum(clump_count)[:-1]
    has_clumps = clumps is not None
    slice_flags = [int(f) for f in SLICE_OF_OCOL]
    return ReduceContext(
        values=values,
        objects=objects,
        clumps=clumps,
        sky=sky,
        variance=variance,
        var_factor=float(var_factor),
        lo=lo,
        hi=hi,
        clump_count=clump_count,
        clump_start=clump_start,
        orows=orows,
        crows=crows,
        slices=slices,
        config=config,
        tally=tally,
        upmask=upmask,
        object_groups=update_groups(oiflag, OCOL),
        clump_groups=update_groups(ciflag, CCOL),
        need_clump_aggregate=has_clumps and bool(
            oiflag[[OCOL[n] for n in _CLUMP_AGGREGATE]].any()),
        need_xy=bool(oiflag[[OCOL.NUMXY, OCOL.NUMALLXY]].any()
                     or (has_clumps and ciflag[[CCOL.NUMXY, CCOL.NUMALLXY]].any())),
        need_rivers=has_clumps and bool(ciflag[list(RIVER_SLOTS)].any()),
        need_slices=slices is not None and bool(oiflag[slice_flags].any()),
        need_order_objects=bool(oiflag[list(ORDER_SLOTS)].any()),
        need_order_clumps=has_clumps and bool(ciflag[list(ORDER_SLOTS)].any()),
        need_upper_objects=bool(oiflag[list(UPPERLIMIT_SLOTS)].any()),
        need_upper_clumps=has_clumps and bool(ciflag[list(UPPERLIMIT_SLOTS)].any()),
    )


def _river_mean(crows: np.ndarray) -> np.ndarray:
    rnum = crows[:, CCOL.RIV_NUM]
    out = np.zeros(crows.shape[0], dtype=np.float64)
    has = rnum > 0
    out[has] = crows[has, CCOL.RIV_SUM] / rnum[has]
    return out


def measure_object(ctx: ReduceContext, obj: int) -> None:
    """Reduce object ``obj`` (1-based) and all clumps inside it."""
    r = obj - 1
    lo, hi = ctx.lo[r], ctx.hi[r]
    if np.any(hi <= lo):
        return
    n = int(ctx.clump_count[r])
    cs = int(ctx.clump_start[r])
    orow = ctx.orows[r]
    crows = ctx.crows[cs:cs + n]
    by, bx = int(hi[1] - lo[1]), int(hi[2] - lo[2])

    oxy, cxy = _DUMMY_XY, _DUMMY_CXY
    if ctx.need_xy or ctx.need_slices:
        oxy = allocate_scratch((by, bx), np.int8, "xy projection")
    if ctx.need_xy and n:
        cxy = allocate_scratch((n, by, bx), np.int8, "clump xy projections")
    C = ctx.clumps if ctx.has_clumps else _DUMMY_LABELS

    _object_pass(ctx.values, ctx.objects, C, ctx.sky, ctx.variance,
                 ctx.var_factor, ctx.has_clumps, obj, lo, hi, orow, crows,
                 oxy, cxy, ctx.object_groups, ctx.clump_groups,
                 ctx.need_clump_aggregate, ctx.need_rivers,
                 ctx.need_xy or ctx.need_slices,
                 ctx.need_xy and n > 0)

    if ctx.need_slices:
        _slice_pass(ctx.values, ctx.objects, ctx.variance, ctx.var_factor,
                    obj, lo, hi, oxy, ctx.slices[:, r, :])

    rmean = _river_mean(crows) if n else _EMPTY
    cfg = ctx.config

    if ctx.need_order_objects or (ctx.need_order_clumps and n):
        objbuf = _EMPTY
        if ctx.need_order_objects:
            objbuf = allocate_scratch((int(orow[ACC.NUM]),), np.float64, "object values")
        offsets = np.zeros(n + 1, dtype=np.int64)
        clumpbuf = _EMPTY
        if ctx.need_order_clumps and n:
            offsets[1:] = np.cumsum(crows[:, ACC.NUM].astype(np.int64))
            clumpbuf = allocate_scratch((int(offsets[-1]),), np.float64, "clump values")
        _gather(ctx.values, ctx.objects, C, ctx.has_clumps, obj, lo, hi,
                objbuf, offsets, clumpbuf)

        if ctx.need_order_objects:
            order_statistics(orow, objbuf, orow[ACC.SUM], cfg.sigma_clip, cfg.frac_max)
        if ctx.need_order_clumps:
            for c in range(n):
                crow = crows[c]
                order_statistics(crow, clumpbuf[offsets[c]:offsets[c + 1]],
                                 crow[ACC.SUM], cfg.sigma_clip, cfg.frac_max)
                if crow[CCOL.RIV_NUM] > 0:
                    for slot in (ACC.MEDIAN, ACC.SIGCLIPMEAN, ACC.SIGCLIPMEDIAN):
                        crow[slot] -= rmean[c]

    if ctx.need_upper_objects:
        UL.measure_label(ctx, orow, obj, 0, lo, hi, orow[ACC.SUM], "objects", r)
    if ctx.need_upper_clumps:
        for c in range(n):
            crow = crows[c]
            true_sum = crow[ACC.SUM] - rmean[c] * crow[ACC.NUM]
            UL.measure_label(ctx, crow, obj, c + 1, lo, hi, true_sum, "clumps", cs + c)


__all__ = [
    "as_cube",
    "check_labels",
    "prescan_labels",
    "ReduceContext",
    "build_context",
    "measure_object",
    "order_statistics",
]
