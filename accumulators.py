"""
accumulators.py

Per-label raw accumulator layout ("A-rows").

Each object and each clump owns one float64 row. Slots that objects and clumps
share have the same index in both layouts (``ACC``), so the pixel kernels can
update either row with the same code. Object rows append the clumps-in-object
aggregates and the slice-vector flags; clump rows append the clump bounding box
and the river accumulators.

Slice vectors (3D only) do not live in the row: they are stored in a separate
``(NObj, nslices)`` array per ``SLICE`` kind. Their OCOL members exist so the
planner can flag them in the needed bitmap.
"""

from __future__ import annotations

from enum import IntEnum

import numpy as np

from errors import AllocationError


_SHARED = (
    # Counts
    "NUMALL", "NUM", "NUMWHT", "NUMSKY", "NUMVAR", "NUMXY", "NUMALLXY",
    # Sums
    "SUM", "SUMP2", "SUMWHT", "SUMSKY", "SUMVAR", "SUM_VAR", "SUM_VAR_NUM",
    # First moments
    "VX", "VY", "VZ", "GX", "GY", "GZ",
    # Second moments (relative to the object bounding-box start)
    "VXX", "VYY", "VXY", "GXX", "GYY", "GXY",
    # Extrema with coordinates
    "MINVAL", "MINVX", "MINVY", "MINVZ", "MINVNUM",
    "MAXVAL", "MAXVX", "MAXVY", "MAXVZ", "MAXVNUM",
    # Order based
    "MAXIMUM", "MEDIAN",
    "HALFSUMNUM", "HALFMAXNUM", "HALFMAXSUM",
    "FRACMAX1NUM", "FRACMAX2NUM", "FRACMAX1SUM", "FRACMAX2SUM",
    "SIGCLIPNUM", "SIGCLIPMEDIAN", "SIGCLIPMEAN", "SIGCLIPSTD",
    # Upper limit
    "UPPERLIMIT_B", "UPPERLIMIT_S", "UPPERLIMIT_Q", "UPPERLIMIT_SKEW",
    "UPPERLIMIT_FLAG",
)

_OBJECT_ONLY = (
    "C_NUMALL", "C_NUM", "C_SUM", "C_NUMWHT", "C_SUMWHT",
    "C_VX", "C_VY", "C_VZ", "C_GX", "C_GY", "C_GZ",
    "NUMINSLICE", "SUMINSLICE", "SUMVARINSLICE",
    "NUMPROJINSLICE", "SUMPROJINSLICE", "SUMPROJVARINSLICE",
    "NUMOTHERINSLICE", "SUMOTHERINSLICE", "SUMOTHERVARINSLICE",
)

_CLUMP_ONLY = (
    "MINX", "MAXX", "MINY", "MAXY", "MINZ", "MAXZ",
    "RIV_NUM", "RIV_SUM", "RIV_SUM_VAR",
)


def _layout(name: str, names: tuple[str, ...]) -> type[IntEnum]:
    return IntEnum(name, [(n, i) for i, n in enumerate(names)])


ACC = _layout("ACC", _SHARED)
OCOL = _layout("OCOL", _SHARED + _OBJECT_ONLY)
CCOL = _layout("CCOL", _SHARED + _CLUMP_ONLY)

OCOL_NUMCOLS = len(OCOL)
CCOL_NUMCOLS = len(CCOL)


class SLICE(IntEnum):
    """Per-slice vector kinds, in the order of the slice array's first axis."""

    NUM = 0
    SUM = 1
    SUMVAR = 2
    NUMPROJ = 3
    SUMPROJ = 4
    SUMPROJVAR = 5
    NUMOTHER = 6
    SUMOTHER = 7
    SUMOTHERVAR = 8


SLICE_NUMKINDS = len(SLICE)

# OCOL flag -> slice vector it lives in.
SLICE_OF_OCOL = {
    OCOL.NUMINSLICE: SLICE.NUM,
    OCOL.SUMINSLICE: SLICE.SUM,
    OCOL.SUMVARINSLICE: SLICE.SUMVAR,
    OCOL.NUMPROJINSLICE: SLICE.NUMPROJ,
    OCOL.SUMPROJINSLICE: SLICE.SUMPROJ,
    OCOL.SUMPROJVARINSLICE: SLICE.SUMPROJVAR,
    OCOL.NUMOTHERINSLICE: SLICE.NUMOTHER,
    OCOL.SUMOTHERINSLICE: SLICE.SUMOTHER,
    OCOL.SUMOTHERVARINSLICE: SLICE.SUMOTHERVAR,
}

# Order-statistic slots: any of these requires the sorted-value sweep.
ORDER_SLOTS = (
    ACC.MAXIMUM, ACC.MEDIAN, ACC.HALFSUMNUM, ACC.HALFMAXNUM, ACC.HALFMAXSUM,
    ACC.FRACMAX1NUM, ACC.FRACMAX2NUM, ACC.FRACMAX1SUM, ACC.FRACMAX2SUM,
    ACC.SIGCLIPNUM, ACC.SIGCLIPMEDIAN, ACC.SIGCLIPMEAN, ACC.SIGCLIPSTD,
)

UPPERLIMIT_SLOTS = (
    ACC.UPPERLIMIT_B, ACC.UPPERLIMIT_S, ACC.UPPERLIMIT_Q, ACC.UPPERLIMIT_SKEW,
)

RIVER_SLOTS = (CCOL.RIV_NUM, CCOL.RIV_SUM, CCOL.RIV_SUM_VAR)


def _alloc(shape: tuple[int, ...], dtype, what: str) -> np.ndarray:
    try:
        return np.zeros(shape, dtype=dtype)
    except MemoryError as exc:
        nbytes = int(np.prod(shape)) * np.dtype(dtype).itemsize
        raise AllocationError(
            f"accumulators: could not allocate {what} {shape} ({nbytes} bytes)"
        ) from exc


def init_rows(rows: np.ndarray) -> np.ndarray:
    """Reset rows in place: zeros, with the running extrema at +/- infinity."""
    rows[...] = 0.0
    rows[..., ACC.MINVAL] = np.inf
    rows[..., ACC.MAXVAL] = -np.inf
    return rows


def allocate_object_rows(nobj: int) -> np.ndarray:
    return init_rows(_alloc((nobj, OCOL_NUMCOLS), np.float64, "object rows"))


def allocate_clump_rows(nclumps: int) -> np.ndarray:
    return init_rows(_alloc((nclumps, CCOL_NUMCOLS), np.float64, "clump rows"))


def allocate_slices(nobj: int, nslices: int) -> np.ndarray:
    """Slice vectors, shaped (SLICE_NUMKINDS, NObj, nslices)."""
    return _alloc((SLICE_NUMKINDS, nobj, nslices), np.float64, "slice vectors")


def allocate_scratch(shape: tuple[int, ...], dtype, what: str) -> np.ndarray:
    return _alloc(shape, dtype, what)


__all__ = [
    "ACC", "OCOL", "CCOL", "SLICE",
    "OCOL_NUMCOLS", "CCOL_NUMCOLS", "SLICE_NUMKINDS", "SLICE_OF_OCOL",
    "ORDER_SLOTS", "UPPERLIMIT_SLOTS", "RIVER_SLOTS",
    "init_rows", "allocate_object_rows", "allocate_clump_rows",
    "allocate_slices", "allocate_scratch",
]
