"""
columns.py

Registry of catalog output columns.

One immutable ``ColumnSpec`` per column code. A spec carries the display
metadata written into the table, the element type for the object and for the
clump table (``None`` when the column does not exist for that table), the
dimensionality class, whether a WCS is needed, and the accumulator slots the
column consumes (``oflags`` over OCOL, ``cflags`` over CCOL).

Column codes are case-insensitive and ignore ``-``/``_``: ``"area-in-slice"``,
``"AREA_IN_SLICE"`` and ``"AREAINSLICE"`` are the same code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional

import numpy as np

from accumulators import CCOL, OCOL
from errors import ConfigurationError


I32 = np.dtype(np.int32)
U32 = np.dtype(np.uint32)
F32 = np.dtype(np.float32)
F64 = np.dtype(np.float64)

# Unit placeholder replaced by the unit of the values image at plan time.
VALUES_UNIT = "<values>"

DIM_ANY = "any"
DIM_2D = "2d"
DIM_3D = "3d"


@dataclass(frozen=True)
class ColumnSpec:
    """Static description of one output column.

    - code: normalised column code (upper case, no separators)
    - name: column name in the output table (WCS columns take the CTYPE)
    - unit, ocomment, ccomment: display metadata
    - otype, ctype: numpy dtype in the object / clump table, or None
    - fmt, width, precision: display hints ("", "FIXED", "GENERAL")
    - oflags, cflags: OCOL / CCOL slots this column reads
    - dim: DIM_ANY, DIM_2D or DIM_3D
    - needs_wcs: column needs sky coordinates or the pixel area
    - needs_sigclip, needs_fracmax: column needs those parameters
    - needs_clumps: column is only meaningful with a clump map
    - vector: slice-wise column (one value per slice)
    - wcs_axis: 1-based world axis for W1/W2/W3 style columns
    - wcs_category: pool the column is converted from ("V", "G", "VC", "GC")
    """

    code: str
    name: str
    unit: str
    ocomment: Optional[str]
    ccomment: Optional[str]
    otype: Optional[np.dtype]
    ctype: Optional[np.dtype]
    fmt: str = ""
    width: int = 6
    precision: int = 0
    oflags: FrozenSet[OCOL] = field(default_factory=frozenset)
    cflags: FrozenSet[CCOL] = field(default_factory=frozenset)
    dim: str = DIM_ANY
    needs_wcs: bool = False
    needs_sigclip: bool = False
    needs_fracmax: bool = False
    needs_clumps: bool = False
    vector: bool = False
    wcs_axis: Optional[int] = None
    wcs_category: Optional[str] = None

    @property
    def has_object(self) -> bool:
        return self.otype is not None

    @property
    def has_clump(self) -> bool:
        return self.ctype is not None


def normalize_code(code: str) -> str:
    return re.sub(r"[-_\s]", "", str(code)).upper()


REGISTRY: Dict[str, ColumnSpec] = {}


def _flags(enum, names: Iterable[str]) -> frozenset:
    return frozenset(enum[n] for n in names)


def _register(code, name, unit, comment, otype, ctype, fmt="", width=6,
              precision=0, both=(), obj=(), clump=(), ccomment=None, **kw):
    """Add one spec. ``both`` names slots set on the object and clump
    bitmaps, ``obj`` and ``clump`` add table-specific slots."""
    spec = ColumnSpec(
        code=code,
        name=name,
        unit=unit,
        ocomment=comment if otype is not None else None,
        ccomment=(ccomment or comment) if ctype is not None else None,
        otype=otype,
        ctype=ctype,
        fmt=fmt,
        width=width,
        precision=precision,
        oflags=_flags(OCOL, tuple(both) + tuple(obj)) if otype is not None else frozenset(),
        cflags=_flags(CCOL, tuple(both) + tuple(clump)) if ctype is not None else frozenset(),
        **kw,
    )
    if code in REGISTRY:
        raise ValueError(f"duplicate column code {code}")
    REGISTRY[code] = spec


_RIVER_MEAN = ("RIV_NUM", "RIV_SUM")
_SN = ("NUM", "SUM", "SUM_VAR", "SUM_VAR_NUM")
_SN_RIVER = ("RIV_NUM", "RIV_SUM", "RIV_SUM_VAR")
_VMOM = ("SUMWHT", "VX", "VY", "VXX", "VYY", "VXY")
_GMOM = ("NUMALL", "GX", "GY", "GXX", "GYY", "GXY")


# ---------------------------------------------------------------------------
# Identifiers and areas
# ---------------------------------------------------------------------------

_register("OBJID", "OBJ_ID", "counter", "Object identifier.", I32, None)
_register("HOSTOBJID", "HOST_OBJ_ID", "counter",
          "Object identifier hosting this clump.", None, I32, needs_clumps=True)
_register("IDINHOSTOBJ", "ID_IN_HOST_OBJ", "counter",
          "ID of clump in its host object.", None, I32, needs_clumps=True)
_register("NUMCLUMPS", "NUM_CLUMPS", "counter",
          "Number of clumps in this object.", I32, None, width=5,
          needs_clumps=True)
_register("AREA", "AREA", "counter", "Number of non-blank pixels.",
          I32, I32, both=("NUM",))
_register("AREAARCSEC2", "AREA_ARCSEC2", "arcsec2",
          "Number of non-blank pixels in arcsec^2", F32, F32,
          both=("NUM",), needs_wcs=True)
_register("SB", "SURFACE_BRIGHTNESS", "mag/arcsec^2",
          "Surface brightness (magnitude of brightness/area).", F32, F32,
          both=("NUM", "SUM"), clump=_RIVER_MEAN, needs_wcs=True)
_register("SBERROR", "SB_ERROR", "mag/arcsec^2",
          "Error in measuring Surface brightness.", F32, F32,
          both=_SN, clump=_SN_RIVER, needs_wcs=True)
_register("AREAXY", "AREAXY", "counter",
          "Projected valued pixels in first two dimensions.", I32, I32,
          both=("NUMXY",), dim=DIM_3D)
_register("CLUMPSAREA", "AREA_CLUMPS", "counter",
          "Total number of clump pixels in object.", I32, None,
          obj=("C_NUM",), needs_clumps=True)
_register("WEIGHTAREA", "AREA_WEIGHT", "counter",
          "Area used for flux-weighted positions.", I32, I32,
          both=("NUMWHT",))
_register("GEOAREA", "AREA_FULL", "counter",
          "Full area of label (irrespective of values).", I32, I32,
          both=("NUMALL",))
_register("GEOAREAXY", "AREA_FULL_XY", "counter",
          "Project number in first two dimensions.", I32, I32,
          both=("NUMALLXY",), dim=DIM_3D)


# ---------------------------------------------------------------------------
# Pixel positions
# ---------------------------------------------------------------------------

for _ax, _d in (("X", 1), ("Y", 2), ("Z", 3)):
    _dim = DIM_3D if _ax == "Z" else DIM_ANY
    _register(_ax, _ax, "pixel", f"Flux weighted center (FITS axis {_d}).",
              F32, F32, "FIXED", 10, 3,
              both=(f"V{_ax}", f"G{_ax}", "SUMWHT", "NUMALL"), dim=_dim)
    _register(f"GEO{_ax}", f"GEO_{_ax}", "pixel",
              f"Geometric center (FITS axis {_d}).", F32, F32, "FIXED", 10, 3,
              both=(f"G{_ax}", "NUMALL"), dim=_dim)
    _register(f"CLUMPS{_ax}", f"CLUMPS_{_ax}", "pixel",
              f"Flux weighted center of clumps (FITS axis {_d}).", F32, None,
              "FIXED", 10, 3,
              obj=(f"C_V{_ax}", f"C_G{_ax}", "C_SUMWHT", "C_NUMALL"),
              dim=_dim, needs_clumps=True)
    _register(f"CLUMPSGEO{_ax}", f"CLUMPS_GEO_{_ax}", "pixel",
              f"Geometric center of clumps (FITS axis {_d}).", F32, None,
              "FIXED", 10, 3, obj=(f"C_G{_ax}", "C_NUMALL"), dim=_dim,
              needs_clumps=True)
    for _ext, _word in (("MIN", "Minimum"), ("MAX", "Maximum")):
        _register(f"{_ext}VAL{_ax}", f"{_ext}_VAL_{_ax}", "pixel",
                  f"{_word} value {_ax} pixel position.", F32, F32, "", 10, 0,
                  both=(f"{_ext}VAL", f"{_ext}V{_ax}", f"{_ext}VNUM"), dim=_dim)
        _register(f"{_ext}{_ax}", f"{_ext}_{_ax}", "pixel",
                  f"{_word} {_ax} value.", U32, U32, "", 10, 0,
                  both=("NUMALL",), clump=(f"{_ext}{_ax}",), dim=_dim)

_register("MINVALNUM", "MIN_VAL_NUM", "counter",
          "Number of pixels with the minimum value.", U32, U32, "", 10, 0,
          both=("MINVAL", "MINVNUM"))
_register("MAXVALNUM", "MAX_VAL_NUM", "counter",
          "Number of pixels with the maximum value.", U32, U32, "", 10, 0,
          both=("MAXVAL", "MAXVNUM"))


# ---------------------------------------------------------------------------
# World coordinates (name and unit come from the WCS at plan time)
# ---------------------------------------------------------------------------

_WCS_POOLS = (
    ("W", "", "Flux weighted center", "V", True,
     ("VX", "VY", "VZ", "GX", "GY", "GZ", "SUMWHT", "NUMALL")),
    ("GEOW", "GEO_", "Geometric center", "G", True,
     ("GX", "GY", "GZ", "NUMALL")),
    ("CLUMPSW", "CLUMPS_", "Flux weighted center of all clumps", "VC", False,
     ("C_VX", "C_VY", "C_VZ", "C_GX", "C_GY", "C_GZ", "C_SUMWHT", "C_NUMALL")),
    ("CLUMPSGEOW", "CLUMPS_GEO_", "Geometric center of all clumps", "GC", False,
     ("C_GX", "C_GY", "C_GZ", "C_NUMALL")),
)

for _prefix, _nprefix, _what, _cat, _both_tables, _slots in _WCS_POOLS:
    for _d in (1, 2, 3):
        _register(
            f"{_prefix}{_d}", _nprefix, "",
            f"{_what} (WCS axis {_d}).",
            F64, F64 if _both_tables else None, "FIXED", 13, 7,
            both=_slots if _both_tables else (),
            obj=() if _both_tables else _slots,
            dim=DIM_3D if _d == 3 else DIM_ANY,
            needs_wcs=True, wcs_axis=_d, wcs_category=_cat,
            needs_clumps=not _both_tables,
        )


# ---------------------------------------------------------------------------
# Fluxes and pixel statistics
# ---------------------------------------------------------------------------

_register("SUM", "SUM", VALUES_UNIT, "Sum of sky subtracted values.",
          F32, F32, "GENERAL", 10, 5, both=("NUM", "SUM"), clump=_RIVER_MEAN,
          ccomment="River-subtracted sum of sky subtracted values.")
_register("SUMERROR", "SUM_ERROR", VALUES_UNIT, "Error (1-sigma) in measuring sum.",
          F32, F32, "GENERAL", 10, 5, both=_SN, clump=_SN_RIVER)
_register("CLUMPSSUM", "CLUMPS_SUM", VALUES_UNIT,
          "Sum of all clump values in object.", F32, None, "GENERAL", 10, 5,
          obj=("C_NUM", "C_SUM"), needs_clumps=True)
_register("SUMNORIVER", "NO_RIVER_SUM", VALUES_UNIT,
          "Sum of values without river subtraction.", None, F32, "GENERAL",
          10, 5, both=("NUM", "SUM"), needs_clumps=True)
_register("MEAN", "MEAN", VALUES_UNIT, "Mean of sky subtracted values.",
          F32, F32, "GENERAL", 10, 5, both=("NUM", "SUM"), clump=_RIVER_MEAN)
_register("STD", "STD", VALUES_UNIT, "Standard deviation of values.",
          F32, F32, "GENERAL", 10, 5, both=("NUM", "SUM", "SUMP2"))
_register("MEDIAN", "MEDIAN", VALUES_UNIT, "Median of values.",
          F32, F32, "GENERAL", 10, 5, both=("NUM", "MEDIAN"), clump=_RIVER_MEAN)
_register("MAXIMUM", "MAXIMUM", VALUES_UNIT,
          "Maximum (mean of the three brightest pixels).", F32, F32,
          "GENERAL", 10, 5, both=("NUM", "MAXIMUM"))
_register("SIGCLIPNUMBER", "SIGCLIP_NUMBER", "counter",
          "Number of pixels after sigma-clipping.", I32, I32,
          both=("NUM", "SIGCLIPNUM"), needs_sigclip=True)
_register("SIGCLIPMEDIAN", "SIGCLIP_MEDIAN", VALUES_UNIT,
          "Median after sigma-clipping.", F32, F32, "GENERAL", 10, 5,
          both=("NUM", "SIGCLIPMEDIAN"), clump=_RIVER_MEAN, needs_sigclip=True)
_register("SIGCLIPMEAN", "SIGCLIP_MEAN", VALUES_UNIT,
          "Mean after sigma-clipping.", F32, F32, "GENERAL", 10, 5,
          both=("NUM", "SIGCLIPMEAN"), clump=_RIVER_MEAN, needs_sigclip=True)
_register("SIGCLIPSTD", "SIGCLIP_STD", VALUES_UNIT,
          "Standard deviation after sigma-clipping.", F32, F32, "GENERAL", 10,
          5, both=("NUM", "SIGCLIPSTD"), needs_sigclip=True)
_register("SIGCLIPMEANSB", "SIGCLIP_MEAN_SB", "mag/arcsec^2",
          "Surface brightness of sigma-clipped mean.", F32, F32, "GENERAL",
          10, 5, both=("NUM", "SIGCLIPMEAN"), clump=_RIVER_MEAN,
          needs_sigclip=True, needs_wcs=True)
_register("SIGCLIPMEANSBDELTA", "SIGCLIP_MEAN_SB_DELTA", "mag/arcsec^2",
          "Error in surface brightness of sigma-clipped mean.", F32, F32,
          "GENERAL", 10, 5, both=("NUM", "SIGCLIPMEAN", "SIGCLIPSTD"),
          clump=_RIVER_MEAN, needs_sigclip=True, needs_wcs=True)
_register("SIGCLIPSTDSB", "SIGCLIP_STD_SB", "mag/arcsec^2",
          "Surface brightness of sigma-clipped standard deviation.", F32, F32,
          "GENERAL", 10, 5, both=("NUM", "SIGCLIPSTD"), needs_sigclip=True,
          needs_wcs=True)


# ---------------------------------------------------------------------------
# Magnitudes, noise and upper limits
# ---------------------------------------------------------------------------

_register("MAGNITUDE", "MAGNITUDE", "log", "Magnitude.", F32, F32, "FIXED",
          8, 3, both=("NUM", "SUM"), clump=_RIVER_MEAN)
_register("MAGNITUDEERROR", "MAGNITUDE_ERROR", "log", "Error in measuring magnitude.",
          F32, F32, "FIXED", 8, 3, both=_SN, clump=_SN_RIVER)
_register("CLUMPSMAGNITUDE", "CLUMPS_MAGNITUDE", "log",
          "Magnitude of all clumps in object.", F32, None, "FIXED", 8, 3,
          obj=("C_NUM", "C_SUM"), needs_clumps=True)
_register("UPPERLIMIT", "UPPERLIMIT", VALUES_UNIT,
          "Upper limit value (random positionings).", F32, F32, "GENERAL",
          10, 5, both=("UPPERLIMIT_B",))
_register("UPPERLIMITMAG", "UPPERLIMIT_MAG", "log",
          "Upper limit magnitude (random positionings).", F32, F32, "FIXED",
          8, 3, both=("UPPERLIMIT_B",))
_register("UPPERLIMITSB", "UPPERLIMIT_SB", "mag/arcsec^2",
          "Upper limit surface brightness over its footprint.", F32, F32,
          "FIXED", 8, 3, both=("NUMALL", "UPPERLIMIT_B"), needs_wcs=True)
_register("UPPERLIMITONESIGMA", "UPPERLIMIT_ONE_SIGMA", VALUES_UNIT,
          "Upper limit one-sigma value (random positionings).", F32, F32,
          "GENERAL", 10, 5, both=("UPPERLIMIT_S",))
_register("UPPERLIMITSIGMA", "UPPERLIMIT_SIGMA", "frac",
          "Place in random distribution (sigma multiple).", F32, F32,
          "GENERAL", 10, 5, both=("NUM", "SUM", "UPPERLIMIT_S"),
          clump=_RIVER_MEAN)
_register("UPPERLIMITQUANTILE", "UPPERLIMIT_QUANTILE", "quantile",
          "Quantile of sum in random distribution.", F32, F32, "GENERAL", 10,
          5, both=("UPPERLIMIT_Q",), clump=_RIVER_MEAN)
_register("UPPERLIMITSKEW", "UPPERLIMIT_SKEW", "frac",
          "(Mean-Median)/STD of random distribution.", F32, F32, "FIXED", 8,
          3, both=("UPPERLIMIT_SKEW",))
_register("RIVERMEAN", "RIVER_MEAN", VALUES_UNIT,
          "Average river value surrounding this clump.", None, F32, "GENERAL",
          10, 5, clump=_RIVER_MEAN, needs_clumps=True)
_register("RIVERNUM", "RIVER_NUM", "counter",
          "Number of river pixels around this clump.", None, I32, "", 5, 0,
          clump=("RIV_NUM",), needs_clumps=True)
_register("SN", "SN", "ratio", "Signal to noise ratio.", F32, F32, "FIXED",
          10, 3, both=_SN, clump=_SN_RIVER)
_register("SKY", "SKY", VALUES_UNIT, "Average input sky value.", F32, F32,
          "GENERAL", 10, 4, both=("NUMSKY", "SUMSKY"))
_register("SKYSTD", "SKY_STD", VALUES_UNIT, "Average of input standard deviation.",
          F32, F32, "GENERAL", 10, 4, both=("NUMVAR", "SUMVAR"))


# ---------------------------------------------------------------------------
# Shape (second order moments, 2D only)
# ---------------------------------------------------------------------------

for _code, _name, _unit, _width, _comment in (
    ("SEMIMAJOR", "SEMI_MAJOR", "pixel", 10, "Flux weighted semi-major axis."),
    ("SEMIMINOR", "SEMI_MINOR", "pixel", 10, "Flux weighted semi-minor axis."),
    ("AXISRATIO", "AXIS_RATIO", "ratio", 7, "Flux weighted axis ratio."),
    ("POSITIONANGLE", "POSITION_ANGLE", "degrees", 10,
     "Flux weighted angle of semi-major axis with first FITS axis."),
):
    _register(_code, _name, _unit, _comment, F32, F32, "FIXED", _width, 3,
              both=_VMOM + _GMOM, dim=DIM_2D)
    _register("GEO" + _code, "GEO_" + _name, _unit,
              _comment.replace("Flux weighted", "Geometric"), F32, F32,
              "FIXED", _width, 3, both=_GMOM, dim=DIM_2D)


# ---------------------------------------------------------------------------
# Half/fraction of maximum and sum
# ---------------------------------------------------------------------------

_register("HALFSUMAREA", "HALF_SUM_AREA", "counter",
          "Number of brightest pixels containing half of total sum.", I32,
          I32, both=("NUM", "SUM", "HALFSUMNUM"))
_register("HALFMAXAREA", "HALF_MAX_AREA", "counter",
          "Number of pixels brighter than half the maximum.", I32, I32,
          both=("NUM", "HALFMAXNUM"))
_register("HALFMAXSUM", "HALF_MAX_SUM", VALUES_UNIT,
          "Sum of pixels brighter than half the maximum.", F32, F32,
          both=("NUM", "HALFMAXSUM"))
_register("HALFMAXSB", "HALF_MAX_SB", "mag/arcsec^2",
          "Surface brightness within half the maximum.", F32, F32,
          both=("NUM", "HALFMAXNUM", "HALFMAXSUM"), needs_wcs=True)
_register("HALFSUMSB", "HALF_SUM_SB", "mag/arcsec^2",
          "Surface brightness within half the total sum.", F32, F32,
          "GENERAL", 10, 5, both=("NUM", "SUM", "HALFSUMNUM"), needs_wcs=True)

for _i, _nth in ((1, "1st"), (2, "2nd")):
    _register(f"FRACMAX{_i}SUM", f"FRAC_MAX{_i}_SUM", VALUES_UNIT,
              f"Sum of pixels brighter than {_nth} fraction of maximum.",
              F32, F32, both=("NUM", "SUM", f"FRACMAX{_i}SUM"),
              needs_fracmax=True)
    _register(f"FRACMAX{_i}AREA", f"FRAC_MAX{_i}_AREA", "counter",
              f"Number of pixels brighter than {_nth} fraction of maximum.",
              I32, I32, both=("NUM", "SUM", f"FRACMAX{_i}NUM"),
              needs_fracmax=True)

_RADIUS_BASE = ("NUM", "SUM") + _VMOM + _GMOM
for _code, _name, _slot, _comment, _frac in (
    ("FWHM", "FWHM", "HALFMAXNUM",
     "Full width at half maximum (accounting for ellipticity).", False),
    ("HALFMAXRADIUS", "HALF_MAX_RADIUS", "HALFMAXNUM",
     "Radius at half of maximum (accounting for ellipticity).", False),
    ("HALFSUMRADIUS", "HALF_SUM_RADIUS", "HALFSUMNUM",
     "Radius at half of total sum (accounting for ellipticity).", False),
    ("FRACMAX1RADIUS", "FRAC_MAX_RADIUS_1", "FRACMAX1NUM",
     "Radius derived from area of 1st fraction of maximum.", True),
    ("FRACMAX2RADIUS", "FRAC_MAX_RADIUS_2", "FRACMAX2NUM",
     "Radius derived from area of 2nd fraction of maximum.", True),
):
    _register(_code, _name, "pixels", _comment, F32, F32, "GENERAL", 10, 3,
              both=_RADIUS_BASE + (_slot,), dim=DIM_2D, needs_fracmax=_frac)


# ---------------------------------------------------------------------------
# Slice vectors (3D, object table)
# ---------------------------------------------------------------------------

for _kind, _what in (("", "with this label"),
                     ("PROJ", "in projected area"),
                     ("OTHER", "in other labels within projection")):
    _display = f"-{_kind}" if _kind else ""
    _register(f"SUM{_kind}INSLICE", f"SUM{_display}-IN-SLICE", VALUES_UNIT,
              f"Sum of values {_what} in each slice.", F32, None,
              obj=(f"SUM{_kind}INSLICE", f"NUM{_kind}INSLICE"),
              dim=DIM_3D, vector=True)
    _register(f"SUM{_kind}ERRINSLICE", f"SUM{_display}-ERR-IN-SLICE",
              VALUES_UNIT, f"Error in 'SUM{_display}-IN-SLICE'.", F32, None,
              obj=(f"SUM{_kind}INSLICE", f"NUM{_kind}INSLICE",
                   f"SUM{_kind}VARINSLICE"),
              dim=DIM_3D, vector=True)
    _register(f"AREA{_kind}INSLICE", f"AREA{_display}-IN-SLICE", "counter",
              f"Number of usable pixels {_what} in each slice.", I32, None,
              obj=(f"NUM{_kind}INSLICE",), dim=DIM_3D, vector=True)


# High-level aliases bound to W1/W2/W3 by the planner.
WCS_ALIASES = ("RA", "DEC")


def get_spec(code: str) -> ColumnSpec:
    key = normalize_code(code)
    try:
        return REGISTRY[key]
    except KeyError:
        raise ConfigurationError(f"'{code}' is not a recognized column code") from None


__all__ = [
    "ColumnSpec",
    "REGISTRY",
    "WCS_ALIASES",
    "VALUES_UNIT",
    "DIM_ANY",
    "DIM_2D",
    "DIM_3D",
    "normalize_code",
    "get_spec",
]
