"""
planner.py

Turn a requested column list into allocated output columns and the two
"needed" bitmaps over the accumulator slots.

Planning fails before any measurement work when a request cannot be served:
unknown codes, wrong dimensionality, missing WCS, missing sigma-clip or
fraction-of-maximum parameters, or RA/DEC absent from the WCS axis types.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import numpy as np

from accumulators import (
    CCOL, CCOL_NUMCOLS, OCOL, OCOL_NUMCOLS, allocate_scratch,
)
from columns import (
    DIM_2D, DIM_3D, VALUES_UNIT, WCS_ALIASES, ColumnSpec, get_spec,
    normalize_code,
)
from config import CatalogConfig
from errors import ConfigurationError, MeasurementWarning
from wcs_batch import WCSService, pixel_area_arcsec2

log = logging.getLogger(__name__)

OBJECTS = "objects"
CLUMPS = "clumps"


@dataclass
class OutputColumn:
    """One allocated output column.

    - spec: registry record that produced it (its ``code`` drives the finalizer)
    - table: OBJECTS or CLUMPS
    - name, unit, comment: resolved display metadata
    - array: (nrows,) or (nrows, nslices) for slice vectors
    """

    spec: ColumnSpec
    table: str
    name: str
    unit: str
    comment: str
    array: np.ndarray

    @property
    def code(self) -> str:
        return self.spec.code

    @property
    def fmt(self) -> str:
        return self.spec.fmt

    @property
    def width(self) -> int:
        return self.spec.width

    @property
    def precision(self) -> int:
        return self.spec.precision


@dataclass
class CatalogPlan:
    ndim: int
    nobj: int
    nclumps: int
    nslices: int
    has_clumps: bool
    objects: List[OutputColumn] = field(default_factory=list)
    clumps: List[OutputColumn] = field(default_factory=list)
    oiflag: np.ndarray = field(default_factory=lambda: np.zeros(OCOL_NUMCOLS, dtype=bool))
    ciflag: np.ndarray = field(default_factory=lambda: np.zeros(CCOL_NUMCOLS, dtype=bool))
    pixel_area: float = np.nan
    wcs_binding: Dict[str, str] = field(default_factory=dict)

    def columns(self, table: str) -> List[OutputColumn]:
        return self.objects if table == OBJECTS else self.clumps

    def needs_wcs(self) -> bool:
        return any(c.spec.wcs_category for c in self.objects + self.clumps)


def _bind_alias(alias: str, wcs: Optional[WCSService], ndim: int) -> str:
    if wcs is None:
        raise ConfigurationError(f"column '{alias}' needs a WCS, but none was given")
    for d in range(1, min(ndim, wcs.ndim) + 1):
        if wcs.ctype(d) == alias:
            return f"W{d}"
    types = [wcs.ctype(d) for d in range(1, wcs.ndim + 1)]
    raise ConfigurationError(f"'{alias}' is not among the WCS axis types {types}")


def _check(spec: ColumnSpec, raw: str, ndim: int, wcs: Optional[WCSService],
           config: CatalogConfig) -> None:
    if spec.dim == DIM_2D and ndim != 2:
        raise ConfigurationError(f"column '{raw}' is only defined for 2D images")
    if spec.dim == DIM_3D and ndim != 3:
        raise ConfigurationError(f"column '{raw}' is only defined for 3D images")
    if spec.needs_wcs and wcs is None:
        raise ConfigurationError(f"column '{raw}' needs a WCS, but none was given")
    if spec.wcs_axis is not None and wcs is not None and spec.wcs_axis > wcs.ndim:
        raise ConfigurationError(f"column '{raw}' needs WCS axis {spec.wcs_axis}")
    if spec.needs_sigclip and config.sigma_clip is None:
        raise ConfigurationError(
            f"column '{raw}' needs the sigma-clipping parameters (sigma_clip)")
    if spec.needs_fracmax and config.frac_max is None:
        raise ConfigurationError(
            f"column '{raw}' needs the fractions of the maximum (frac_max)")


def _resolve_name(spec: ColumnSpec, wcs: Optional[WCSService], values_unit: str):
    name, unit = spec.name, spec.unit
    if spec.wcs_axis is not None:
        name = spec.name + wcs.ctype(spec.wcs_axis)
        unit = wcs.cunit(spec.wcs_axis)
    if unit == VALUES_UNIT:
        unit = values_unit
    return name, unit


def plan_catalog(requested: Iterable[str], *, ndim: int, nobj: int,
                 nclumps: int = 0, nslices: int = 1, has_clumps: bool = False,
                 wcs: Optional[WCSService] = None,
                 config: Optional[CatalogConfig] = None,
                 values_unit: str = "") -> CatalogPlan:
    """Validate the request, allocate the columns and build the bitmaps.

    Parameters
    ----------
    requested : iterable of str
        Column codes in output order (case and ``-``/``_`` are ignored).
    ndim : int
        Dimensionality of the values image (2 or 3).
    nobj, nclumps : int
        Rows of the object and clump tables.
    nslices : int
        Length of the slice axis (secondary size of slice vectors).
    has_clumps : bool
        A clump label map was supplied.
    wcs : WCSService, optional
        Needed for sky coordinates and anything using the pixel area.
    config : CatalogConfig, optional
    values_unit : str
        Unit of the values image, used by columns in the same unit.

    Returns
    -------
    CatalogPlan
    """
    config = config or CatalogConfig()
    plan = CatalogPlan(ndim=ndim, nobj=nobj, nclumps=nclumps if has_clumps else 0,
                       nslices=nslices, has_clumps=has_clumps)
    if wcs is not None:
        plan.pixel_area = pixel_area_arcsec2(wcs)
        log.debug("pixel area: %g arcsec^2", plan.pixel_area)

    specs = []
    for raw in requested:
        code = normalize_code(raw)
        if code in WCS_ALIASES:
            bound = _bind_alias(code, wcs, ndim)
            plan.wcs_binding[code] = bound
            log.debug("%s bound to %s", code, bound)
            code = bound
        spec = get_spec(code)
        _check(spec, raw, ndim, wcs, config)
        specs.append(spec)

    for spec in specs:
        name, unit = _resolve_name(spec, wcs, values_unit)
        if spec.needs_clumps and not has_clumps and not config.no_clump_warnings:
            warnings.warn(f"column '{name}' is only meaningful with a clump map, "
                          "none was given", MeasurementWarning, stacklevel=2)
        if spec.has_object:
            shape = (nobj, nslices) if spec.vector else (nobj,)
            plan.objects.append(OutputColumn(
                spec, OBJECTS, name, unit, spec.ocomment,
                allocate_scratch(shape, spec.otype, f"column {name}")))
            for flag in spec.oflags:
                plan.oiflag[flag] = True
        if spec.has_clump and has_clumps:
            shape = (nclumps, nslices) if spec.vector else (nclumps,)
            plan.clumps.append(OutputColumn(
                spec, CLUMPS, name, unit, spec.ccomment,
                allocate_scratch(shape, spec.ctype, f"clump column {name}")))
            for flag in spec.cflags:
                plan.ciflag[flag] = True

    log.info("planned %d object and %d clump columns",
             len(plan.objects), len(plan.clumps))
    return plan


def needed_flags(codes: Iterable[str], **kw) -> tuple:
    """Object and clump bitmaps of ``codes``, as sets of OCOL / CCOL members."""
    plan = plan_catalog(codes, **kw)
    return ({OCOL(i) for i in np.flatnonzero(plan.oiflag)},
            {CCOL(i) for i in np.flatnonzero(plan.ciflag)})


__all__ = [
    "OBJECTS", "CLUMPS", "OutputColumn", "CatalogPlan", "plan_catalog",
    "needed_flags",
]
