"""
io_bridge.py

Thin I/O wrapper around astropy for the catalog builder.

- Images are read from FITS HDUs; arrays keep numpy axis order (z, y, x), so
  FITS axis 1 is the last numpy axis.
- Values are returned as float64 with blank pixels as NaN (integer images use
  their BLANK keyword).
- Sky and standard deviation may be scalars, full images, or coarser tile
  grids whose shape divides the image shape.
- Catalog tables are written with ``astropy.table.Table``.

Primary API
-----------

    from io_bridge import load_inputs, NoiseModel, write_catalog

    images = load_inputs({
        "values":  {"path": "image.fits", "hdu": 1},
        "objects": {"path": "seg.fits", "hdu": "OBJECTS"},
        "clumps":  {"path": "seg.fits", "hdu": "CLUMPS"},
        "sky": 0.0,
        "std": {"path": "sky.fits", "hdu": "SKY_STD"},
    })
    noise = NoiseModel(images.sky, images.std)
    var = noise.variance_array(images.values.shape)

    write_catalog("cat.fits", plan.objects, meta={"ZEROPNT": 22.5})

Notes
-----
- Blank handling of floating point images relies on NaN; astropy already
  applies BSCALE/BZERO.
- The clump table goes next to the object table as ``<stem>_clumps<ext>``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import numpy as np
from astropy.io import fits
from astropy.table import Column, Table

from errors import InputShapeError, WriterError

log = logging.getLogger(__name__)

Scalar = Union[int, float]


@dataclass
class ImageSet:
    """Arrays handed to the catalog core.

    - values: float64 image, NaN for blank pixels
    - objects: integer object labels (0 is background)
    - clumps: integer clump labels or None (-1 marks river pixels)
    - sky, std: scalar, full-size array, or tile grid
    - header: FITS header of the values HDU (WCS source)
    - unit: BUNIT of the values HDU ("" when absent)
    - upmask: pixels (non-zero) excluded from upper-limit placements, or None
    """

    values: np.ndarray
    objects: np.ndarray
    clumps: Optional[np.ndarray]
    sky: Union[Scalar, np.ndarray]
    std: Union[Scalar, np.ndarray]
    header: Optional[fits.Header] = None
    unit: str = ""
    upmask: Optional[np.ndarray] = None


def read_image(path: str, hdu: Union[int, str] = 0) -> Tuple[np.ndarray, fits.Header]:
    """Read one FITS HDU into memory (native byte order)."""
    with fits.open(path, memmap=False) as hdul:
        h = hdul[hdu]
        if h.data is None:
            raise InputShapeError(f"{path}[{hdu}] holds no image data")
        data = np.asarray(h.data)
        header = h.header.copy()
    if not data.dtype.isnative:
        data = data.astype(data.dtype.newbyteorder("="))
    return data, header


def _as_values(data: np.ndarray, header: fits.Header) -> np.ndarray:
    if np.issubdtype(data.dtype, np.floating):
        return data.astype(np.float64, copy=False)
    out = data.astype(np.float64)
    blank = header.get("BLANK")
    if blank is not None:
        out[data == blank] = np.nan
    return out


def _read_entry(entry: Any) -> Tuple[np.ndarray, fits.Header]:
    if isinstance(entry, str):
        return read_image(entry)
    return read_image(entry["path"], entry.get("hdu", 0))


def load_inputs(inputs: Dict[str, Any]) -> ImageSet:
    """Read the values, label, sky and std inputs described by ``inputs``.

    ``values`` and ``objects`` are required. ``sky`` and ``std`` may be numbers
    instead of image references; ``sky`` defaults to 0.
    """
    for key in ("values", "objects"):
        if key not in inputs:
            raise InputShapeError(f"inputs.{key} is required")
    data, header = _read_entry(inputs["values"])
    values = _as_values(data, header)
    objects, _ = _read_entry(inputs["objects"])
    clumps = None
    if inputs.get("clumps") is not None:
        clumps, _ = _read_entry(inputs["clumps"])

    def noise(key: str, default):
        entry = inputs.get(key, default)
        if entry is None or isinstance(entry, (int, float)):
            return entry
        arr, hdr = _read_entry(entry)
        return _as_values(arr, hdr)

    upmask = None
    if inputs.get("upmask") is not None:
        upmask, _ = _read_entry(inputs["upmask"])
    std = noise("std", None)
    if std is None:
        raise InputShapeError("inputs.std is required")
    log.info("read values %s from %s", values.shape, inputs["values"])
    return ImageSet(
        values=values,
        objects=objects,
        clumps=clumps,
        sky=noise("sky", 0.0),
        std=std,
        header=header,
        unit=str(header.get("BUNIT", "")).strip(),
        upmask=upmask,
    )


def expand_tiles(arr: Union[Scalar, np.ndarray], shape: Tuple[int, ...],
                 what: str) -> np.ndarray:
    """Broadcast a scalar, full-size array or tile grid to ``shape``."""
    a = np.asarray(arr, dtype=np.float64)
    if a.ndim == 0:
        return np.broadcast_to(a, shape)
    if a.shape == tuple(shape):
        return a
    if a.ndim != len(shape) or any(n % t for n, t in zip(shape, a.shape)):
        raise InputShapeError(
            f"{what} {a.shape} is neither the image shape {tuple(shape)} "
            "nor a tile grid dividing it")
    for axis, (n, t) in enumerate(zip(shape, a.shape)):
        a = np.repeat(a, n // t, axis=axis)
    return a


class NoiseModel:
    """Per-pixel sky and variance.

    Parameters
    ----------
    sky, std : scalar or ndarray
        Sky level and its standard deviation (variance if ``std_is_variance``).
    std_is_variance : bool
    sky_already_subtracted : bool
        The values had the sky subtracted, which doubles the variance used for
        measurement errors.
    """

    def __init__(self, sky, std, std_is_variance: bool = False,
                 sky_already_subtracted: bool = False):
        self.sky = sky
        self.std = std
        self.std_is_variance = std_is_variance
        self.sky_already_subtracted = sky_already_subtracted

    @property
    def var_factor(self) -> float:
        return 2.0 if self.sky_already_subtracted else 1.0

    def sky_array(self, shape) -> np.ndarray:
        return expand_tiles(self.sky, shape, "sky")

    def variance_array(self, shape) -> np.ndarray:
        """Input variance (std squared) of every pixel, without the
        ``var_factor``."""
        std = np.asarray(self.std, dtype=np.float64)
        var = std if self.std_is_variance else std * std
        return expand_tiles(var, shape, "std")

    def median_std(self) -> float:
        """Median of the finite std values as given (tiles are not expanded),
        NaN without a std input."""
        std = np.asarray(self.std, dtype=np.float64)
        if self.std_is_variance:
            std = np.sqrt(std)
        finite = std[np.isfinite(std)]
        return float(np.median(finite)) if finite.size else np.nan


def clump_path(path: str) -> str:
    stem, ext = os.path.splitext(path)
    return f"{stem}_clumps{ext}"


def _display_format(col) -> Optional[str]:
    if col.fmt == "FIXED":
        return f"{col.width}.{col.precision}f"
    if col.fmt == "GENERAL":
        return f"{col.width}.{col.precision}g"
    return None


def to_table(columns: Iterable, meta: Optional[Dict[str, Any]] = None) -> Table:
    table = Table(meta=dict(meta or {}))
    for col in columns:
        table.add_column(Column(
            data=col.array,
            name=col.name,
            unit=col.unit or None,
            description=col.comment,
            format=_display_format(col),
        ))
    return table


def write_catalog(path: str, columns: Iterable, meta: Optional[Dict[str, Any]] = None,
                  format: Optional[str] = None, overwrite: bool = True) -> None:
    """Write output columns to ``path`` (format inferred from the suffix
    unless given)."""
    try:
        table = to_table(columns, meta)
        table.write(path, format=format, overwrite=overwrite)
    except (OSError, ValueError, TypeError, KeyError) as exc:
        raise WriterError(f"could not write catalog {path}: {exc}") from exc
    log.info("wrote %d rows x %d columns to %s", len(table), len(table.columns), path)


__all__ = [
    "ImageSet",
    "read_image",
    "load_inputs",
    "expand_tiles",
    "NoiseModel",
    "clump_path",
    "to_table",
    "write_catalog",
]
