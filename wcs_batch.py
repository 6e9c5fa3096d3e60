"""
wcs_batch.py

WCS service and the batched pixel -> world conversion of centroid pools.

All pixel coordinates handled here are FITS 1-based: axis 1 is the last numpy
axis. The underlying astropy ``WCS`` is only called from the thread that runs
the finalizer, after all workers passed the barrier, so no locking is needed.
"""

from __future__ import annotations

import logging
import warnings
from typing import Dict, Mapping

import numpy as np
from astropy.wcs import WCS
from astropy.wcs.utils import proj_plane_pixel_scales
from astropy.wcs.wcs import NoConvergence

from errors import MeasurementWarning

log = logging.getLogger(__name__)

# Pool categories: value weighted / geometric x objects / clumps-in-object,
# and the same two for the clump table.
CATEGORIES = ("V", "G", "VC", "GC")


class WCSService:
    """Thin wrapper around ``astropy.wcs.WCS``.

    Parameters
    ----------
    wcs : astropy.wcs.WCS or astropy.io.fits.Header
        World coordinate system of the values image.
    """

    def __init__(self, wcs):
        self.wcs = wcs if isinstance(wcs, WCS) else WCS(wcs)

    @property
    def ndim(self) -> int:
        return int(self.wcs.naxis)

    def ctype(self, dim: int) -> str:
        """Short axis type of 1-based ``dim``: ``"RA---TAN"`` -> ``"RA"``."""
        raw = str(self.wcs.wcs.ctype[dim - 1])
        return raw.split("-")[0].strip().upper()

    def cunit(self, dim: int) -> str:
        return str(self.wcs.wcs.cunit[dim - 1])

    def pixel_scale(self, dim: int) -> float:
        """Size of one pixel along 1-based ``dim`` in world units (degrees
        for celestial axes)."""
        return float(proj_plane_pixel_scales(self.wcs)[dim - 1])

    def pixel_to_world(self, pix: np.ndarray) -> np.ndarray:
        """Convert ``(ndim, n)`` 1-based pixel coordinates to world coordinates."""
        pix = np.asarray(pix, dtype=np.float64)
        world = self.wcs.all_pix2world(*pix, 1)
        return np.asarray(world, dtype=np.float64).reshape(pix.shape)


def pixel_area_arcsec2(service: WCSService) -> float:
    """Area of one pixel in arcsec^2 from the first two pixel scales."""
    return abs(service.pixel_scale(1) * service.pixel_scale(2)) * 3600.0 * 3600.0


def convert_pools(pools: Mapping[str, np.ndarray],
                  service: WCSService) -> Dict[str, np.ndarray]:
    """Convert each pixel-coordinate pool to world coordinates.

    Parameters
    ----------
    pools : mapping
        Category -> ``(ndim, n)`` float64 array of 1-based pixel coordinates.
    service : WCSService
        Called exactly once per category.

    Returns
    -------
    dict
        Category -> ``(ndim, n)`` world coordinates. Rows that could not be
        converted are NaN.
    """
    out: Dict[str, np.ndarray] = {}
    for cat, pix in pools.items():
        pix = np.asarray(pix, dtype=np.float64)
        try:
            world = service.pixel_to_world(pix)
        except (ValueError, NoConvergence) as exc:
            log.warning("WCS conversion of %s centroids failed: %s", cat, exc)
            warnings.warn(
                f"WCS conversion of {cat} centroids failed: {exc}",
                MeasurementWarning,
                stacklevel=2,
            )
            world = np.full_like(pix, np.nan)
        else:
            bad = np.all(np.isfinite(pix), axis=0) & ~np.all(np.isfinite(world), axis=0)
            if bad.any():
                world[:, bad] = np.nan
                for row in np.flatnonzero(bad):
                    log.warning("WCS conversion failed for %s row %d", cat, row)
                warnings.warn(
                    f"WCS conversion failed for {int(bad.sum())} {cat} rows",
                    MeasurementWarning,
                    stacklevel=2,
                )
        out[cat] = world
    return out


__all__ = ["WCSService", "CATEGORIES", "pixel_area_arcsec2", "convert_pools"]
