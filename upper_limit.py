"""
upper_limit.py

Upper limits by random placement of a label's footprint.

The footprint of an object (or of one clump) is translated to random positions
inside the image. A placement is rejected when it touches a labelled or masked
pixel, or when too many of its pixels are blank. The sums of accepted
placements form the random distribution that the label's own sum is compared
with.

Each label draws from its own generator, ``default_rng((seed, obj))`` for
objects and ``default_rng((seed, obj, clump))`` for clumps, so the result does
not depend on which worker measured the label or in which order.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
from numba import njit

from accumulators import ACC
from clipping import sigma_clip
from config import UpperLimitConfig

log = logging.getLogger(__name__)

_NO_MASK = np.zeros((1, 1, 1), dtype=np.uint8)


@njit(nogil=True, cache=True)
def _place(V, O, M, use_mask, offsets, starts, max_blank, samples, nsamp,
           failures, max_failures):
    """Evaluate candidate placements until the sample array is full or the
    failure budget is spent. Returns the updated (nsamp, failures)."""
    m = offsets.shape[0]
    for t in range(starts.shape[0]):
        if nsamp >= samples.shape[0] or failures > max_failures:
            break
        z0, y0, x0 = starts[t, 0], starts[t, 1], starts[t, 2]
        total = 0.0
        nblank = 0
        ok = True
        for p in range(m):
            i = z0 + offsets[p, 0]
            j = y0 + offsets[p, 1]
            k = x0 + offsets[p, 2]
            if O[i, j, k] != 0 or (use_mask and M[i, j, k] != 0):
                ok = False
                break
            v = V[i, j, k]
            if v != v:
                nblank += 1
                if nblank > max_blank:
                    ok = False
                    break
            else:
                total += v
        if ok:
            samples[nsamp] = total
            nsamp += 1
        else:
            failures += 1
    return nsamp, failures


def footprint(objects: np.ndarray, clumps, obj: int, clump: int,
              lo: np.ndarray, hi: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Pixel offsets of the label relative to its bounding box and the box
    extent along (z, y, x)."""
    box = tuple(slice(int(a), int(b)) for a, b in zip(lo, hi))
    mask = objects[box] == obj
    if clump:
        mask &= clumps[box] == clump
    offsets = np.argwhere(mask).astype(np.int64)
    if offsets.size == 0:
        return offsets, np.zeros(3, dtype=np.int64)
    extent = offsets.max(axis=0) + 1
    return offsets, extent


def sample(values: np.ndarray, objects: np.ndarray, offsets: np.ndarray,
           extent: np.ndarray, cfg: UpperLimitConfig,
           rng: np.random.Generator, mask: Optional[np.ndarray] = None) -> np.ndarray:
    """Collect up to ``cfg.n_tries`` sums of randomly placed footprints.

    Placements touching a non-zero pixel of ``mask`` are rejected like those
    touching a label.

    Returns the accepted sums; fewer than ``n_tries`` means the failure budget
    ran out.
    """
    samples = np.empty(cfg.n_tries, dtype=np.float64)
    span = np.asarray(values.shape, dtype=np.int64) - extent
    if offsets.shape[0] == 0 or np.any(span < 0):
        return samples[:0]
    max_blank = int(np.floor(cfg.blank_fraction_max * offsets.shape[0]))
    use_mask = mask is not None
    m = mask if use_mask else _NO_MASK
    max_failures = cfg.max_failures
    nsamp, failures = 0, 0
    while nsamp < cfg.n_tries and failures <= max_failures:
        batch = cfg.n_tries - nsamp
        starts = rng.integers(0, span + 1, size=(batch, 3), dtype=np.int64)
        nsamp, failures = _place(values, objects, m, use_mask, offsets, starts,
                                 max_blank, samples, nsamp, failures, max_failures)
    return samples[:nsamp]


def summarize(samples: np.ndarray, true_sum: float,
              cfg: UpperLimitConfig) -> Tuple[float, float, float, float]:
    """(B, S, Q, SKEW) of a complete sample set.

    S is the sigma-clipped standard deviation, B = sigma_multiple * S, Q the
    fraction of samples below ``true_sum`` and SKEW (mean - median) / std of
    the clipped distribution.
    """
    _, median, mean, std = sigma_clip(samples, cfg.sigma_clip[0], cfg.sigma_clip[1])
    quantile = np.nan
    if np.isfinite(true_sum):
        quantile = float(np.count_nonzero(samples < true_sum)) / samples.size
    skew = (mean - median) / std if std > 0 else np.nan
    return cfg.sigma_multiple * std, std, quantile, skew


def measure_label(ctx, row: np.ndarray, obj: int, clump: int, lo: np.ndarray,
                  hi: np.ndarray, true_sum: float, table: str, rowidx: int) -> None:
    """Sample one label and write UPPERLIMIT_B/S/Q/SKEW/FLAG into ``row``."""
    cfg = ctx.config.upper_limit
    seed = (cfg.rng_seed, obj, clump) if clump else (cfg.rng_seed, obj)
    rng = np.random.default_rng(seed)
    offsets, extent = footprint(ctx.objects, ctx.clumps, obj, clump, lo, hi)
    samples = sample(ctx.values, ctx.objects, offsets, extent, cfg, rng, ctx.upmask)

    if samples.size < cfg.n_tries:
        row[ACC.UPPERLIMIT_B] = np.nan
        row[ACC.UPPERLIMIT_S] = np.nan
        row[ACC.UPPERLIMIT_Q] = np.nan
        row[ACC.UPPERLIMIT_SKEW] = np.nan
        row[ACC.UPPERLIMIT_FLAG] = 1
        log.debug("upper limit of %s row %d: %d of %d placements",
                  table, rowidx, samples.size, cfg.n_tries)
        ctx.tally.add(table, rowidx, "upper-limit sampling exhausted its failure budget")
        return

    b, s, q, skew = summarize(samples, true_sum, cfg)
    row[ACC.UPPERLIMIT_B] = b
    row[ACC.UPPERLIMIT_S] = s
    row[ACC.UPPERLIMIT_Q] = q
    row[ACC.UPPERLIMIT_SKEW] = skew
    row[ACC.UPPERLIMIT_FLAG] = 0


__all__ = ["footprint", "sample", "summarize", "measure_label"]
