"""
clipping.py

Sigma clipping and median of sorted samples, shared by the order-statistic
sweep and the upper-limit summaries.

``astropy.stats.sigma_clip`` only iterates a fixed number of times or until
nothing more is rejected; here the second parameter may also be a tolerance on
the relative change of the standard deviation.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

# Cap on tolerance-driven iterations.
MAX_CLIP_ITERATIONS = 50


def median_sorted(s: np.ndarray) -> float:
    """Middle element of an ascending array (mean of the two middles for an
    even size), NaN when empty."""
    n = s.size
    if n == 0:
        return np.nan
    m = n // 2
    if n % 2:
        return float(s[m])
    return 0.5 * (float(s[m - 1]) + float(s[m]))


def sigma_clip(values: np.ndarray, kappa: float, param: float,
               presorted: bool = False) -> Tuple[int, float, float, float]:
    """Iterative ``mean +/- kappa * std`` clipping.

    Parameters
    ----------
    values : ndarray
        Input values; NaNs are ignored.
    kappa : float
        Clipping multiple of the standard deviation.
    param : float
        Convergence tolerance on the relative change of the standard deviation
        when below 1, otherwise the number of clipping iterations.
    presorted : bool
        ``values`` is already sorted ascending and free of NaNs.

    Returns
    -------
    (num, median, mean, std) of the surviving values. An empty input gives
    ``(0, nan, nan, nan)``.
    """
    data = np.asarray(values, dtype=np.float64)
    if not presorted:
        data = np.sort(data[~np.isnan(data)])
    if data.size == 0:
        return 0, np.nan, np.nan, np.nan

    tolerance = param < 1
    niter = MAX_CLIP_ITERATIONS if tolerance else int(param)

    lo, hi = 0, data.size
    seg = data
    mean, std = float(seg.mean()), float(seg.std())
    for _ in range(niter):
        nlo = int(np.searchsorted(data, mean - kappa * std, side="left"))
        nhi = int(np.searchsorted(data, mean + kappa * std, side="right"))
        if nhi <= nlo or (nlo, nhi) == (lo, hi):
            break
        lo, hi = nlo, nhi
        seg = data[lo:hi]
        new_mean, new_std = float(seg.mean()), float(seg.std())
        converged = tolerance and (new_std == 0 or abs(std - new_std) / new_std < param)
        mean, std = new_mean, new_std
        if converged:
            break
    return int(seg.size), median_sorted(seg), mean, std


__all__ = ["sigma_clip", "median_sorted", "MAX_CLIP_ITERATIONS"]
