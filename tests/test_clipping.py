from __future__ import annotations

import os

import numpy as np

import sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from catalog import build_catalog
from clipping import median_sorted, sigma_clip
from config import CatalogConfig


def _contaminated(n: int, seed: int = 11) -> np.ndarray:
    """N(0, 1) with 5 % of the values replaced by uniform outliers."""
    rng = np.random.default_rng(seed)
    data = rng.normal(0.0, 1.0, size=n)
    bad = rng.choice(n, size=n // 20, replace=False)
    data[bad] = rng.uniform(10.0, 60.0, size=bad.size) * rng.choice([-1.0, 1.0], size=bad.size)
    return data


def test_median_sorted():
    assert np.isnan(median_sorted(np.zeros(0)))
    assert median_sorted(np.array([1.0, 2.0, 7.0])) == 2.0
    assert median_sorted(np.array([1.0, 2.0, 4.0, 7.0])) == 3.0


def test_sigma_clip_recovers_the_gaussian():
    data = _contaminated(20000)
    tol = 5.0 / np.sqrt(data.size)
    for param in (0.1, 5):
        num, median, mean, std = sigma_clip(data, 3.0, param)
        assert abs(mean) < tol, f"mean {mean} (param={param})"
        assert abs(std - 1.0) < 0.05, f"std {std} (param={param})"
        assert abs(median) < tol, f"median {median}"
        assert 0.9 * data.size < num < 0.96 * data.size, num


def test_sigma_clip_edge_cases():
    assert sigma_clip(np.zeros(0), 3.0, 0.2)[0] == 0
    assert np.isnan(sigma_clip(np.array([np.nan, np.nan]), 3.0, 0.2)[2])
    num, median, mean, std = sigma_clip(np.full(10, 4.0), 3.0, 0.2)
    assert (num, median, mean, std) == (10, 4.0, 4.0, 0.0)
    # A fixed iteration count stops after that many passes.
    data = _contaminated(2000, seed=2)
    one = sigma_clip(data, 3.0, 1)
    many = sigma_clip(data, 3.0, 10)
    assert one[0] >= many[0]


def test_sigclip_columns_through_the_pipeline():
    values = _contaminated(10000, seed=21).reshape(100, 100)
    objects = np.ones((100, 100), dtype=np.int32)
    res = build_catalog(values, objects, ["SIGCLIPMEAN", "SIGCLIPSTD", "SIGCLIPNUMBER",
                                          "SIGCLIPMEDIAN"],
                        config=CatalogConfig(threads=1, sigma_clip=(3.0, 0.2)))
    tol = 5.0 / np.sqrt(values.size)
    assert abs(res.column("SIGCLIP_MEAN")[0]) < tol
    assert abs(res.column("SIGCLIP_STD")[0] - 1.0) < 0.05
    assert res.column("SIGCLIP_NUMBER")[0] < values.size
