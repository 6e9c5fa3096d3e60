"""
config.py

Runtime configuration of the catalog core.

The core itself never parses files or command lines: it receives a
``CatalogConfig``. The CLI builds one from a YAML file with ``parse_config``
followed by ``config_from_dict``, which also validates every value.

Example YAML
------------

    threads: 8
    columns: [OBJID, AREA, X, Y, RA, DEC, MAGNITUDE, SN]
    zeropoint: 22.5
    sigma_clip: [3.0, 0.2]          # kappa, tolerance (<1) or iterations (>=1)
    frac_max: [0.25, 0.75]
    upper_limit:
      n_tries: 200
      sigma_multiple: 3.0
      rng_seed: 1
    sb_limit: {nsigma: 3.0, area: 100.0}
    inputs:
      values:  {path: image.fits, hdu: 1}
      objects: {path: seg.fits, hdu: OBJECTS}
      clumps:  {path: seg.fits, hdu: CLUMPS}
      sky: 0.0
      std: {path: sky.fits, hdu: SKY_STD}
      upmask: {path: mask.fits, hdu: 1}   # non-zero pixels never host a random placement
    output: catalog.fits
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Any, Optional, Tuple

import yaml

from errors import ConfigurationError


@dataclass
class UpperLimitConfig:
    """Settings of the random-placement upper-limit sampler.

    - n_tries: number of accepted placements to collect
    - sigma_multiple: multiple of the one-sigma spread used as upper limit
    - failure_budget: rejected placements tolerated before giving up
      (None means 10 * n_tries)
    - blank_fraction_max: largest fraction of blank pixels under a placement
    - rng_seed: global seed; each label derives its own stream from it
    - sigma_clip: (kappa, tolerance|iterations) applied to the samples
    """

    n_tries: int = 100
    sigma_multiple: float = 3.0
    failure_budget: Optional[int] = None
    blank_fraction_max: float = 0.0
    rng_seed: int = 0
    sigma_clip: Tuple[float, float] = (3.0, 0.2)

    @property
    def max_failures(self) -> int:
        if self.failure_budget is None:
            return 10 * self.n_tries
        return self.failure_budget


@dataclass
class SBLimitConfig:
    """Surface-brightness limit written into the catalog metadata: ``nsigma``
    times the median sky std, per pixel and over ``area`` arcsec^2."""

    nsigma: float = 1.0
    area: float = 1.0


@dataclass
class CatalogConfig:
    threads: int = field(default_factory=lambda: os.cpu_count() or 1)
    sigma_clip: Optional[Tuple[float, float]] = (3.0, 0.2)
    frac_max: Optional[Tuple[float, float]] = None
    upper_limit: UpperLimitConfig = field(default_factory=UpperLimitConfig)
    sb_limit: SBLimitConfig = field(default_factory=SBLimitConfig)
    zeropoint: float = 0.0
    sky_already_subtracted: bool = False
    cpscorr: float = 1.0
    spatial_resolution: float = 2.0
    std_is_variance: bool = False
    no_clump_warnings: bool = False
    quiet: bool = False


def parse_config(path: str) -> dict:
    with open(path, "r") as f:
        cfg = yaml.safe_load(f)
    return cfg or {}


def _pair(value: Any, key: str) -> Tuple[float, float]:
    try:
        a, b = value
        return float(a), float(b)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be a list of two numbers, got {value!r}") from None


def check_sigma_clip(sc: Tuple[float, float], key: str = "sigma_clip") -> Tuple[float, float]:
    """Validate ``(kappa, tolerance|iterations)``.

    The second value is a convergence tolerance when it is below 1 and an
    iteration count otherwise (then it must be a whole number).
    """
    kappa, second = _pair(sc, key)
    if kappa <= 0:
        raise ConfigurationError(f"{key}: the sigma multiple must be positive, got {kappa}")
    if second <= 0:
        raise ConfigurationError(f"{key}: the second value must be positive, got {second}")
    if second >= 1 and second != int(second):
        raise ConfigurationError(
            f"{key}: values >= 1 are an iteration count and must be whole, got {second}"
        )
    return kappa, second


def check_frac_max(fm: Tuple[float, float]) -> Tuple[float, float]:
    f1, f2 = _pair(fm, "frac_max")
    for f in (f1, f2):
        if not 0.0 < f < 1.0:
            raise ConfigurationError(f"frac_max values must be in (0, 1), got {f}")
    return f1, f2


def _upper_limit_from_dict(d: dict) -> UpperLimitConfig:
    known = {f.name for f in fields(UpperLimitConfig)}
    unknown = set(d) - known
    if unknown:
        raise ConfigurationError(f"unknown upper_limit keys: {sorted(unknown)}")
    up = UpperLimitConfig(**d)
    up.n_tries = int(up.n_tries)
    up.sigma_multiple = float(up.sigma_multiple)
    up.blank_fraction_max = float(up.blank_fraction_max)
    up.rng_seed = int(up.rng_seed)
    if up.n_tries < 1:
        raise ConfigurationError("upper_limit.n_tries must be >= 1")
    if up.sigma_multiple <= 0:
        raise ConfigurationError("upper_limit.sigma_multiple must be > 0")
    if up.failure_budget is not None:
        up.failure_budget = int(up.failure_budget)
        if up.failure_budget < 0:
            raise ConfigurationError("upper_limit.failure_budget must be >= 0")
    if not 0.0 <= up.blank_fraction_max <= 1.0:
        raise ConfigurationError("upper_limit.blank_fraction_max must be in [0, 1]")
    up.sigma_clip = check_sigma_clip(up.sigma_clip, "upper_limit.sigma_clip")
    return up


def _sb_limit_from_dict(d: dict) -> SBLimitConfig:
    unknown = set(d) - {f.name for f in fields(SBLimitConfig)}
    if unknown:
        raise ConfigurationError(f"unknown sb_limit keys: {sorted(unknown)}")
    sbl = SBLimitConfig(**d)
    try:
        sbl.nsigma = float(sbl.nsigma)
        sbl.area = float(sbl.area)
    except (TypeError, ValueError):
        raise ConfigurationError(f"sb_limit values must be numbers, got {d!r}") from None
    if sbl.nsigma <= 0 or sbl.area <= 0:
        raise ConfigurationError("sb_limit.nsigma and sb_limit.area must be > 0")
    return sbl


# Keys consumed by the CLI, not by the core.
_CLI_KEYS = {"columns", "inputs", "output", "output_format", "log_level"}


def config_from_dict(cfg: dict) -> CatalogConfig:
    """Build and validate a ``CatalogConfig`` from a parsed YAML mapping."""
    cfg = dict(cfg or {})
    core = {k: v for k, v in cfg.items() if k not in _CLI_KEYS}
    known = {f.name for f in fields(CatalogConfig)}
    unknown = set(core) - known
    if unknown:
        raise ConfigurationError(f"unknown configuration keys: {sorted(unknown)}")

    up = _upper_limit_from_dict(core.pop("upper_limit", None) or {})
    sbl = _sb_limit_from_dict(core.pop("sb_limit", None) or {})
    out = CatalogConfig(upper_limit=up, sb_limit=sbl, **core)

    try:
        out.threads = int(out.threads)
    except (TypeError, ValueError):
        raise ConfigurationError(f"threads must be an integer, got {out.threads!r}") from None
    if out.threads < 1:
        raise ConfigurationError("threads must be >= 1")
    if out.sigma_clip is not None:
        out.sigma_clip = check_sigma_clip(out.sigma_clip)
    if out.frac_max is not None:
        out.frac_max = check_frac_max(out.frac_max)
    out.zeropoint = float(out.zeropoint)
    out.cpscorr = float(out.cpscorr)
    if out.cpscorr <= 0:
        raise ConfigurationError("cpscorr must be > 0")
    out.spatial_resolution = float(out.spatial_resolution)
    if out.spatial_resolution <= 0:
        raise ConfigurationError("spatial_resolution must be > 0")
    for key in ("sky_already_subtracted", "std_is_variance", "no_clump_warnings", "quiet"):
        setattr(out, key, bool(getattr(out, key)))
    return out


__all__ = [
    "CatalogConfig",
    "UpperLimitConfig",
    "SBLimitConfig",
    "parse_config",
    "config_from_dict",
    "check_sigma_clip",
    "check_frac_max",
]
