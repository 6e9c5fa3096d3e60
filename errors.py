from __future__ import annotations

import threading
import warnings
from collections import Counter

import numpy as np


class CatalogError(Exception):
    """Base class for all catalog errors."""


class ConfigurationError(CatalogError, ValueError):
    """A requested column or option is incompatible with the inputs."""


class InputShapeError(CatalogError, ValueError):
    """Values, labels, sky and std images do not agree."""


class AllocationError(CatalogError, MemoryError):
    """Rows, columns or per-thread scratch could not be allocated."""


class WriterError(CatalogError, OSError):
    """The table writer failed."""


class RunCancelled(CatalogError, RuntimeError):
    """The measurement run was cancelled before all objects finished."""


class MeasurementWarning(UserWarning):
    """Non-fatal problem with one measurement (row or column)."""


class WarningTally:
    """Per-row counts of measurement warnings.

    Rows are owned by one worker each, so the row counters need no lock;
    the per-kind totals are shared and guarded.
    """

    def __init__(self, nobj: int, nclumps: int = 0):
        self.objects = np.zeros(nobj, dtype=np.int64)
        self.clumps = np.zeros(nclumps, dtype=np.int64)
        self.kinds: Counter = Counter()
        self._lock = threading.Lock()

    def add(self, table: str, rows, kind: str, emit: bool = True) -> None:
        """Count ``kind`` for ``rows`` (index, slice or boolean mask) of
        ``table`` ("objects" or "clumps")."""
        target = self.objects if table == "objects" else self.clumps
        idx = np.atleast_1d(np.arange(target.size)[rows])
        target[idx] += 1
        n = int(idx.size)
        if n == 0:
            return
        with self._lock:
            self.kinds[kind] += n
        if emit:
            warnings.warn(f"{kind} ({n} {table} rows)", MeasurementWarning, stacklevel=2)

    @property
    def total(self) -> int:
        return int(sum(self.kinds.values()))

    def summary(self) -> str:
        parts = [f"{n} x {kind}" for kind, n in sorted(self.kinds.items())]
        return (f"{self.total} measurement warnings on "
                f"{int((self.objects > 0).sum())} objects and "
                f"{int((self.clumps > 0).sum())} clumps: " + "; ".join(parts))


__all__ = [
    "CatalogError",
    "ConfigurationError",
    "InputShapeError",
    "AllocationError",
    "WriterError",
    "RunCancelled",
    "MeasurementWarning",
    "WarningTally",
]
