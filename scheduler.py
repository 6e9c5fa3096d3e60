"""
scheduler.py

Static partition of object IDs over worker threads.

Objects 1..NObj are split into ``threads`` contiguous, near-equal chunks with
``split_axis``. Each worker measures its chunk and then waits on a single
barrier shared with the calling thread; the finalizer only runs after the
barrier. The numba kernels release the GIL, so the workers run in parallel.

Cancellation is cooperative: a worker checks the cancel event before each
object and stops early; ``run_objects`` then raises ``RunCancelled``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

from errors import RunCancelled

log = logging.getLogger(__name__)


def split_axis(n: int, p: int, coord: int) -> Tuple[int, int]:
    base = n // p
    rem = n % p
    start = coord * base + min(coord, rem)
    length = base + (1 if coord < rem else 0)
    return start, start + length


def run_objects(measure: Callable[[int], None], nobj: int, threads: int = 1,
                cancel: Optional[threading.Event] = None) -> None:
    """Call ``measure(obj)`` for every object ID 1..nobj.

    Parameters
    ----------
    measure : callable
        Per-object worker; must only write rows owned by ``obj``.
    nobj : int
        Number of object labels.
    threads : int
        Number of worker threads (at most ``nobj`` are started).
    cancel : threading.Event, optional
        When set, workers stop before their next object.

    Raises
    ------
    RunCancelled
        The cancel event was set before all objects were measured.
    Exception
        The first exception raised by a worker, re-raised here.
    """
    cancel = cancel or threading.Event()
    nworkers = max(1, min(int(threads), nobj))
    barrier = threading.Barrier(nworkers + 1)
    errors: List[Exception] = []
    done = [0] * nworkers
    t0 = time.time()

    def worker(w: int) -> None:
        start, stop = split_axis(nobj, nworkers, w)
        try:
            for obj in range(start + 1, stop + 1):
                if cancel.is_set():
                    break
                measure(obj)
                done[w] += 1
        except Exception as exc:
            errors.append(exc)
            cancel.set()
        finally:
            barrier.wait()

    workers = [threading.Thread(target=worker, args=(w,), name=f"catalog-{w}",
                                daemon=True)
               for w in range(nworkers)]
    for th in workers:
        th.start()
    barrier.wait()
    for th in workers:
        th.join()

    if errors:
        raise errors[0]
    if sum(done) < nobj:
        raise RunCancelled(f"run cancelled after {sum(done)} of {nobj} objects")
    log.info("measured %d objects on %d threads in %.2f s",
             nobj, nworkers, time.time() - t0)


__all__ = ["split_axis", "run_objects"]
