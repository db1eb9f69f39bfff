"""Work partitioning and collective reductions for SPMD BTE sweeps.

Every sweep of the solver is executed by a fixed set of workers that run the
same code on disjoint, statically assigned index ranges.  This module provides

* :func:`distribute_points` – balanced contiguous split of ``range(n)``;
* communicator backends exposing ``barrier`` and ``all_gather_sum``, the only
  path by which data crosses workers:

  - :class:`SerialCommunicator` – one worker, no synchronisation;
  - :class:`ThreadGroup` / :class:`ThreadCommunicator` – in-process workers
    synchronised with :class:`threading.Barrier` (used by the test-suite to
    check that any worker count reproduces the serial result);
  - :class:`MPICommunicator` – distributed memory via *mpi4py*.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, List, Sequence, Tuple

import numpy as np

__all__ = [
    "distribute_points",
    "local_range",
    "SerialCommunicator",
    "ThreadCommunicator",
    "ThreadGroup",
    "MPICommunicator",
]


# -----------------------------------------------------------------------------
# Index-range partitioning
# -----------------------------------------------------------------------------

def distribute_points(n: int, size: int) -> Tuple[List[range], int]:
    """Split ``range(n)`` into *size* contiguous, disjoint, balanced ranges.

    Parameters
    ----------
    n
        Total number of items (``n >= 0``).
    size
        Number of workers (``size >= 1``).

    Returns
    -------
    ranges
        One ``range`` per worker.  Sizes differ by at most one; workers beyond
        what is needed to cover *n* receive an empty range.
    num_active
        Number of workers with a non-empty range.  Only these take part in
        :meth:`all_gather_sum` reductions.
    """

    if size < 1:
        raise ValueError(f"Worker count must be >= 1, got {size}")
    if n < 0:
        raise ValueError(f"Item count must be >= 0, got {n}")

    chunk, extra = divmod(n, size)
    ranges: List[range] = []
    start = 0
    for rank in range(size):
        stop = start + chunk + (1 if rank < extra else 0)
        ranges.append(range(start, stop))
        start = stop

    num_active = min(n, size)
    return ranges, num_active


def local_range(n: int, comm) -> Tuple[range, int]:
    """Return (range owned by ``comm.rank``, number of active workers)."""

    ranges, num_active = distribute_points(n, comm.size)
    return ranges[comm.rank], num_active


# -----------------------------------------------------------------------------
# Communicator backends
# -----------------------------------------------------------------------------

class SerialCommunicator:
    """Single-worker communicator; reductions are plain copies."""

    rank = 0
    size = 1

    @property
    def is_root(self) -> bool:
        return True

    def barrier(self) -> None:
        return None

    def all_gather_sum(self, local: np.ndarray, num_active: int | None = None) -> np.ndarray:
        if num_active == 0:
            return np.zeros_like(local)
        return np.array(local, copy=True)


class _ThreadShared:
    """State shared by all workers of one :class:`ThreadGroup`."""

    def __init__(self, size: int):
        self.size = size
        self.barrier = threading.Barrier(size)
        self.slots: List[np.ndarray | None] = [None] * size


class ThreadCommunicator:
    """Communicator handle given to one worker of a :class:`ThreadGroup`."""

    def __init__(self, rank: int, shared: _ThreadShared):
        self.rank = rank
        self.size = shared.size
        self._shared = shared

    @property
    def is_root(self) -> bool:
        return self.rank == 0

    def barrier(self) -> None:
        self._shared.barrier.wait()

    def all_gather_sum(self, local: np.ndarray, num_active: int | None = None) -> np.ndarray:
        """Return the elementwise sum of the buffers of ranks ``< num_active``.

        The local buffer is published, all workers meet at a barrier, every
        worker reads every published buffer, and a second barrier guarantees
        no slot is overwritten by a later call before all reads finished.
        """

        if num_active is None:
            num_active = self.size

        shared = self._shared
        shared.slots[self.rank] = local
        shared.barrier.wait()

        total = np.zeros_like(local)
        for buf in shared.slots[:num_active]:
            total += buf

        shared.barrier.wait()
        return total


class ThreadGroup:
    """Run one function on *size* in-process SPMD workers.

    Example
    -------
    >>> group = ThreadGroup(3)
    >>> results = group.run(lambda comm: comm.rank)
    >>> results
    [0, 1, 2]
    """

    def __init__(self, size: int):
        if size < 1:
            raise ValueError(f"Worker count must be >= 1, got {size}")
        self.size = size

    def run(self, fn: Callable[[ThreadCommunicator], Any]) -> List[Any]:
        """Execute ``fn(comm)`` on every worker and return per-rank results.

        If any worker raises, the shared barrier is aborted so the remaining
        workers do not block forever, and the first exception is re-raised.
        """

        shared = _ThreadShared(self.size)
        results: List[Any] = [None] * self.size
        errors: List[BaseException] = []

        def _worker(rank: int) -> None:
            comm = ThreadCommunicator(rank, shared)
            try:
                results[rank] = fn(comm)
            except threading.BrokenBarrierError as exc:
                errors.append(exc)
            except BaseException as exc:  # noqa: BLE001 – re-raised below
                errors.append(exc)
                shared.barrier.abort()

        threads = [threading.Thread(target=_worker, args=(r,)) for r in range(self.size)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()

        if errors:
            # Prefer the root cause over secondary broken-barrier errors
            primary: Sequence[BaseException] = [
                e for e in errors if not isinstance(e, threading.BrokenBarrierError)
            ] or errors
            raise primary[0]

        return results


class MPICommunicator:
    """Distributed-memory communicator backed by *mpi4py*.

    Parameters
    ----------
    comm
        Optional ``mpi4py.MPI.Comm``; defaults to ``MPI.COMM_WORLD``.
    """

    def __init__(self, comm=None):
        from mpi4py import MPI  # local import – optional dependency

        self._MPI = MPI
        self._comm = MPI.COMM_WORLD if comm is None else comm
        self.rank = self._comm.Get_rank()
        self.size = self._comm.Get_size()

    @property
    def is_root(self) -> bool:
        return self.rank == 0

    def barrier(self) -> None:
        self._comm.Barrier()

    def all_gather_sum(self, local: np.ndarray, num_active: int | None = None) -> np.ndarray:
        if num_active is None:
            num_active = self.size

        send = np.ascontiguousarray(local, dtype=np.float64)
        if self.rank >= num_active:
            send = np.zeros_like(send)

        total = np.empty_like(send)
        self._comm.Allreduce(send, total, op=self._MPI.SUM)
        return total
