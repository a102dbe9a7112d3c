"""Collective communication between worker ranks.

The engine only needs two collectives: ``barrier()`` and ``allgather()``.
Three communicators implement them:

- SerialCommunicator: a single rank, collectives are trivial.
- ThreadCommunicator: one per rank of a ThreadGroup, ranks run as threads
  inside one process and meet at a shared ``threading.Barrier``.
- MPICommunicator: adapter over an mpi4py-style communicator object
  (``Get_rank``, ``Get_size``, ``allgather``, ``Barrier``) for runs with
  one OS process per rank.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, List, Optional

__all__ = [
    'Communicator',
    'SerialCommunicator',
    'ThreadGroup',
    'ThreadCommunicator',
    'MPICommunicator',
]

logger = logging.getLogger(__name__)


class Communicator(ABC):
    """Rank identity plus the blocking collectives used at sync points."""

    @property
    @abstractmethod
    def rank(self) -> int:
        ...

    @property
    @abstractmethod
    def size(self) -> int:
        ...

    @abstractmethod
    def barrier(self) -> None:
        ...

    @abstractmethod
    def allgather(self, obj: Any) -> List[Any]:
        """Every rank contributes ``obj``; every rank receives all, ordered by rank."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(rank={self.rank}, size={self.size})"


class SerialCommunicator(Communicator):

    @property
    def rank(self) -> int:
        return 0

    @property
    def size(self) -> int:
        return 1

    def barrier(self) -> None:
        return None

    def allgather(self, obj: Any) -> List[Any]:
        return [obj]


class ThreadGroup:
    """Shared state for ``size`` ranks running as threads in one process.

    Parameters
    ----------
    size : int
        Number of ranks.
    timeout : float, optional
        Seconds a rank waits at a collective before the barrier breaks
        (None waits forever).
    """

    def __init__(self, size: int, timeout: Optional[float] = None):
        if size <= 0:
            raise ValueError(f"Thread group size must be positive, got {size}")
        self.size = size
        self._barrier = threading.Barrier(size, timeout=timeout)
        self._slots: List[Any] = [None] * size

    def communicators(self) -> List["ThreadCommunicator"]:
        return [ThreadCommunicator(self, rank) for rank in range(self.size)]

    def abort(self) -> None:
        """Break the barrier so ranks blocked in a collective raise instead of hanging."""
        self._barrier.abort()

    @property
    def broken(self) -> bool:
        return self._barrier.broken


class ThreadCommunicator(Communicator):

    def __init__(self, group: ThreadGroup, rank: int):
        self._group = group
        self._rank = rank

    @property
    def rank(self) -> int:
        return self._rank

    @property
    def size(self) -> int:
        return self._group.size

    def barrier(self) -> None:
        self._group._barrier.wait()

    def allgather(self, obj: Any) -> List[Any]:
        group = self._group
        group._slots[self._rank] = obj
        # first wait: all slots written; second wait: all slots read
        group._barrier.wait()
        gathered = list(group._slots)
        group._barrier.wait()
        return gathered


class MPICommunicator(Communicator):
    """Wrap an mpi4py-style communicator (e.g. ``MPI.COMM_WORLD``)."""

    def __init__(self, comm):
        self._comm = comm

    @property
    def rank(self) -> int:
        return int(self._comm.Get_rank())

    @property
    def size(self) -> int:
        return int(self._comm.Get_size())

    def barrier(self) -> None:
        self._comm.Barrier()

    def allgather(self, obj: Any) -> List[Any]:
        return list(self._comm.allgather(obj))
