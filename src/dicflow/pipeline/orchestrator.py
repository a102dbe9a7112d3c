"""Thread-per-rank run orchestration.

Runs one worker thread per rank over a shared ThreadGroup communicator,
collects each rank's result, and shuts the group down cleanly when a rank
fails.
"""

import logging
import threading
import time
from typing import Any, Callable, List, Optional, TYPE_CHECKING

from dicflow.core.comm import ThreadCommunicator, ThreadGroup

if TYPE_CHECKING:
    from dicflow.schemas import InternalConfig

__all__ = ['CorrelationOrchestrator', 'RankWorker']

logger = logging.getLogger(__name__)

WorkerFn = Callable[[ThreadCommunicator], Any]


class RankWorker(threading.Thread):
    """Runs ``worker_fn(comm)`` for one rank and keeps its result or error.

    On failure the thread aborts its group so peers blocked in a
    collective raise ``threading.BrokenBarrierError`` instead of waiting.
    """

    def __init__(self, worker_fn: WorkerFn, comm: ThreadCommunicator, group: ThreadGroup):
        super().__init__(daemon=True, name=f"dicflow-rank-{comm.rank}")
        self.worker_fn = worker_fn
        self.comm = comm
        self.group = group
        self.result: Any = None
        self.error: Optional[BaseException] = None

    def run(self):
        """Called by ``start()``; do not call directly."""
        logger.debug("[RANK %d] worker started", self.comm.rank)
        try:
            self.result = self.worker_fn(self.comm)
        except BaseException as e:
            self.error = e
            if isinstance(e, threading.BrokenBarrierError):
                logger.debug("[RANK %d] collective aborted by a failing peer", self.comm.rank)
            else:
                logger.exception("[RANK %d] worker failed", self.comm.rank)
                self.group.abort()
        logger.debug("[RANK %d] worker finished", self.comm.rank)


class CorrelationOrchestrator:
    """Runs a per-rank worker function on ``num_workers`` thread ranks.

    The worker function receives its rank's communicator, typically builds
    a :class:`~dicflow.pipeline.scheduler.CorrelationScheduler` with it and
    drives the frames. Results come back ordered by rank.

    Example usage::

        def worker(comm):
            scheduler = CorrelationScheduler(config, ref, deformed, comm=comm,
                                             objective_factory=MyObjective)
            scheduler.initialize(xs, ys, subset_size=21)
            return scheduler.execute_correlation()

        orch = CorrelationOrchestrator(config, num_workers=4)
        outcomes_by_rank = orch.run(worker)

    Parameters
    ----------
    config : InternalConfig
        Runtime configuration; only the logging section is read here.
    num_workers : int, optional
        Number of ranks (default: 1).
    timeout : float, optional
        Seconds a rank may wait at a collective before the group breaks.
    """

    def __init__(self, config: "InternalConfig", num_workers: int = 1,
                 timeout: Optional[float] = None):
        if num_workers <= 0:
            raise ValueError(f"Number of workers must be positive, got {num_workers}")
        self.config = config
        self.num_workers = num_workers
        self.timeout = timeout
        self.workers: List[RankWorker] = []

    def _setup_logging(self):
        """Configure the root logger from ``config.logging``.

        Existing root handlers are replaced by a console handler and, when
        ``log_file`` is set, a file handler with the same formatter.
        """
        log_level = getattr(logging, self.config.logging.level.upper(), logging.INFO)

        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        root = logging.getLogger()
        root.setLevel(log_level)
        for handler in root.handlers[:]:
            root.removeHandler(handler)

        if self.config.logging.log_file:
            fh = logging.FileHandler(self.config.logging.log_file)
            fh.setLevel(log_level)
            fh.setFormatter(formatter)
            root.addHandler(fh)

        ch = logging.StreamHandler()
        ch.setLevel(log_level)
        ch.setFormatter(formatter)
        root.addHandler(ch)

        logger.info("Logging: level=%s, file=%s", logging.getLevelName(log_level),
                    self.config.logging.log_file)

    def run(self, worker_fn: WorkerFn, setup_logging: bool = True) -> List[Any]:
        """Run ``worker_fn`` on every rank and wait for all of them.

        Parameters
        ----------
        worker_fn : callable
            ``worker_fn(comm) -> result``, executed once per rank.
        setup_logging : bool, optional
            Reconfigure the root logger first (default: True).

        Returns
        -------
        list
            One result per rank, index = rank.

        Raises
        ------
        BaseException
            The first error raised by a rank (lowest rank among the ranks
            that failed on their own rather than through an aborted barrier).
        """
        if setup_logging:
            self._setup_logging()

        logger.info("=" * 60)
        logger.info("Starting correlation run on %d rank(s)", self.num_workers)
        logger.info("=" * 60)
        start = time.time()

        group = ThreadGroup(self.num_workers, timeout=self.timeout)
        self.workers = [RankWorker(worker_fn, comm, group) for comm in group.communicators()]
        for worker in self.workers:
            worker.start()
        for worker in self.workers:
            worker.join()

        errors = [w.error for w in self.workers if w.error is not None]
        if errors:
            primary = [e for e in errors if not isinstance(e, threading.BrokenBarrierError)]
            first = (primary or errors)[0]
            logger.error("Run failed on %d rank(s): %s", len(errors), first)
            raise first

        logger.info("Run complete. Runtime: %.1f seconds", time.time() - start)
        return [w.result for w in self.workers]
