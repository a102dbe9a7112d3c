"""Communicators and the scatter/gather synchronization protocol."""

import threading

import numpy as np
import pytest

from dicflow.core.comm import MPICommunicator, SerialCommunicator, ThreadGroup
from dicflow.core.distribution import DistributionMap
from dicflow.core.field_store import FieldStore
from dicflow.core.fields import FieldName
from dicflow.core.sync import FieldSynchronizer

pytestmark = [pytest.mark.unit, pytest.mark.core]


def run_ranks(size, fn, timeout=5.0):
    """Run ``fn(comm)`` on ``size`` thread ranks; returns results by rank."""
    group = ThreadGroup(size, timeout=timeout)
    results = [None] * size
    errors = []

    def target(comm):
        try:
            results[comm.rank] = fn(comm)
        except Exception as e:
            errors.append(e)
            group.abort()

    threads = [threading.Thread(target=target, args=(comm,)) for comm in group.communicators()]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    if errors:
        raise errors[0]
    return results


def filled_all_store(num_points):
    store = FieldStore(range(num_points))
    rng = np.random.default_rng(7)
    store.values[:] = rng.normal(size=store.values.shape)
    return store


class TestCommunicators:

    def test_serial_collectives_are_trivial(self):
        comm = SerialCommunicator()
        assert (comm.rank, comm.size) == (0, 1)
        assert comm.allgather("x") == ["x"]
        comm.barrier()

    def test_thread_allgather_orders_by_rank(self):
        results = run_ranks(3, lambda comm: comm.allgather(comm.rank * 10))
        assert results == [[0, 10, 20]] * 3

    def test_repeated_allgathers_do_not_mix_rounds(self):
        def fn(comm):
            return [comm.allgather((round_, comm.rank)) for round_ in range(4)]

        results = run_ranks(2, fn)
        for rank_result in results:
            for round_, gathered in enumerate(rank_result):
                assert gathered == [(round_, 0), (round_, 1)]

    def test_abort_breaks_waiting_ranks(self):
        def fn(comm):
            if comm.rank == 1:
                raise RuntimeError("rank 1 failed")
            comm.barrier()

        with pytest.raises((RuntimeError, threading.BrokenBarrierError)):
            run_ranks(2, fn)

    def test_thread_group_size_must_be_positive(self):
        with pytest.raises(ValueError):
            ThreadGroup(0)

    def test_mpi_adapter_delegates(self):
        class FakeMPIComm:
            def Get_rank(self):
                return 2

            def Get_size(self):
                return 4

            def Barrier(self):
                self.barrier_called = True

            def allgather(self, obj):
                return (obj, obj)

        raw = FakeMPIComm()
        comm = MPICommunicator(raw)
        assert (comm.rank, comm.size) == (2, 4)
        assert comm.allgather(1) == [1, 1]
        comm.barrier()
        assert raw.barrier_called


class TestFieldSynchronizer:

    @pytest.mark.parametrize("num_ranks", [1, 2, 3])
    def test_scatter_then_gather_is_identity(self, num_ranks):
        num_points = 11
        owned = DistributionMap.contiguous(num_points, num_ranks)
        original = filled_all_store(num_points)

        def fn(comm):
            all_store = FieldStore(range(num_points))
            all_store.values[:] = original.values
            dist_store = FieldStore(owned.local_ids(comm.rank))
            sync = FieldSynchronizer(comm, [(all_store, dist_store)])
            sync.scatter()
            sync.gather()
            return all_store.values

        for values in run_ranks(num_ranks, fn):
            np.testing.assert_array_equal(values, original.values)

    def test_gather_makes_every_all_view_identical(self):
        num_points = 6
        owned = DistributionMap.contiguous(num_points, 2)

        def fn(comm):
            all_store, all_nm1 = FieldStore(range(num_points)), FieldStore(range(num_points))
            ids = owned.local_ids(comm.rank)
            dist_store, dist_nm1 = FieldStore(ids), FieldStore(ids)
            sync = FieldSynchronizer(comm, [(all_store, dist_store), (all_nm1, dist_nm1)])
            sync.scatter()
            for gid in ids:
                dist_store.set(gid, FieldName.DISPLACEMENT_X, 100.0 + gid)
                dist_nm1.set(gid, FieldName.DISPLACEMENT_X, -1.0 * gid)
            sync.gather()
            return all_store.column(FieldName.DISPLACEMENT_X).copy(), all_nm1.column(FieldName.DISPLACEMENT_X).copy()

        results = run_ranks(2, fn)
        for current, previous in results:
            np.testing.assert_array_equal(current, 100.0 + np.arange(num_points))
            np.testing.assert_array_equal(previous, -1.0 * np.arange(num_points))

    def test_rank_without_points_still_joins_gather(self):
        owned = DistributionMap.contiguous(1, 2)

        def fn(comm):
            all_store = FieldStore([0])
            dist_store = FieldStore(owned.local_ids(comm.rank))
            sync = FieldSynchronizer(comm, [(all_store, dist_store)])
            sync.scatter()
            if 0 in dist_store:
                dist_store.set(0, FieldName.SIGMA, 0.5)
            sync.gather()
            return all_store.get(0, FieldName.SIGMA)

        assert run_ranks(2, fn) == [0.5, 0.5]
