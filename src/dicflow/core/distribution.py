"""Distribution maps: which rank holds which points, and in which order.

Three maps coexist for one run:

- **owned**: one-to-one partition used for distributed synchronization.
  Without obstruction dependencies it is an even contiguous block split.
  With obstruction dependencies, points that occlude one another are
  grouped onto the same rank and blockers are ordered before the points
  they block.
- **all**: every rank holds every point (the replicated, global view).
- **seed**: one-to-one partition that keeps every point of a seed chain on
  one rank, ordered outward from the seed. Used on the first frame by the
  neighbor-value initialization strategies.

The builder is deterministic: every rank computes the same maps from the
same inputs, so no communication is needed to agree on ownership.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence

from dicflow.contracts import (
    assert_one_to_one,
    assert_replicated,
    assert_obstruction_order,
    assert_seed_order,
)
from dicflow.core.disjoint_set import DisjointSet

__all__ = [
    'DistributionMap',
    'DistributionMaps',
    'build_distribution_maps',
    'group_obstructions',
    'build_seed_chains',
]

logger = logging.getLogger(__name__)


class DistributionMap:
    """Assignment of point ids to ranks with a local order per rank.

    Parameters
    ----------
    num_global : int
        Total number of points N; ids live in [0, N).
    rank_ids : sequence of sequences
        ``rank_ids[r]`` is the ordered list of ids held by rank ``r``.
    """

    def __init__(self, num_global: int, rank_ids: Sequence[Sequence[int]]):
        self.num_global = int(num_global)
        self._rank_ids = [list(ids) for ids in rank_ids]
        self._lid = [{gid: lid for lid, gid in enumerate(ids)} for ids in self._rank_ids]

    @classmethod
    def contiguous(cls, num_global: int, num_ranks: int) -> "DistributionMap":
        """Even block split; the first ``N % P`` ranks get one extra id."""
        base, extra = divmod(num_global, num_ranks)
        rank_ids = []
        start = 0
        for rank in range(num_ranks):
            count = base + (1 if rank < extra else 0)
            rank_ids.append(list(range(start, start + count)))
            start += count
        return cls(num_global, rank_ids)

    @classmethod
    def replicated(cls, num_global: int, num_ranks: int,
                   order: Optional[Sequence[int]] = None) -> "DistributionMap":
        """Every rank holds every id, in ``order`` (natural order by default)."""
        ids = list(order) if order is not None else list(range(num_global))
        return cls(num_global, [ids for _ in range(num_ranks)])

    @property
    def num_ranks(self) -> int:
        return len(self._rank_ids)

    def local_ids(self, rank: int) -> List[int]:
        return list(self._rank_ids[rank])

    def num_local_elements(self, rank: int) -> int:
        return len(self._rank_ids[rank])

    def local_id(self, rank: int, gid: int) -> int:
        """Position of ``gid`` in rank's order, or -1 if the rank does not hold it."""
        return self._lid[rank].get(gid, -1)

    def owner(self, gid: int) -> int:
        """Lowest rank holding ``gid``, or -1."""
        for rank, lids in enumerate(self._lid):
            if gid in lids:
                return rank
        return -1

    def is_one_to_one(self) -> bool:
        total = sum(len(ids) for ids in self._rank_ids)
        held = set()
        for ids in self._rank_ids:
            held.update(ids)
        return total == self.num_global and held == set(range(self.num_global))

    def __eq__(self, other) -> bool:
        if not isinstance(other, DistributionMap):
            return NotImplemented
        return self.num_global == other.num_global and self._rank_ids == other._rank_ids

    def __repr__(self) -> str:
        sizes = [len(ids) for ids in self._rank_ids]
        return f"DistributionMap(num_global={self.num_global}, local_sizes={sizes})"


@dataclass
class DistributionMaps:
    """Result of the builder: the three maps plus the groupings behind them."""
    owned: DistributionMap
    all: DistributionMap
    seed: DistributionMap
    obstruction_groups: List[List[int]] = field(default_factory=list)
    seed_chains: List[List[int]] = field(default_factory=list)
    seed_map_degraded: bool = False


def _validate_obstructions(num_points: int, obstructing_ids: Mapping[int, Sequence[int]]) -> None:
    for gid, blockers in obstructing_ids.items():
        if not 0 <= gid < num_points:
            raise ValueError(f"Obstructed point id {gid} is outside [0, {num_points})")
        for blocker in blockers:
            if not 0 <= blocker < num_points:
                raise ValueError(f"Blocking point id {blocker} (blocks {gid}) is outside [0, {num_points})")
            if blocker == gid:
                raise ValueError(f"Point {gid} lists itself as a blocker")
            # obstruction is only one relation deep
            if obstructing_ids.get(blocker):
                raise ValueError(
                    f"Point {blocker} blocks point {gid} but is itself blocked by "
                    f"{list(obstructing_ids[blocker])}; multi-level obstruction is not supported"
                )


def group_obstructions(num_points: int,
                       obstructing_ids: Mapping[int, Sequence[int]]):
    """Close blocker relations into obstruction groups.

    Returns
    -------
    groups : list of list of int
        Each group sorted, groups ordered by smallest member.
    eligible : list of int
        Ids untouched by any blocker relation, ascending.
    """
    _validate_obstructions(num_points, obstructing_ids)
    dsu = DisjointSet()
    for gid in sorted(obstructing_ids):
        blockers = obstructing_ids[gid]
        if not blockers:
            continue
        dsu.add(gid)
        for blocker in blockers:
            dsu.union(gid, blocker)
    groups = dsu.groups()
    eligible = [gid for gid in range(num_points) if gid not in dsu]
    return groups, eligible


def _obstruction_rank_ids(num_points: int, num_ranks: int,
                          obstructing_ids: Mapping[int, Sequence[int]]):
    groups, eligible = group_obstructions(num_points, obstructing_ids)
    logger.debug("There are %d obstruction groupings", len(groups))
    for i, group in enumerate(groups):
        logger.debug("Group %d: %s", i, group)
    logger.debug("Eligible ids: %s", eligible)

    rank_sets: List[set] = [set() for _ in range(num_ranks)]
    for i, group in enumerate(groups):
        rank_sets[i % num_ranks].update(group)
    for gid in eligible:
        rank = min(range(num_ranks), key=lambda r: (len(rank_sets[r]), r))
        rank_sets[rank].add(gid)

    # unblocked ids first, then blocked ids (two tiers only)
    rank_ids = []
    for ids in rank_sets:
        ordered = sorted(ids)
        unblocked = [gid for gid in ordered if not obstructing_ids.get(gid)]
        blocked = [gid for gid in ordered if obstructing_ids.get(gid)]
        rank_ids.append(unblocked + blocked)
    return groups, rank_ids


def build_seed_chains(neighbor_ids: Sequence[int]) -> List[List[int]]:
    """Split ids into seed chains, each ordered seed-first.

    Ids are scanned from highest to lowest; a chain closes whenever a seed
    (neighbor id of -1) is reached, then is reversed so it runs outward
    from the seed.

    Raises
    ------
    ValueError
        If the lowest ids are not closed by a seed.
    """
    chains = []
    current: List[int] = []
    for gid in range(len(neighbor_ids) - 1, -1, -1):
        current.append(gid)
        if neighbor_ids[gid] == -1:
            chains.append(current[::-1])
            current = []
    if current:
        raise ValueError(
            f"Points {sorted(current)[:10]} are not preceded by a seed point "
            "(neighbor id -1); every seed chain must start with a seed"
        )
    return chains


def build_distribution_maps(num_points: int,
                            num_ranks: int,
                            obstructing_ids: Optional[Mapping[int, Sequence[int]]] = None,
                            neighbor_ids: Optional[Sequence[int]] = None) -> DistributionMaps:
    """Compute the owned, all and seed maps for a run.

    Parameters
    ----------
    num_points : int
        Number of tracked points N (> 0).
    num_ranks : int
        Number of worker ranks (> 0).
    obstructing_ids : mapping, optional
        Point id -> ids of the points that block it.
    neighbor_ids : sequence of int, optional
        Per-point neighbor used for initialization; -1 marks a seed.

    Returns
    -------
    DistributionMaps

    Raises
    ------
    ValueError
        For non-positive sizes or malformed dependency inputs.
    ContractViolation
        If the resulting maps break the partition or ordering invariants.
    """
    if num_points <= 0:
        raise ValueError(f"Number of points must be positive, got {num_points}")
    if num_ranks <= 0:
        raise ValueError(f"Number of ranks must be positive, got {num_ranks}")

    obstructing_ids = {int(k): [int(b) for b in v] for k, v in (obstructing_ids or {}).items()}
    groups: List[List[int]] = []

    if obstructing_ids:
        logger.debug("Points have obstruction dependencies")
        groups, rank_ids = _obstruction_rank_ids(num_points, num_ranks, obstructing_ids)
        owned = DistributionMap(num_points, rank_ids)
        # serial runs walk the all map, so it must carry the obstruction order too
        if num_ranks == 1:
            all_map = DistributionMap.replicated(num_points, 1, rank_ids[0])
        else:
            all_map = DistributionMap.replicated(num_points, num_ranks)
    else:
        owned = DistributionMap.contiguous(num_points, num_ranks)
        all_map = DistributionMap.replicated(num_points, num_ranks)

    assert_one_to_one(owned, "owned")
    assert_replicated(all_map)
    if obstructing_ids:
        assert_obstruction_order(owned, obstructing_ids)

    chains: List[List[int]] = []
    degraded = False
    if neighbor_ids is None:
        seed = owned
    else:
        neighbor_ids = [int(n) for n in neighbor_ids]
        if len(neighbor_ids) != num_points:
            raise ValueError(
                f"Expected {num_points} neighbor ids, got {len(neighbor_ids)}"
            )
        for gid, neighbor in enumerate(neighbor_ids):
            if neighbor != -1 and not 0 <= neighbor < num_points:
                raise ValueError(f"Neighbor id {neighbor} of point {gid} is outside [0, {num_points})")
        if obstructing_ids:
            if any(n != -1 for n in neighbor_ids):
                logger.warning(
                    "Seed values were specified for an analysis with obstructing points. "
                    "The seed map will be the distributed map because grouping by obstruction "
                    "takes precedence; seed dependencies between neighbors will not be enforced."
                )
            seed = owned
            degraded = True
        else:
            chains = build_seed_chains(neighbor_ids)
            assert_seed_order(chains, neighbor_ids)
            rank_chains: List[List[int]] = [[] for _ in range(num_ranks)]
            for i, chain in enumerate(chains):
                rank_chains[i % num_ranks].extend(chain)
            for rank, ids in enumerate(rank_chains):
                logger.debug("[RANK %d] seed map holds %d ids", rank, len(ids))
            seed = DistributionMap(num_points, rank_chains)
            assert_one_to_one(seed, "seed")

    return DistributionMaps(
        owned=owned,
        all=all_map,
        seed=seed,
        obstruction_groups=groups,
        seed_chains=chains,
        seed_map_degraded=degraded,
    )
