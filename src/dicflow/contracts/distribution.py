"""Distribution map contracts.

Enforces the guarantees the map builder makes to the scheduler: owned and
seed maps partition the point ids, the all map replicates them, and local
orderings respect obstruction and seed dependencies.
"""

from typing import Dict, List, Sequence, TYPE_CHECKING

from dicflow.contracts.base import require

if TYPE_CHECKING:
    from dicflow.core.distribution import DistributionMap


def assert_one_to_one(dist_map: "DistributionMap", name: str = "owned") -> None:
    """Every id in [0, N) is held by exactly one rank.

    Raises
    ------
    ContractViolation
        If an id is missing or held more than once.
    """
    seen = [0] * dist_map.num_global
    for rank in range(dist_map.num_ranks):
        for gid in dist_map.local_ids(rank):
            require(
                0 <= gid < dist_map.num_global,
                f"Distribution contract violated: {name} map holds id {gid} outside [0, {dist_map.num_global})"
            )
            seen[gid] += 1
    missing = [gid for gid, count in enumerate(seen) if count == 0]
    repeated = [gid for gid, count in enumerate(seen) if count > 1]
    require(
        not missing,
        f"Distribution contract violated: {name} map is missing ids {missing[:10]}"
    )
    require(
        not repeated,
        f"Distribution contract violated: {name} map holds ids more than once {repeated[:10]}"
    )


def assert_replicated(dist_map: "DistributionMap") -> None:
    """Every rank holds every id exactly once."""
    expected = set(range(dist_map.num_global))
    for rank in range(dist_map.num_ranks):
        ids = dist_map.local_ids(rank)
        require(
            len(ids) == dist_map.num_global and set(ids) == expected,
            f"Distribution contract violated: all map on rank {rank} does not hold every id"
        )


def assert_obstruction_order(dist_map: "DistributionMap",
                             obstructing_ids: Dict[int, List[int]]) -> None:
    """Blockers share a rank with the blocked id and come earlier in its order."""
    for rank in range(dist_map.num_ranks):
        position = {gid: i for i, gid in enumerate(dist_map.local_ids(rank))}
        for gid, blockers in obstructing_ids.items():
            if gid not in position:
                continue
            for blocker in blockers:
                require(
                    blocker in position,
                    f"Obstruction contract violated: id {gid} on rank {rank} but blocker {blocker} is not"
                )
                require(
                    position[blocker] < position[gid],
                    f"Obstruction contract violated: blocker {blocker} is ordered after id {gid}"
                )


def assert_seed_order(chains: Sequence[Sequence[int]], neighbor_ids: Sequence[int]) -> None:
    """Each seed chain starts at its seed and holds no other seed."""
    for chain in chains:
        require(len(chain) > 0, "Seed contract violated: empty seed chain")
        require(
            neighbor_ids[chain[0]] == -1,
            f"Seed contract violated: chain starting at {chain[0]} does not start with a seed"
        )
        require(
            all(neighbor_ids[gid] != -1 for gid in chain[1:]),
            f"Seed contract violated: chain starting at {chain[0]} holds more than one seed"
        )
