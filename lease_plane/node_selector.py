"""
Lease Plane Node Selector
=========================

Picks the host that should receive a new instance, using live fleet
inventory from the panel.

Strategy: "most free memory first"
    Hosts are ranked by remaining memory headroom after applying their
    overallocation policy, so the fullest hosts fill up last.

Algorithm:
    1. Fetch all hosts (every page) and narrow to the preferred host if given
    2. Compute memory/disk headroom per host, skip hosts below the request
    3. Fetch free allocations for the survivors, skip hosts with none
    4. Rank: unbounded memory first (ties by free allocation count),
       then bounded memory descending
    5. Return the winner and its first free allocation

Nothing is cached; every call re-reads the fleet. The choice is advisory:
the panel's create call re-validates it.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from lease_plane.capacity import Bounded, Capacity, Unbounded
from lease_plane.errors import HostUnavailableError, NoCapacityError, UpstreamUnavailableError
from lease_plane.panel.base import Host, PanelError, PanelInterface

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Placement:
    """Where a new instance goes."""
    host_id: int
    allocation_id: int


@dataclass
class Candidate:
    host: Host
    free_memory: Capacity
    free_disk: Capacity
    free_allocation_ids: List[int]

    @property
    def free_allocation_count(self) -> int:
        return len(self.free_allocation_ids)

    def rank_key(self) -> Tuple[int, int]:
        if isinstance(self.free_memory, Unbounded):
            return (0, -self.free_allocation_count)
        return (1, -self.free_memory.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host_id": self.host.id,
            "name": self.host.name,
            "free_memory_mb": self.free_memory.value if isinstance(self.free_memory, Bounded) else None,
            "free_disk_mb": self.free_disk.value if isinstance(self.free_disk, Bounded) else None,
            "free_allocations": self.free_allocation_count,
        }


class NodeSelector:
    """Scores eligible hosts by headroom and hands back a placement."""

    def __init__(self, panel: PanelInterface):
        self.panel = panel

    async def _load_hosts(self) -> List[Host]:
        try:
            return await self.panel.list_hosts()
        except PanelError as e:
            logger.error(f"Failed to fetch host list: {e}")
            raise UpstreamUnavailableError("Could not retrieve host list from the panel.") from e

    async def _candidates(self, hosts: List[Host], memory_mb: int, disk_mb: int) -> List[Candidate]:
        candidates: List[Candidate] = []
        for host in hosts:
            free_memory = host.free_memory
            free_disk = host.free_disk
            tag = f"Host {host.id} ({host.name})"
            logger.debug(f"{tag}: free_memory={free_memory} free_disk={free_disk}", extra={"host_id": host.id})

            if not free_memory.fits(memory_mb):
                logger.debug(f"{tag} skipped: memory too low ({free_memory} < {memory_mb}MB)")
                continue
            if not free_disk.fits(disk_mb):
                logger.debug(f"{tag} skipped: disk too low ({free_disk} < {disk_mb}MB)")
                continue

            try:
                allocations = await self.panel.list_free_allocations(host.id)
            except PanelError as e:
                # One bad host does not abort the whole selection
                logger.warning(f"{tag} skipped: could not fetch allocations: {e}", extra={"host_id": host.id})
                continue

            if not allocations:
                logger.debug(f"{tag} skipped: no free allocations")
                continue

            candidates.append(Candidate(
                host=host,
                free_memory=free_memory,
                free_disk=free_disk,
                free_allocation_ids=[a.id for a in allocations],
            ))

        candidates.sort(key=Candidate.rank_key)
        return candidates

    async def select(
        self,
        memory_mb: int,
        disk_mb: int,
        preferred_host_id: Optional[int] = None,
    ) -> Placement:
        """
        Select the best host for a new instance.

        Args:
            memory_mb: Memory the instance needs
            disk_mb: Disk the instance needs
            preferred_host_id: Restrict the choice to this host

        Returns:
            Placement with the winning host and its first free allocation

        Raises:
            UpstreamUnavailableError: Host inventory could not be fetched
            HostUnavailableError: The preferred host no longer exists
            NoCapacityError: No host has room (fleet_empty=True if there are no hosts)
        """
        logger.info(f"Looking for host with >={memory_mb}MB memory, >={disk_mb}MB disk")

        hosts = await self._load_hosts()
        if not hosts:
            raise NoCapacityError("No hosts are configured in the panel.", fleet_empty=True)

        if preferred_host_id is not None:
            hosts = [h for h in hosts if h.id == preferred_host_id]
            if not hosts:
                raise HostUnavailableError(f"Host {preferred_host_id} is no longer available.")

        candidates = await self._candidates(hosts, memory_mb, disk_mb)
        if not candidates:
            logger.error("No eligible hosts: all are full or have no free allocations")
            raise NoCapacityError(
                "All hosts are currently full. Please try again later.",
                details={"hosts_evaluated": len(hosts)},
            )

        best = candidates[0]
        logger.info(
            f"Selected host {best.host.id} ({best.host.name}): free_memory={best.free_memory} "
            f"allocation={best.free_allocation_ids[0]} ({len(candidates)} candidate(s))",
            extra={"host_id": best.host.id},
        )
        return Placement(host_id=best.host.id, allocation_id=best.free_allocation_ids[0])

    async def available_hosts(self, memory_mb: int = 0, disk_mb: int = 0) -> List[Dict[str, Any]]:
        """Hosts that could take an instance of this size, best first."""
        hosts = await self._load_hosts()
        candidates = await self._candidates(hosts, memory_mb, disk_mb)
        return [c.to_dict() for c in candidates]
