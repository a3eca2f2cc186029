"""
Lease Plane Panel Interface
===========================

Defines the abstract interface to the external orchestration platform
that owns the host fleet. The lease plane never caches anything it
reads through this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from lease_plane.capacity import Capacity, headroom
from lease_plane.models import ResourceLimits


@dataclass
class Host:
    """A fleet node as reported by the panel."""
    id: int
    name: str
    memory_limit: int
    disk_limit: int
    memory_overalloc: int = 0
    disk_overalloc: int = 0
    memory_used: int = 0
    disk_used: int = 0

    @property
    def free_memory(self) -> Capacity:
        return headroom(self.memory_limit, self.memory_overalloc, self.memory_used)

    @property
    def free_disk(self) -> Capacity:
        return headroom(self.disk_limit, self.disk_overalloc, self.disk_used)


@dataclass
class Allocation:
    """A network allocation (ip:port) on a host."""
    id: int
    ip: str = ""
    port: int = 0


@dataclass
class CreateInstanceRequest:
    name: str
    panel_user_id: Optional[int]
    host_id: int
    allocation_id: int
    limits: ResourceLimits
    egg_id: Optional[int] = None
    environment: Dict[str, Any] = field(default_factory=dict)


class PanelError(Exception):
    """Base exception for panel errors."""
    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(f"[panel] {message}")


class PanelNotFoundError(PanelError):
    """The remote object does not exist (HTTP 404)."""
    pass


class PanelTimeoutError(PanelError):
    pass


class PanelUnavailableError(PanelError):
    """Panel unreachable (connection refused, DNS, TLS)."""
    pass


class PanelInterface(ABC):
    """
    Abstract interface to the fleet orchestration panel.

    Suspend and delete must be idempotent: an instance that is already
    suspended or already gone counts as success. Every call is bounded by
    a timeout, and a timeout surfaces as PanelTimeoutError.
    """

    PANEL_ID: str = "base"

    @abstractmethod
    async def list_hosts(self) -> List[Host]:
        """Return every host, draining all pages."""
        pass

    @abstractmethod
    async def list_free_allocations(self, host_id: int) -> List[Allocation]:
        """Return the unassigned allocations on a host, draining all pages."""
        pass

    @abstractmethod
    async def create_instance(self, request: CreateInstanceRequest) -> str:
        """
        Create an instance on the requested host/allocation.

        Returns:
            The panel's identifier for the new instance

        Raises:
            PanelError: If creation fails (including a lost allocation race)
        """
        pass

    @abstractmethod
    async def suspend_instance(self, external_id: str) -> None:
        pass

    @abstractmethod
    async def unsuspend_instance(self, external_id: str) -> None:
        pass

    @abstractmethod
    async def delete_instance(self, external_id: str) -> None:
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} ({self.PANEL_ID})>"
