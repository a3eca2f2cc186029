"""
Lease Plane Panel Abstraction Layer
===================================

Boundary to the external orchestration platform that owns the hosts.

Supported Panels:
- Pterodactyl (Application API over httpx)
"""

from .base import (
    PanelInterface,
    Host,
    Allocation,
    CreateInstanceRequest,
    PanelError,
    PanelNotFoundError,
    PanelTimeoutError,
    PanelUnavailableError,
)
from .pterodactyl import PterodactylPanel

__all__ = [
    "PanelInterface",
    "Host",
    "Allocation",
    "CreateInstanceRequest",
    "PanelError",
    "PanelNotFoundError",
    "PanelTimeoutError",
    "PanelUnavailableError",
    "PterodactylPanel",
]
