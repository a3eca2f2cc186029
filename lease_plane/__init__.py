"""
Lease Plane
===========

Node selection and provisioning lifecycle for leased game servers.

This module provides:
- Host selection over live, overallocated fleet capacity
- A serialized two-currency ledger with a journal
- Purchase and renewal with compensating rollback
- A timer-driven sweeper that renews, suspends and reclaims instances
"""

__version__ = "1.0.0"
