"""
Shared store seam: path layout, batch writes, access rules and an in-memory
implementation.
"""

from .base import (
    ConcurrentModification,
    PermissionDenied,
    Precondition,
    Store,
    StoreError,
    Subscription,
    WriteBatch,
)
from .memory import MemoryDatabase, MemoryStore
from .rules import AccessRules

__all__ = [
    'ConcurrentModification',
    'PermissionDenied',
    'Precondition',
    'Store',
    'StoreError',
    'Subscription',
    'WriteBatch',
    'MemoryDatabase',
    'MemoryStore',
    'AccessRules',
]
