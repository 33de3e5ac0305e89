"""
The store module provides the resource store the reconciler reads control
resources and configuration objects from, and writes status back to.

- Uses NamedResource as the key for all objects.
- Hands out copies so that staged changes are only visible once patched.
- Notifies listeners of object changes so configuration changes can be
  mapped to the control resources that consume them.
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
]
