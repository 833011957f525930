"""
Federated memory core: per-domain memory modules with a central index for
cross-module semantic search.
"""

from .core.config import VERSION as __version__
from .core.runtime import MemoryCore, get_core, init, shutdown

__all__ = ["MemoryCore", "get_core", "init", "shutdown", "__version__"]
