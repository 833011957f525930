from .index import CentralMemoryIndex

__all__ = ["CentralMemoryIndex"]
