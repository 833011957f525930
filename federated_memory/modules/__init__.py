"""
Domain memory modules and the registry that dispatches to them.
"""

from .base import BaseModule
from .church import ChurchModule
from .registry import ModuleRegistry
from .technical import TechnicalModule

MODULE_CLASSES = {
    "church": ChurchModule,
    "technical": TechnicalModule,
}

__all__ = ["BaseModule", "ChurchModule", "TechnicalModule", "ModuleRegistry", "MODULE_CLASSES"]
