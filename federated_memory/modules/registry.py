"""
Module registry: dispatch from module id to module instance.
"""

from typing import Dict, List, Optional

from ..core.errors import ModuleNotRegisteredError
from ..util.logging import logger
from .base import BaseModule


class ModuleRegistry:
    """In-process map of registered modules."""

    def __init__(self):
        self._modules: Dict[str, BaseModule] = {}

    def register(self, module: BaseModule) -> None:
        if module.module_id in self._modules:
            logger.warning(f"Replacing registered module: {module.module_id}")
        self._modules[module.module_id] = module
        logger.log_operation("registry.register", "success", {"module": module.module_id, "table": module.table})

    def unregister(self, module_id: str) -> bool:
        return self._modules.pop(module_id, None) is not None

    def get(self, module_id: str) -> Optional[BaseModule]:
        return self._modules.get(module_id)

    def require(self, module_id: str) -> BaseModule:
        module = self._modules.get(module_id)
        if module is None:
            raise ModuleNotRegisteredError(module_id)
        return module

    def list_ids(self) -> List[str]:
        return list(self._modules)

    def modules(self) -> List[BaseModule]:
        return list(self._modules.values())

    def __contains__(self, module_id: str) -> bool:
        return module_id in self._modules

    def __len__(self) -> int:
        return len(self._modules)

    async def initialize_all(self) -> None:
        for module in self._modules.values():
            await module.initialize()

    async def shutdown_all(self) -> None:
        for module in self._modules.values():
            try:
                await module.shutdown()
            except Exception as e:
                logger.error(f"Module {module.module_id} failed to shut down: {e}")

    async def health_check_all(self) -> Dict[str, bool]:
        return {module_id: await module.health_check() for module_id, module in self._modules.items()}
