"""
Handler registry for loading and looking up job handlers.
"""

import importlib
import inspect
import pkgutil
from types import ModuleType
from typing import Dict, Optional

import structlog

from ..exceptions import UnknownQueueHandler
from ..handlers.base import JobHandler

logger = structlog.get_logger(__name__)

HANDLERS_PACKAGE = "dispatch_worker.handlers"


class HandlerRegistry:
    """Registry of job handlers keyed by queue name."""

    def __init__(self, package: str = HANDLERS_PACKAGE):
        self.handlers: Dict[str, JobHandler] = {}
        self.package = package
        self._loaded = False

    def register(self, handler: JobHandler):
        """Register a handler instance; one handler per queue."""
        if handler.queue_name in self.handlers:
            raise ValueError(f"Handler for queue '{handler.queue_name}' is already registered")
        self.handlers[handler.queue_name] = handler
        logger.info("handler_registered", queue=handler.queue_name, handler=type(handler).__name__)

    def load_handlers(self) -> Dict[str, JobHandler]:
        """Discover handler plugins in the handlers package."""
        if self._loaded:
            return self.handlers

        package = importlib.import_module(self.package)
        for module_info in pkgutil.iter_modules(package.__path__):
            if module_info.name == "base":
                continue

            try:
                module = importlib.import_module(f"{self.package}.{module_info.name}")
            except ImportError as e:
                logger.error("handler_module_import_failed", module=module_info.name, error=str(e))
                continue

            handler = self._instantiate_handler(module)
            if handler is not None and handler.queue_name not in self.handlers:
                self.register(handler)

        self._loaded = True
        logger.info("handlers_loaded", queues=sorted(self.handlers))
        return self.handlers

    def _instantiate_handler(self, module: ModuleType) -> Optional[JobHandler]:
        """Instantiate the first concrete handler class defined in the module."""
        for _, attr in inspect.getmembers(module, inspect.isclass):
            if (issubclass(attr, JobHandler) and
                    attr is not JobHandler and
                    not inspect.isabstract(attr) and
                    attr.__module__ == module.__name__):
                return attr()

        logger.warning("handler_class_missing", module=module.__name__)
        return None

    def get_handler(self, queue_name: str) -> JobHandler:
        """
        Get handler by queue name.

        Raises:
            UnknownQueueHandler: If no handler consumes the queue
        """
        if not self._loaded:
            self.load_handlers()

        if queue_name not in self.handlers:
            raise UnknownQueueHandler(queue_name, sorted(self.handlers))

        return self.handlers[queue_name]
