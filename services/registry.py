"""
Service Registry - Central management of application services
Implements lazy loading with dependency resolution
"""
from typing import Dict, Any, Callable, Optional, List, Set
import threading
import logging

logger = logging.getLogger(__name__)


class ServiceDescriptor:
    """Describes a service registration"""

    def __init__(
        self,
        name: str,
        factory: Optional[Callable] = None,
        instance: Optional[Any] = None,
        dependencies: Optional[List[str]] = None
    ):
        self.name = name
        self.factory = factory
        self.instance = instance
        self.dependencies = dependencies or []
        self.lock = threading.Lock()


class ServiceRegistry:
    """
    Centralized registry for all application services.

    Factories are called lazily the first time a service is requested and
    receive their declared dependencies as keyword arguments. Circular
    dependencies are detected while resolving.
    """

    def __init__(self):
        self._descriptors: Dict[str, ServiceDescriptor] = {}
        self._thread_local = threading.local()
        self._lock = threading.Lock()

    def register(self, name: str, service: Any) -> None:
        """
        Register a service instance directly.

        Args:
            name: Service identifier
            service: Service instance
        """
        with self._lock:
            self._descriptors[name] = ServiceDescriptor(name=name, instance=service)

    def register_factory(
        self,
        name: str,
        factory: Callable,
        dependencies: Optional[List[str]] = None
    ) -> None:
        """
        Register a factory function for lazy service instantiation.

        Args:
            name: Service identifier
            factory: Callable that returns a service instance
            dependencies: Services this factory depends on
        """
        with self._lock:
            self._descriptors[name] = ServiceDescriptor(
                name=name,
                factory=factory,
                dependencies=dependencies
            )

    def get(self, name: str) -> Any:
        """
        Get a service by name. Lazy loads if a factory is registered.

        Raises:
            ValueError: If service is not registered
            RuntimeError: If circular dependency detected
        """
        if name not in self._descriptors:
            raise ValueError(f"Service '{name}' is not registered")

        descriptor = self._descriptors[name]
        stack = self._initialization_stack()
        if name in stack:
            cycle = " -> ".join(stack + [name])
            raise RuntimeError(f"Circular dependency detected: {cycle}")

        if descriptor.instance is not None:
            return descriptor.instance

        with descriptor.lock:
            if descriptor.instance is None:
                descriptor.instance = self._create_instance(descriptor)
            return descriptor.instance

    def _initialization_stack(self) -> List[str]:
        if not hasattr(self._thread_local, 'initialization_stack'):
            self._thread_local.initialization_stack = []
        return self._thread_local.initialization_stack

    def _create_instance(self, descriptor: ServiceDescriptor) -> Any:
        if descriptor.factory is None:
            raise ValueError(f"No factory registered for '{descriptor.name}'")

        stack = self._initialization_stack()
        stack.append(descriptor.name)
        try:
            deps = {dep: self.get(dep) for dep in descriptor.dependencies}
            instance = descriptor.factory(**deps)
            logger.debug(f"Created service instance: {descriptor.name}")
            return instance
        finally:
            stack.pop()

    def validate_dependencies(self) -> List[str]:
        """
        Validate all service dependencies are registered.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        for name, descriptor in self._descriptors.items():
            for dep in descriptor.dependencies:
                if dep not in self._descriptors:
                    errors.append(f"Service '{name}' depends on unregistered service '{dep}'")
        return errors

    def get_initialization_order(self) -> List[str]:
        """
        Topologically sort services so dependencies come first.

        Raises:
            RuntimeError: If circular dependency exists
        """
        visited: Set[str] = set()
        order: List[str] = []

        def visit(node: str, path: List[str]):
            if node in path:
                raise RuntimeError(f"Circular dependency detected: {' -> '.join(path + [node])}")
            if node in visited:
                return
            descriptor = self._descriptors.get(node)
            for dep in (descriptor.dependencies if descriptor else []):
                visit(dep, path + [node])
            visited.add(node)
            order.append(node)

        for name in self._descriptors:
            visit(name, [])
        return order
