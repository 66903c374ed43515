"""Registry for pluggable collaborators selected by name in configuration."""

from typing import Any, Dict, Generic, Optional, Type, TypeVar
import logging


T = TypeVar("T")


class ComponentRegistry(Generic[T]):
    """Maps configuration names to implementation classes of one base type."""

    def __init__(self, base_class: Type[T]):
        self.base_class = base_class
        self._components: Dict[str, Type[T]] = {}
        self.logger = logging.getLogger(self.__class__.__name__)

    def register_component(self, name: str, component_class: Type[T]) -> None:
        """Register a component class with a given name."""
        if not isinstance(component_class, type) or not issubclass(component_class, self.base_class):
            raise ValueError(f"Component {component_class} must inherit from {self.base_class.__name__}")

        self._components[name] = component_class
        self.logger.debug(f"Registered {self.base_class.__name__}: {name}")

    def get_component_class(self, name: str) -> Optional[Type[T]]:
        """Get a component class by name."""
        return self._components.get(name)

    def create_component(self, name: str, *args: Any, **kwargs: Any) -> T:
        """Create an instance of a registered component."""
        component_class = self.get_component_class(name)
        if component_class is None:
            raise ValueError(
                f"Unknown {self.base_class.__name__} '{name}'. "
                f"Available: {', '.join(sorted(self._components)) or 'none'}"
            )
        return component_class(*args, **kwargs)

    def list_components(self) -> Dict[str, Type[T]]:
        """List all registered components."""
        return self._components.copy()

    def unregister_component(self, name: str) -> bool:
        """Unregister a component."""
        if name in self._components:
            del self._components[name]
            self.logger.debug(f"Unregistered {self.base_class.__name__}: {name}")
            return True
        return False
