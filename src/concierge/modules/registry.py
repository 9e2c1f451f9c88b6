"""Module registry: enabled modules in dependency order."""

from __future__ import annotations

import logging
from collections import deque

from concierge.modules.base import Module

logger = logging.getLogger(__name__)


def default_registry() -> ModuleRegistry:
    """Registry holding the calendar, email and appointments modules."""
    from concierge.modules.appointments import AppointmentsModule
    from concierge.modules.calendar import CalendarModule
    from concierge.modules.email import EmailModule

    registry = ModuleRegistry()
    for module_cls in (CalendarModule, EmailModule, AppointmentsModule):
        registry.register(module_cls)
    return registry


class ModuleRegistry:
    """Maps module names to classes and instantiates the enabled ones."""

    def __init__(self) -> None:
        self._classes: dict[str, type[Module]] = {}

    def register(self, module_cls: type[Module]) -> None:
        name = module_cls().name
        if name in self._classes:
            raise ValueError(f"Module '{name}' is already registered")
        self._classes[name] = module_cls

    @property
    def available_modules(self) -> list[str]:
        return sorted(self._classes)

    def load_from_config(self, modules_config: dict[str, dict]) -> list[Module]:
        """Instantiate every module named in *modules_config*, dependencies first.

        Raises ``ValueError`` for an unknown module name, a dependency that is
        not enabled, or a dependency cycle.
        """
        unknown = [name for name in modules_config if name not in self._classes]
        if unknown:
            raise ValueError(f"Unknown module: '{unknown[0]}'")
        enabled = {name: self._classes[name]() for name in modules_config}
        ordered = dependency_order(enabled)
        logger.debug("Module start order: %s", [m.name for m in ordered])
        return ordered


def dependency_order(modules: dict[str, Module]) -> list[Module]:
    """Kahn's algorithm; ties are broken alphabetically so the order is stable."""
    dependents: dict[str, list[str]] = {name: [] for name in modules}
    waiting_on: dict[str, int] = {}
    for name, module in modules.items():
        for dep in module.dependencies:
            if dep not in modules:
                raise ValueError(
                    f"Module '{name}' depends on '{dep}', which is not in the enabled module set"
                )
            dependents[dep].append(name)
        waiting_on[name] = len(module.dependencies)

    ready = deque(sorted(name for name, count in waiting_on.items() if count == 0))
    order: list[str] = []
    while ready:
        name = ready.popleft()
        order.append(name)
        unblocked = []
        for dependent in dependents[name]:
            waiting_on[dependent] -= 1
            if waiting_on[dependent] == 0:
                unblocked.append(dependent)
        ready.extend(sorted(unblocked))

    if len(order) != len(modules):
        stuck = sorted(set(modules) - set(order))
        raise ValueError(f"Circular dependency detected among modules: {stuck}")
    return [modules[name] for name in order]
