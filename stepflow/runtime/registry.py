"""
registry.py - Lookup of FlowEngine instances by flow id.

The registry is an ordinary object with a caller-managed lifetime; there is
no module-level instance. Create one per application (or per test) and pass
it to engines via ``FlowEngineConfig.registry`` or call ``register``.

Usage:
    from stepflow.runtime.registry import EngineRegistry

    registry = EngineRegistry()
    registry.register("user-onboarding", engine)
    engine = registry.get("user-onboarding")
    v1_engines = registry.query(version_pattern="1.x")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional

if TYPE_CHECKING:
    from stepflow.runtime.engine import FlowEngine

logger = logging.getLogger(__name__)


@dataclass
class RegistryStats:
    """Counts of registered engines.

    Attributes:
        total_engines: Number of registered engines.
        engines_by_flow: Flow name -> count ("unnamed" when missing).
        engines_by_version: Flow version -> count ("unversioned" when missing).
    """

    total_engines: int = 0
    engines_by_flow: Dict[str, int] = field(default_factory=dict)
    engines_by_version: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_engines": self.total_engines,
            "engines_by_flow": dict(self.engines_by_flow),
            "engines_by_version": dict(self.engines_by_version),
        }


class EngineRegistry:
    """Registry of FlowEngine instances keyed by flow id."""

    def __init__(self) -> None:
        self._engines: Dict[str, "FlowEngine"] = {}

    def register(self, flow_id: str, engine: "FlowEngine") -> None:
        if flow_id in self._engines:
            logger.warning(
                "Overwriting existing engine with flow_id '%s'; use a unique flow_id per engine",
                flow_id,
            )
        self._engines[flow_id] = engine

    def unregister(self, flow_id: str) -> bool:
        return self._engines.pop(flow_id, None) is not None

    def get(self, flow_id: str) -> Optional["FlowEngine"]:
        return self._engines.get(flow_id)

    def has(self, flow_id: str) -> bool:
        return flow_id in self._engines

    def get_all(self) -> List["FlowEngine"]:
        return list(self._engines.values())

    def get_flow_ids(self) -> List[str]:
        return list(self._engines)

    def query(
        self,
        flow_name: Optional[str] = None,
        version_pattern: Optional[str] = None,
    ) -> List["FlowEngine"]:
        """Engines matching every given filter."""
        results = list(self._engines.values())
        if flow_name:
            results = [engine for engine in results if engine.flow_name == flow_name]
        if version_pattern:
            results = [engine for engine in results if engine.is_version_compatible(version_pattern)]
        return results

    def get_all_flow_info(self) -> List[Dict[str, Any]]:
        return [engine.get_flow_info() for engine in self._engines.values()]

    def stats(self) -> RegistryStats:
        stats = RegistryStats(total_engines=len(self._engines))
        for engine in self._engines.values():
            flow_name = engine.flow_name or "unnamed"
            version = engine.flow_version or "unversioned"
            stats.engines_by_flow[flow_name] = stats.engines_by_flow.get(flow_name, 0) + 1
            stats.engines_by_version[version] = stats.engines_by_version.get(version, 0) + 1
        return stats

    def clear(self) -> None:
        self._engines.clear()

    def __len__(self) -> int:
        return len(self._engines)

    def __contains__(self, flow_id: object) -> bool:
        return flow_id in self._engines

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._engines))
