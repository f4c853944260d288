"""Provider protocols.

A provider client exposes exactly the three operations the orchestrator
needs. Provider configs are small frozen dataclasses that know how to
build their client.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from tsunami.spec import InstanceDescription

RUNNING = "running"
TERMINAL_STATES = frozenset({"shutting-down", "terminated", "stopping", "stopped"})


@runtime_checkable
class ProviderClient(Protocol):
    async def create_instances(
        self,
        image_id: str,
        instance_type: str,
        count: int,
        group: str,
        key_name: str,
    ) -> list[str]:
        """Launch ``count`` instances tagged with ``group``. Returns their ids."""
        ...

    async def describe_instance(self, instance_id: str) -> InstanceDescription | None:
        """Current state of ``instance_id``, or None if not visible yet."""
        ...

    async def terminate_instances(self, instance_ids: Sequence[str]) -> list[str]:
        """Terminate ``instance_ids``. Returns the ids the provider accepted."""
        ...


@runtime_checkable
class ProviderConfig[P: ProviderClient](Protocol):
    @property
    def type(self) -> str: ...

    async def create_provider(self) -> P: ...
