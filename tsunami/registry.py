"""Group registry: the declarative input of a run."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import timedelta

from loguru import logger

from tsunami.exceptions import DuplicateGroupError
from tsunami.spec import GroupDescriptor, MachineTemplate

log = logger.bind(component="registry")


class GroupRegistry:
    """Ordered collection of group descriptors plus the run deadline.

    Groups are launched in registration order.
    """

    __slots__ = ("_groups", "_max_duration")

    def __init__(self) -> None:
        self._groups: dict[str, GroupDescriptor] = {}
        self._max_duration: timedelta | None = None

    def add_group(self, name: str, count: int, template: MachineTemplate) -> GroupDescriptor:
        """Register a group of ``count`` machines built from ``template``.

        Raises:
            DuplicateGroupError: If ``name`` is already registered.
            ValueError: If ``name`` is empty or ``count`` is not positive.
        """
        if not name:
            raise ValueError("Group name must not be empty")
        if count < 1:
            raise ValueError(f"Group '{name}' count must be positive, got {count}")
        if name in self._groups:
            raise DuplicateGroupError(name)

        descriptor = GroupDescriptor(name=name, count=count, template=template)
        self._groups[name] = descriptor
        log.debug(
            "Registered group {name}: {count}x {kind}",
            name=name, count=count, kind=template.instance_type,
        )
        return descriptor

    def set_max_duration(self, hours: float) -> None:
        """Cap the whole run at ``hours``. Enforced as a hard deadline."""
        if hours <= 0:
            raise ValueError(f"Max duration must be positive, got {hours}")
        self._max_duration = timedelta(hours=hours)

    @property
    def max_duration(self) -> timedelta | None:
        return self._max_duration

    @property
    def total_count(self) -> int:
        return sum(g.count for g in self._groups.values())

    def names(self) -> tuple[str, ...]:
        return tuple(self._groups)

    def __getitem__(self, name: str) -> GroupDescriptor:
        return self._groups[name]

    def __iter__(self) -> Iterator[GroupDescriptor]:
        return iter(self._groups.values())

    def __len__(self) -> int:
        return len(self._groups)

    def __contains__(self, name: object) -> bool:
        return name in self._groups
