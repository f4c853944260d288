"""The live fleet handed to the workload."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping

from tsunami.spec import Machine


class Fleet(Mapping[str, list[Machine]]):
    """Mapping from group name to the machines of that group.

    The key set is fixed at construction. Machines within a group keep
    the order in which they became ready. Lists and machines may be
    mutated by the workload; groups cannot be added or removed.
    """

    __slots__ = ("_groups",)

    def __init__(self, groups: Iterable[str]) -> None:
        self._groups: dict[str, list[Machine]] = {name: [] for name in groups}

    def __getitem__(self, group: str) -> list[Machine]:
        return self._groups[group]

    def __iter__(self) -> Iterator[str]:
        return iter(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def __repr__(self) -> str:
        sizes = ", ".join(f"{name}={len(ms)}" for name, ms in self._groups.items())
        return f"Fleet({sizes})"

    def add(self, group: str, machine: Machine) -> None:
        self._groups[group].append(machine)

    def machines(self) -> Iterator[tuple[str, Machine]]:
        """Iterate (group, machine) pairs across all groups."""
        for name, machines in self._groups.items():
            for machine in machines:
                yield name, machine

    @property
    def size(self) -> int:
        return sum(len(ms) for ms in self._groups.values())
