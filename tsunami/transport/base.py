"""Transport protocols consumed by the orchestrator."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable


@runtime_checkable
class Session(Protocol):
    """An authenticated shell session on a single host."""

    async def run(self, command: str, *, check: bool = False) -> str:
        """Run ``command`` to completion and return its captured stdout."""
        ...

    async def close(self) -> None: ...


@runtime_checkable
class Transport(Protocol):
    """Opens sessions to hosts."""

    async def connect(self, host: str, key_path: Path, *, port: int = 22) -> Session: ...
