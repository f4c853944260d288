"""Declarative fleet description and runtime machine records.

A fleet is described as named groups. Each group pairs a desired
instance count with a MachineTemplate: what to launch and how to set
it up once it is reachable.

Example:
    >>> from tsunami.spec import MachineTemplate
    >>> async def setup(session):
    ...     await session.run("sudo yum install -y htop", check=True)
    >>> template = MachineTemplate(
    ...     instance_type="t2.micro",
    ...     image_id="ami-0440d3b780d96b29d",
    ...     key_name="key1",
    ...     setup=setup,
    ... )
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tsunami.transport.base import Session

type SetupRoutine = Callable[[Session], Awaitable[None] | None]
"""Caller-supplied setup run once per machine over an open session."""


async def _no_setup(_: Session) -> None:
    return None


@dataclass(frozen=True, slots=True)
class MachineTemplate:
    """What to launch for a group and how to configure each machine.

    Args:
        instance_type: Provider instance type (e.g. "t2.micro").
        image_id: Machine image to boot (e.g. an AMI id).
        key_name: Provider key pair name. The private key is read from
            ``<key_dir>/<key_name>.pem``.
        setup: Called once per machine with a connected Session.
    """

    instance_type: str
    image_id: str
    key_name: str
    setup: SetupRoutine = _no_setup


@dataclass(frozen=True, slots=True)
class GroupDescriptor:
    name: str
    count: int
    template: MachineTemplate


@dataclass(frozen=True, slots=True)
class InstanceDescription:
    """Provider-neutral snapshot of an instance's status and attributes.

    Empty strings stand for attributes the provider has not assigned yet.
    """

    instance_id: str
    state: str
    instance_type: str = ""
    private_ip: str = ""
    public_address: str = ""
    key_name: str = ""


@dataclass(slots=True)
class Machine:
    """A launched instance that reported ready.

    ``session`` is attached by the orchestrator after setup succeeds and
    is closed when the run ends.
    """

    instance_id: str
    instance_type: str
    private_ip: str
    public_address: str
    key_name: str
    session: Session | None = field(default=None, repr=False, compare=False)

    async def run(self, command: str, **kwargs: Any) -> str:
        """Run a command over this machine's session."""
        if self.session is None:
            raise RuntimeError(f"Machine {self.instance_id} has no open session")
        return await self.session.run(command, **kwargs)
