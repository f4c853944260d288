"""In-memory provider and transport fakes."""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import pytest

from tsunami.config import Settings
from tsunami.exceptions import ConnectError, ExecError
from tsunami.registry import GroupRegistry
from tsunami.spec import InstanceDescription, MachineTemplate


class FakeProvider:
    """Provider that launches instantly and reports ``running`` after N polls.

    Args:
        polls_until_ready: Describe calls answering ``pending`` before ``running``.
        stuck: Groups whose instances stay ``pending`` forever.
        degraded: Groups whose instances run without a public address.
        terminal: Groups whose instances report ``terminated``.
        invisible_polls: Describe calls answering None (not visible yet).
        launch_errors: Group -> exception raised by create_instances.
        shortfall: Group -> number of instances to withhold.
        describe_error: Raised by every describe call when set.
        terminate_error: Raised by terminate_instances when set.
        unconfirmed: Ids omitted from the terminate response.
        rename: Id -> id reported by describe (to fake a foreign instance).
    """

    def __init__(
        self,
        *,
        polls_until_ready: int = 1,
        stuck: Sequence[str] = (),
        degraded: Sequence[str] = (),
        terminal: Sequence[str] = (),
        invisible_polls: int = 0,
        launch_errors: dict[str, Exception] | None = None,
        shortfall: dict[str, int] | None = None,
        describe_error: Exception | None = None,
        terminate_error: Exception | None = None,
        unconfirmed: Sequence[str] = (),
        rename: dict[str, str] | None = None,
    ) -> None:
        self.polls_until_ready = polls_until_ready
        self.stuck = set(stuck)
        self.degraded = set(degraded)
        self.terminal = set(terminal)
        self.invisible_polls = invisible_polls
        self.launch_errors = launch_errors or {}
        self.shortfall = shortfall or {}
        self.describe_error = describe_error
        self.terminate_error = terminate_error
        self.unconfirmed = set(unconfirmed)
        self.rename = rename or {}

        self.launches: list[tuple[str, str, str, int, str]] = []
        self.groups: dict[str, str] = {}
        self.types: dict[str, str] = {}
        self.keys: dict[str, str] = {}
        self.describe_calls: Counter[str] = Counter()
        self.terminate_calls: list[list[str]] = []
        self._seq = 0

    async def create_instances(
        self, image_id: str, instance_type: str, count: int, group: str, key_name: str,
    ) -> list[str]:
        self.launches.append((group, image_id, instance_type, count, key_name))
        if group in self.launch_errors:
            raise self.launch_errors[group]

        ids = []
        for _ in range(count - self.shortfall.get(group, 0)):
            self._seq += 1
            instance_id = f"i-{self._seq:04d}"
            self.groups[instance_id] = group
            self.types[instance_id] = instance_type
            self.keys[instance_id] = key_name
            ids.append(instance_id)
        return ids

    def seq(self, instance_id: str) -> int:
        return int(instance_id.removeprefix("i-"))

    async def describe_instance(self, instance_id: str) -> InstanceDescription | None:
        self.describe_calls[instance_id] += 1
        calls = self.describe_calls[instance_id]
        if self.describe_error is not None:
            raise self.describe_error
        if calls <= self.invisible_polls:
            return None

        group = self.groups[instance_id]
        reported_id = self.rename.get(instance_id, instance_id)
        n = self.seq(instance_id)

        if group in self.terminal:
            state = "terminated"
        elif group in self.stuck or calls - self.invisible_polls < self.polls_until_ready:
            state = "pending"
        else:
            state = "running"

        return InstanceDescription(
            instance_id=reported_id,
            state=state,
            instance_type=self.types[instance_id],
            private_ip=f"10.0.0.{n}" if state == "running" else "",
            public_address=(
                f"ec2-{n}.compute.example.com"
                if state == "running" and group not in self.degraded
                else ""
            ),
            key_name=self.keys[instance_id],
        )

    async def terminate_instances(self, instance_ids: Sequence[str]) -> list[str]:
        self.terminate_calls.append(list(instance_ids))
        if self.terminate_error is not None:
            raise self.terminate_error
        return [i for i in instance_ids if i not in self.unconfirmed]

    @property
    def launched_ids(self) -> list[str]:
        return list(self.groups)


@dataclass(frozen=True, slots=True)
class FakeCloud:
    """Provider config handing out a prebuilt FakeProvider."""

    provider: FakeProvider

    @property
    def type(self) -> str:
        return "fake"

    async def create_provider(self) -> FakeProvider:
        return self.provider


class FakeSession:
    def __init__(self, host: str, responses: dict[str, str] | None = None) -> None:
        self.host = host
        self.responses = responses or {}
        self.commands: list[str] = []
        self.closed = False

    async def run(self, command: str, *, check: bool = False) -> str:
        if self.closed:
            raise ExecError("session closed", command, address=self.host)
        self.commands.append(command)
        return self.responses.get(command, "")

    async def close(self) -> None:
        self.closed = True


class FakeTransport:
    def __init__(
        self,
        *,
        fail_hosts: Sequence[str] = (),
        responses: dict[str, str] | None = None,
    ) -> None:
        self.fail_hosts = set(fail_hosts)
        self.responses = responses or {}
        self.connects: list[tuple[str, Path, int]] = []
        self.sessions: list[FakeSession] = []

    async def connect(self, host: str, key_path: Path, *, port: int = 22) -> FakeSession:
        self.connects.append((host, key_path, port))
        if host in self.fail_hosts:
            raise ConnectError("connection refused", address=host)
        session = FakeSession(host, self.responses)
        self.sessions.append(session)
        return session


def recording_setup(calls: list[str]) -> Callable[[FakeSession], object]:
    async def setup(session: FakeSession) -> None:
        calls.append(session.host)
        await session.run("hostname")

    return setup


@pytest.fixture
def settings() -> Settings:
    return Settings(
        poll_interval=0.001,
        readiness_timeout=1.0,
        max_degraded_polls=3,
        request_timeout=1.0,
        key_dir=Path("/keys"),
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def setup_calls() -> list[str]:
    return []


@pytest.fixture
def registry(setup_calls: list[str]) -> GroupRegistry:
    """The server/client fleet: one Small server, two Micro clients."""
    reg = GroupRegistry()
    setup = recording_setup(setup_calls)
    reg.add_group("server", 1, MachineTemplate("t2.small", "ami-1", "key1", setup))
    reg.add_group("client", 2, MachineTemplate("t2.micro", "ami-1", "key1", setup))
    return reg
