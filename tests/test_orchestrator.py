from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path

import pytest
from conftest import FakeProvider, FakeTransport, recording_setup

from tsunami.exceptions import (
    ConnectError,
    InstanceTerminatedError,
    InvariantViolation,
    LaunchError,
    ReadinessQueryError,
    ReadinessTimeoutError,
    RunDeadlineExceeded,
    SetupError,
    TerminationWarning,
    WorkloadError,
)
from tsunami.fleet import Fleet
from tsunami.orchestrator import FleetOrchestrator, State
from tsunami.registry import GroupRegistry
from tsunami.spec import MachineTemplate

pytestmark = [pytest.mark.unit]


def orchestrator(registry, provider, transport, settings) -> FleetOrchestrator:
    return FleetOrchestrator(registry, provider, transport, settings)


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_server_client_scenario(self, registry, transport, settings):
        provider = FakeProvider(polls_until_ready=2)
        orch = orchestrator(registry, provider, transport, settings)
        seen: dict = {}

        def workload(fleet: Fleet) -> str:
            seen["server_ip"] = fleet["server"][0].private_ip
            seen["clients"] = len(fleet["client"])
            return "ok"

        result = await orch.run(workload)

        assert result == "ok"
        assert seen["server_ip"].startswith("10.0.0.")
        assert seen["clients"] == 2
        assert provider.terminate_calls == [provider.launched_ids]
        assert len(provider.launched_ids) == 3
        assert max(provider.describe_calls.values()) == 2
        assert orch.state is State.DONE
        assert orch.termination_warning is None

    @pytest.mark.asyncio
    async def test_fleet_matches_registry(self, provider, transport, settings):
        counts = {"a": 3, "b": 1, "c": 2}
        registry = GroupRegistry()
        for name, count in counts.items():
            registry.add_group(name, count, MachineTemplate("t2.micro", "ami-1", "k"))

        orch = orchestrator(registry, provider, transport, settings)
        fleet = await orch.run(lambda f: f)

        assert list(fleet) == list(counts)
        assert {name: len(fleet[name]) for name in fleet} == counts
        ids = [m.instance_id for _, m in fleet.machines()]
        assert all(ids)
        assert len(set(ids)) == len(ids)

    @pytest.mark.asyncio
    async def test_index_maps_every_launched_id_to_its_group(
        self, registry, provider, transport, settings,
    ):
        orch = orchestrator(registry, provider, transport, settings)
        fleet = await orch.run(lambda f: f)

        assert set(orch.groups_by_id) == set(orch.instance_ids)
        assert orch.groups_by_id == provider.groups
        for group, machine in fleet.machines():
            assert orch.groups_by_id[machine.instance_id] == group

    @pytest.mark.asyncio
    async def test_launch_requests_carry_template(self, registry, provider, transport, settings):
        await orchestrator(registry, provider, transport, settings).run(lambda f: None)

        assert provider.launches == [
            ("server", "ami-1", "t2.small", 1, "key1"),
            ("client", "ami-1", "t2.micro", 2, "key1"),
        ]

    @pytest.mark.asyncio
    async def test_async_workload_is_awaited(self, registry, provider, transport, settings):
        async def workload(fleet: Fleet) -> int:
            await asyncio.sleep(0)
            return fleet.size

        assert await orchestrator(registry, provider, transport, settings).run(workload) == 3

    @pytest.mark.asyncio
    async def test_sessions_attached_before_workload_and_closed_after(
        self, registry, provider, transport, settings, setup_calls,
    ):
        sessions: list = []

        def workload(fleet: Fleet) -> None:
            for _, machine in fleet.machines():
                assert machine.session is not None
                sessions.append(machine.session)

        orch = orchestrator(registry, provider, transport, settings)
        await orch.run(workload)

        assert len(sessions) == 3
        assert all(s.closed for s in sessions)
        assert all(m.session is None for _, m in orch.fleet.machines())
        assert sorted(setup_calls) == sorted(s.host for s in sessions)

    @pytest.mark.asyncio
    async def test_connects_with_key_file_on_ssh_port(self, registry, provider, transport, settings):
        await orchestrator(registry, provider, transport, settings).run(lambda f: None)

        assert len(transport.connects) == 3
        for host, key_path, port in transport.connects:
            assert host.endswith(".compute.example.com")
            assert key_path == Path("/keys/key1.pem")
            assert port == 22

    @pytest.mark.asyncio
    async def test_setup_runs_once_per_machine(self, registry, provider, transport, settings, setup_calls):
        await orchestrator(registry, provider, transport, settings).run(lambda f: None)

        assert len(setup_calls) == 3
        assert len(set(setup_calls)) == 3
        assert all(s.commands == ["hostname"] for s in transport.sessions)

    @pytest.mark.asyncio
    async def test_sequential_setup(self, registry, provider, transport, settings):
        active = 0
        peak = 0

        async def setup(_session) -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        reg = GroupRegistry()
        reg.add_group("workers", 4, MachineTemplate("t2.micro", "ami-1", "k", setup))
        sequential = replace(settings, setup_concurrency=1)

        await orchestrator(reg, provider, transport, sequential).run(lambda f: None)

        assert peak == 1

    @pytest.mark.asyncio
    async def test_cannot_run_twice(self, registry, provider, transport, settings):
        orch = orchestrator(registry, provider, transport, settings)
        await orch.run(lambda f: None)

        with pytest.raises(RuntimeError, match="already ran"):
            await orch.run(lambda f: None)

    @pytest.mark.asyncio
    async def test_empty_registry_is_rejected(self, provider, transport, settings):
        with pytest.raises(ValueError):
            await orchestrator(GroupRegistry(), provider, transport, settings).run(lambda f: None)


class TestTeardownAlways:
    @pytest.mark.asyncio
    async def test_workload_failure_still_terminates(self, registry, provider, transport, settings):
        def workload(fleet: Fleet) -> None:
            raise ValueError("boom")

        orch = orchestrator(registry, provider, transport, settings)
        with pytest.raises(WorkloadError, match="boom") as exc_info:
            await orch.run(workload)

        assert isinstance(exc_info.value.__cause__, ValueError)
        assert provider.terminate_calls == [provider.launched_ids]
        assert orch.state is State.DONE

    @pytest.mark.asyncio
    async def test_stuck_instance_times_out_and_all_are_terminated(
        self, registry, transport, settings,
    ):
        provider = FakeProvider(stuck=["client"])
        bounded = replace(settings, readiness_timeout=0.05)

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await orchestrator(registry, provider, transport, bounded).run(lambda f: None)

        assert exc_info.value.group == "client"
        assert provider.terminate_calls == [provider.launched_ids]
        assert len(provider.terminate_calls[0]) == 3
        stuck_ids = [i for i, g in provider.groups.items() if g == "client"]
        assert all(provider.describe_calls[i] >= 3 for i in stuck_ids)

    @pytest.mark.asyncio
    async def test_setup_failure_on_second_machine(self, provider, transport, settings):
        calls: list[str] = []

        async def setup(session) -> None:
            calls.append(session.host)
            if len(calls) == 2:
                raise RuntimeError("yum exploded")

        registry = GroupRegistry()
        registry.add_group("client", 3, MachineTemplate("t2.micro", "ami-1", "key1", setup))
        sequential = replace(settings, setup_concurrency=1)

        orch = orchestrator(registry, provider, transport, sequential)
        with pytest.raises(SetupError) as exc_info:
            await orch.run(lambda f: pytest.fail("workload must not run"))

        error = exc_info.value
        assert error.group == "client"
        assert error.address == calls[1]
        assert "client" in str(error)
        assert calls[1] in str(error)
        assert len(calls) == 2
        assert provider.terminate_calls == [provider.launched_ids]
        assert all(s.closed for s in transport.sessions)

    @pytest.mark.asyncio
    async def test_connect_failure_is_annotated(self, registry, provider, settings):
        transport = FakeTransport(fail_hosts=["ec2-1.compute.example.com"])

        with pytest.raises(ConnectError) as exc_info:
            await orchestrator(registry, provider, transport, settings).run(lambda f: None)

        error = exc_info.value
        assert error.group == "server"
        assert error.instance_id == "i-0001"
        assert error.address == "ec2-1.compute.example.com"
        assert "failed to ssh to server machine" in str(error)
        assert provider.terminate_calls == [provider.launched_ids]

    @pytest.mark.asyncio
    async def test_query_error_is_fatal_and_not_retried(self, registry, transport, settings):
        provider = FakeProvider(describe_error=RuntimeError("throttled"))

        with pytest.raises(ReadinessQueryError, match="throttled"):
            await orchestrator(registry, provider, transport, settings).run(lambda f: None)

        assert all(n == 1 for n in provider.describe_calls.values())
        assert provider.terminate_calls == [provider.launched_ids]

    @pytest.mark.asyncio
    async def test_terminated_instance_fails_fast(self, registry, transport, settings):
        provider = FakeProvider(terminal=["server"])

        with pytest.raises(InstanceTerminatedError):
            await orchestrator(registry, provider, transport, settings).run(lambda f: None)

        assert provider.terminate_calls == [provider.launched_ids]

    @pytest.mark.asyncio
    async def test_foreign_ready_instance_is_an_invariant_violation(
        self, registry, transport, settings,
    ):
        provider = FakeProvider(rename={"i-0002": "i-9999"})

        with pytest.raises(InvariantViolation):
            await orchestrator(registry, provider, transport, settings).run(lambda f: None)

        assert provider.terminate_calls == [provider.launched_ids]

    @pytest.mark.asyncio
    async def test_error_notes_name_lifecycle_stage(self, registry, transport, settings):
        provider = FakeProvider(describe_error=RuntimeError("nope"))

        with pytest.raises(ReadinessQueryError) as exc_info:
            await orchestrator(registry, provider, transport, settings).run(lambda f: None)

        assert "lifecycle stage: awaiting-ready" in exc_info.value.__notes__


class TestLaunchFailures:
    @pytest.mark.asyncio
    async def test_launch_error_terminates_earlier_groups(self, registry, transport, settings):
        provider = FakeProvider(launch_errors={"client": RuntimeError("InsufficientInstanceCapacity")})

        with pytest.raises(LaunchError, match="InsufficientInstanceCapacity") as exc_info:
            await orchestrator(registry, provider, transport, settings).run(lambda f: None)

        assert exc_info.value.group == "client"
        assert provider.terminate_calls == [["i-0001"]]
        assert provider.describe_calls == {}

    @pytest.mark.asyncio
    async def test_partial_fulfilment_is_fatal_and_terminated(self, registry, transport, settings):
        provider = FakeProvider(shortfall={"client": 1})

        with pytest.raises(LaunchError, match="1 of 2"):
            await orchestrator(registry, provider, transport, settings).run(lambda f: None)

        assert provider.terminate_calls == [["i-0001", "i-0002"]]

    @pytest.mark.asyncio
    async def test_first_group_failure_issues_no_termination(self, registry, transport, settings):
        provider = FakeProvider(launch_errors={"server": RuntimeError("bad ami")})

        with pytest.raises(LaunchError):
            await orchestrator(registry, provider, transport, settings).run(lambda f: None)

        assert provider.terminate_calls == []


class TestTermination:
    @pytest.mark.asyncio
    async def test_termination_failure_is_a_warning(self, registry, transport, settings):
        provider = FakeProvider(terminate_error=RuntimeError("UnauthorizedOperation"))
        orch = orchestrator(registry, provider, transport, settings)

        with pytest.warns(TerminationWarning, match="UnauthorizedOperation"):
            result = await orch.run(lambda f: "done")

        assert result == "done"
        assert orch.termination_warning is not None
        assert set(orch.termination_warning.instance_ids) == set(provider.launched_ids)

    @pytest.mark.asyncio
    async def test_termination_failure_does_not_mask_workload_error(
        self, registry, transport, settings,
    ):
        provider = FakeProvider(terminate_error=RuntimeError("denied"))

        def workload(fleet: Fleet) -> None:
            raise KeyError("missing")

        with pytest.warns(TerminationWarning), pytest.raises(WorkloadError):
            await orchestrator(registry, provider, transport, settings).run(workload)

    @pytest.mark.asyncio
    async def test_unconfirmed_ids_are_reported(self, registry, transport, settings):
        provider = FakeProvider(unconfirmed=["i-0002"])
        orch = orchestrator(registry, provider, transport, settings)

        with pytest.warns(TerminationWarning, match="i-0002"):
            await orch.run(lambda f: None)

        assert orch.termination_warning.instance_ids == ("i-0002",)
        assert orch.terminated == ["i-0001", "i-0003"]


class TestDeadline:
    @pytest.mark.asyncio
    async def test_deadline_cancels_and_terminates(self, registry, provider, transport, settings):
        registry.set_max_duration(0.01 / 3600)

        async def workload(fleet: Fleet) -> None:
            await asyncio.sleep(10)

        orch = orchestrator(registry, provider, transport, settings)
        with pytest.raises(RunDeadlineExceeded):
            await orch.run(workload)

        assert provider.terminate_calls == [provider.launched_ids]
        assert all(s.closed for s in transport.sessions)

    @pytest.mark.asyncio
    async def test_stuck_readiness_is_cut_by_deadline(self, registry, transport, settings):
        provider = FakeProvider(stuck=["server"])
        unbounded = replace(settings, readiness_timeout=None)
        registry.set_max_duration(0.02 / 3600)

        with pytest.raises(RunDeadlineExceeded) as exc_info:
            await orchestrator(registry, provider, transport, unbounded).run(lambda f: None)

        assert "lifecycle stage: awaiting-ready" in exc_info.value.__notes__
        assert provider.terminate_calls == [provider.launched_ids]


def test_new_orchestrator_is_idle_with_empty_groups(registry, provider, transport, settings):
    orch = orchestrator(registry, provider, transport, settings)
    assert orch.state is State.IDLE
    assert orch.fleet.size == 0
    assert list(orch.fleet) == ["server", "client"]


@pytest.mark.asyncio
async def test_machines_have_no_session_until_their_setup_succeeds(provider, transport, settings):
    seen: list[list[object]] = []

    def setup(session) -> None:
        seen.append([m.session for _, m in orch.fleet.machines()])

    registry = GroupRegistry()
    registry.add_group("g", 3, MachineTemplate("t2.micro", "ami-1", "k", setup))
    orch = orchestrator(registry, provider, transport, replace(settings, setup_concurrency=1))

    await orch.run(lambda f: None)

    assert seen[0] == [None, None, None]
    assert [s.count(None) for s in seen] == [3, 2, 1]


class SlowLaunchProvider(FakeProvider):
    """Creates the instances, then answers only after ``delay`` seconds."""

    def __init__(self, delay: float, **kwargs) -> None:
        super().__init__(**kwargs)
        self.delay = delay

    async def create_instances(self, *args) -> list[str]:
        ids = await super().create_instances(*args)
        await asyncio.sleep(self.delay)
        return ids


class TestSlowLaunch:
    @pytest.mark.asyncio
    async def test_slow_create_is_not_cut_by_request_timeout(self, registry, transport, settings):
        provider = SlowLaunchProvider(0.05)
        impatient = replace(settings, request_timeout=0.01)

        await orchestrator(registry, provider, transport, impatient).run(lambda f: None)

        assert provider.terminate_calls == [["i-0001", "i-0002", "i-0003"]]

    @pytest.mark.asyncio
    async def test_launch_interrupted_by_deadline_is_still_terminated(
        self, registry, transport, settings,
    ):
        provider = SlowLaunchProvider(0.2)
        registry.set_max_duration(0.02 / 3600)
        orch = orchestrator(registry, provider, transport, settings)

        with pytest.raises(RunDeadlineExceeded) as exc_info:
            await orch.run(lambda f: None)

        assert "lifecycle stage: launching" in exc_info.value.__notes__
        assert provider.launched_ids == ["i-0001"]
        assert orch.instance_ids == ["i-0001"]
        assert orch.groups_by_id == {"i-0001": "server"}
        assert provider.terminate_calls == [["i-0001"]]


@pytest.mark.asyncio
async def test_sessions_of_machines_removed_by_workload_are_closed(
    registry, provider, transport, settings,
):
    def workload(fleet: Fleet) -> None:
        fleet["client"].pop()

    await orchestrator(registry, provider, transport, settings).run(workload)

    assert len(transport.sessions) == 3
    assert [s.host for s in transport.sessions if not s.closed] == []


@pytest.mark.asyncio
async def test_setup_may_be_sync(provider, transport, settings):
    calls: list[str] = []
    registry = GroupRegistry()
    registry.add_group("g", 2, MachineTemplate("t2.micro", "ami-1", "k", lambda s: calls.append(s.host)))

    await FleetOrchestrator(registry, provider, transport, settings).run(lambda f: None)

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_recording_setup_helper(provider, transport, settings):
    calls: list[str] = []
    registry = GroupRegistry()
    registry.add_group("g", 1, MachineTemplate("t2.micro", "ami-1", "k", recording_setup(calls)))

    await FleetOrchestrator(registry, provider, transport, settings).run(lambda f: None)

    assert calls == ["ec2-1.compute.example.com"]
