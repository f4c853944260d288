"""Fleet lifecycle orchestrator.

Drives one run through::

    IDLE -> LAUNCHING -> AWAITING_READY -> CONFIGURING -> RUNNING -> TERMINATING -> DONE

Any fatal error jumps straight to TERMINATING. Termination always
targets every instance id returned at launch, whether or not the
instance ever became ready.
"""

from __future__ import annotations

import asyncio
import warnings
from collections.abc import Awaitable, Callable
from enum import StrEnum

from loguru import logger

from tsunami.config import Settings
from tsunami.exceptions import (
    ConnectError,
    InvariantViolation,
    LaunchError,
    RunDeadlineExceeded,
    SetupError,
    TerminationWarning,
    TsunamiError,
    WorkloadError,
)
from tsunami.fleet import Fleet
from tsunami.providers.base import ProviderClient
from tsunami.readiness import ReadinessPoller
from tsunami.registry import GroupRegistry
from tsunami.spec import Machine
from tsunami.transport.base import Session, Transport
from tsunami.utils.conc import for_each_async, maybe_await

log = logger.bind(component="orchestrator")

type Workload[T] = Callable[[Fleet], T | Awaitable[T]]


class State(StrEnum):
    IDLE = "idle"
    LAUNCHING = "launching"
    AWAITING_READY = "awaiting-ready"
    CONFIGURING = "configuring"
    RUNNING = "running"
    TERMINATING = "terminating"
    DONE = "done"


class FleetOrchestrator:
    """Runs the lifecycle of one fleet exactly once.

    Args:
        registry: Groups to launch. Read, never modified.
        provider: Provider client used to launch, poll and terminate.
        transport: Opens sessions for machine setup.
        settings: Polling, concurrency and timeout tuning.
    """

    def __init__(
        self,
        registry: GroupRegistry,
        provider: ProviderClient,
        transport: Transport,
        settings: Settings | None = None,
    ) -> None:
        self.registry = registry
        self.provider = provider
        self.transport = transport
        self.settings = settings or Settings()

        self.state = State.IDLE
        self.instance_ids: list[str] = []
        self.groups_by_id: dict[str, str] = {}
        self.fleet = Fleet(registry.names())
        self.terminated: list[str] = []
        self.termination_warning: TerminationWarning | None = None
        self._in_flight: dict[str, asyncio.Future[list[str]]] = {}
        self._sessions: list[tuple[Machine, Session]] = []

    def _transition(self, state: State) -> None:
        log.debug("{old} -> {new}", old=self.state, new=state)
        self.state = state

    async def run[T](self, workload: Workload[T]) -> T:
        """Launch, configure, hand the fleet to ``workload``, terminate.

        Returns:
            Whatever ``workload`` returns.

        Raises:
            TsunamiError: The first fatal error of the run. Teardown has
                already happened when it propagates.
        """
        if self.state is not State.IDLE:
            raise RuntimeError(f"Orchestrator already ran (state: {self.state})")
        if not len(self.registry):
            raise ValueError("No groups registered")

        deadline = self.registry.max_duration
        try:
            async with asyncio.timeout(deadline.total_seconds() if deadline else None) as scope:
                return await self._drive(workload)
        except TimeoutError as e:
            if not scope.expired():
                raise
            error = RunDeadlineExceeded(f"run exceeded max duration of {deadline}")
            error.add_note(f"lifecycle stage: {self.state}")
            log.error("{err}", err=error)
            raise error from e
        except TsunamiError as e:
            e.add_note(f"lifecycle stage: {self.state}")
            log.error("Run failed while {state}: {err}", state=self.state, err=e)
            raise
        finally:
            await self._teardown()

    async def _drive[T](self, workload: Workload[T]) -> T:
        await self._launch()
        await self._await_ready()
        await self._configure()

        self._transition(State.RUNNING)
        log.info("Fleet ready: {fleet}", fleet=self.fleet)
        try:
            return await maybe_await(workload(self.fleet))
        except Exception as e:
            raise WorkloadError(f"workload failed: {e}") from e

    # -------------------------------------------------------------------------
    # Launching
    # -------------------------------------------------------------------------

    async def _launch(self) -> None:
        self._transition(State.LAUNCHING)

        for group in self.registry:
            template = group.template
            log.info(
                "Launching {n}x {kind} for group {group}",
                n=group.count, kind=template.instance_type, group=group.name,
            )
            # Shielded: a deadline leaves the call running and teardown adopts its ids
            launch = asyncio.ensure_future(
                self.provider.create_instances(
                    template.image_id,
                    template.instance_type,
                    group.count,
                    group.name,
                    template.key_name,
                )
            )
            self._in_flight[group.name] = launch
            try:
                ids = await asyncio.shield(launch)
            except Exception as e:
                raise LaunchError(
                    f"failed to launch {group.count}x {template.instance_type}: {e}",
                    group=group.name,
                ) from e
            finally:
                if launch.done():
                    del self._in_flight[group.name]

            for instance_id in ids:
                self._record(instance_id, group.name)

            if len(ids) != group.count:
                raise LaunchError(
                    f"provider launched {len(ids)} of {group.count} requested instances",
                    group=group.name,
                )

    async def _collect_in_flight(self) -> None:
        """Wait for launches interrupted by the deadline and adopt their ids."""
        for group, launch in list(self._in_flight.items()):
            log.warning("Waiting for interrupted launch of group {group}", group=group)
            try:
                ids = await launch
            except Exception as e:
                log.warning("Interrupted launch of group {group} failed: {err}", group=group, err=e)
                continue
            finally:
                del self._in_flight[group]
            for instance_id in ids:
                if instance_id and instance_id not in self.groups_by_id:
                    self._record(instance_id, group)

    def _record(self, instance_id: str, group: str) -> None:
        if not instance_id:
            raise InvariantViolation("provider returned an empty instance id", group=group)
        if instance_id in self.groups_by_id:
            raise InvariantViolation(
                f"instance id returned twice (first for {self.groups_by_id[instance_id]})",
                group=group, instance_id=instance_id,
            )
        self.groups_by_id[instance_id] = group
        self.instance_ids.append(instance_id)

    # -------------------------------------------------------------------------
    # Awaiting readiness
    # -------------------------------------------------------------------------

    async def _await_ready(self) -> None:
        self._transition(State.AWAITING_READY)
        poller = ReadinessPoller(
            self.provider,
            interval=self.settings.poll_interval,
            timeout=self.settings.readiness_timeout,
            max_degraded_polls=self.settings.max_degraded_polls,
            request_timeout=self.settings.request_timeout,
        )

        async def wait_one(instance_id: str) -> None:
            machine = await poller.wait(instance_id, group=self.groups_by_id.get(instance_id))
            self._place(machine)

        log.info("Waiting for {n} instance(s)", n=len(self.instance_ids))
        await for_each_async(wait_one, list(self.instance_ids), self.settings.poll_concurrency)

    def _place(self, machine: Machine) -> None:
        group = self.groups_by_id.get(machine.instance_id)
        if group is None:
            raise InvariantViolation(
                "ready instance was never launched by this run",
                instance_id=machine.instance_id,
            )
        self.fleet.add(group, machine)

    # -------------------------------------------------------------------------
    # Configuring
    # -------------------------------------------------------------------------

    async def _configure(self) -> None:
        self._transition(State.CONFIGURING)

        async def configure(entry: tuple[str, Machine]) -> None:
            await self._setup_machine(*entry)

        await for_each_async(
            configure, list(self.fleet.machines()), self.settings.setup_concurrency,
        )

    async def _setup_machine(self, group: str, machine: Machine) -> None:
        template = self.registry[group].template
        key_path = self.settings.key_path(machine.key_name)
        ctx = {"group": group, "instance_id": machine.instance_id, "address": machine.public_address}

        log.info(
            "Connecting to {group} machine {addr} with key {key}",
            group=group, addr=machine.public_address, key=key_path.name,
        )
        try:
            session = await self.transport.connect(
                machine.public_address, key_path, port=self.settings.ssh_port,
            )
        except Exception as e:
            reason = e.message if isinstance(e, ConnectError) else str(e)
            raise ConnectError(f"failed to ssh to {group} machine: {reason}", **ctx) from e

        attached = False
        try:
            await maybe_await(template.setup(session))
            machine.session = session
            self._sessions.append((machine, session))
            attached = True
        except Exception as e:
            raise SetupError(f"setup procedure for {group} machine failed: {e}", **ctx) from e
        finally:
            if not attached:
                await self._close_session(session, machine)

        log.info("Configured {group} machine {id}", group=group, id=machine.instance_id)

    # -------------------------------------------------------------------------
    # Terminating
    # -------------------------------------------------------------------------

    async def _close_session(self, session: Session, machine: Machine) -> None:
        try:
            await session.close()
        except Exception as e:
            log.warning("Failed to close session to {id}: {err}", id=machine.instance_id, err=e)

    async def _teardown(self) -> None:
        self._transition(State.TERMINATING)

        for machine, session in self._sessions:
            if machine.session is session:
                machine.session = None
            await self._close_session(session, machine)
        self._sessions.clear()

        if self._in_flight:
            await self._collect_in_flight()

        if self.instance_ids:
            await self._terminate(list(self.instance_ids))

        self._transition(State.DONE)

    async def _terminate(self, instance_ids: list[str]) -> None:
        log.info("Terminating {n} instance(s)", n=len(instance_ids))
        try:
            async with asyncio.timeout(self.settings.request_timeout):
                self.terminated = await self.provider.terminate_instances(instance_ids)
        except Exception as e:
            self._warn(TerminationWarning(
                f"failed to terminate instances {instance_ids}: {e}", tuple(instance_ids),
            ))
            return

        confirmed = set(self.terminated)
        missing = tuple(i for i in instance_ids if i not in confirmed)
        if missing:
            self._warn(TerminationWarning(
                f"provider did not confirm termination of {list(missing)}", missing,
            ))
        else:
            log.info("Instances terminated successfully")

    def _warn(self, warning: TerminationWarning) -> None:
        self.termination_warning = warning
        log.warning("{w}", w=warning)
        warnings.warn(warning, stacklevel=2)
