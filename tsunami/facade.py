"""Caller-facing entry point.

    from tsunami import MachineTemplate, Tsunami
    from tsunami.providers.aws import AWS

    async def setup(session):
        print(await session.run("cat /etc/hostname"))

    tsunami = Tsunami(provider=AWS(region="us-east-1"))
    tsunami.add_group("server", 1, MachineTemplate("t2.medium", "ami-...", "key1", setup))
    tsunami.add_group("client", 3, MachineTemplate("t2.micro", "ami-...", "key1", setup))
    tsunami.set_max_duration(1)

    def workload(fleet):
        print(fleet["server"][0].private_ip)

    tsunami.run_sync(workload)

Each run launches fresh instances and terminates them before returning.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from tsunami.config import Settings
from tsunami.logging import LogConfig, setup_logging, teardown_logging
from tsunami.orchestrator import FleetOrchestrator, Workload
from tsunami.providers.aws.config import AWS
from tsunami.providers.base import ProviderConfig
from tsunami.registry import GroupRegistry
from tsunami.spec import GroupDescriptor, MachineTemplate
from tsunami.transport.base import Transport
from tsunami.transport.ssh import SSHTransport

log = logger.bind(component="tsunami")


@dataclass
class Tsunami:
    """Register groups, then run a workload against a freshly launched fleet.

    Args:
        provider: Provider config. Defaults to AWS with the default region.
        settings: Orchestrator and SSH tuning.
        transport: Session factory. Defaults to SSH built from ``settings``.
        logging: LogConfig, True for defaults, or False to stay silent.
    """

    provider: ProviderConfig = field(default_factory=AWS)
    settings: Settings = field(default_factory=Settings)
    transport: Transport | None = None
    logging: LogConfig | bool = False

    registry: GroupRegistry = field(default_factory=GroupRegistry, init=False, repr=False)
    last_run: FleetOrchestrator | None = field(default=None, init=False, repr=False)

    def add_group(self, name: str, count: int, template: MachineTemplate) -> GroupDescriptor:
        """Register ``count`` machines named ``name``. Names must be unique."""
        return self.registry.add_group(name, count, template)

    def set_max_duration(self, hours: float) -> None:
        """Hard deadline for a whole run. On expiry the fleet is torn down."""
        self.registry.set_max_duration(hours)

    def _make_transport(self) -> Transport:
        if self.transport is not None:
            return self.transport
        s = self.settings
        return SSHTransport(
            user=s.ssh_user,
            connect_timeout=s.connect_timeout,
            connect_retries=s.connect_retries,
            connect_retry_delay=s.connect_retry_delay,
            command_timeout=s.command_timeout,
        )

    async def run[T](self, workload: Workload[T]) -> T:
        """Launch, configure, run ``workload`` and tear down.

        ``workload`` receives the Fleet and may be sync or async. Its
        return value is returned here.
        """
        match self.logging:
            case LogConfig() as config:
                handler_ids: list[int] | None = setup_logging(config)
            case True:
                handler_ids = setup_logging(LogConfig())
            case _:
                handler_ids = None

        try:
            provider = await self.provider.create_provider()
            orchestrator = FleetOrchestrator(
                registry=self.registry,
                provider=provider,
                transport=self._make_transport(),
                settings=self.settings,
            )
            self.last_run = orchestrator
            log.info(
                "Starting run: {n} group(s), {total} instance(s) on {provider}",
                n=len(self.registry), total=self.registry.total_count,
                provider=self.provider.type,
            )
            return await orchestrator.run(workload)
        finally:
            if handler_ids is not None:
                teardown_logging(handler_ids)

    def run_sync[T](self, workload: Workload[T]) -> T:
        """Blocking variant of ``run``."""
        return asyncio.run(self.run(workload))
