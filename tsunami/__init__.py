"""Tsunami - launch a cloud fleet, configure it over SSH, run a workload, tear it down.

Example:

    from tsunami import MachineTemplate, Tsunami
    from tsunami.providers.aws import AWS

    async def setup(session):
        print(await session.run("date"))

    tsunami = Tsunami(provider=AWS())
    tsunami.add_group("server", 1, MachineTemplate("t2.medium", "ami-0440d3b780d96b29d", "key1", setup))
    tsunami.add_group("client", 2, MachineTemplate("t2.micro", "ami-0440d3b780d96b29d", "key1", setup))

    def workload(fleet):
        print(fleet["server"][0].private_ip)
        for client in fleet["client"]:
            print(client.private_ip)

    tsunami.run_sync(workload)
"""

from tsunami.config import Settings
from tsunami.exceptions import (
    ChannelError,
    CommandFailedError,
    CommandIncompleteError,
    ConfigurationError,
    ConnectError,
    DegradedInstanceError,
    DuplicateGroupError,
    ExecError,
    InstanceTerminatedError,
    InvariantViolation,
    LaunchError,
    OutputReadError,
    ReadinessQueryError,
    ReadinessTimeoutError,
    RunDeadlineExceeded,
    SetupError,
    TerminationWarning,
    TsunamiError,
    WorkloadError,
)
from tsunami.facade import Tsunami
from tsunami.fleet import Fleet
from tsunami.logging import LogConfig
from tsunami.orchestrator import FleetOrchestrator, State
from tsunami.providers.aws import AWS
from tsunami.registry import GroupRegistry
from tsunami.spec import GroupDescriptor, InstanceDescription, Machine, MachineTemplate

__all__ = [
    # Entry points
    "Tsunami",
    "FleetOrchestrator",
    "State",
    # Model
    "Fleet",
    "GroupDescriptor",
    "GroupRegistry",
    "InstanceDescription",
    "Machine",
    "MachineTemplate",
    # Config
    "AWS",
    "LogConfig",
    "Settings",
    # Errors
    "ChannelError",
    "CommandFailedError",
    "CommandIncompleteError",
    "ConfigurationError",
    "ConnectError",
    "DegradedInstanceError",
    "DuplicateGroupError",
    "ExecError",
    "InstanceTerminatedError",
    "InvariantViolation",
    "LaunchError",
    "OutputReadError",
    "ReadinessQueryError",
    "ReadinessTimeoutError",
    "RunDeadlineExceeded",
    "SetupError",
    "TerminationWarning",
    "TsunamiError",
    "WorkloadError",
]
