"""Readiness polling.

An instance is ready when the provider reports it ``running`` with a
private address, a public address, an instance type and a key name.
``classify`` turns one provider snapshot into a verdict; ``ReadinessPoller``
repeats the query until the verdict is Ready or a bound is hit.

Verdicts:
    NotYetRunning: pending, or not visible to the provider yet. Retried
        until ``timeout``.
    Degraded: running but missing attributes. Retried at most
        ``max_degraded_polls`` consecutive times.
    Terminal: stopped or terminated. Fails immediately.
    Ready: carries the new Machine.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from loguru import logger

from tsunami.exceptions import (
    DegradedInstanceError,
    InstanceTerminatedError,
    ReadinessQueryError,
    ReadinessTimeoutError,
)
from tsunami.providers.base import RUNNING, TERMINAL_STATES, ProviderClient
from tsunami.spec import InstanceDescription, Machine

log = logger.bind(component="readiness")

_REQUIRED = ("private_ip", "public_address", "instance_type", "key_name")


@dataclass(frozen=True, slots=True)
class NotYetRunning:
    state: str


@dataclass(frozen=True, slots=True)
class Ready:
    machine: Machine


@dataclass(frozen=True, slots=True)
class Degraded:
    missing: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Terminal:
    state: str


type Readiness = NotYetRunning | Ready | Degraded | Terminal


def classify(description: InstanceDescription | None) -> Readiness:
    if description is None:
        return NotYetRunning(state="unknown")

    if description.state in TERMINAL_STATES:
        return Terminal(state=description.state)

    if description.state != RUNNING:
        return NotYetRunning(state=description.state)

    missing = tuple(attr for attr in _REQUIRED if not getattr(description, attr))
    if missing:
        return Degraded(missing=missing)

    return Ready(
        Machine(
            instance_id=description.instance_id,
            instance_type=description.instance_type,
            private_ip=description.private_ip,
            public_address=description.public_address,
            key_name=description.key_name,
        )
    )


class ReadinessPoller:
    """Polls a provider until instances are ready.

    Args:
        provider: Provider client to query.
        interval: Seconds between polls of the same instance.
        timeout: Max seconds to wait for one instance. None waits forever.
        max_degraded_polls: Consecutive Degraded verdicts tolerated.
        request_timeout: Timeout for a single describe call. None for unbounded.
    """

    __slots__ = ("provider", "interval", "timeout", "max_degraded_polls", "request_timeout")

    def __init__(
        self,
        provider: ProviderClient,
        *,
        interval: float = 5.0,
        timeout: float | None = 600.0,
        max_degraded_polls: int = 60,
        request_timeout: float | None = 30.0,
    ) -> None:
        self.provider = provider
        self.interval = interval
        self.timeout = timeout
        self.max_degraded_polls = max_degraded_polls
        self.request_timeout = request_timeout

    async def check(self, instance_id: str, *, group: str | None = None) -> Readiness:
        """Query the provider once. Query failures are not retried."""
        try:
            async with asyncio.timeout(self.request_timeout):
                description = await self.provider.describe_instance(instance_id)
        except TimeoutError as e:
            raise ReadinessQueryError(
                f"describe timed out after {self.request_timeout}s",
                group=group, instance_id=instance_id,
            ) from e
        except Exception as e:
            raise ReadinessQueryError(
                f"failed to query instance status: {e}", group=group, instance_id=instance_id,
            ) from e
        return classify(description)

    async def wait(self, instance_id: str, *, group: str | None = None) -> Machine:
        """Poll ``instance_id`` until it is ready and return its Machine.

        Raises:
            ReadinessQueryError: A status query failed.
            ReadinessTimeoutError: Not ready within ``timeout``.
            DegradedInstanceError: Running with missing attributes for too long.
            InstanceTerminatedError: The instance stopped or terminated.
        """
        loop = asyncio.get_running_loop()
        start = loop.time()
        degraded = 0
        polls = 0

        while True:
            polls += 1
            match await self.check(instance_id, group=group):
                case Ready(machine=machine):
                    log.info(
                        "{id} ready after {n} poll(s) at {addr}",
                        id=instance_id, n=polls, addr=machine.public_address,
                    )
                    return machine
                case Terminal(state=state):
                    raise InstanceTerminatedError(instance_id, state, group=group)
                case Degraded(missing=missing):
                    degraded += 1
                    log.warning(
                        "{id} running but missing {missing} ({n}/{max})",
                        id=instance_id, missing=", ".join(missing),
                        n=degraded, max=self.max_degraded_polls,
                    )
                    if degraded >= self.max_degraded_polls:
                        raise DegradedInstanceError(
                            f"running but still missing {', '.join(missing)} "
                            f"after {degraded} polls",
                            group=group, instance_id=instance_id,
                        )
                case NotYetRunning(state=state):
                    degraded = 0
                    log.debug("{id} not ready yet ({state})", id=instance_id, state=state)

            elapsed = loop.time() - start
            if self.timeout is not None and elapsed > self.timeout:
                raise ReadinessTimeoutError(
                    f"not ready after {elapsed:.1f}s ({polls} polls)",
                    group=group, instance_id=instance_id,
                )

            await asyncio.sleep(self.interval)
