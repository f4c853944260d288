"""Server and clients - one t2.small server, two t2.micro clients.

Every machine prints its hostname during setup; the workload prints each
machine's private address. The instances are terminated on the way out,
whether or not anything failed.

    ┌──────────┐      ┌──────────┐
    │  server  │◄─────│ client 0 │
    │ t2.small │◄─────│ client 1 │
    └──────────┘      └──────────┘

Requires AWS credentials and ``~/.ssh/key1.pem`` for the ``key1`` key pair.
"""

from pathlib import Path

from tsunami import LogConfig, MachineTemplate, Settings, Tsunami
from tsunami.providers.aws import AWS

AMI = "ami-0440d3b780d96b29d"  # Amazon Linux 2023, us-east-1


async def print_hostname(session):
    print(await session.run("cat /etc/hostname"))


def workload(fleet):
    print(f"server: {fleet['server'][0].private_ip}")
    for client in fleet["client"]:
        print(f"client: {client.private_ip}")


if __name__ == "__main__":
    tsunami = Tsunami(
        provider=AWS(region="us-east-1"),
        settings=Settings(key_dir=Path("~/.ssh")),
        logging=LogConfig(level="INFO"),
    )
    tsunami.add_group("server", 1, MachineTemplate("t2.small", AMI, "key1", print_hostname))
    tsunami.add_group("client", 2, MachineTemplate("t2.micro", AMI, "key1", print_hostname))
    tsunami.set_max_duration(1)

    tsunami.run_sync(workload)
