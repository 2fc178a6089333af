"""
Collaborators shared by the rotation stages for one run.

The context travels in ``config["configurable"]["rotation"]`` rather than
in the state, so stages can be exercised against a mock CA, an in-memory
store and a fake gateway.
"""
from __future__ import annotations

from dataclasses import dataclass

from langchain_core.runnables import RunnableConfig

from acmev2.client import AcmeClient
from acmev2.poll import Deadline, PollController
from challenge.provisioner import ChallengeProvisioner
from gateway.installer import GatewayInstaller


@dataclass
class RotationContext:
    client: AcmeClient
    provisioner: ChallengeProvisioner
    installer: GatewayInstaller
    poller: PollController
    deadline: Deadline
    passphrase: str
    order_poll_interval: float = 10.0
    cert_poll_interval: float = 15.0
    poll_max_attempts: int = 30
    certificate_key_type: str = "rsa2048"
    cert_store_path: str = ""


def get_context(config: RunnableConfig) -> RotationContext:
    try:
        return config["configurable"]["rotation"]
    except KeyError:
        raise RuntimeError("Rotation graph invoked without a RotationContext") from None
