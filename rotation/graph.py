"""
LangGraph StateGraph for one certificate rotation.

Graph topology (every fallible stage routes to challenge_cleanup on error):

  START
    → account_setup
    → order_initializer
    → challenge_provisioner
    → await_order_ready
    → order_finalizer
    → await_certificate
    → cert_downloader
    → storage_manager
    → gateway_installer
    → challenge_cleanup        ← also the target of every "failed" edge
    → summary_reporter
    → END

Orchestrator.run() wraps graph.invoke() so that cleanup also runs when an
unclassified exception escapes a node, and re-raises the recorded error
once cleanup has finished.
"""
from __future__ import annotations

import logging
import secrets
from typing import Iterable, Optional

from langgraph.graph import END, START, StateGraph

from acmev2.models import validate_domains
from acmev2.poll import Deadline, PollController
from rotation.context import RotationContext
from rotation.nodes.account import account_setup
from rotation.nodes.challenge import challenge_cleanup, challenge_provisioner
from rotation.nodes.finalizer import await_certificate, await_order_ready, cert_downloader, order_finalizer
from rotation.nodes.installer import gateway_installer
from rotation.nodes.order import order_initializer
from rotation.nodes.reporter import summary_reporter
from rotation.nodes.router import stage_router
from rotation.nodes.storage import storage_manager
from rotation.state import RotationState, initial_state

logger = logging.getLogger(__name__)

PIPELINE = (
    ("account_setup", account_setup),
    ("order_initializer", order_initializer),
    ("challenge_provisioner", challenge_provisioner),
    ("await_order_ready", await_order_ready),
    ("order_finalizer", order_finalizer),
    ("await_certificate", await_certificate),
    ("cert_downloader", cert_downloader),
    ("storage_manager", storage_manager),
    ("gateway_installer", gateway_installer),
)


def build_graph():
    """
    Build and compile the rotation StateGraph.

    No checkpointer is attached: the state holds the certificate private
    key and must not be persisted.
    """
    builder = StateGraph(RotationState)

    for name, fn in PIPELINE:
        builder.add_node(name, fn)
    builder.add_node("challenge_cleanup", challenge_cleanup)
    builder.add_node("summary_reporter", summary_reporter)

    builder.add_edge(START, PIPELINE[0][0])
    for (name, _), (next_name, _) in zip(PIPELINE, PIPELINE[1:] + (("challenge_cleanup", None),)):
        builder.add_conditional_edges(
            name,
            stage_router,
            {"next": next_name, "failed": "challenge_cleanup"},
        )
    builder.add_edge("challenge_cleanup", "summary_reporter")
    builder.add_edge("summary_reporter", END)

    return builder.compile()


class Orchestrator:
    """
    Runs the full rotation for one certificate:
    account → order → challenges → finalize → download → install.

    A RenewalError from any stage is re-raised from run() after every
    published challenge artifact has been deleted.
    """

    def __init__(self, context: RotationContext) -> None:
        self.context = context
        self._graph = build_graph()

    def run(
        self,
        domains: Iterable[str],
        gateway_ref: str,
        slot_name: str,
        contact_email: str = "",
    ) -> RotationState:
        names = validate_domains(domains)
        logger.info(
            "Rotating certificate for %s into %s slot %r", ", ".join(names), gateway_ref, slot_name
        )

        state = initial_state(names, gateway_ref, slot_name, contact_email)
        try:
            final_state = self._graph.invoke(state, config={"configurable": {"rotation": self.context}})
        finally:
            leftovers = self.context.provisioner.cleanup()
            if leftovers:
                logger.warning("Challenge artifacts left behind: %s", ", ".join(leftovers))

        if final_state["error"] is not None:
            raise final_state["error"]
        return final_state


def make_orchestrator(deadline_seconds: Optional[float] = None) -> Orchestrator:
    """
    Wire an Orchestrator from the current application settings.
    The run deadline starts counting when this is called.
    """
    from acmev2.client import make_client
    from challenge.provisioner import ChallengeProvisioner
    from challenge.store import make_challenge_store
    from config import settings
    from gateway.installer import GatewayInstaller
    from gateway.provider import make_gateway_provider

    deadline = Deadline(deadline_seconds if deadline_seconds is not None else settings.RUN_TIMEOUT_SECONDS)
    poller = PollController(deadline=deadline)
    client = make_client()
    provisioner = ChallengeProvisioner(
        client,
        make_challenge_store(),
        poller,
        fan_out=settings.CHALLENGE_FANOUT,
        store_max_attempts=settings.STORE_MAX_ATTEMPTS,
        store_retry_delay=settings.STORE_RETRY_DELAY,
        poll_interval=settings.ORDER_POLL_INTERVAL,
        poll_max_attempts=settings.POLL_MAX_ATTEMPTS,
    )
    context = RotationContext(
        client=client,
        provisioner=provisioner,
        installer=GatewayInstaller(make_gateway_provider()),
        poller=poller,
        deadline=deadline,
        passphrase=settings.PFX_PASSPHRASE or secrets.token_urlsafe(24),
        order_poll_interval=settings.ORDER_POLL_INTERVAL,
        cert_poll_interval=settings.CERT_POLL_INTERVAL,
        poll_max_attempts=settings.POLL_MAX_ATTEMPTS,
        certificate_key_type=settings.CERT_KEY_TYPE,
        cert_store_path=settings.CERT_STORE_PATH,
    )
    return Orchestrator(context)
