"""
Challenge nodes.

  challenge_provisioner - publish, signal and poll every pending
                          authorization in parallel; artifacts are deleted
                          as each authorization settles.
  challenge_cleanup     - final sweep that removes anything still published.
                          Runs on both the success and failure paths.
"""
from __future__ import annotations

import logging

from rotation.context import RotationContext
from rotation.nodes.base import stage
from rotation.state import RotationState

logger = logging.getLogger(__name__)


@stage("challenge_provisioner")
def challenge_provisioner(state: RotationState, ctx: RotationContext) -> dict:
    authorizations = ctx.provisioner.provision(state["authorizations"])
    return {"authorizations": authorizations}


@stage("challenge_cleanup", check_deadline=False)
def challenge_cleanup(state: RotationState, ctx: RotationContext) -> dict:
    leftovers = ctx.provisioner.cleanup()
    if not leftovers:
        return {"leftover_artifacts": []}
    logger.warning("%d challenge artifact(s) could not be removed: %s", len(leftovers), ", ".join(leftovers))
    return {
        "leftover_artifacts": leftovers,
        "error_log": state.get("error_log", []) + [f"challenge_cleanup: left behind {p}" for p in leftovers],
    }
