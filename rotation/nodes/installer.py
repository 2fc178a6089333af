"""
gateway_installer node - push the bundle into the named gateway slot.

The stage wrapper checks the run deadline first, so an expired run never
reaches the gateway.
"""
from __future__ import annotations

from rotation.context import RotationContext
from rotation.nodes.base import stage
from rotation.state import RotationState


@stage("gateway_installer")
def gateway_installer(state: RotationState, ctx: RotationContext) -> dict:
    ctx.installer.install(state["gateway_ref"], state["slot_name"], state["bundle"], ctx.passphrase)
    return {"installed": True}
