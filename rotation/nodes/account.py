"""
account_setup node - load or create the account key and register (or look
up) the ACME account.
"""
from __future__ import annotations

import logging

from rotation.context import RotationContext
from rotation.nodes.base import stage
from rotation.state import RotationState

logger = logging.getLogger(__name__)


@stage("account_setup")
def account_setup(state: RotationState, ctx: RotationContext) -> dict:
    ctx.client.register_account(state["contact_email"])
    logger.info("Using ACME account %s", ctx.client.account_url)
    return {"account_url": ctx.client.account_url}
