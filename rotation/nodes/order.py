"""
order_initializer node - POST /newOrder for every domain of the certificate,
then fetch each authorization the order lists.
"""
from __future__ import annotations

import logging

from acmev2.errors import ProtocolError
from rotation.context import RotationContext
from rotation.nodes.base import stage
from rotation.state import RotationState

logger = logging.getLogger(__name__)


@stage("order_initializer")
def order_initializer(state: RotationState, ctx: RotationContext) -> dict:
    """
    Returns updates to: order, authorizations.
    """
    order = ctx.client.create_order(state["domains"])
    authorizations = list(ctx.client.fetch_authorizations(order))

    covered = {a.domain.lower() for a in authorizations}
    missing = [d for d in state["domains"] if d.lower() not in covered]
    if missing:
        raise ProtocolError(
            0, {"type": "about:blank", "detail": f"Order {order.url} has no authorization for {', '.join(missing)}"}
        )

    logger.info(
        "Order %s is %s with %d authorization(s)", order.url, order.status, len(authorizations)
    )
    return {"order": order, "authorizations": authorizations}
