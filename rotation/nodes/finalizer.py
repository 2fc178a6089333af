"""
Finalization nodes.

  await_order_ready  - poll the order until the CA reports it ready
  order_finalizer    - generate the certificate key and submit the CSR
  await_certificate  - poll until the order is valid with a certificate URL
  cert_downloader    - download the chain and package the bundle

Waits honour Retry-After when the CA sends it and fall back to the
configured order / certificate intervals otherwise.
"""
from __future__ import annotations

import logging

from acmev2.crypto import generate_certificate_key
from acmev2.errors import ProtocolError, StateError
from acmev2.models import Order
from rotation.context import RotationContext
from rotation.nodes.base import stage
from rotation.state import RotationState

logger = logging.getLogger(__name__)


def _order_ready(order: Order) -> bool:
    return order.status in ("ready", "valid", "invalid")


def _certificate_issued(order: Order) -> bool:
    return (order.status == "valid" and bool(order.certificate_url)) or order.status == "invalid"


def _raise_if_invalid(order: Order) -> None:
    if order.status == "invalid":
        problem = dict(order.error or {})
        problem.setdefault("type", "urn:ietf:params:acme:error:orderNotReady")
        problem.setdefault("detail", f"Order {order.url} became invalid")
        raise ProtocolError(0, problem)


@stage("await_order_ready")
def await_order_ready(state: RotationState, ctx: RotationContext) -> dict:
    not_valid = [a.domain for a in state["authorizations"] if a.status != "valid"]
    if not_valid:
        raise StateError(f"Authorizations not valid for: {', '.join(not_valid)}")

    current = state["order"]
    order = ctx.poller.poll_until(
        lambda: ctx.client.get_order(current),
        _order_ready,
        interval=ctx.order_poll_interval,
        max_attempts=ctx.poll_max_attempts,
        hint=lambda o: o.retry_after,
        what=f"order {current.url} ready",
    )
    _raise_if_invalid(order)
    logger.info("Order %s is %s", order.url, order.status)
    return {"order": order}


@stage("order_finalizer")
def order_finalizer(state: RotationState, ctx: RotationContext) -> dict:
    """
    Returns updates to: order, certificate_key.

    The certificate key is generated fresh for every run and stays in
    process memory until it is packaged into the bundle.
    """
    certificate_key = generate_certificate_key(ctx.certificate_key_type)
    order = ctx.client.finalize_order(state["order"], certificate_key)
    return {"order": order, "certificate_key": certificate_key}


@stage("await_certificate")
def await_certificate(state: RotationState, ctx: RotationContext) -> dict:
    current = state["order"]
    if _certificate_issued(current):
        order = current
    else:
        order = ctx.poller.poll_until(
            lambda: ctx.client.get_order(current),
            _certificate_issued,
            interval=ctx.cert_poll_interval,
            max_attempts=ctx.poll_max_attempts,
            hint=lambda o: o.retry_after,
            what=f"certificate for order {current.url}",
        )
    _raise_if_invalid(order)
    return {"order": order}


@stage("cert_downloader")
def cert_downloader(state: RotationState, ctx: RotationContext) -> dict:
    bundle = ctx.client.download_certificate(state["order"], state["certificate_key"], ctx.passphrase)
    return {"bundle": bundle}
