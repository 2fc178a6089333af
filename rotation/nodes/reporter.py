"""
summary_reporter node - emit one structured event describing the run.
"""
from __future__ import annotations

import structlog

from rotation.state import RotationState

log = structlog.get_logger(__name__)


def summary_reporter(state: RotationState) -> dict:
    bundle = state.get("bundle")
    order = state.get("order")
    fields = {
        "domains": state["domains"],
        "gateway": state["gateway_ref"],
        "slot": state["slot_name"],
        "order": order.url if order else None,
        "installed": state.get("installed", False),
        "archive_dir": state.get("archive_dir"),
        "leftover_artifacts": state.get("leftover_artifacts", []),
    }
    if bundle is not None:
        fields["serial"] = bundle.serial_number
        fields["not_after"] = bundle.not_after.isoformat()

    if state.get("error") is not None:
        log.error(
            "rotation_failed",
            stage=state.get("failed_stage"),
            error=type(state["error"]).__name__,
            detail=str(state["error"]),
            **fields,
        )
    else:
        log.info("rotation_complete", warnings=state.get("error_log", []), **fields)
    return {}
