"""
storage_manager node - archive the issued bundle on the local filesystem.

Archiving is optional (CERT_STORE_PATH unset disables it) and a failure to
write is recorded in error_log without failing the rotation: the gateway
install is what the run exists for.
"""
from __future__ import annotations

import logging

from rotation.context import RotationContext
from rotation.nodes.base import stage
from rotation.state import RotationState
from storage.filesystem import write_bundle_files

logger = logging.getLogger(__name__)


@stage("storage_manager")
def storage_manager(state: RotationState, ctx: RotationContext) -> dict:
    if not ctx.cert_store_path:
        return {}

    bundle = state["bundle"]
    try:
        archive_dir = write_bundle_files(ctx.cert_store_path, bundle, state["order"].url)
    except OSError as exc:
        logger.warning("Archiving certificate for %s failed: %s", bundle.domains[0], exc)
        return {"error_log": state.get("error_log", []) + [f"storage_manager: {exc}"]}
    return {"archive_dir": str(archive_dir)}
