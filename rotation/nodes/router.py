"""
stage_router - conditional edge used after every fallible stage.
"""
from __future__ import annotations

from rotation.state import RotationState


def stage_router(state: RotationState) -> str:
    """
    Returns:
      "next"    - the stage succeeded, continue down the pipeline
      "failed"  - an error was recorded, go straight to challenge_cleanup
    """
    return "failed" if state.get("error") is not None else "next"
