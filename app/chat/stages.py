# app/chat/stages.py
from __future__ import annotations

from enum import Enum
from typing import Any


class EpisodeStage(str, Enum):
    MENTIONED = "mentioned"
    EXPLORED = "explored"
    CHARACTERIZED = "characterized"
    LINKED = "linked"


class EpisodeStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class ConversationPhase(str, Enum):
    GATHERING = "gathering"      # still collecting symptoms, asking follow-ups
    ASSESSING = "assessing"      # enough info, forming/sharing an assessment
    RECOMMENDING = "recommending"  # assessment complete, discussing next steps


# Descriptive fields needed to leave each stage
EXPLORED_THRESHOLD = 1
CHARACTERIZED_THRESHOLD = 3


def count_filled_fields(episode: Any) -> int:
    """
    Number of descriptive detail fields populated on an episode.
    """
    count = 0
    if episode.severity is not None:
        count += 1
    if episode.location and episode.location.strip():
        count += 1
    if episode.frequency and episode.frequency.strip():
        count += 1
    if episode.triggers:
        count += 1
    if episode.relievers:
        count += 1
    if episode.pattern and episode.pattern.strip():
        count += 1
    return count


def next_stage(current: str, filled: int) -> EpisodeStage:
    """
    Stage an episode should be in after an update.

    - mentioned -> explored once any detail is known
    - explored -> characterized once three details are known
    - never moves backwards; linked is terminal
    """
    stage = EpisodeStage(current)
    if stage == EpisodeStage.MENTIONED and filled >= EXPLORED_THRESHOLD:
        stage = EpisodeStage.EXPLORED
    if stage == EpisodeStage.EXPLORED and filled >= CHARACTERIZED_THRESHOLD:
        stage = EpisodeStage.CHARACTERIZED
    return stage
