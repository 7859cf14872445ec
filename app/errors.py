# app/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


class HealthChatError(Exception):
    """
    Base class for errors the orchestration core lets escape.
    """


class NotFoundError(HealthChatError):
    """
    Referenced conversation/episode/assessment doesn't exist,
    or isn't owned by the caller.
    """

    def __init__(self, entity: str, identifier: object):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")


class StoreUnavailableError(HealthChatError):
    """
    The durable store could not be reached. Fatal for the turn.
    """


OperationErrorKind = Literal["validation", "not_found", "failed"]


@dataclass
class OperationError:
    """
    Error value returned to the model from a tool operation.
    Never raised: the model reads it and may retry.
    """

    kind: OperationErrorKind
    message: str

    def __str__(self) -> str:
        return f"Error ({self.kind}): {self.message}"
