"""Messages exchanged between the dispatcher and worker processes.

Workers post to one shared upstream queue; the dispatcher answers nonce
requests on a queue dedicated to each worker. Every message is a small
picklable dataclass and is dispatched by type.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

from .models import AccountPatch


def new_correlation_id() -> str:
    return f"nonce_{uuid.uuid4().hex[:16]}"


# Worker -> dispatcher

@dataclass(frozen=True)
class Completed:
    worker_id: str
    patch: Optional[AccountPatch] = None


@dataclass(frozen=True)
class NotCompleted:
    worker_id: str
    detail: Optional[str] = None
    patch: Optional[AccountPatch] = None


@dataclass(frozen=True)
class NonceRequest:
    worker_id: str
    correlation_id: str = field(default_factory=new_correlation_id)


@dataclass(frozen=True)
class Fatal:
    worker_id: str
    detail: str


WorkerMessage = Union[Completed, NotCompleted, NonceRequest, Fatal]
TerminalMessage = Union[Completed, NotCompleted, Fatal]


# Dispatcher -> worker

@dataclass(frozen=True)
class NonceGranted:
    correlation_id: str
    nonce: int


@dataclass(frozen=True)
class NonceRefused:
    correlation_id: str
    detail: str


SequencerReply = Union[NonceGranted, NonceRefused]
