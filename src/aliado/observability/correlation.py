"""Correlation ID management for request and sync-run tracing."""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

# Accessible across async calls and threadpool hops
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)


@contextmanager
def correlation_scope(prefix: str = "") -> Iterator[str]:
    """Bind a fresh correlation ID for work that has no HTTP request.

    Used by the periodic reconciliation sync so its log lines can be
    grouped per run.
    """
    cid = f"{prefix}{generate_correlation_id()}"
    token = set_correlation_id(cid)
    try:
        yield cid
    finally:
        reset_correlation_id(token)
