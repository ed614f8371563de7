"""Decorator that times a ledger operation and counts its outcome."""
from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, TypeVar

from lending_ledger.errors import LedgerError

from .metrics import ledger_operation_latency_seconds, ledger_transitions_total

F = TypeVar("F", bound=Callable[..., Any])

logger = logging.getLogger(__name__)


def track_operation(entity: str, action: str) -> Callable[[F], F]:
    """Wrap a service method with latency + outcome metrics.

    Outcomes: ``success``; ``rejected`` for a :class:`LedgerError` (business
    rule refusal); ``error`` for anything else.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except LedgerError as exc:
                ledger_transitions_total.labels(entity=entity, action=action, outcome="rejected").inc()
                logger.info(
                    "%s %s rejected: %s",
                    entity,
                    action,
                    exc.log_message,
                    extra={"entity": entity, "operation": action, "outcome": "rejected"},
                )
                raise
            except Exception:
                ledger_transitions_total.labels(entity=entity, action=action, outcome="error").inc()
                logger.exception(
                    "%s %s failed",
                    entity,
                    action,
                    extra={"entity": entity, "operation": action, "outcome": "error"},
                )
                raise
            finally:
                ledger_operation_latency_seconds.labels(entity=entity, action=action).observe(
                    time.perf_counter() - started
                )
            ledger_transitions_total.labels(entity=entity, action=action, outcome="success").inc()
            return result

        return wrapper  # type: ignore[return-value]

    return decorator
