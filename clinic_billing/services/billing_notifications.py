# FILE: clinic_billing/services/billing_notifications.py
from __future__ import annotations

import logging
from importlib import import_module
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Callable, Iterable, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundPaidEvent:
    bill_id: int
    refund_request_id: int
    amount: Decimal

    def as_dict(self):
        d = asdict(self)
        d["amount"] = str(self.amount)
        return d


Subscriber = Callable[[RefundPaidEvent], None]


class RefundNotifier:
    """
    Fan-out of refund-paid events to in-process subscribers.
    Published after commit; a failing subscriber is logged and skipped.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> Subscriber:
        self._subscribers.append(fn)
        return fn

    def unsubscribe(self, fn: Subscriber) -> None:
        if fn in self._subscribers:
            self._subscribers.remove(fn)

    def publish(self, event: RefundPaidEvent) -> None:
        for fn in list(self._subscribers):
            try:
                fn(event)
            except Exception:
                logger.exception("Refund notification subscriber %r failed for %s",
                                 fn, event.as_dict())


def log_refund_paid(event: RefundPaidEvent) -> None:
    logger.info("Refund paid: %s", event.as_dict())


def resolve_subscriber(path: str) -> Subscriber:
    """`package.module:callable` -> the callable."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Subscriber path must look like 'module:callable', got {path!r}")
    fn = getattr(import_module(module_name), attr)
    if not callable(fn):
        raise ValueError(f"Subscriber {path!r} is not callable")
    return fn


def build_notifier(paths: Iterable[str]) -> RefundNotifier:
    """
    Notifier with the configured subscribers attached. The messaging
    collaborator plugs in here (REFUND_PAID_SUBSCRIBERS); a bad path fails
    at startup rather than at the first payout.
    """
    notifier = RefundNotifier()
    for path in paths:
        notifier.subscribe(resolve_subscriber(path))
        logger.info("Refund notifier subscriber registered: %s", path)
    return notifier
