"""Per-message handler outcomes. Ack/retry decisions live in the consumer adapter."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Processed:
    """Done: the message is acked. Also used for "nothing to do" drops."""

    note: str = ""


@dataclass(frozen=True)
class Failed:
    """Not done. Retryable failures stay pending for redelivery; others are acked and dropped."""

    reason: str
    retryable: bool = True


Outcome = Processed | Failed
