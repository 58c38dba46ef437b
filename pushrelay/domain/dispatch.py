from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


DIRECT_SUBSCRIPTION_ID = "direct"


@dataclass(frozen=True)
class SendResult:
    # Per-target delivery outcome; never persisted.
    subscription_id: str
    success: bool
    status_code: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class BatchSendResult:
    sent: int
    failed: int
    total: int
    results: list[SendResult] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "BatchSendResult":
        return cls(sent=0, failed=0, total=0, results=[])

    @classmethod
    def from_results(cls, results: list[SendResult]) -> "BatchSendResult":
        sent = sum(1 for result in results if result.success)
        return cls(sent=sent, failed=len(results) - sent, total=len(results), results=results)

    def failures(self) -> list[SendResult]:
        return [result for result in self.results if not result.success]

    def summary(self) -> dict[str, Any]:
        # Shape surfaced to callers: counts plus only the failed subset.
        return {
            "sent": self.sent,
            "failed": self.failed,
            "total": self.total,
            "failures": [
                {"subscriptionId": result.subscription_id, "error": result.error}
                for result in self.failures()
            ],
        }
