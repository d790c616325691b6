"""Reconciliation of freshly aggregated snapshots against the accepted one."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from donation_thermometer.models import DonationSnapshot

logger = logging.getLogger(__name__)

ReconciliationPolicy = Literal["monotonic", "replace-always"]
POLICIES: tuple[str, ...] = ("monotonic", "replace-always")


class Decision(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ReconciliationResult:
    snapshot: DonationSnapshot
    decision: Decision

    @property
    def accepted(self) -> bool:
        return self.decision is Decision.ACCEPTED


def reconcile(
    prior: DonationSnapshot,
    tentative: DonationSnapshot,
    *,
    policy: ReconciliationPolicy = "monotonic",
) -> ReconciliationResult:
    """Decide which snapshot becomes the accepted one.

    ``monotonic`` rejects any drop in total or donor count (a truncated read
    looks like a rollback otherwise) and keeps the prior donor names when
    the new list is empty. ``replace-always`` takes the new values as is.
    """
    if policy not in POLICIES:
        raise ValueError(f"Invalid reconciliation policy: {policy!r}. Use monotonic/replace-always.")

    if policy == "replace-always":
        return ReconciliationResult(tentative.copy(), Decision.ACCEPTED)

    if (
        tentative.total_amount < prior.total_amount
        or tentative.donor_count < prior.donor_count
    ):
        return ReconciliationResult(prior.copy(), Decision.REJECTED)

    names = tentative.donor_names if tentative.donor_names else prior.donor_names
    snapshot = DonationSnapshot(
        total_amount=tentative.total_amount,
        donor_count=tentative.donor_count,
        donor_names=list(names),
        source_timestamp=tentative.source_timestamp,
    )
    return ReconciliationResult(snapshot, Decision.ACCEPTED)


class ReconciliationGate:
    """Sole owner of the accepted snapshot."""

    def __init__(self, policy: ReconciliationPolicy = "monotonic") -> None:
        if policy not in POLICIES:
            raise ValueError(
                f"Invalid reconciliation policy: {policy!r}. Use monotonic/replace-always."
            )
        self.policy: ReconciliationPolicy = policy
        self._accepted = DonationSnapshot.zero()

    def init(self) -> None:
        self._accepted = DonationSnapshot.zero()

    def reset(self) -> None:
        logger.debug("Resetting accepted snapshot")
        self.init()

    @property
    def accepted(self) -> DonationSnapshot:
        return self._accepted.copy()

    def apply(self, tentative: DonationSnapshot) -> ReconciliationResult:
        result = reconcile(self._accepted, tentative, policy=self.policy)
        if result.accepted:
            self._accepted = result.snapshot.copy()
        else:
            logger.warning(
                "Rejected snapshot: total %.2f -> %.2f, donors %d -> %d",
                self._accepted.total_amount,
                tentative.total_amount,
                self._accepted.donor_count,
                tentative.donor_count,
            )
        return result
