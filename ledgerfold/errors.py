"""
Ledgerfold error hierarchy.

Integrity errors (ProofInvalid, ChainTampered, InvalidTransition) are never
retried automatically. Transient errors (DeliveryFailed, anchor gateway
failures, deadlines) go through a bounded retry policy before they surface.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Any, List, Optional


class LedgerfoldError(Exception):
    """Base class for all engine errors."""
    pass


class CapacityExceeded(LedgerfoldError):
    """Raised when the commitment tree has reached its fixed maximum size."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(f"Commitment tree is full ({capacity} leaves)")


class EpochSealed(CapacityExceeded):
    """Raised when an item is added to an epoch that no longer accepts items."""

    def __init__(self, epoch_id: str, capacity: int):
        super().__init__(capacity)
        self.epoch_id = epoch_id
        self.args = (f"Epoch {epoch_id} is sealed ({capacity} leaves)",)


class ProofInvalid(LedgerfoldError):
    """An item or aggregate proof failed verification."""

    def __init__(self, position: Optional[int], reason: str):
        self.position = position
        self.reason = reason
        where = f"position {position}" if position is not None else "proof"
        super().__init__(f"Invalid proof for {where}: {reason}")


class AggregationStale(LedgerfoldError):
    """The tree root moved underneath an aggregation round too many times."""

    def __init__(self, expected_root: str, observed_root: str, attempts: int):
        self.expected_root = expected_root
        self.observed_root = observed_root
        self.attempts = attempts
        super().__init__(
            f"Tree root changed during aggregation after {attempts} attempts "
            f"({expected_root[:12]} -> {observed_root[:12]})"
        )


class AnchorSubmitFailed(LedgerfoldError):
    """Anchoring an aggregate failed after all retries."""

    def __init__(self, aggregate_digest: str, attempts: int, last_error: Any = None):
        self.aggregate_digest = aggregate_digest
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Anchor submission for {aggregate_digest[:16]} failed after "
            f"{attempts} attempts: {last_error}"
        )


class DeliveryFailed(LedgerfoldError):
    """Transient delivery failure reported by a transport."""

    def __init__(self, item_id: str, recipient: str, reason: str = ""):
        self.item_id = item_id
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"Delivery of {item_id[:16]} to {recipient} failed: {reason}")


class RecipientInactive(DeliveryFailed):
    """The recipient cannot currently accept deliveries."""
    pass


class DeliveryNotEligible(LedgerfoldError):
    """A delivery job was requested for an item that is not anchored."""

    def __init__(self, item_id: str, state: str):
        self.item_id = item_id
        self.state = state
        super().__init__(f"Item {item_id[:16]} is {state}, only anchored items can be delivered")


class ChainTampered(LedgerfoldError):
    """A provenance chain failed hash-link verification."""

    def __init__(self, item_id: str, sequence_no: int, reason: str):
        self.item_id = item_id
        self.sequence_no = sequence_no
        self.reason = reason
        super().__init__(f"Provenance chain for {item_id[:16]} broken at #{sequence_no}: {reason}")


class InvalidTransition(LedgerfoldError):
    """A lifecycle transition not allowed from the item's current state."""

    def __init__(self, item_id: str, current: str, target: str):
        self.item_id = item_id
        self.current = current
        self.target = target
        super().__init__(f"Invalid state transition for {item_id[:16]}: {current} -> {target}")


class UnknownItem(LedgerfoldError):
    """Lookup of an item that was never registered."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Unknown item: {item_id}")


class SchemaError(LedgerfoldError):
    """A document failed JSON Schema validation."""

    def __init__(self, schema_name: str, errors: List[str]):
        self.schema_name = schema_name
        self.errors = errors
        super().__init__(f"{schema_name} validation failed: {'; '.join(errors[:5])}")
