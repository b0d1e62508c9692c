"""
Error taxonomy for the coordination core.

[ERRORS] Each class maps to one failure mode and its handling policy:
- Unreachable: transient transport failure, retried with backoff
- NackedProposal: contention signal, proposer bumps its round and retries
- OutOfOrderAppend: ordering invariant violated, fatal to the log instance
- NotFound: lookup exhausted, surfaced to callers as absence
- PartialReplication: degraded durability, reported and logged
- ConsensusTimeout: retry budget exhausted without a decision
"""

from typing import Any, Optional


class PDNError(Exception):
    """Base class for all persistent data network errors."""


class Unreachable(PDNError):
    """A node could not be contacted or did not answer in time."""

    def __init__(self, node_id: Optional[bytes] = None, reason: str = ""):
        self.node_id = node_id
        self.reason = reason
        target = node_id.hex()[:16] if node_id else "?"
        super().__init__(f"node {target} unreachable: {reason}" if reason else f"node {target} unreachable")


class NackedProposal(PDNError):
    """An acceptor has already promised a higher proposal number."""

    def __init__(self, index: int, promised: Any):
        self.index = index
        self.promised = promised
        super().__init__(f"proposal for index {index} preempted by {promised}")


class OutOfOrderAppend(PDNError):
    """Append attempted at an index other than the current log length."""

    def __init__(self, index: int, expected: int):
        self.index = index
        self.expected = expected
        super().__init__(f"append at index {index}, expected {expected}")


class NotFound(PDNError):
    """Requested entry or key does not exist."""

    def __init__(self, key: Any):
        self.key = key
        shown = key.hex()[:16] if isinstance(key, bytes) else key
        super().__init__(f"not found: {shown}")


class PartialReplication(PDNError):
    """Fewer than a quorum of replicas acknowledged within the retry budget."""

    def __init__(self, key: bytes, acked: int, required: int, targets: int):
        self.key = key
        self.acked = acked
        self.required = required
        self.targets = targets
        super().__init__(
            f"key {key.hex()[:16]} replicated to {acked}/{targets} (quorum {required})"
        )


class ConsensusTimeout(PDNError):
    """The proposer gave up on an index after exhausting its attempts."""

    def __init__(self, index: int, attempts: int):
        self.index = index
        self.attempts = attempts
        super().__init__(f"no decision for index {index} after {attempts} attempts")
