"""
Persistence adapters for protocol state and the decision ledger.
"""

from criticality.infrastructure.persistence.ledger import (
    FilesystemDecisionLedger,
    InMemoryDecisionLedger,
)
from criticality.infrastructure.persistence.state_file import (
    PERSISTED_STATE_VERSION,
    deserialize_state,
    load_state,
    save_state,
    serialize_state,
    state_file_exists,
)

__all__ = [
    "PERSISTED_STATE_VERSION",
    "serialize_state",
    "deserialize_state",
    "save_state",
    "load_state",
    "state_file_exists",
    "InMemoryDecisionLedger",
    "FilesystemDecisionLedger",
]
