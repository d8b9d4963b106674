"""Store-level concurrency errors."""
from __future__ import annotations


class StoreError(Exception):
    """Base exception for execution store operations."""


class ActiveExecutionExistsError(StoreError):
    """A contact already has a WAITING or PROCESSING execution."""

    def __init__(self, contact_id: str, existing_id: str = ""):
        self.contact_id = contact_id
        self.existing_id = existing_id
        super().__init__(f"Contact {contact_id} already has an active execution {existing_id}".strip())


class StaleExecutionError(StoreError):
    """Compare-and-set failed: the execution changed since it was read."""

    def __init__(self, execution_id: str, expected_version: int, actual_version: int = -1):
        self.execution_id = execution_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Execution {execution_id} version mismatch "
            f"(expected {expected_version}, found {actual_version})"
        )
