from __future__ import annotations


class RecallError(Exception):
    """Base class for errors raised by the capture/merge/persist pipeline."""


class ExtractionError(RecallError):
    def __init__(self, tool: str, message: str) -> None:
        super().__init__(f"{tool}: {message}")
        self.tool = tool


class NormalizationError(RecallError):
    pass


class MergeConflictError(RecallError):
    pass


class StaleBaselineError(RecallError):
    """The memory directory changed between read and write."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"memory revision changed: expected {expected[:12]}, found {actual[:12]}")
        self.expected = expected
        self.actual = actual


class SummarizationError(RecallError):
    pass


class EncryptionError(RecallError):
    pass


class PersistenceError(RecallError):
    pass


class SyncCancelled(RecallError):
    pass
