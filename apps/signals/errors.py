# apps/signals/errors.py
from typing import Optional


class SignalsError(Exception):
    pass


class ValidationError(SignalsError, ValueError):
    """Bad input; raised before any state is touched."""


class DimensionMismatch(ValidationError):
    def __init__(self, left: int, right: int, what: str = "vectors"):
        super().__init__(f"{what} differ in length: {left} != {right}")
        self.left = left
        self.right = right


class SelfMergeError(ValidationError):
    def __init__(self, item_id: int):
        super().__init__(f"cannot merge item {item_id} into itself")
        self.item_id = item_id


class TransientStoreError(SignalsError):
    """A batch write failed; the batch was rolled back and is not retried here."""

    def __init__(self, job: str, batch: int, cause: Optional[BaseException] = None):
        super().__init__(f"{job}: batch {batch} failed: {cause}")
        self.job = job
        self.batch = batch


class GraphStoreError(SignalsError):
    """The graph backend rejected or failed a request."""
