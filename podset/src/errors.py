from __future__ import annotations


class StoreError(RuntimeError):
    """Raised when a call against the object store fails.

    Every store failure is treated as transient: the reconcile pass aborts and
    the work queue retries the request with backoff.
    """


class NotFoundError(StoreError):
    """The requested object does not exist (HTTP 404)."""


class ConflictError(StoreError):
    """An optimistic-concurrency write lost against a newer resourceVersion (HTTP 409)."""


class AlreadyOwnedError(StoreError):
    """A pod is already controlled by a different owner."""
