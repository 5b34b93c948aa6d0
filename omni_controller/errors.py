"""Controller error taxonomy.

Three families matter to the reconcilers:

- transient absence: a dependency is not visible yet. Steps return without
  raising and wait for the dependency's own write to re-trigger them.
- terminal precondition failure (``InvalidReferenceError``): a dependency is
  confirmed gone or invalid. Recorded into the dependent object's status.
- infrastructure errors (store failures, ``ConflictError``): propagated to
  the dispatcher, which retries with backoff.
"""

from __future__ import annotations

from typing import Any


class ControllerError(Exception):
    """Base exception for the controller."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: str = "E5000",
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}
        super().__init__(message)


class NotFoundError(ControllerError):
    """Resource not found."""

    def __init__(self, kind: str, name: str, namespace: str | None = None):
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(
            f"{kind} {where} not found",
            status_code=404,
            code="E4040",
            details={"kind": kind, "name": name, "namespace": namespace},
        )
        self.kind = kind
        self.name = name


class AlreadyExistsError(ControllerError):
    """Resource with the same key already exists."""

    def __init__(self, kind: str, name: str, namespace: str | None = None):
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} {where} already exists", status_code=409, code="E4090")
        self.kind = kind
        self.name = name


class ConflictError(ControllerError):
    """Write against a stale resource version."""

    def __init__(self, kind: str, name: str, expected: int, actual: int):
        super().__init__(
            f"{kind} {name} was modified (resource version {expected} != {actual})",
            status_code=409,
            code="E4091",
            details={"expected": expected, "actual": actual},
        )


class BadRequestError(ControllerError):
    """Invalid operation request."""

    def __init__(self, message: str):
        super().__init__(message, status_code=400, code="E4000")


class InvalidReferenceError(ControllerError):
    """A referenced object exists but cannot be used (e.g. ancestor is not a project)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=422, code="E4220")


class InvokerError(ControllerError):
    """Invoker call failed."""

    def __init__(self, message: str):
        super().__init__(message, status_code=502, code="E3000")


