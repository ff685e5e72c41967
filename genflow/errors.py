from __future__ import annotations


class GenflowError(Exception):
    """Base error carrying the HTTP status the gateway answers with."""

    status = 400


class AlreadyRunningError(GenflowError):
    pass


class InvalidActionError(GenflowError):
    pass


class InvalidConfigError(InvalidActionError):
    pass


class MethodNotAllowedError(GenflowError):
    status = 405


class WorkerIOError(GenflowError):
    status = 500
