from __future__ import annotations


class DomainError(Exception):
    pass


class ValidationError(DomainError):
    pass


class NotFoundError(DomainError):
    pass


class AssignmentNotFoundError(NotFoundError):
    pass


class ContextNotFoundError(NotFoundError):
    pass


class ConflictError(DomainError):
    pass


class AuthError(DomainError):
    pass
