"""
Domain errors raised by the store, repository and workflow modules.

Each error carries the HTTP status the API answers with; main.py turns any
DomainError into {"detail": message}.
"""


class DomainError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    status_code = 400


class InvalidCredentials(DomainError):
    status_code = 401

    def __init__(self, message: str = "Invalid credentials. Please check your email and password."):
        super().__init__(message)


class AccountNotApproved(DomainError):
    status_code = 403

    def __init__(self, message: str = "Your account is pending Admin approval. Please contact support."):
        super().__init__(message)


class PermissionDenied(DomainError):
    status_code = 403


class NotFound(DomainError):
    status_code = 404

    def __init__(self, kind: str, item_id: str):
        super().__init__(f"{kind} {item_id} not found")
        self.kind = kind
        self.item_id = item_id


class AssetUnavailable(DomainError):
    status_code = 409


class InvalidTransition(DomainError):
    status_code = 409


class StoreConflict(DomainError):
    status_code = 409

    def __init__(self, message: str = "The record was changed by someone else. Please retry."):
        super().__init__(message)


class StoreUnavailable(DomainError):
    status_code = 503

    def __init__(self, message: str = "Connection Error. Please check your internet."):
        super().__init__(message)
