"""Error taxonomy shared by the store, the relay and the HTTP layer."""

from __future__ import annotations


class DeviceHooksError(Exception):
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(DeviceHooksError):
    status_code = 400


class Unauthorized(DeviceHooksError):
    status_code = 401


class AuthorizationError(DeviceHooksError):
    status_code = 403


class NotFoundError(DeviceHooksError):
    status_code = 404


class StorageError(DeviceHooksError):
    status_code = 500


class DeliveryError(DeviceHooksError):
    """A single subscriber delivery failed. Recorded by the relay, never raised to callers."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{url}: {message}")
        self.url = url
