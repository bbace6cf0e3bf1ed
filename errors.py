"""Error types raised by the panel and mapped to HTTP responses in app.py."""


class PanelError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(PanelError):
    status_code = 400

    def __init__(self, message: str, missing_fields: list[str] | None = None):
        super().__init__(message)
        self.missing_fields = missing_fields or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.missing_fields:
            data["missingFields"] = self.missing_fields
        return data


class AuthorizationError(PanelError):
    status_code = 403


class NotFoundError(PanelError):
    status_code = 404


class NodeConfigurationError(PanelError):
    status_code = 500


class RemoteCallError(PanelError):
    """Node daemon call failed (transport error, timeout, 4xx or 5xx)."""

    status_code = 502

    def __init__(self, message: str, remote_status: int | None = None,
                 remote_body=None, timed_out: bool = False):
        super().__init__(message)
        self.remote_status = remote_status
        self.remote_body = remote_body
        self.timed_out = timed_out
        if timed_out:
            self.status_code = 504

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.remote_status is not None:
            data["nodeStatus"] = self.remote_status
        if self.remote_body:
            data["nodeResponse"] = self.remote_body
        return data


class StorageError(PanelError):
    status_code = 500
