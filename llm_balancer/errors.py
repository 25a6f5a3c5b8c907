from __future__ import annotations


class UpstreamError(Exception):
    """A failed backend attempt.

    ``retryable`` tells the retry loop whether another backend may be tried.
    It is false once any part of the response has reached the client.
    """

    retryable = True

    def __init__(self, backend_name: str, message: str) -> None:
        self.backend_name = backend_name
        super().__init__(message)


class UpstreamTransportError(UpstreamError):
    def __init__(self, backend_name: str, error: str, *, error_type: str) -> None:
        self.error_type = error_type
        super().__init__(backend_name, f"request failed ({error_type}): {error}")


class UpstreamHTTPError(UpstreamError):
    def __init__(self, backend_name: str, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(backend_name, f"HTTP {status_code}")


class NoUsableModelError(UpstreamError):
    def __init__(self, backend_name: str) -> None:
        super().__init__(
            backend_name, "backend has no default model and no listed models"
        )


class StreamProtocolError(UpstreamError):
    def __init__(self, backend_name: str, max_line_bytes: int) -> None:
        self.max_line_bytes = max_line_bytes
        super().__init__(
            backend_name, f"stream line exceeds {max_line_bytes} bytes"
        )


class PartialRelayError(UpstreamError):
    retryable = False

    def __init__(self, backend_name: str, error: str) -> None:
        super().__init__(backend_name, f"relay interrupted: {error}")
