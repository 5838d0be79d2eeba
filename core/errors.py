"""figbridge — Bridge Error Taxonomy

Every pending caller is settled with exactly one of these (or a result).
Messages are short and human-readable; the MCP layer surfaces them as-is.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for failures a bridge caller can observe."""
    pass


class NotConnectedError(BridgeError):
    """No plugin session is present at dispatch time."""

    def __init__(self, message: str = (
        "Figma plugin not connected. Open a design file in Figma Desktop "
        "and run the \"AI Agent Bridge\" plugin."
    )):
        super().__init__(message)


class SendFailureError(BridgeError):
    """The transport rejected the outbound write."""
    pass


class RemoteError(BridgeError):
    """The plugin reported success=false. Carries the remote message verbatim."""

    def __init__(self, message: str, stack: str | None = None):
        super().__init__(message)
        self.stack = stack


class RequestTimeoutError(BridgeError):
    """No reply arrived before the request's deadline."""

    def __init__(self, request_id: str, timeout: float):
        super().__init__(
            f"Request {request_id} timed out after {timeout * 1000:.0f}ms"
        )
        self.request_id = request_id
        self.timeout = timeout


class ConnectionLostError(BridgeError):
    """Session closed or replaced while the request was outstanding."""
    pass


class MalformedMessageError(BridgeError):
    """Inbound data could not be decoded or correlated.

    Raised by the codec only; the listener logs and drops it.
    """
    pass


class DuplicateRequestIdError(RuntimeError):
    """A request id was registered twice. Indicates a bug in id generation."""
    pass
