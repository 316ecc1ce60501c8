class GatewayError(Exception):
    """Base class for errors raised while talking to the gateway."""


class GatewayRequestError(GatewayError):
    """The gateway answered a REST call with a non-200 status.

    The response body is kept verbatim, the router explains failures
    (e.g. "chip busy") in plain text there.
    """

    def __init__(self, status, body):
        super().__init__(f"HTTP {status}: {body}")
        self.status = status
        self.body = body


class StreamError(GatewayError):
    """An event stream could not be opened or was consumed twice."""


class ScanEventError(GatewayError, ValueError):
    """A scan event payload is not in the expected shape."""
