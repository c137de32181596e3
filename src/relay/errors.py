"""Relay error taxonomy.

Only ``StartupError`` is allowed to end the process. Everything else is
contained inside the session that raised it.
"""

from __future__ import annotations

AUTH_REMEDIATION = """Authentication Error: Please check your Deepgram API key:
1. Verify the key in your .env file (DEEPGRAM_API_KEY)
2. Ensure the key hasn't expired
3. Check if the key has the necessary permissions"""


class RelayError(Exception):
    default_detail: str = "Relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class DecodeError(RelayError):
    default_detail = "Malformed frame."


class RelayConnectionError(RelayError):
    default_detail = "Connection failed."


class InboundConnectionError(RelayConnectionError):
    default_detail = "Inbound media stream failed."


class InboundClosed(RelayError):
    """Raised by an inbound channel when the peer disconnected cleanly."""

    default_detail = "Inbound media stream closed."

    def __init__(self, code: int | None = None, detail: str | None = None) -> None:
        super().__init__(detail)
        self.code = code


class OutboundConnectionError(RelayConnectionError):
    default_detail = "Transcription backend connection failed."

    def __init__(self, detail: str | None = None, *, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.status_code = status_code


class AuthenticationError(OutboundConnectionError):
    default_detail = "Transcription backend rejected the credentials."
    remediation: str = AUTH_REMEDIATION


class StartupError(RelayError):
    default_detail = "Failed to bind the listening endpoint."
