"""Wire codecs for both sides of the relay.

Inbound frames are Twilio Media Streams JSON envelopes; media payloads are
base64-encoded PCMU which is relayed untouched. Outbound replies are
Deepgram-style streaming results. Any malformed input surfaces as
``DecodeError`` and nothing else.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from relay.errors import DecodeError

MEDIA_EVENT = "media"


class EventKind(str, Enum):
    MEDIA = "media"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class MediaEvent:
    kind: EventKind
    event: str
    payload: bytes | None = None
    track: str | None = None
    stream_sid: str | None = None
    call_sid: str | None = None

    @property
    def has_payload(self) -> bool:
        return self.kind is EventKind.MEDIA and bool(self.payload)


@dataclass(frozen=True, slots=True)
class TranscriptEvent:
    alternatives: list[str] = field(default_factory=list)
    is_final: bool | None = None
    kind: str | None = None

    @property
    def text(self) -> str:
        """First alternative's transcript, or an empty string."""

        if not self.alternatives:
            return ""
        return self.alternatives[0]


def _text_or_none(value: Any) -> Any:
    return value if isinstance(value, str) else None


class _TwilioMedia(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payload: str | None = None
    track: str | None = None

    @field_validator("track", mode="before")
    @classmethod
    def ignore_non_text_track(cls, value: Any) -> Any:
        return _text_or_none(value)


class _TwilioStart(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    call_sid: str | None = Field(default=None, alias="callSid")
    stream_sid: str | None = Field(default=None, alias="streamSid")

    @field_validator("call_sid", "stream_sid", mode="before")
    @classmethod
    def ignore_non_text_ids(cls, value: Any) -> Any:
        return _text_or_none(value)


class _TwilioEnvelope(BaseModel):
    """Only ``event`` and ``media.payload`` are contractual; the rest is for logs."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event: str = ""
    stream_sid: str | None = Field(default=None, alias="streamSid")
    media: Any = None
    start: _TwilioStart | None = None

    @field_validator("event", mode="before")
    @classmethod
    def non_text_event_is_other(cls, value: Any) -> Any:
        return value if isinstance(value, str) else ""

    @field_validator("stream_sid", mode="before")
    @classmethod
    def ignore_non_text_stream_sid(cls, value: Any) -> Any:
        return _text_or_none(value)

    @field_validator("start", mode="before")
    @classmethod
    def ignore_non_object_start(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None


class _Alternative(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transcript: str | None = None


class _Channel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    alternatives: list[_Alternative] = Field(default_factory=list)


class _StreamingResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str | None = None
    is_final: bool | None = None
    channel: _Channel | None = None

    @field_validator("channel", mode="before")
    @classmethod
    def ignore_non_object_channel(cls, value: Any) -> Any:
        # UtteranceEnd messages carry "channel": [0, 1] instead of a result.
        if isinstance(value, dict):
            return value
        return None


def decode_inbound(raw: str | bytes) -> MediaEvent:
    """Decode one Twilio Media Streams frame.

    Raises:
        DecodeError: if the frame is not a JSON object of the expected shape or
            the media payload is not valid base64.
    """

    try:
        envelope = _TwilioEnvelope.model_validate_json(raw)
    except ValidationError as exc:
        raise DecodeError(f"Invalid media stream envelope: {_first_error(exc)}") from exc

    stream_sid = envelope.stream_sid
    call_sid = None
    if envelope.start is not None:
        call_sid = envelope.start.call_sid
        stream_sid = stream_sid or envelope.start.stream_sid

    if envelope.event != MEDIA_EVENT:
        return MediaEvent(
            kind=EventKind.OTHER,
            event=envelope.event,
            stream_sid=stream_sid,
            call_sid=call_sid,
        )

    if not isinstance(envelope.media, dict):
        return MediaEvent(kind=EventKind.MEDIA, event=envelope.event, stream_sid=stream_sid)

    try:
        media = _TwilioMedia.model_validate(envelope.media)
    except ValidationError as exc:
        raise DecodeError(f"Invalid media payload: {_first_error(exc)}") from exc

    if not media.payload:
        return MediaEvent(kind=EventKind.MEDIA, event=envelope.event, track=media.track, stream_sid=stream_sid)

    try:
        payload = base64.b64decode(media.payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError("Media payload is not valid base64") from exc

    return MediaEvent(
        kind=EventKind.MEDIA,
        event=envelope.event,
        payload=payload,
        track=media.track,
        stream_sid=stream_sid,
    )


def encode_outbound_audio(payload: bytes) -> bytes:
    """Raw PCMU bytes become the backend's binary message as-is."""

    return payload


def decode_transcript(raw: str | bytes | bytearray | memoryview) -> TranscriptEvent:
    """Decode one backend message into a ``TranscriptEvent``.

    Binary frames are treated as UTF-8 text. Messages without alternatives
    (metadata, utterance end, empty results) decode to an event with no text.

    Raises:
        DecodeError: if the message is not UTF-8 JSON of the expected shape.
    """

    if isinstance(raw, (bytes, bytearray, memoryview)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError("Backend message is not valid UTF-8") from exc

    try:
        result = _StreamingResult.model_validate_json(raw)
    except ValidationError as exc:
        raise DecodeError(f"Invalid transcription message: {_first_error(exc)}") from exc

    alternatives: list[str] = []
    if result.channel is not None:
        alternatives = [alt.transcript or "" for alt in result.channel.alternatives]

    return TranscriptEvent(alternatives=alternatives, is_final=result.is_final, kind=result.type)


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
    return f"{loc}: {first.get('msg', 'invalid')}"
