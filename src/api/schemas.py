"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

import base64
import binascii
import re

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, model_validator

from src.models import StructuredAction

# ~7 MB of base64 is ~5 MB of image
MAX_PHOTO_BASE64_CHARS = 7_000_000
MAX_QUOTE_PHOTOS = 5

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,")


class PhotoPayload(BaseModel):
    """An image sent by the widget as base64 (a ``data:`` URL prefix is accepted)."""

    data: str = Field(..., min_length=1)
    type: str = Field(default="image/jpeg", description="MIME type")
    name: str = Field(default="photo.jpg", max_length=200)

    @model_validator(mode="after")
    def _strip_data_url(self) -> PhotoPayload:
        match = _DATA_URL_RE.match(self.data)
        if match:
            self.type = match.group("mime")
            self.data = self.data[match.end():]
        return self

    @property
    def too_large(self) -> bool:
        return len(self.data) > MAX_PHOTO_BASE64_CHARS

    def decode(self) -> bytes:
        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("photo data is not valid base64") from exc


class TurnContextPayload(BaseModel):
    channel: str = Field(default="webchat", max_length=50)
    page: str | None = Field(default=None, max_length=500)


class TurnRequest(BaseModel):
    """One chat turn from the website widget."""

    thread_id: str | None = Field(
        default=None, max_length=100, validation_alias=AliasChoices("thread_id", "threadId"),
    )
    message: str | None = Field(default=None, max_length=4000)
    photo: PhotoPayload | None = None
    context: TurnContextPayload = Field(default_factory=TurnContextPayload)

    @model_validator(mode="after")
    def _require_content(self) -> TurnRequest:
        if not (self.message and self.message.strip()) and self.photo is None:
            raise ValueError("message or photo is required")
        return self


class _ThreadIdAlias(BaseModel):
    """Echoes ``thread_id`` as ``threadId`` for the embedded chat widget."""

    thread_id: str

    @computed_field(alias="threadId")
    @property
    def thread_id_camel(self) -> str:
        return self.thread_id


class TurnResponse(_ThreadIdAlias):
    message: str
    action: StructuredAction | None = None


class ThreadResponse(_ThreadIdAlias):
    pass


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "repair-asap-lead-bot"
    connectors: dict[str, bool] = Field(default_factory=dict)


class QuoteRequest(BaseModel):
    """The website's "get a quote" form.  Required fields are checked by the route."""

    name: str = ""
    phone: str = ""
    email: str | None = None
    service: str | None = None
    date: str | None = None
    message: str | None = Field(default=None, max_length=4000)
    photos: list[PhotoPayload] = Field(default_factory=list)


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


class QuoteResponse(BaseModel):
    success: bool = True
    contact_id: str | None = Field(default=None, serialization_alias="contactId")
    photos_uploaded: int = Field(default=0, serialization_alias="photosUploaded")


class SheetJobRequest(BaseModel):
    """A queued lead row; field names follow the queue producer."""

    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str | None = None
    service: str | None = None
    address: str | None = None
    zip: str | None = None
    message: str | None = None
    source: str = "queue"
    timestamp: str | None = None


class InboundPreviewRequest(BaseModel):
    """Dry-run of an inbound CRM reply; optionally against a real contact."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(default="How much for TV mounting?", min_length=1, max_length=4000)
    channel: str | None = Field(default=None, max_length=50)
    contact_id: str | None = Field(default=None, alias="contactId", max_length=100)
    customer_name: str | None = Field(default=None, alias="customerName", max_length=200)
