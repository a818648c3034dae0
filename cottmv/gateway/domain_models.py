import datetime as dt
from datetime import datetime
from enum import StrEnum, auto

from pydantic import BaseModel as PydanticModel
from sqlmodel import Column, DateTime, Field, SQLModel


class MediaType(StrEnum):
    VIDEO = auto()
    AUDIO = auto()
    IMAGE = auto()
    DOCUMENT = auto()


class Media(SQLModel, table=True):
    """A file stored in the vault."""

    id: int | None = Field(default=None, primary_key=True)

    title: str
    media_type: MediaType = Field(index=True)
    mime_type: str
    file_path: str  # relative to settings.media_dir unless absolute
    file_size: int = 0
    file_hash: str | None = Field(default=None, index=True)  # sha256 of contents, if known

    duration: float | None = None
    width: int | None = None
    height: int | None = None

    ocr_text: str | None = None

    created: datetime = Field(
        default_factory=lambda: datetime.now(tz=dt.UTC),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class MediaCreate(PydanticModel):
    title: str
    file_path: str
    media_type: MediaType | None = None  # guessed from the mime type when omitted
    mime_type: str | None = None
    compute_hash: bool = False


class MediaRead(PydanticModel):
    id: int
    title: str
    media_type: MediaType
    mime_type: str
    file_path: str
    file_size: int
    file_hash: str | None
    duration: float | None
    width: int | None
    height: int | None
    ocr_text: str | None
    created: datetime
