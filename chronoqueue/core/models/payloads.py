# chronoqueue/core/models/payloads.py
"""
Task payloads: a closed union discriminated by ``type``.

Python attribute names are snake_case; the stored JSON (and what producers
usually send) uses camelCase. Both spellings are accepted on input.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from chronoqueue.core.errors import ErrorCode, PayloadValidationError


class _PayloadBase(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class PhotoPayload(_PayloadBase):
    """Ingest a newly stored image (metadata, thumbnail, hash, live-photo pairing)."""

    type: Literal['photo'] = 'photo'
    storage_key: str = Field(min_length=1)


class LivePhotoVideoPayload(_PayloadBase):
    """Pair a motion video artifact with an already ingested photo."""

    type: Literal['live-photo-video'] = 'live-photo-video'
    storage_key: str = Field(min_length=1)


class PhotoReverseGeocodingPayload(_PayloadBase):
    """Resolve coordinates to place names and patch the photo record."""

    type: Literal['photo-reverse-geocoding'] = 'photo-reverse-geocoding'
    photo_id: str = Field(min_length=1)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)


class CleanupStoragePayload(_PayloadBase):
    """Delete an object's original, thumbnail and video files from storage."""

    type: Literal['cleanup-storage'] = 'cleanup-storage'
    storage_key: str = Field(min_length=1)
    thumbnail_key: str | None = None
    live_photo_video_key: str | None = None


class WriteExifPayload(_PayloadBase):
    """Apply a metadata patch and re-persist the underlying file."""

    type: Literal['write-exif'] = 'write-exif'
    photo_id: str = Field(min_length=1)
    updates: dict[str, Any] = Field(min_length=1)


TaskPayload = Annotated[
    Union[
        PhotoPayload,
        LivePhotoVideoPayload,
        PhotoReverseGeocodingPayload,
        CleanupStoragePayload,
        WriteExifPayload,
    ],
    Field(discriminator='type'),
]

PAYLOAD_CLASSES: tuple[type[_PayloadBase], ...] = (
    PhotoPayload,
    LivePhotoVideoPayload,
    PhotoReverseGeocodingPayload,
    CleanupStoragePayload,
    WriteExifPayload,
)

TASK_TYPES: tuple[str, ...] = (
    'photo',
    'live-photo-video',
    'photo-reverse-geocoding',
    'cleanup-storage',
    'write-exif',
)

_payload_adapter: TypeAdapter[Any] = TypeAdapter(TaskPayload)


def parse_payload(raw: Any) -> TaskPayload:
    """Validate a dict (or an existing payload model) into a concrete payload.

    Raises:
        PayloadValidationError: on a missing/unknown ``type`` or bad fields.
    """
    if isinstance(raw, PAYLOAD_CLASSES):
        return raw
    try:
        return _payload_adapter.validate_python(raw)
    except ValidationError as exc:
        errors = exc.errors(include_url=False)
        unknown_type = any(
            e.get('type') in ('union_tag_invalid', 'union_tag_not_found')
            for e in errors
        )
        notes = [
            f"{'.'.join(str(p) for p in e.get('loc', ())) or '<payload>'}: {e.get('msg')}"
            for e in errors
        ]
        raise PayloadValidationError(
            message=(
                'unknown task payload type' if unknown_type else 'invalid task payload'
            ),
            code=(
                ErrorCode.PAYLOAD_UNKNOWN_TYPE
                if unknown_type
                else ErrorCode.PAYLOAD_INVALID
            ),
            notes=notes,
            help_text=f"payload 'type' must be one of: {', '.join(TASK_TYPES)}",
        ) from exc


def payload_to_json(payload: TaskPayload) -> dict[str, Any]:
    """Serialize a payload to the camelCase dict stored in the queue table."""
    return payload.model_dump(mode='json', by_alias=True, exclude_none=True)
