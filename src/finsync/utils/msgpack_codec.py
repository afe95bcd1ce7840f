"""
msgpack_codec.py - MessagePack encoding of queue payloads.

A queue entry stores the record snapshot it will push as a MessagePack
blob. Keys are written in sorted order so the same snapshot always
encodes to the same bytes.
"""

import dataclasses
from typing import Any

import msgpack

from finsync.errors import ValidationError
from finsync.models import SyncableRecord, record_from_dict


def encode_fields(fields: dict[str, Any]) -> bytes:
    """
    Encode a field mapping with keys in sorted order.

    Raises:
        ValidationError: If a value has no MessagePack representation
    """
    try:
        return msgpack.packb({k: fields[k] for k in sorted(fields)}, use_bin_type=True)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Cannot encode payload: {e}", field="payload") from e


def decode_fields(blob: bytes) -> dict[str, Any]:
    """
    Decode a blob written by encode_fields.

    Raises:
        ValidationError: If the blob is corrupt or not a mapping
    """
    try:
        fields = msgpack.unpackb(blob, raw=False)
    except (msgpack.UnpackException, ValueError) as e:
        raise ValidationError(f"Cannot decode payload: {e}", field="payload", value=blob[:50]) from e
    if not isinstance(fields, dict):
        raise ValidationError(
            f"Payload must be a mapping, got {type(fields).__name__}", field="payload"
        )
    return fields


def pack_record(record: SyncableRecord) -> bytes:
    return encode_fields(dataclasses.asdict(record))


def unpack_record(table_name: str, blob: bytes) -> SyncableRecord:
    return record_from_dict(table_name, decode_fields(blob))
