"""
ids.py - Client-generated record identifiers.

Records are identified by UUID v7 strings so that ids sort by creation
time and stay stable across sync: the remote authority never reassigns
them.
"""

import os
import time
import uuid


def generate_uuid_v7() -> bytes:
    """
    Generate a UUID v7 (time-ordered) as raw 16 bytes.

    Layout: 48-bit millisecond timestamp, version nibble 7,
    variant bits 10, remaining bits random.
    """
    t_ms = int(time.time() * 1000)
    t_bytes = t_ms.to_bytes(8, byteorder="big")[2:]

    r = bytearray(os.urandom(10))
    # Byte 6 of the result carries the version, byte 8 the variant
    r[0] = (r[0] & 0x0F) | 0x70
    r[2] = (r[2] & 0x3F) | 0x80

    return t_bytes + bytes(r)


def new_id() -> str:
    """Return a new record id in canonical hyphenated form."""
    return str(uuid.UUID(bytes=generate_uuid_v7()))
