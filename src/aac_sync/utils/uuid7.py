"""
uuid7.py - UUID v7 generation for local entity identifiers.

Local ids are time-ordered so that insertion order survives a
round-trip through the store even when timestamps collide.
"""

import os
import time
import uuid


def generate_uuid_v7() -> bytes:
    """
    Generate a UUID v7 (time-ordered) as raw 16 bytes.

    Structure:
    - 48 bits: Timestamp (ms)
    - 4 bits: Version (7)
    - 12 bits: rand_a
    - 2 bits: Variant (10)
    - 62 bits: rand_b
    """
    t_ms = int(time.time() * 1000)
    t_bytes = t_ms.to_bytes(8, byteorder="big")[2:]

    r = bytearray(os.urandom(10))
    # Byte 6 of the result carries the version nibble
    r[0] = (r[0] & 0x0F) | 0x70
    # Byte 8 of the result carries the variant bits
    r[2] = (r[2] & 0x3F) | 0x80

    return t_bytes + bytes(r)


def new_local_id() -> str:
    """Return a fresh local identifier in canonical UUID text form."""
    return str(uuid.UUID(bytes=generate_uuid_v7()))


def new_session_id() -> str:
    return str(uuid.uuid4())
