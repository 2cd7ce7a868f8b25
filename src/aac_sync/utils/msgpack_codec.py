"""
msgpack_codec.py - Canonical MessagePack serialization for queued peer messages.

Store-and-forward messages are persisted in the outbox as MessagePack.
Keys are sorted so identical messages produce identical bytes.
"""

from typing import Any

import msgpack

from aac_sync.errors import ValidationError


def pack_message(data: dict[str, Any]) -> bytes:
    """
    Serialize a flat peer message to canonical MessagePack.

    Raises:
        ValidationError: If data cannot be serialized
    """
    if not isinstance(data, dict):
        raise ValidationError("Peer message must be a dict", field="data", value=data)
    try:
        return msgpack.packb(_canonicalize(data), use_bin_type=True)
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Cannot serialize message to MessagePack: {e}",
            field="data",
            value=data,
        ) from e


def unpack_message(data: bytes) -> dict[str, Any]:
    """
    Deserialize a peer message from MessagePack.

    Raises:
        ValidationError: If data cannot be deserialized or is not a map
    """
    try:
        result = msgpack.unpackb(data, raw=False)
    except (msgpack.UnpackException, ValueError) as e:
        raise ValidationError(
            f"Cannot deserialize MessagePack: {e}",
            field="data",
            value=data[:50] if len(data) > 50 else data,
        ) from e
    if not isinstance(result, dict):
        raise ValidationError(
            f"Expected map, got {type(result).__name__}",
            field="data",
        )
    return result


def _canonicalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _canonicalize(value[k]) for k in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [_canonicalize(v) for v in value]
    return value
