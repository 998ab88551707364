"""
Message codec used for bulk export/import.

A message record is serialized as compact JSON and then base64 encoded so it
can be stored or shipped anywhere a plain ASCII string fits.
"""

import base64
import binascii
import json
import logging
from typing import Any, Dict, Iterable, List

from common import encode
from errors import CodecError

logger = logging.getLogger(__name__)


def encode_message(message: Dict[str, Any]) -> str:
    try:
        raw = encode(message).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise CodecError(f"Cannot encode message: {e}") from e
    return base64.b64encode(raw).decode("ascii")

def decode_message(encoded: str) -> Dict[str, Any]:
    try:
        raw = base64.b64decode(encoded, validate=True)
        message = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, TypeError, ValueError) as e:
        raise CodecError(f"Cannot decode message: {e}") from e
    if not isinstance(message, dict):
        raise CodecError("Decoded message is not an object")
    return message

def encode_messages(messages: Iterable[Dict[str, Any]]) -> List[str]:
    return [encode_message(m) for m in messages]

def decode_messages(encoded: Iterable[str]) -> List[Dict[str, Any]]:
    """Decodes a batch, skipping entries that do not decode."""
    out: List[Dict[str, Any]] = []
    for item in encoded:
        try:
            out.append(decode_message(item))
        except CodecError as e:
            logger.warning("Skipping undecodable message: %s", e)
    return out
