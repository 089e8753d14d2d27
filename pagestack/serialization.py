"""JSON-safety boundary for persisted command records.

Every record written to storage passes through :func:`to_json_safe`.  The
walk rejects anything that would not survive ``json.dumps``/``json.loads``
unchanged (datetimes, sets, binary buffers, tuples, non-finite floats,
arbitrary objects), then returns a deep copy that shares nothing with the
live command.
"""

from __future__ import annotations

import datetime
import json
import math
import re
from typing import Any


class JsonSafetyError(ValueError):
    """A command payload holds a value that cannot be persisted losslessly."""


def _assert_json_safe(value: Any, path: str) -> None:
    if value is None or isinstance(value, (str, bool, int)):
        return

    if isinstance(value, float):
        if not math.isfinite(value):
            raise JsonSafetyError(f"{path} must be a finite number.")
        return

    if isinstance(value, list):
        for i, item in enumerate(value):
            _assert_json_safe(item, f"{path}[{i}]")
        return

    if isinstance(value, dict):
        for key, nested in value.items():
            if not isinstance(key, str):
                raise JsonSafetyError(f"{path} has non-string key {key!r}.")
            _assert_json_safe(nested, f"{path}.{key}")
        return

    if isinstance(value, (datetime.date, datetime.time, datetime.timedelta)):
        raise JsonSafetyError(f"{path} contains a date/time value. Encode it to string/number first.")
    if isinstance(value, (set, frozenset)):
        raise JsonSafetyError(f"{path} contains a set. Encode it as a list first.")
    if isinstance(value, (bytes, bytearray, memoryview)):
        raise JsonSafetyError(f"{path} contains binary data. Encode it before persistence.")
    if isinstance(value, tuple):
        raise JsonSafetyError(f"{path} contains a tuple. Use a list instead.")
    if isinstance(value, re.Pattern):
        raise JsonSafetyError(f"{path} contains a regex. Encode it as a string first.")
    raise JsonSafetyError(f"{path} contains unsupported value of type {type(value).__name__}.")


def assert_serialized_command_shape(record: dict[str, Any]) -> None:
    """Validate the envelope and the payload of a serialized command."""
    if not isinstance(record, dict):
        raise JsonSafetyError("Serialized command must be a mapping.")

    command_type = record.get("type")
    if not isinstance(command_type, str) or not command_type:
        raise JsonSafetyError('Serialized command "type" must be a non-empty string.')

    timestamp = record.get("timestamp")
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) or not math.isfinite(timestamp):
        raise JsonSafetyError('Serialized command "timestamp" must be a finite number.')

    version = record.get("version")
    if isinstance(version, bool) or not isinstance(version, int):
        raise JsonSafetyError('Serialized command "version" must be an integer.')

    payload = record.get("payload")
    if not isinstance(payload, dict):
        raise JsonSafetyError('Serialized command "payload" must be a plain mapping.')

    payload_id = payload.get("id")
    if not isinstance(payload_id, str) or not payload_id:
        raise JsonSafetyError('Serialized command "payload.id" must be a non-empty string.')

    _assert_json_safe(payload, "payload")


def to_json_safe(record: dict[str, Any]) -> dict[str, Any]:
    """Validate a serialized command and return a fully detached copy."""
    assert_serialized_command_shape(record)
    return json.loads(json.dumps(record))
