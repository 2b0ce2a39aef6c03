"""Serialization of Kubernetes-style objects to and from YAML."""

from __future__ import annotations

import json
from typing import Any, TextIO, Union

import yaml

_STRIPPED_FIELDS: tuple[tuple[str, ...], ...] = (
    ("metadata", "creationTimestamp"),
    ("template", "metadata", "creationTimestamp"),
    ("spec", "template", "metadata", "creationTimestamp"),
    ("status",),
)


def _remove_nested_field(obj: dict[str, Any], *path: str) -> None:
    *parents, last = path
    node: Any = obj
    for key in parents:
        if not isinstance(node, dict):
            return
        node = node.get(key)
    if isinstance(node, dict):
        node.pop(last, None)


def serialize_object(obj: dict[str, Any], out: TextIO) -> None:
    """Write ``obj`` as YAML to ``out``, without status and creation timestamps.

    The object itself is left untouched. Raises TypeError if it holds values
    that cannot be represented as JSON.
    """
    data = json.loads(json.dumps(obj))
    if not isinstance(data, dict):
        raise TypeError(f"expected a mapping, got {type(obj).__name__}")
    for path in _STRIPPED_FIELDS:
        _remove_nested_field(data, *path)
    yaml.safe_dump(data, out, default_flow_style=False, sort_keys=True, allow_unicode=True)


def deserialize_object(data: Union[bytes, str]) -> dict[str, Any]:
    """Parse a single YAML or JSON document into an object mapping.

    Raises ValueError if the document is malformed, is not a mapping, or
    lacks ``kind`` or ``apiVersion``.
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    try:
        obj = yaml.safe_load(data)
    except yaml.YAMLError as err:
        raise ValueError(f"cannot parse object: {err}") from err
    if not isinstance(obj, dict):
        raise ValueError("cannot parse object: document is not a mapping")
    if not obj.get("kind"):
        raise ValueError("Object 'Kind' is missing")
    if not obj.get("apiVersion"):
        raise ValueError("Object 'apiVersion' is missing")
    return obj