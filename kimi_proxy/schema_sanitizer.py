from __future__ import annotations

from typing import Any

_COMBINATORS = ("anyOf", "allOf", "oneOf")


def remove_uri_format(schema: Any) -> Any:
    """Return a copy of a JSON schema without ``format: "uri"`` on string types.

    The upstream provider rejects tool schemas carrying that constraint. The walk
    covers ``properties``, ``items``, ``additionalProperties`` and the
    ``anyOf``/``allOf``/``oneOf`` arrays; every other key is copied as-is
    (nested containers are copied too, so the input is never mutated).
    """
    if isinstance(schema, list):
        return [remove_uri_format(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    result: dict = {}
    strip_format = schema.get("type") == "string" and schema.get("format") == "uri"
    for key, value in schema.items():
        if strip_format and key == "format":
            continue
        if key == "properties" and isinstance(value, dict):
            result[key] = {name: remove_uri_format(sub) for name, sub in value.items()}
        elif key in _COMBINATORS and isinstance(value, list):
            result[key] = [remove_uri_format(sub) for sub in value]
        else:
            # items / additionalProperties / anything else nested
            result[key] = remove_uri_format(value)
    return result
