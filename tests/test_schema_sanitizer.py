import copy

from kimi_proxy.schema_sanitizer import remove_uri_format


SCHEMA = {
    "type": "object",
    "properties": {
        "url": {"type": "string", "format": "uri", "description": "Page to fetch"},
        "when": {"type": "string", "format": "date-time"},
        "links": {"type": "array", "items": {"type": "string", "format": "uri"}},
        "target": {
            "anyOf": [
                {"type": "string", "format": "uri"},
                {"type": "null"},
            ]
        },
        "headers": {
            "type": "object",
            "additionalProperties": {"type": "string", "format": "uri"},
        },
        "nested": {
            "type": "object",
            "properties": {
                "homepage": {"oneOf": [{"type": "string", "format": "uri"}]},
                "mirrors": {"allOf": [{"type": "array", "items": {"type": "string", "format": "uri"}}]},
            },
        },
    },
    "required": ["url"],
}


def test_uri_format_removed_at_every_level():
    out = remove_uri_format(SCHEMA)
    props = out["properties"]
    assert props["url"] == {"type": "string", "description": "Page to fetch"}
    assert props["links"]["items"] == {"type": "string"}
    assert props["target"]["anyOf"] == [{"type": "string"}, {"type": "null"}]
    assert props["headers"]["additionalProperties"] == {"type": "string"}
    assert props["nested"]["properties"]["homepage"]["oneOf"] == [{"type": "string"}]
    assert props["nested"]["properties"]["mirrors"]["allOf"][0]["items"] == {"type": "string"}


def test_other_formats_and_keys_untouched():
    out = remove_uri_format(SCHEMA)
    assert out["properties"]["when"] == {"type": "string", "format": "date-time"}
    assert out["required"] == ["url"]
    assert out["type"] == "object"
    # "format: uri" on a non-string type is not ours to touch
    assert remove_uri_format({"type": "object", "format": "uri"}) == {"type": "object", "format": "uri"}


def test_input_is_not_mutated():
    before = copy.deepcopy(SCHEMA)
    out = remove_uri_format(SCHEMA)
    assert SCHEMA == before
    out["required"].append("when")
    assert SCHEMA["required"] == ["url"]


def test_sanitizing_is_idempotent():
    once = remove_uri_format(SCHEMA)
    assert remove_uri_format(once) == once


def test_non_dict_values_pass_through():
    assert remove_uri_format(None) is None
    assert remove_uri_format(True) is True
    assert remove_uri_format("string") == "string"
