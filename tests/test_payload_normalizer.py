"""Tests for tool-call payload unwrapping."""

import pytest

from voice_gateway.services.payload_normalizer import (
    extract_payload,
    normalize_tool_payload,
    parse_maybe_json,
    strip_meta,
)

CALL = {"call_id": "call-1", "agent_id": "agent_1", "from_number": "+12677210098"}


class TestEnvelopes:
    @pytest.mark.parametrize("body", [
        {"args": {"input": {"phone": "2677210098"}}},
        {"args": {"arguments": {"phone": "2677210098"}}},
        {"args": {"payload": {"phone": "2677210098"}}},
        {"args": {"phone": "2677210098"}},
        {"args": '{"phone": "2677210098"}'},
        {"input": {"phone": "2677210098"}},
        {"payload": '{"phone": "2677210098"}'},
        {"parameters": {"phone": "2677210098"}},
        {"data": {"phone": "2677210098"}},
        {"phone": "2677210098", "call": CALL},
    ])
    def test_all_shapes_unwrap_to_same_args(self, body):
        assert normalize_tool_payload(body).args == {"phone": "2677210098"}

    def test_nested_json_string(self):
        body = {"args": {"input": '{"booking_id": "BK1"}'}}
        assert extract_payload(body) == {"booking_id": "BK1"}

    def test_empty_candidate_skipped(self):
        body = {"args": {"input": {}, "phone": "1"}}
        assert normalize_tool_payload(body).args == {"phone": "1"}

    def test_call_and_name_kept_separately(self):
        normalized = normalize_tool_payload({"name": "lookup_customer", "call": CALL, "args": {"phone": "1"}})
        assert normalized.tool_name == "lookup_customer"
        assert normalized.call == CALL
        assert "call" not in normalized.args

    @pytest.mark.parametrize("body", [None, "text", [1, 2], 42])
    def test_non_object_bodies(self, body):
        normalized = normalize_tool_payload(body)
        assert normalized.args == {}
        assert normalized.call == {}
        assert normalized.tool_name is None


class TestStripMeta:
    def test_meta_keys_and_prefixes_removed(self):
        data = {
            "phone": "1",
            "tool_call_id": "x",
            "execution_message": "Looking you up",
            "retell_llm_dynamic_variables": {},
            "tool_version": 2,
        }
        assert strip_meta(data) == {"phone": "1"}

    def test_recurses_into_lists(self):
        data = {"segments": [{"service_variation_id": "SV1", "callId": "c"}]}
        assert strip_meta(data) == {"segments": [{"service_variation_id": "SV1"}]}


class TestParseMaybeJson:
    def test_object_and_array(self):
        assert parse_maybe_json('{"a": 1}') == {"a": 1}
        assert parse_maybe_json(" [1, 2] ") == [1, 2]

    def test_invalid_json_returned_unchanged(self):
        assert parse_maybe_json("{not json}") == "{not json}"

    def test_plain_values_untouched(self):
        assert parse_maybe_json("hello") == "hello"
        assert parse_maybe_json(5) == 5
