"""Tests for schema data models and conversation records."""
import pytest
from pydantic import ValidationError

from models.schemas import (
    FieldSpec, FieldType, Message, MessageRole, Schema, ToolCall, ToolCallRecord,
    array_field, enum_field, number_field, object_field, string_field,
)


@pytest.fixture
def order_schema() -> Schema:
    return Schema(name="Order", properties=(
        string_field("id"),
        object_field("dropoff", [
            number_field("lat"), number_field("lng"),
            string_field("address", required=False),
        ]),
        array_field("stops", object_field("stop", [number_field("lat"), number_field("lng")])),
    ))


class TestSchema:
    def test_field_lookup(self, order_schema):
        assert order_schema.field("id").type == FieldType.STRING
        assert order_schema.field("missing") is None

    def test_has_path_nested(self, order_schema):
        assert order_schema.has_path("dropoff.lat")
        assert order_schema.has_path("dropoff.address")
        assert not order_schema.has_path("dropoff.zip")
        assert not order_schema.has_path("pickup.lat")

    def test_has_path_through_array(self, order_schema):
        assert order_schema.has_path("stops.0.lat")
        assert not order_schema.has_path("stops.0.zip")

    def test_required_names(self, order_schema):
        assert order_schema.required_names == ["id", "dropoff", "stops"]

    def test_schema_is_immutable(self, order_schema):
        with pytest.raises(ValidationError):
            order_schema.name = "Other"

    def test_equal_schemas_hash_equal(self):
        a = Schema(name="Loc", properties=(number_field("lat"),))
        b = Schema(name="Loc", properties=(number_field("lat"),))
        assert a == b
        assert hash(a) == hash(b)


class TestFieldSpec:
    def test_enum_requires_choices(self):
        with pytest.raises(ValidationError):
            FieldSpec(name="confidence", type=FieldType.ENUM)

    def test_array_requires_items(self):
        with pytest.raises(ValidationError):
            FieldSpec(name="stops", type=FieldType.ARRAY)

    def test_enum_builder(self):
        spec = enum_field("confidence", ["High", "Medium", "Low"], required=False)
        assert spec.choices == ("High", "Medium", "Low")
        assert not spec.required

    def test_child(self):
        spec = object_field("loc", [number_field("lat")])
        assert spec.child("lat").name == "lat"
        assert spec.child("lng") is None


class TestConversationRecords:
    def test_tool_call_gets_an_id(self):
        a = ToolCall(name="getWeatherConditions", arguments={"lat": 1, "lng": 2})
        b = ToolCall(name="getWeatherConditions")
        assert a.id.startswith("call_")
        assert a.id != b.id
        assert b.arguments == {}

    def test_tool_call_record_ok(self):
        ok = ToolCallRecord(tool_name="t", result={"x": 1})
        failed = ToolCallRecord(tool_name="t", error="boom", error_kind="ToolHandlerError")
        assert ok.ok
        assert not failed.ok
        assert ok.timestamp.tzinfo is not None

    def test_message_defaults(self):
        msg = Message(role=MessageRole.USER, content="hi")
        assert msg.tool_call is None
        assert not msg.is_error
