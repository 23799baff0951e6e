"""Tests for template interpolation."""

from bizflow.core.interpolation import get_nested_value, interpolate


class TestInterpolate:

    def test_replaces_tokens(self):
        assert interpolate("Hello {{firstName}} {{ lastName }}", {"firstName": "Ada", "lastName": "Lovelace"}) \
            == "Hello Ada Lovelace"

    def test_non_string_values_are_serialized(self):
        context = {"amount": 1500, "approved": True, "tags": ["a", "b"], "owner": {"id": 1}}

        assert interpolate("{{amount}}", context) == "1500"
        assert interpolate("{{approved}}", context) == "true"
        assert interpolate("{{tags}}", context) == '["a", "b"]'
        assert interpolate("{{owner}}", context) == '{"id": 1}'

    def test_unknown_tokens_are_kept(self):
        assert interpolate("Dear {{name}}", {}) == "Dear {{name}}"

    def test_non_strings_pass_through(self):
        assert interpolate(42, {"x": 1}) == 42
        assert interpolate(None, {}) is None

    def test_no_expression_evaluation(self):
        assert interpolate("{{amount * 2}}", {"amount": 2}) == "{{amount * 2}}"


class TestGetNestedValue:

    def test_follows_path(self):
        data = {"employee": {"id": "emp-1", "address": {"city": "London"}}}

        assert get_nested_value(data, "employee.id") == "emp-1"
        assert get_nested_value(data, "employee.address.city") == "London"

    def test_missing_segment(self):
        assert get_nested_value({"employee": {}}, "employee.id") is None
        assert get_nested_value("text", "length") is None
