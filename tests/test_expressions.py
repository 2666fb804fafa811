"""
Tests for the expression resolver and structured conditions.
"""

import pytest

from services.execution.conditions import evaluate_condition, evaluate_conditions, get_nested_value
from services.execution.errors import ExpressionError
from services.execution.expressions import (
    ExpressionScope,
    evaluate,
    evaluate_bool,
    find_expression_errors,
    parse_expression,
    resolve_value,
)


@pytest.fixture
def scope():
    return ExpressionScope(
        trigger={"type": "form_submission", "payload": {"urgency": "critical", "name": "Ada", "count": 3}},
        node_outputs={
            "classify": {"label": "billing", "score": 0.92, "tags": ["a", "b"]},
            "fetch": {"status": 200, "data": {"items": [{"id": 1}, {"id": 2}]}},
        },
        variables={"team": "support", "threshold": 0.5},
        execution={"id": "exec-1", "attempt": 1},
    )


class TestPaths:
    def test_payload_field_without_root(self, scope):
        assert evaluate("urgency", scope) == "critical"

    def test_explicit_roots(self, scope):
        assert evaluate("trigger.payload.name", scope) == "Ada"
        assert evaluate("variables.team", scope) == "support"
        assert evaluate("nodes.classify.label", scope) == "billing"
        assert evaluate("execution.id", scope) == "exec-1"

    def test_node_id_root_and_indexes(self, scope):
        assert evaluate("fetch.data.items[1].id", scope) == 2
        assert evaluate("fetch.data.items.0.id", scope) == 1
        assert evaluate("classify.tags[0]", scope) == "a"

    def test_undefined_path_is_none(self, scope):
        assert evaluate("missing.deeply.nested", scope) is None
        assert evaluate("fetch.data.items[9].id", scope) is None


class TestConditions:
    @pytest.mark.parametrize("expression,expected", [
        ('urgency == "critical"', True),
        ('urgency == "low"', False),
        ('urgency != "low"', True),
        ("count > 2", True),
        ("count >= 4", False),
        ("classify.score > variables.threshold", True),
        ('eq(urgency, "critical") and not is_empty(name)', True),
        ('urgency == "low" or count == 3', True),
        ('contains(classify.tags, "b")', True),
        ('starts_with(name, "A") && ends_with(name, "a")', True),
        ('matches(name, "^A.a$")', True),
        ("exists(missing)", False),
        ("!exists(missing)", True),
        ('(urgency == "low" or urgency == "critical") and count < 10', True),
    ])
    def test_bare_expressions(self, scope, expression, expected):
        assert evaluate_bool(expression, scope) is expected

    def test_loose_equality_across_types(self, scope):
        assert evaluate_bool('count == "3"', scope) is True
        assert evaluate_bool("fetch.status == 200", scope) is True

    def test_structured_condition(self, scope):
        data = scope.as_dict()
        assert evaluate_condition({"field": "urgency", "operator": "equals", "value": "critical"}, data)
        assert evaluate_condition({"field": "classify.score", "operator": "gte", "value": 0.9}, data)
        assert not evaluate_condition({"field": "name", "operator": "is_empty"}, data)

    def test_combined_conditions_report(self, scope):
        result, report = evaluate_conditions(
            [
                {"field": "urgency", "operator": "eq", "value": "low"},
                {"field": "count", "operator": "gt", "value": 1},
            ],
            scope.as_dict(),
            logic="or",
        )
        assert result is True
        assert [entry["result"] for entry in report] == [False, True]
        assert report[1]["actual"] == 3

    def test_empty_condition_is_true(self):
        assert evaluate_condition({}, {"a": 1}) is True

    def test_nested_value_lookup(self):
        data = {"result": {"items": [{"name": "x"}]}}
        assert get_nested_value(data, "result.items.0.name") == "x"
        assert get_nested_value(data, "result.nope") is None


class TestTemplates:
    def test_full_template_keeps_type(self, scope):
        assert resolve_value("{{ count }}", scope) == 3
        assert resolve_value("{{ classify.tags }}", scope) == ["a", "b"]
        assert resolve_value("{{ missing }}", scope) is None

    def test_partial_template_is_stringified(self, scope):
        assert resolve_value("Hi {{ name }}, count={{count}}", scope) == "Hi Ada, count=3"
        assert resolve_value("tags: {{ classify.tags }}", scope) == 'tags: ["a", "b"]'
        assert resolve_value("x{{ missing }}y", scope) == "xy"

    def test_nested_config_resolution(self, scope):
        config = {
            "url": "https://api.test/{{ variables.team }}",
            "body": {"label": "{{ classify.label }}", "ids": ["{{ fetch.data.items[0].id }}", 7]},
            "retries": 2,
        }
        assert resolve_value(config, scope) == {
            "url": "https://api.test/support",
            "body": {"label": "billing", "ids": [1, 7]},
            "retries": 2,
        }

    def test_functions(self, scope):
        assert resolve_value("{{ upper(name) }}", scope) == "ADA"
        assert resolve_value('{{ default(missing, "n/a") }}', scope) == "n/a"
        assert resolve_value("{{ length(classify.tags) }}", scope) == 2
        assert resolve_value('{{ concat(name, "-", count) }}', scope) == "Ada-3"
        assert resolve_value('{{ number("4.0") }}', scope) == 4

    def test_payload_text_is_not_reparsed(self):
        scope = ExpressionScope(trigger={"payload": {"message": "{{ variables.secret }}"}},
                                variables={"secret": "s3cr3t"})
        assert resolve_value("{{ message }}", scope) == "{{ variables.secret }}"


class TestParsing:
    @pytest.mark.parametrize("bad", [
        'urgency == ',
        'unknown_fn(x)',
        '"unterminated',
        'a.[0]',
        '__import__("os")',
        '',
    ])
    def test_malformed_expressions_raise(self, bad):
        with pytest.raises(ExpressionError):
            parse_expression(bad)

    def test_parse_is_cached(self):
        assert parse_expression('urgency == "critical"') is parse_expression('urgency == "critical"')

    def test_find_expression_errors_reports_location(self):
        errors = find_expression_errors({"url": "https://x/{{ bad( }}", "ok": "{{ name }}"})
        assert len(errors) == 1
        assert errors[0].startswith("config.url")

    @pytest.mark.parametrize("text", ["lower()", "default()", "upper(a, b)", "now(1)", "eq(a, b, c)"])
    def test_wrong_arity_rejected_at_parse(self, text):
        with pytest.raises(ExpressionError, match="Wrong number of arguments"):
            parse_expression(text)

    def test_variadic_and_optional_arguments_accepted(self):
        parse_expression("concat()")
        parse_expression('concat(a, "-", b, "-", c)')
        parse_expression("default(a)")

    def test_function_failure_becomes_expression_error(self, scope, monkeypatch):
        from services.execution import expressions

        def broken(value):
            raise TypeError("unsupported operand")

        monkeypatch.setitem(expressions.FUNCTIONS, "upper", broken)

        with pytest.raises(ExpressionError, match="upper\\(\\) failed"):
            evaluate("upper(name)", scope)
