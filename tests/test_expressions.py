import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from biscuit_qc.expressions import (
    ExpressionError,
    evaluate,
    parse_expression,
    qualified_references,
    referenced_names,
)


def test_row_fields_are_reachable_unqualified():
    scope = {"row": {"temperature": 21.5, "moisture": 3}}
    assert evaluate("temperature + moisture", scope) == 24.5
    assert evaluate("row.temperature * 2", scope) == 43.0


def test_operator_precedence_and_ternary():
    assert evaluate("1 + 2 * 3") == 7
    assert evaluate("(1 + 2) * 3") == 9
    assert evaluate("2 ^ 3 ^ 2") == 512
    assert evaluate("weight > 10 ? 'heavy' : 'light'", {"row": {"weight": 12}}) == "heavy"
    assert evaluate("weight > 10 ? 'heavy' : 'light'", {"row": {"weight": 8}}) == "light"


def test_logical_operators_short_circuit():
    assert evaluate("true && 5") == 5
    assert evaluate("false || 'fallback'") == "fallback"
    # the right side would fail on its own
    assert evaluate("false && missing_name") is False


def test_helpers():
    assert evaluate("abs(-4)") == 4
    assert evaluate("min(4, 2, 9)") == 2
    assert evaluate("max(4, 2, 9)") == 9
    assert evaluate("round(2.346, 2)") == 2.35
    assert evaluate("round(2.5)") == 3
    assert evaluate("floor(2.7) + ceil(2.1)") == 5
    assert evaluate("sum(1, 2, 3)") == 6
    assert evaluate("avg(2, 4)") == 3


def test_errors_yield_none():
    assert evaluate("1 +") is None
    assert evaluate("unknown_field * 2", {"row": {}}) is None
    assert evaluate("10 / 0") is None
    assert evaluate("weight * 2", {"row": {"weight": None}}) is None
    assert evaluate("") is None
    assert evaluate(None) is None
    assert evaluate("abs") is None


def test_string_concatenation_and_equality():
    scope = {"row": {"batch": "B12", "line": 3}}
    assert evaluate("batch + '-' + line", scope) == "B12-3"
    assert evaluate("batch == 'B12'", scope) is True
    assert evaluate("line == '3'", scope) is False


def test_context_bindings_and_ref():
    rows = {"Grades": [{"id": "g1", "name": "A"}]}

    def ref(ref_id):
        for table_rows in rows.values():
            for row in table_rows:
                if row["id"] == ref_id:
                    return row
        return None

    scope = {"row": {"grade": "g1"}, "data": rows, "ref": ref, "table": "Samples"}
    assert evaluate("ref(grade).name", scope) == "A"
    assert evaluate("data.Grades[0].name", scope) == "A"
    assert evaluate("table", scope) == "Samples"


def test_evaluation_is_deterministic():
    scope = {"row": {"a": 3, "b": 4}}
    results = {evaluate("a * b + round(a / b, 2)", scope) for _ in range(5)}
    assert results == {12.75}


def test_parse_errors_raise_from_parser():
    with pytest.raises(ExpressionError):
        parse_expression("(1 + 2")
    with pytest.raises(ExpressionError):
        parse_expression("1 $ 2")


def test_static_analysis():
    assert referenced_names("weight * factor + round(net, 1)") == {"weight", "factor", "net"}
    assert referenced_names("row.weight + this.net") == {"row", "this", "weight", "net"}
    assert qualified_references("Samples.weight + other.net") == {
        ("Samples", "weight"),
        ("other", "net"),
    }


def test_power_is_computed_in_floats_and_overflow_yields_none():
    assert evaluate("10 ^ 2") == 100.0
    assert isinstance(evaluate("2 ^ 10"), float)
    assert evaluate("10 ^ 400") is None
    assert evaluate("9 ^ 9 ^ 9") is None
    assert evaluate("(-8) ^ 0.5") is None
    assert evaluate("1" + "0" * 400 + " * 10") is None
