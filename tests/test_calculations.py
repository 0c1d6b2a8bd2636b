import json
import math
import sys
from pathlib import Path
from types import SimpleNamespace

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from biscuit_qc.calculations import (
    CalculationBuilder,
    apply_calculations,
    format_result,
)


def _constant(value):
    return {"type": "constant", "value": value}


def _param(param_id):
    return {"type": "parameter", "paramId": param_id}


def test_single_step_sum():
    calculation = {"steps": [{"id": "s1", "operation": "sum", "inputs": [_constant(2), _constant(3)]}]}
    assert CalculationBuilder.compute(calculation) == 5


def test_result_of_earlier_step_feeds_later_step():
    calculation = {
        "steps": [
            {"id": "s1", "operation": "sum", "inputs": [_param("weight"), _constant(3)]},
            {
                "id": "s2",
                "operation": "multiply",
                "inputs": [{"type": "result", "stepId": "s1"}, _constant(2)],
            },
        ]
    }
    context = {"parameters": {"weight": 4}}
    assert CalculationBuilder.compute(calculation, context) == 14
    # serialized form evaluates the same way
    assert CalculationBuilder.compute(json.dumps(calculation), context) == 14


def test_variables_are_resolved_by_name():
    calculation = {
        "steps": [
            {
                "id": "s1",
                "operation": "divide",
                "inputs": [_param("defects"), {"type": "variable", "varName": "batch_size"}],
            }
        ]
    }
    result = CalculationBuilder.compute(
        calculation, {"parameters": {"defects": 6}, "variables": {"batch_size": 12}}
    )
    assert result == 0.5


def test_problems_surface_as_nan():
    divide_by_zero = {"steps": [{"id": "s1", "operation": "divide", "inputs": [_constant(1), _constant(0)]}]}
    assert math.isnan(CalculationBuilder.compute(divide_by_zero))

    too_many = {
        "steps": [
            {"id": "s1", "operation": "sum", "inputs": [_constant(1), _constant(1)]},
            {"id": "s2", "operation": "subtract", "inputs": [_constant(3), _constant(2), _constant(1)]},
        ]
    }
    assert math.isnan(CalculationBuilder.compute(too_many))

    blank_param = {"steps": [{"id": "s1", "operation": "sum", "inputs": [_param("w"), _constant(1)]}]}
    assert math.isnan(CalculationBuilder.compute(blank_param, {"parameters": {"w": ""}}))

    unknown = {"steps": [{"id": "s1", "operation": "median", "inputs": [_constant(1), _constant(2)]}]}
    assert math.isnan(CalculationBuilder.compute(unknown))

    assert math.isnan(CalculationBuilder.compute("{not json"))
    assert math.isnan(CalculationBuilder.compute({"steps": []}))


def test_blank_constant_counts_as_zero():
    calculation = {"steps": [{"id": "s1", "operation": "sum", "inputs": [_constant(""), _constant(4)]}]}
    assert CalculationBuilder.compute(calculation) == 4


def test_load_and_get_calculation():
    builder = CalculationBuilder()
    calculation = {"steps": [{"id": "s1", "operation": "average", "inputs": [_constant(2), _constant(4)]}]}

    assert builder.load_calculation(json.dumps(calculation)) is True
    assert builder.get_calculation() == calculation
    assert builder.execute_calculation() == 3

    assert builder.load_calculation("{not json") is False
    assert builder.load_calculation({"steps": "nope"}) is False
    assert builder.get_calculation() == calculation


def test_preview_lines_use_parameter_labels():
    builder = CalculationBuilder(params=[{"id": "w", "label": "Weight"}])
    builder.load_calculation(
        {
            "steps": [
                {"id": "s1", "operation": "sum", "inputs": [_param("w"), _constant(2)]},
                {"id": "s2", "operation": "divide", "inputs": [{"type": "result", "stepId": "s1"}, _constant(4)]},
            ]
        }
    )
    assert builder.preview() == [
        "Step 1 = [Weight] + [2]",
        "Step 2 = Result of Step 1 ÷ [4]",
        "Final Result = Result of Step 2",
    ]


def test_input_limits_follow_operation_arity():
    builder = CalculationBuilder()
    builder.add_step()

    assert builder.add_input(0) is True
    assert len(builder.steps[0]["inputs"]) == 3
    assert builder.remove_input(0, 2) is True
    assert builder.remove_input(0, 1) is False

    builder.change_operation(0, "subtract")
    assert builder.add_input(0) is False

    builder.change_operation(0, "sum")
    builder.add_input(0)
    builder.change_operation(0, "divide")
    assert len(builder.steps[0]["inputs"]) == 2


def test_mount_renders_and_syncs_hidden_input():
    views = []
    hidden = SimpleNamespace(value="")
    builder = CalculationBuilder()
    builder.mount(views.append, params=[{"id": "w", "label": "Weight"}], hidden_input=hidden)

    assert len(builder.steps) == 1
    assert views[-1]["params"] == [{"value": "w", "label": "Weight"}]
    assert views[-1]["steps"][0]["title"] == "Step 1"

    builder.change_input_type(0, 1, "constant")
    builder.update_input_detail(0, 1, "value", 7)
    assert json.loads(hidden.value)["steps"][0]["inputs"][1] == {"type": "constant", "value": 7}

    second = builder.add_step()
    assert views[-1]["steps"][1]["result_choices"] == [
        {"value": builder.steps[0]["id"], "label": "Result of Step 1"}
    ]
    assert second["id"].startswith("step-")


def test_format_result():
    assert format_result(3.14159) == 3.14
    assert format_result(float("nan")) is None
    assert format_result(float("inf")) is None
    assert format_result(True) is None
    assert format_result("3") is None


def test_apply_calculations_per_column():
    total = {
        "steps": [{"id": "s1", "operation": "sum", "inputs": [_param("w1"), _param("Water")]}]
    }
    parameters = [
        {"parameter_id": "w1", "column_index": 0, "numeric_value": 10},
        {"parameter_id": "w2", "parameter_name": "Water", "column_index": 0, "value": "5.5"},
        {"parameter_id": "total", "column_index": 0, "calculation": total},
        {"parameter_id": "w1", "column_index": 1, "numeric_value": 8},
        {"parameter_id": "total", "column_index": 1, "calculation": total},
    ]

    filled = apply_calculations(parameters)

    assert filled[2]["numeric_value"] == 15.5
    assert filled[2]["value"] == "15.5"
    # column 1 has no Water reading
    assert filled[4]["numeric_value"] is None
    assert filled[4]["value"] == ""
    assert "numeric_value" not in parameters[2]


def test_remove_step_and_set_context_rerender():
    views = []
    builder = CalculationBuilder()
    builder.mount(views.append)
    builder.add_step()
    builder.remove_step(0)
    assert len(builder.steps) == 1
    assert views[-1]["steps"][0]["title"] == "Step 1"

    builder.set_context(variables=[{"name": "batch_size", "label": "Batch size"}])
    assert views[-1]["variables"] == [{"value": "batch_size", "label": "Batch size"}]
    assert views[-1]["params"] == []


def test_nan_step_does_not_stop_later_steps():
    calculation = {
        "steps": [
            {"id": "s1", "operation": "sum", "inputs": [_param("missing"), _constant(1)]},
            {"id": "s2", "operation": "multiply", "inputs": [_constant(2), _constant(4)]},
        ]
    }
    assert CalculationBuilder.compute(calculation, {"parameters": {}}) == 8


def test_result_of_unknown_step_is_nan():
    calculation = {
        "steps": [
            {"id": "s1", "operation": "sum", "inputs": [_constant(1), _constant(1)]},
            {
                "id": "s2",
                "operation": "sum",
                "inputs": [{"type": "result", "stepId": "nope"}, _constant(1)],
            },
        ]
    }
    assert math.isnan(CalculationBuilder.compute(calculation))


def test_malformed_calculations_degrade_to_nan():
    listed_operation = {"steps": [{"id": "s1", "operation": ["sum"], "inputs": []}]}
    assert math.isnan(CalculationBuilder.compute(listed_operation))

    listed_param = {"steps": [{"id": "s1", "operation": "sum", "inputs": [_param(["w"]), _constant(1)]}]}
    assert math.isnan(CalculationBuilder.compute(listed_param, {"parameters": {"w": 2}}))

    listed_ids = {
        "steps": [
            {"id": ["s1"], "operation": "sum", "inputs": [_constant(1), _constant(1)]},
            {
                "id": "s2",
                "operation": "sum",
                "inputs": [{"type": "result", "stepId": ["s1"]}, {"type": "variable", "varName": ["v"]}],
            },
        ]
    }
    assert math.isnan(CalculationBuilder.compute(listed_ids, {"variables": {"v": 1}}))

    scalar_inputs = {"steps": [{"id": "s1", "operation": "sum", "inputs": 5}]}
    assert math.isnan(CalculationBuilder.compute(scalar_inputs))

    simple = {"steps": [{"id": "s1", "operation": "sum", "inputs": [_param("w"), _constant(1)]}]}
    assert math.isnan(CalculationBuilder.compute(simple, {"parameters": ["w"], "variables": "x"}))
    assert math.isnan(CalculationBuilder.compute(simple, ["not", "a", "context"]))
    assert math.isnan(CalculationBuilder.compute(simple, {"parameters": {"w": 10 ** 400}}))


def test_load_calculation_normalises_malformed_steps():
    builder = CalculationBuilder(params="not a list")
    loaded = builder.load_calculation(
        {"steps": [{"id": 7, "operation": ["sum"], "inputs": [1, 2, _constant(3)]}, "junk"]}
    )

    assert loaded is True
    step = builder.get_calculation()["steps"][0]
    assert step["id"].startswith("step-")
    assert step["operation"] == "sum"
    assert step["inputs"] == [_constant(3)]
    assert len(builder.get_calculation()["steps"]) == 1

    builder.load_calculation({"steps": [{"operation": "sum", "inputs": "abc"}]})
    assert builder.get_calculation()["steps"][0]["inputs"] == []


def test_apply_calculations_skips_malformed_entries():
    total = {"steps": [{"id": "s1", "operation": "sum", "inputs": [_param("w1"), _constant(1)]}]}
    parameters = [
        "stray",
        {"parameter_id": "w1", "column_index": [0], "numeric_value": 4},
        {"parameter_id": ["odd"], "column_index": [0], "numeric_value": 9},
        {"parameter_id": "total", "column_index": [0], "calculation": total},
    ]

    filled = apply_calculations(parameters, variables=["not", "a", "mapping"])

    assert len(filled) == 3
    assert filled[2]["numeric_value"] == 5
    assert filled[2]["value"] == "5"


def test_format_result_keeps_huge_finite_values():
    assert format_result(1e307) == 1e307
