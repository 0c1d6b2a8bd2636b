"""Multi-step calculation builder used for derived report parameters.

A calculation is plain JSON::

    {"steps": [{"id": "step-ab12cd3", "operation": "sum",
                "inputs": [{"type": "parameter", "paramId": "weight_1"},
                           {"type": "constant", "value": 2}]}]}

Steps run in list order and the last step's result is the value of the whole
calculation.  Problems never raise; they surface as ``NaN``.
"""

from __future__ import annotations

import copy
import json
import logging
import math
import random
import string
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

logger = logging.getLogger(__name__)

NAN = float("nan")
INPUT_TYPES = ("parameter", "variable", "constant", "result")


@dataclass(frozen=True)
class Operation:
    label: str
    symbol: str
    description: str
    execute: Callable[[list[float]], float]
    min_inputs: int = 2
    max_inputs: int | None = None

    def accepts(self, count: int) -> bool:
        if self.min_inputs and count < self.min_inputs:
            return False
        if self.max_inputs and count > self.max_inputs:
            return False
        return True


def _subtract(values: list[float]) -> float:
    result = values[0] if values else 0
    for value in values[1:]:
        result -= value
    return result


def _multiply(values: list[float]) -> float:
    result = 1.0
    for value in values:
        result *= value
    return result


def _divide(values: list[float]) -> float:
    if values[1] == 0:
        return NAN
    return values[0] / values[1]


OPERATIONS: dict[str, Operation] = {
    "sum": Operation("Sum", "+", "Add multiple values together", lambda v: sum(v, 0)),
    "subtract": Operation(
        "Subtract", "-", "Subtract second value from first", _subtract, max_inputs=2
    ),
    "multiply": Operation("Multiply", "×", "Multiply values", _multiply),
    "divide": Operation("Divide", "÷", "Divide first value by second", _divide, max_inputs=2),
    "average": Operation(
        "Average", "avg", "Average of values", lambda v: sum(v, 0) / (len(v) or 1)
    ),
    "min": Operation("Min", "min", "Minimum of values", min),
    "max": Operation("Max", "max", "Maximum of values", max),
}


def new_step_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"step-{suffix}"


def _number(value: Any) -> float:
    if value is None:
        return NAN
    if isinstance(value, (bool, int, float)):
        try:
            return float(value)
        except OverflowError:
            return NAN
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return NAN
        try:
            return float(text)
        except ValueError:
            return NAN
    return NAN


def _constant(value: Any) -> float:
    if value is None or (isinstance(value, str) and not value.strip()):
        return 0.0
    return _number(value)


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _text_key(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _options(values: Any) -> list[Mapping[str, Any]]:
    if not isinstance(values, (list, tuple)):
        return []
    return [value for value in values if isinstance(value, Mapping)]


def _steps_of(calculation: Any) -> list[dict[str, Any]]:
    if isinstance(calculation, str):
        calculation = json.loads(calculation)
    if isinstance(calculation, Mapping):
        steps = calculation.get("steps")
        return list(steps) if isinstance(steps, list) else []
    if isinstance(calculation, list):
        return calculation
    return []


def _run(
    steps: list[dict[str, Any]],
    context: Mapping[str, Any] | None,
    operations: Mapping[str, Operation],
) -> float:
    context = context if isinstance(context, Mapping) else {}
    parameters = _mapping(context.get("parameters"))
    variables = _mapping(context.get("variables"))
    results: dict[str, float] = {}

    def resolve(item: Any) -> float:
        if not isinstance(item, Mapping):
            return NAN
        kind = item.get("type")
        if kind == "constant":
            return _constant(item.get("value"))
        if kind == "parameter":
            return _number(parameters.get(_text_key(item.get("paramId"))))
        if kind == "variable":
            return _number(variables.get(_text_key(item.get("varName"))))
        if kind == "result":
            return results.get(_text_key(item.get("stepId")), NAN)
        return NAN

    if not steps:
        return NAN
    last_id = None
    for index, step in enumerate(steps):
        if not isinstance(step, Mapping):
            return NAN
        operation = operations.get(_text_key(step.get("operation")))
        inputs = step.get("inputs") or []
        if operation is None or not isinstance(inputs, list):
            return NAN
        step_id = _text_key(step.get("id")) or f"s{index + 1}"
        values = [resolve(item) for item in inputs]
        if not operation.accepts(len(values)):
            return NAN
        last_id = step_id
        if any(math.isnan(value) for value in values):
            results[step_id] = NAN
            continue
        try:
            results[step_id] = float(operation.execute(values))
        except (ArithmeticError, ValueError, TypeError):
            results[step_id] = NAN
    return results.get(last_id, NAN)


def format_result(value: Any) -> float | None:
    """Round a finite result to two places for display in a number input."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    scaled = value * 100 + 0.5
    if not math.isfinite(scaled):
        return float(value)
    return math.floor(scaled) / 100


class CalculationBuilder:
    """Editable list of calculation steps with a headless render target."""

    def __init__(
        self,
        operations: Mapping[str, Operation] | None = None,
        params: Sequence[Mapping[str, Any]] | None = None,
        variables: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        self.operations = dict(operations or OPERATIONS)
        self.params = _options(params)
        self.variables = _options(variables)
        self.steps: list[dict[str, Any]] = []
        self.container: Callable[[dict[str, Any]], Any] | None = None
        self.hidden_input = None

    # Mounting -----------------------------------------------------------

    def mount(self, container, params=None, variables=None, hidden_input=None) -> None:
        self.container = container
        if params is not None:
            self.params = _options(params)
        if variables is not None:
            self.variables = _options(variables)
        if hidden_input is not None:
            self.hidden_input = hidden_input
        if not self.steps:
            self.add_step()
        self.render()

    def bind_hidden_input(self, hidden_input) -> None:
        self.hidden_input = hidden_input
        self.sync_hidden()

    def set_context(self, params=None, variables=None) -> None:
        self.params = _options(params)
        self.variables = _options(variables)
        self.render()

    # Serialization ------------------------------------------------------

    def load_calculation(self, calculation: Any) -> bool:
        try:
            obj = json.loads(calculation) if isinstance(calculation, str) else calculation
        except ValueError as exc:
            logger.warning("Ignoring calculation that is not valid JSON: %s", exc)
            return False
        if not isinstance(obj, Mapping) or not isinstance(obj.get("steps"), list):
            return False
        self.steps = [
            {
                "id": _text_key(step.get("id")) or new_step_id(),
                "operation": _text_key(step.get("operation")) or "sum",
                "inputs": [
                    dict(item)
                    for item in _list(step.get("inputs"))
                    if isinstance(item, Mapping)
                ],
            }
            for step in obj["steps"]
            if isinstance(step, Mapping)
        ]
        self.render()
        self.sync_hidden()
        return True

    def get_calculation(self) -> dict[str, Any]:
        return {"steps": copy.deepcopy(self.steps)}

    def to_json(self) -> str:
        return json.dumps(self.get_calculation())

    def execute_calculation(self, context: Mapping[str, Any] | None = None) -> float:
        return _run(self.steps, context, self.operations)

    @staticmethod
    def compute(calculation: Any, context: Mapping[str, Any] | None = None) -> float:
        """Evaluate a serialized calculation without a builder instance."""
        try:
            steps = _steps_of(calculation)
        except ValueError:
            return NAN
        return _run(steps, context, OPERATIONS)

    # Editing ------------------------------------------------------------

    def _changed(self) -> None:
        self.render()
        self.sync_hidden()

    def add_step(self) -> dict[str, Any]:
        step = {
            "id": new_step_id(),
            "operation": "sum",
            "inputs": [
                {"type": "parameter", "paramId": ""},
                {"type": "parameter", "paramId": ""},
            ],
        }
        self.steps.append(step)
        self._changed()
        return step

    def remove_step(self, index: int) -> None:
        del self.steps[index]
        self._changed()

    def add_input(self, index: int) -> bool:
        step = self.steps[index]
        operation = self.operations.get(step["operation"])
        if operation and operation.max_inputs and len(step["inputs"]) >= operation.max_inputs:
            return False
        step["inputs"].append({"type": "constant", "value": 0})
        self._changed()
        return True

    def remove_input(self, step_index: int, input_index: int) -> bool:
        step = self.steps[step_index]
        operation = self.operations.get(step["operation"])
        floor = max(operation.min_inputs if operation else 1, 1)
        if len(step["inputs"]) <= floor:
            return False
        del step["inputs"][input_index]
        self._changed()
        return True

    def change_operation(self, index: int, operation_key: str) -> None:
        step = self.steps[index]
        step["operation"] = operation_key
        operation = self.operations.get(operation_key)
        if operation is not None:
            minimum = operation.min_inputs or 1
            while len(step["inputs"]) < minimum:
                step["inputs"].append({"type": "constant", "value": 0})
            if operation.max_inputs and len(step["inputs"]) > operation.max_inputs:
                del step["inputs"][operation.max_inputs:]
        self._changed()

    def change_input_type(self, step_index: int, input_index: int, input_type: str) -> None:
        if input_type not in INPUT_TYPES:
            raise ValueError(f"Unknown input type {input_type!r}")
        detail = {
            "parameter": ("paramId", ""),
            "variable": ("varName", ""),
            "constant": ("value", 0),
            "result": ("stepId", ""),
        }[input_type]
        self.steps[step_index]["inputs"][input_index] = {"type": input_type, detail[0]: detail[1]}
        self._changed()

    def update_input_detail(self, step_index: int, input_index: int, key: str, value: Any) -> None:
        self.steps[step_index]["inputs"][input_index][key] = value
        self._changed()

    def sync_hidden(self) -> None:
        if self.hidden_input is None:
            return
        self.hidden_input.value = self.to_json()

    # Rendering ----------------------------------------------------------

    @staticmethod
    def _option_key(item: Mapping[str, Any], *keys: str) -> Any:
        for key in keys:
            if item.get(key):
                return item[key]
        return None

    def _input_label(self, item: Mapping[str, Any]) -> str:
        kind = item.get("type")
        if kind == "constant":
            value = _constant(item.get("value"))
            return f"[{value:g}]" if not math.isnan(value) else "[NaN]"
        if kind == "parameter":
            match = next(
                (p for p in self.params if self._option_key(p, "id", "name", "key") == item.get("paramId")),
                None,
            )
            label = match and self._option_key(match, "label", "name", "id")
            return f"[{label or 'parameter'}]"
        if kind == "variable":
            match = next(
                (v for v in self.variables if self._option_key(v, "id", "name") == item.get("varName")),
                None,
            )
            label = match and self._option_key(match, "label", "name")
            return f"[{label or 'variable'}]"
        if kind == "result":
            for position, step in enumerate(self.steps, start=1):
                if step["id"] == item.get("stepId"):
                    return f"Result of Step {position}"
            return "Result (?)"
        return "?"

    def preview(self) -> list[str]:
        lines = []
        for position, step in enumerate(self.steps, start=1):
            operation = self.operations.get(step["operation"])
            symbol = operation.symbol if operation else step["operation"]
            parts = [self._input_label(item) for item in step["inputs"]]
            lines.append(f"Step {position} = " + f" {symbol} ".join(parts))
        if lines:
            lines.append(f"Final Result = Result of Step {len(lines)}")
        return lines

    def render(self) -> dict[str, Any]:
        view = {
            "operations": [
                {"value": key, "label": op.label, "description": op.description}
                for key, op in self.operations.items()
            ],
            "params": [
                {"value": self._option_key(p, "id", "name", "key"), "label": self._option_key(p, "label", "name", "id")}
                for p in self.params
            ],
            "variables": [
                {"value": self._option_key(v, "id", "name"), "label": self._option_key(v, "label", "name")}
                for v in self.variables
            ],
            "steps": [],
            "preview": self.preview(),
        }
        for index, step in enumerate(self.steps):
            operation = self.operations.get(step["operation"])
            view["steps"].append({
                "title": f"Step {index + 1}",
                "id": step["id"],
                "operation": step["operation"],
                "description": operation.description if operation else "",
                "inputs": [dict(item) for item in step["inputs"]],
                "result_choices": [
                    {"value": earlier["id"], "label": f"Result of Step {position + 1}"}
                    for position, earlier in enumerate(self.steps[:index])
                ],
                "can_add_input": not (
                    operation and operation.max_inputs and len(step["inputs"]) >= operation.max_inputs
                ),
            })
        if self.container is not None:
            self.container(view)
        return view


def apply_calculations(
    parameters: list[Mapping[str, Any]],
    variables: Mapping[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """Fill parameters that carry a ``calculation`` from their siblings.

    Parameters are grouped by ``column_index``; within a group the numeric
    values of plain parameters are addressable by ``parameter_id`` and by
    ``parameter_name``.  Calculated entries get ``numeric_value`` (rounded to
    two places, or ``None``) and a matching text ``value``.  Entries that are
    not objects are dropped.
    """

    filled = [dict(item) for item in parameters if isinstance(item, Mapping)]
    groups: dict[Any, list[dict[str, Any]]] = {}
    for item in filled:
        column = item.get("column_index")
        if not isinstance(column, (str, int, float)):
            column = None
        groups.setdefault(column, []).append(item)

    for column, items in groups.items():
        context: dict[str, float] = {}
        for item in items:
            if item.get("calculation"):
                continue
            raw = item.get("numeric_value")
            number = _number(raw if raw is not None else item.get("value"))
            if math.isnan(number) or math.isinf(number):
                continue
            for key in ("parameter_name", "parameter_id"):
                name = _text_key(item.get(key))
                if name:
                    context[name] = number
        for item in items:
            calculation = item.get("calculation")
            if not calculation:
                continue
            result = CalculationBuilder.compute(
                calculation, {"parameters": context, "variables": _mapping(variables)}
            )
            rounded = format_result(result)
            item["numeric_value"] = rounded
            item["value"] = "" if rounded is None else f"{rounded:.2f}".rstrip("0").rstrip(".")
            logger.debug("Calculated %s (column %s) = %s", item.get("parameter_id"), column, rounded)
    return filled
