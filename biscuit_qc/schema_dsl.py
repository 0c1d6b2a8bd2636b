"""Parser for the table description language typed into the table builder.

A source describes one or more tables::

    table Samples {
      fields:
        weight: number decimals=2 min=0 required
        grade: ref(Grades) display_field=name
        net: number = weight - 1.5
      rollups:
        heavy = count(Samples.weight where Samples.weight > 10)
      formatting:
        weight:
          when weight > 20 then addClass "cond-bad"
    }

``parse`` turns that text into :class:`Schema` objects.  It is the only place
where errors are meant to reach the operator verbatim, so every failure is a
:class:`SchemaParseError` with a message describing what to fix.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterator

from biscuit_qc.expressions import (
    ExpressionError,
    RESERVED_NAMES,
    parse_expression,
    qualified_references,
    referenced_names,
)


class SchemaParseError(ValueError):
    """Raised when a table description cannot be parsed."""


FIELD_TYPES = ("text", "number", "select", "ref")
AGGREGATES = ("count", "sum", "avg", "min", "max")
FLAGS = ("required", "pk", "auto", "display", "hidden")
SECTIONS = ("fields", "rollups", "formatting")


@dataclass
class FormatRule:
    when: str
    add_class: str | None = None
    style: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"when": self.when}
        if self.add_class:
            payload["addClass"] = self.add_class
        if self.style:
            payload["style"] = dict(self.style)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FormatRule":
        return cls(
            when=payload.get("when", ""),
            add_class=payload.get("addClass"),
            style=dict(payload.get("style") or {}),
        )


@dataclass
class Rollup:
    key: str
    agg: str
    body: str
    where: str | None = None
    format_rules: list[FormatRule] = field(default_factory=list)

    @property
    def source_table(self) -> str | None:
        match = _QUALIFIER_RE.match(self.body)
        return match.group(1) if match else None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"key": self.key, "agg": self.agg, "body": self.body}
        if self.where:
            payload["where"] = self.where
        if self.format_rules:
            payload["formatRules"] = [rule.to_dict() for rule in self.format_rules]
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Rollup":
        return cls(
            key=payload["key"],
            agg=payload["agg"],
            body=payload["body"],
            where=payload.get("where"),
            format_rules=[FormatRule.from_dict(r) for r in payload.get("formatRules") or []],
        )


@dataclass
class Field:
    key: str
    label: str
    type: str = "text"
    computed: bool = False
    compute_expr: str | None = None
    ref_table: str | None = None
    display_field: str | None = None
    decimals: int | None = None
    min: float | None = None
    max: float | None = None
    required: bool = False
    default: Any = None
    placeholder: str | None = None
    options: list[str] = field(default_factory=list)
    hidden: bool = False
    pk: bool = False
    auto: bool = False
    display: bool = False
    format_rules: list[FormatRule] = field(default_factory=list)
    rollup: Rollup | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "key": self.key,
            "label": self.label,
            "type": self.type,
            "computed": self.computed,
        }
        optional = {
            "computeExpr": self.compute_expr,
            "refTable": self.ref_table,
            "displayField": self.display_field,
            "decimals": self.decimals,
            "min": self.min,
            "max": self.max,
            "default": self.default,
            "placeholder": self.placeholder,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        for flag in FLAGS:
            if getattr(self, flag):
                payload[flag] = True
        if self.options:
            payload["options"] = list(self.options)
        if self.format_rules:
            payload["formatRules"] = [rule.to_dict() for rule in self.format_rules]
        if self.rollup is not None:
            payload["rollupMeta"] = self.rollup.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Field":
        rollup = payload.get("rollupMeta")
        return cls(
            key=payload["key"],
            label=payload.get("label") or payload["key"],
            type=payload.get("type") or "text",
            computed=bool(payload.get("computed")),
            compute_expr=payload.get("computeExpr"),
            ref_table=payload.get("refTable"),
            display_field=payload.get("displayField"),
            decimals=payload.get("decimals"),
            min=payload.get("min"),
            max=payload.get("max"),
            required=bool(payload.get("required")),
            default=payload.get("default"),
            placeholder=payload.get("placeholder"),
            options=list(payload.get("options") or []),
            hidden=bool(payload.get("hidden")),
            pk=bool(payload.get("pk")),
            auto=bool(payload.get("auto")),
            display=bool(payload.get("display")),
            format_rules=[FormatRule.from_dict(r) for r in payload.get("formatRules") or []],
            rollup=Rollup.from_dict(rollup) if rollup else None,
        )


@dataclass
class Schema:
    fields: list[Field] = field(default_factory=list)
    rollups: list[Rollup] = field(default_factory=list)

    def get_field(self, key: str) -> Field | None:
        for candidate in self.fields:
            if candidate.key == key:
                return candidate
        return None

    @property
    def computed_fields(self) -> list[Field]:
        return [candidate for candidate in self.fields if candidate.computed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "fields": [f.to_dict() for f in self.fields],
            "rollups": [r.to_dict() for r in self.rollups],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Schema":
        return cls(
            fields=[Field.from_dict(f) for f in payload.get("fields") or []],
            rollups=[Rollup.from_dict(r) for r in payload.get("rollups") or []],
        )


# ---------------------------------------------------------------------------
# Lexical helpers

_TABLE_RE = re.compile(r"^table\s+(\w+)$")
_SECTION_RE = re.compile(r"^(fields|rollups|formatting)\s*:\s*(.*)$")
_FIELD_RE = re.compile(r"^(\w+)\s*:\s*(.*)$")
_ROLLUP_RE = re.compile(r"^(\w+)\s*=\s*(.*)$")
_AGG_RE = re.compile(r"^(\w+)\s*\((.*)\)$")
_WHERE_RE = re.compile(r"\s+where\s+", re.IGNORECASE)
_QUALIFIER_RE = re.compile(r"^\s*(\w+)\s*\.")
_CROSS_TABLE_RE = re.compile(r"\b(?:data|ref)\b")
_WHEN_RE = re.compile(r"^when\s+(.+?)\s+then\s+(.+)$")
_ADD_CLASS_RE = re.compile(r"addClass\s+\"([^\"]+)\"")
_STYLE_RE = re.compile(r"style\s+(.+)$")
_STYLE_PAIR_RE = re.compile(r"([\w-]+)=(\"[^\"]*\"|'[^']*'|\S+)")
_ATTR_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<ref>ref\(\s*(?P<ref_table>\w+)\s*\))
      | (?P<assign>=)
      | (?P<name>[\w-]+)(?:=(?P<value>"[^"]*"|'[^']*'|[^\s"']+))?
    )""",
    re.VERBOSE,
)


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _emit(lineno: int, text: str) -> Iterator[tuple[int, str]]:
    text = text.strip()
    if not text:
        return
    match = _SECTION_RE.match(text)
    if match:
        yield lineno, f"{match.group(1)}:"
        rest = match.group(2).strip()
        if rest:
            yield lineno, rest
        return
    yield lineno, text


def _logical_lines(source: str) -> Iterator[tuple[int, str]]:
    """Yield ``(line number, text)`` with braces and section headers split out."""

    for lineno, raw in enumerate(source.splitlines(), start=1):
        piece: list[str] = []
        quote: str | None = None
        for char in raw:
            if quote:
                piece.append(char)
                if char == quote:
                    quote = None
                continue
            if char in "\"'":
                quote = char
                piece.append(char)
                continue
            if char in "{}":
                yield from _emit(lineno, "".join(piece))
                piece = []
                yield lineno, char
                continue
            piece.append(char)
        yield from _emit(lineno, "".join(piece))


def _check_expression(expr: str, what: str) -> None:
    try:
        parse_expression(expr)
    except ExpressionError as exc:
        raise SchemaParseError(f"Invalid expression for {what}: {exc}") from exc


def _coerce_number(value: Any, attribute: str, where: str, *, integer: bool = False):
    if value is None or isinstance(value, (int, float)):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise SchemaParseError(
            f"Attribute {attribute}={value!r} on {where} must be a number"
        ) from None
    if integer or number.is_integer():
        return int(number)
    return number


# ---------------------------------------------------------------------------
# Line parsers


def _check_key(key: str, where: str) -> None:
    if key in RESERVED_NAMES:
        raise SchemaParseError(
            f"Reserved name '{key}' used for {where}; formulas could not read it"
        )


def _parse_field(table: str, key: str, rest: str, lineno: int) -> Field:
    where = f"field '{key}' in table {table} (line {lineno})"
    _check_key(key, where)
    field_type: str | None = None
    ref_table: str | None = None
    compute_expr: str | None = None
    attrs: dict[str, str] = {}
    flags: set[str] = set()

    pos = 0
    while pos < len(rest):
        if not rest[pos:].strip():
            break
        match = _ATTR_TOKEN_RE.match(rest, pos)
        if not match or match.end() == pos:
            raise SchemaParseError(f"Could not read {where}: {rest[pos:].strip()!r}")
        pos = match.end()
        if match.group("assign"):
            compute_expr = rest[pos:].strip()
            break
        if match.group("ref"):
            if field_type is not None:
                raise SchemaParseError(f"Unexpected reference type on {where}")
            field_type, ref_table = "ref", match.group("ref_table")
            continue
        name, value = match.group("name"), match.group("value")
        if field_type is None:
            field_type = name
            if value is not None:
                # ``number=weight*2`` with no spaces around the '='
                compute_expr = (value + rest[pos:]).strip()
                break
            continue
        if value is None:
            if name in FLAGS:
                flags.add(name)
            continue
        attrs[name] = _strip_quotes(value)

    field_type = field_type or "text"
    if field_type not in FIELD_TYPES:
        raise SchemaParseError(
            f"Unknown type {field_type!r} for {where}; expected one of "
            + ", ".join(FIELD_TYPES[:-1])
            + " or ref(Table)"
        )
    if compute_expr is not None and not compute_expr:
        raise SchemaParseError(f"Missing formula after '=' for {where}")

    result = Field(
        key=key,
        label=attrs.get("label") or key.replace("_", " "),
        type=field_type,
        ref_table=ref_table,
        placeholder=attrs.get("placeholder"),
        **{flag: flag in flags for flag in FLAGS},
    )
    if field_type == "ref":
        result.display_field = attrs.get("display_field") or attrs.get("displayField") or "id"
    if "options" in attrs:
        result.options = [opt.strip() for opt in attrs["options"].split(",") if opt.strip()]
    result.decimals = _coerce_number(attrs.get("decimals"), "decimals", where, integer=True)
    result.min = _coerce_number(attrs.get("min"), "min", where)
    result.max = _coerce_number(attrs.get("max"), "max", where)
    if "default" in attrs:
        default = attrs["default"]
        result.default = (
            _coerce_number(default, "default", where) if field_type == "number" else default
        )
    if compute_expr:
        _check_expression(compute_expr, where)
        result.computed = True
        result.compute_expr = compute_expr
    return result


def _parse_rollup(table: str, text: str, lineno: int) -> Rollup:
    match = _ROLLUP_RE.match(text)
    agg_match = _AGG_RE.match(match.group(2).strip()) if match else None
    if not match or not agg_match:
        raise SchemaParseError(f"Invalid rollup: {text} (table {table}, line {lineno})")
    key = match.group(1)
    agg = agg_match.group(1).lower()
    _check_key(key, f"rollup '{key}' in table {table} (line {lineno})")
    if agg not in AGGREGATES:
        raise SchemaParseError(
            f"Unknown aggregate {agg_match.group(1)!r} in rollup '{key}' "
            f"(table {table}, line {lineno}); use one of {', '.join(AGGREGATES)}"
        )
    parts = _WHERE_RE.split(agg_match.group(2), maxsplit=1)
    body = parts[0].strip()
    where = parts[1].strip() if len(parts) > 1 else None
    if not _QUALIFIER_RE.match(body):
        raise SchemaParseError(
            f"Rollup '{key}' must aggregate a Table.field reference "
            f"(table {table}, line {lineno})"
        )
    _check_expression(body, f"rollup '{key}' in table {table} (line {lineno})")
    if where is not None:
        if not where:
            raise SchemaParseError(f"Empty where clause in rollup '{key}' (table {table})")
        _check_expression(where, f"where clause of rollup '{key}' in table {table}")
    return Rollup(key=key, agg=agg, body=body, where=where)


def _parse_format_action(action: str, text: str, table: str, lineno: int) -> tuple[str | None, dict[str, str]]:
    add_class = None
    style: dict[str, str] = {}
    class_match = _ADD_CLASS_RE.search(action)
    if class_match:
        add_class = class_match.group(1)
    style_match = _STYLE_RE.search(action)
    if style_match:
        style = {
            key: _strip_quotes(value)
            for key, value in _STYLE_PAIR_RE.findall(style_match.group(1))
        }
    if not add_class and not style:
        raise SchemaParseError(
            f"Formatting rule needs addClass \"...\" or style key=value: {text} "
            f"(table {table}, line {lineno})"
        )
    return add_class, style


def _parse_table_block(
    table: str, lines: list[tuple[int, str]], index: int, opened_at: int
) -> tuple[Schema, int]:
    schema = Schema()
    section: str | None = None
    format_target: str | None = None
    pending_rules: dict[str, list[FormatRule]] = {}

    while index < len(lines):
        lineno, text = lines[index]
        index += 1
        if text == "}":
            break
        if text == "{":
            raise SchemaParseError(f"Unexpected '{{' inside table {table} (line {lineno})")
        if text.endswith(":") and text[:-1] in SECTIONS:
            section = text[:-1]
            format_target = None
            continue

        if section == "formatting":
            target = _FIELD_RE.match(text)
            if target and not target.group(2):
                format_target = target.group(1)
                pending_rules.setdefault(format_target, [])
                continue
            rule = _WHEN_RE.match(text)
            if rule:
                if format_target is None:
                    raise SchemaParseError(
                        f"Formatting rule before a field name in table {table} (line {lineno})"
                    )
                when = rule.group(1).strip()
                _check_expression(when, f"formatting rule on '{format_target}' in table {table}")
                add_class, style = _parse_format_action(rule.group(2), text, table, lineno)
                pending_rules[format_target].append(
                    FormatRule(when=when, add_class=add_class, style=style)
                )
            continue

        if section == "rollups":
            if "=" in text:
                schema.rollups.append(_parse_rollup(table, text, lineno))
            continue

        field_match = _FIELD_RE.match(text)
        if field_match:
            key = field_match.group(1)
            if schema.get_field(key) is not None:
                raise SchemaParseError(f"Duplicate field '{key}' in table {table} (line {lineno})")
            schema.fields.append(_parse_field(table, key, field_match.group(2), lineno))
            continue
        if section is None and "=" in text:
            schema.rollups.append(_parse_rollup(table, text, lineno))
    else:
        raise SchemaParseError(
            f"Unterminated block for table {table} opened on line {opened_at}: missing '}}'"
        )

    rollup_keys = {rollup.key: rollup for rollup in schema.rollups}
    for key, rules in pending_rules.items():
        target_field = schema.get_field(key)
        if target_field is not None:
            target_field.format_rules.extend(rules)
        elif key in rollup_keys:
            rollup_keys[key].format_rules.extend(rules)
        else:
            raise SchemaParseError(
                f"Formatting rules reference unknown field '{key}' in table {table}"
            )
    return schema, index


def parse(source: str) -> dict[str, Schema]:
    """Parse ``source`` into a mapping of table name to :class:`Schema`.

    Raises:
        SchemaParseError: For unterminated blocks, invalid rollups, unknown
            types, duplicate names or unparseable expressions.
    """

    if not isinstance(source, str):
        raise SchemaParseError("Table description must be text")

    lines = list(_logical_lines(source))
    schemas: dict[str, Schema] = {}
    index = 0
    while index < len(lines):
        lineno, text = lines[index]
        index += 1
        match = _TABLE_RE.match(text)
        if not match:
            continue
        name = match.group(1)
        if name in schemas:
            raise SchemaParseError(f"Table {name} is defined more than once (line {lineno})")
        if index >= len(lines) or lines[index][1] != "{":
            raise SchemaParseError(f"Expected '{{' after 'table {name}' (line {lineno})")
        schemas[name], index = _parse_table_block(name, lines, index + 1, lineno)

    for name, schema in schemas.items():
        for rollup in schema.rollups:
            if rollup.source_table not in schemas:
                raise SchemaParseError(
                    f"Rollup '{rollup.key}' in table {name} references unknown table "
                    f"{rollup.source_table}"
                )
    return schemas


# ---------------------------------------------------------------------------
# Post-processing used by the table engine


def synthesize_rollup_fields(schemas: dict[str, Schema]) -> dict[str, Schema]:
    """Append a computed number field for each rollup without an explicit field."""

    for schema in schemas.values():
        for rollup in schema.rollups:
            if schema.get_field(rollup.key) is not None:
                continue
            schema.fields.append(
                Field(
                    key=rollup.key,
                    label=rollup.key.replace("_", " "),
                    type="number",
                    computed=True,
                    decimals=2,
                    format_rules=list(rollup.format_rules),
                    rollup=rollup,
                )
            )
    return schemas


def _field_dependencies(table: str, candidate: Field, computed_keys: list[str]) -> list[str]:
    rollup = candidate.rollup
    if rollup is None:
        names = referenced_names(candidate.compute_expr) if candidate.compute_expr else set()
        return [key for key in computed_keys if key in names]

    names = set()
    for expr in [rollup.body] + ([rollup.where] if rollup.where else []):
        # unqualified names read the owning row
        names |= referenced_names(expr)
        if rollup.source_table == table:
            names |= {
                attr
                for qualifier, attr in qualified_references(expr)
                if qualifier in (table, "other")
            }
    return [key for key in computed_keys if key in names]


def computed_field_order(table: str, schema: Schema) -> list[Field]:
    """Return the computed fields of ``schema`` so dependencies come first.

    Declaration order is kept wherever the dependencies allow it.

    Raises:
        SchemaParseError: When computed fields reference each other in a cycle.
    """

    computed = schema.computed_fields
    by_key = {candidate.key: candidate for candidate in computed}
    declared = [candidate.key for candidate in computed]
    ordered: list[Field] = []
    done: set[str] = set()

    def visit(key: str, path: list[str]) -> None:
        if key in done:
            return
        if key in path:
            cycle = path[path.index(key):] + [key]
            raise SchemaParseError(
                f"Computed fields in table {table} depend on each other: "
                + " -> ".join(cycle)
            )
        deps = _field_dependencies(table, by_key[key], declared)
        for dep in sorted(deps, key=declared.index):
            visit(dep, path + [key])
        done.add(key)
        ordered.append(by_key[key])

    for key in declared:
        visit(key, [])
    return ordered


def rollup_dependents(
    schemas: dict[str, Schema], transitive: bool = True
) -> dict[str, set[str]]:
    """Map each table to the tables whose computed values read from it.

    Rollups read their source table.  Formulas using ``data`` or ``ref`` can
    read any table, so those tables depend on every table.  Unless
    ``transitive`` is false the mapping is closed transitively.
    """

    direct: dict[str, set[str]] = {name: set() for name in schemas}
    for name, schema in schemas.items():
        for candidate in schema.computed_fields:
            if candidate.rollup is not None:
                source = candidate.rollup.source_table
                if source in direct and source != name:
                    direct[source].add(name)
                expressions = [candidate.rollup.body, candidate.rollup.where or ""]
            else:
                expressions = [candidate.compute_expr or ""]
            if any(_CROSS_TABLE_RE.search(expr) for expr in expressions):
                for source in direct:
                    if source != name:
                        direct[source].add(name)

    if not transitive:
        return direct

    closed: dict[str, set[str]] = {}
    for name in direct:
        seen: set[str] = set()
        stack = list(direct[name])
        while stack:
            current = stack.pop()
            if current in seen or current == name:
                continue
            seen.add(current)
            stack.extend(direct.get(current, ()))
        closed[name] = seen
    return closed


__all__ = [
    "AGGREGATES",
    "FIELD_TYPES",
    "Field",
    "FormatRule",
    "Rollup",
    "Schema",
    "SchemaParseError",
    "computed_field_order",
    "parse",
    "rollup_dependents",
    "synthesize_rollup_fields",
]
