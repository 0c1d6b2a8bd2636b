import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from biscuit_qc.schema_dsl import (
    Schema,
    SchemaParseError,
    computed_field_order,
    parse,
    rollup_dependents,
    synthesize_rollup_fields,
)


SAMPLES_DSL = """
table Grades {
  fields:
    name: text required display
    target: number decimals=1 min=0 max=100 default=50
}

table Samples {
  fields:
    weight: number decimals=2 min=0 required
    grade: ref(Grades) display_field=name
    shift: select options="Morning,Evening"
    net: number = weight - 1.5
  rollups:
    heavy = count(Samples.weight where Samples.weight > 10)
  formatting:
    weight:
      when weight > 20 then addClass "cond-bad"
      when weight < 5 then style color=red font-weight=bold
}
"""


def test_parse_fields_and_attributes():
    schemas = parse(SAMPLES_DSL)
    assert list(schemas) == ["Grades", "Samples"]

    grades = schemas["Grades"]
    name = grades.get_field("name")
    assert name.type == "text"
    assert name.required and name.display
    target = grades.get_field("target")
    assert target.decimals == 1
    assert target.min == 0 and target.max == 100
    assert target.default == 50

    samples = schemas["Samples"]
    grade = samples.get_field("grade")
    assert grade.type == "ref"
    assert grade.ref_table == "Grades"
    assert grade.display_field == "name"
    assert samples.get_field("shift").options == ["Morning", "Evening"]

    net = samples.get_field("net")
    assert net.computed is True
    assert net.compute_expr == "weight - 1.5"


def test_parse_rollups_and_formatting():
    samples = parse(SAMPLES_DSL)["Samples"]
    (rollup,) = samples.rollups
    assert rollup.key == "heavy"
    assert rollup.agg == "count"
    assert rollup.body == "Samples.weight"
    assert rollup.where == "Samples.weight > 10"
    assert rollup.source_table == "Samples"

    rules = samples.get_field("weight").format_rules
    assert [rule.add_class for rule in rules] == ["cond-bad", None]
    assert rules[1].style == {"color": "red", "font-weight": "bold"}


def test_parse_is_pure():
    first = parse(SAMPLES_DSL)
    second = parse(SAMPLES_DSL)
    assert {k: v.to_dict() for k, v in first.items()} == {
        k: v.to_dict() for k, v in second.items()
    }


def test_schema_round_trips_through_dict():
    schemas = synthesize_rollup_fields(parse(SAMPLES_DSL))
    samples = schemas["Samples"]
    restored = Schema.from_dict(samples.to_dict())
    assert restored.to_dict() == samples.to_dict()
    assert restored.get_field("heavy").rollup.where == "Samples.weight > 10"


def test_synthesized_rollup_field_defers_to_explicit_field():
    source = """
    table Lots {
      fields:
        total: number decimals=0
      rollups:
        total = sum(Lots.total)
        average = avg(Lots.total)
    }
    """
    schemas = synthesize_rollup_fields(parse(source))
    lots = schemas["Lots"]
    assert [f.key for f in lots.fields] == ["total", "average"]
    assert lots.get_field("total").computed is False
    average = lots.get_field("average")
    assert average.computed and average.type == "number" and average.decimals == 2


def test_inline_section_and_single_line_block():
    schemas = parse("table Mini { fields: weight: number }")
    assert schemas["Mini"].get_field("weight").type == "number"


@pytest.mark.parametrize(
    "source, message",
    [
        ("table Broken {\n fields:\n  a: number\n", "Unterminated block"),
        ("table A {\n fields:\n  a: number\n}\ntable A {\n}", "defined more than once"),
        ("table A\n fields:\n", "Expected '{'"),
        ("table A {\n fields:\n  a: weird\n}", "Unknown type"),
        ("table A {\n fields:\n  a: number\n  a: text\n}", "Duplicate field"),
        ("table A {\n rollups:\n  total = median(A.a)\n}", "Unknown aggregate"),
        ("table A {\n rollups:\n  total = sum(a)\n}", "Table.field"),
        ("table A {\n rollups:\n  total = sum oops\n}", "Invalid rollup"),
        ("table A {\n rollups:\n  total = sum(B.a)\n}", "unknown table"),
        ("table A {\n fields:\n  a: number = (1 +\n}", "Invalid expression"),
        ("table A {\n fields:\n  a: number min=low\n}", "must be a number"),
        ("table A {\n fields:\n  max: number\n}", "Reserved name 'max'"),
        ("table A {\n fields:\n  data: text\n}", "Reserved name 'data'"),
        ("table A {\n fields:\n  a: number\n rollups:\n  sum = sum(A.a)\n}", "Reserved name 'sum'"),
        (
            "table A {\n fields:\n  a: number\n formatting:\n  b:\n   when a > 1 then addClass \"x\"\n}",
            "unknown field",
        ),
    ],
)
def test_parse_errors_are_descriptive(source, message):
    with pytest.raises(SchemaParseError) as excinfo:
        parse(source)
    assert message in str(excinfo.value)


def test_computed_field_order_follows_dependencies():
    source = """
    table Dough {
      fields:
        flour: number
        total: number = base + 10
        base: number = flour * 2
    }
    """
    dough = parse(source)["Dough"]
    assert [f.key for f in computed_field_order("Dough", dough)] == ["base", "total"]


def test_computed_field_cycles_are_rejected():
    source = """
    table Loop {
      fields:
        a: number = b + 1
        b: number = a + 1
    }
    """
    loop = parse(source)["Loop"]
    with pytest.raises(SchemaParseError) as excinfo:
        computed_field_order("Loop", loop)
    assert "a -> b -> a" in str(excinfo.value)


def test_rollup_dependents_index():
    source = """
    table Samples {
      fields:
        weight: number
    }
    table Summary {
      fields:
        label: text
      rollups:
        total = sum(Samples.weight)
    }
    table Audit {
      fields:
        note: text
      rollups:
        checked = count(Summary.total)
    }
    """
    schemas = synthesize_rollup_fields(parse(source))
    direct = rollup_dependents(schemas, transitive=False)
    assert direct["Samples"] == {"Summary"}
    assert direct["Summary"] == {"Audit"}
    assert direct["Audit"] == set()
    assert rollup_dependents(schemas)["Samples"] == {"Summary", "Audit"}
