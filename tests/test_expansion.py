import ast
import datetime
import logging
import math
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from metacode.runtime.captures import capture, capture_with_guard, meta_expr, observe
from metacode.runtime.core import (
    CyclicExpansionError,
    InvalidMetaExprError,
    UnquoteError,
)
from metacode.runtime.expansion import ExpansionContext, expand
from metacode.runtime.quoting import quote, uq

DAYS = 3
NEGATIVE = -5
START = datetime.date(2024, 1, 1)
ONE_DAY = datetime.timedelta(days=1)
SNIPPET = ast.parse("offset + 1", mode="eval").body
PREP = quote(
    """
    scale = 2
    scale * 5
    """
)
GUARD_CALLS = []


@capture
def raw():
    "Load the data"
    return list(range(uq(DAYS)))


@capture
def total():
    return sum(uq(raw()))


@capture
def mean():
    return uq(total()) / len(uq(raw()))


@capture
def ping():
    return uq(pong()) + 1


@capture
def pong():
    return uq(ping()) + 1


@capture(inline=True)
def offset():
    return uq(DAYS) * 10


@capture
def shifted():
    return uq(total()) + uq(offset())


@observe
def announce():
    print("total is", uq(total()))


@capture
def uses_observer():
    return uq(announce())


@capture(name="total", identity="other.total")
def other_total():
    return 99


@capture
def both():
    return uq(total()) + uq(other_total())


@capture(name="class")
def keyword_named():
    return 1


@capture
def start_day():
    return uq(START)


@capture
def next_day():
    return uq(START) + uq(ONE_DAY)


@capture
def scaled_by(factor):
    return uq(total()) * uq(factor)


@capture
def twice_scaled():
    return uq(scaled_by(2)) + uq(scaled_by(5))


@capture
def spliced():
    return uq(SNIPPET) * 2


@capture
def prepared():
    return uq(total()) * uq(PREP)


@capture
def opaque():
    return uq(object())


@capture
def broken():
    return uq(1 // 0)


@capture
def summary():
    "Summarize"
    text = str(uq(total()))
    "Shout it"
    return text.upper()
    "summary is ready"


@observe
def setup_only():
    import math


def _validate(limit):
    GUARD_CALLS.append(limit)
    if limit <= 0:
        raise ValueError("limit must be positive")


@capture_with_guard(_validate)
def capped(limit):
    return meta_expr(lambda: min(uq(total()), uq(limit)))


@capture_with_guard(_validate)
def unwrapped(limit):
    return limit


@pytest.fixture(autouse=True)
def reset_guard_calls():
    GUARD_CALLS.clear()
    yield


def _assigned_before_use(program):
    seen = set()
    bindings = set(program.bindings)
    for statement in program:
        for name in statement.references() & bindings:
            if name not in seen:
                return False
        if statement.binding is not None:
            seen.add(statement.binding)
    return True


def test_expand_orders_dependencies_first():
    program = expand(mean)

    assert program.to_source() == (
        "# Load the data\n"
        "raw = list(range(3))\n"
        "total = sum(raw)\n"
        "mean = total / len(raw)\n"
    )
    assert list(program.bindings) == ["raw", "total", "mean"]
    assert _assigned_before_use(program)


def test_generated_script_matches_value_mode():
    namespace = {}
    exec(expand(mean).to_source(), namespace)

    assert namespace["mean"] == mean() == 1.0
    assert namespace["total"] == total()


def test_repeated_root_is_emitted_once_then_referenced():
    twice = ExpansionContext().expand(total, total)
    once = ExpansionContext().expand(total)

    assert twice.statements[:-1] == once.statements
    assert ast.unparse(twice[-1].node) == "total"
    assert twice[-1].binding is None


def test_context_shares_upstream_across_calls():
    ctx = ExpansionContext()

    first = ctx.expand(total)
    second = ctx.expand(mean)

    assert list(first.bindings) == ["raw", "total"]
    assert second.to_source() == "mean = total / len(raw)\n"
    assert ctx.bindings == {raw.identity: "raw", total.identity: "total", mean.identity: "mean"}
    assert ctx.is_expanded(raw)
    assert ctx.name_of(raw.identity) == "raw"


def test_substitution_is_local_to_its_context():
    replaced = ExpansionContext()
    replaced.substitute(raw, lambda: quote("[10, 20]"))
    plain = ExpansionContext()

    assert replaced.expand(total).to_source() == "raw = [10, 20]\ntotal = sum(raw)\n"
    assert plain.expand(total).to_source() == (
        "# Load the data\nraw = list(range(3))\ntotal = sum(raw)\n"
    )


def test_substitution_with_another_capture_keeps_the_binding_name():
    ctx = ExpansionContext()
    ctx.substitute(raw.identity, lambda: other_total)

    program = ctx.expand(total)

    assert program.to_source() == "raw = 99\ntotal = sum(raw)\n"
    assert ctx.name_of(raw) == "raw"


def test_substitution_after_expansion_only_warns(caplog):
    ctx = ExpansionContext()
    ctx.expand(raw)

    with caplog.at_level(logging.WARNING, logger="metacode"):
        ctx.substitute(raw, lambda: quote("[]"))

    assert "no effect" in caplog.text
    assert ctx.expand(total).to_source() == "total = sum(raw)\n"


def test_substitution_must_produce_code():
    ctx = ExpansionContext()
    ctx.substitute(raw, lambda: 42)

    with pytest.raises(TypeError, match="expected a capture"):
        ctx.expand(total)

    with pytest.raises(TypeError):
        ctx.substitute(raw, "not callable")


def test_cycles_are_reported_with_their_path():
    ctx = ExpansionContext()

    with pytest.raises(CyclicExpansionError) as excinfo:
        ctx.expand(ping)

    assert excinfo.value.cycle == (ping.identity, pong.identity, ping.identity)
    assert "->" in str(excinfo.value)
    assert not ctx.is_expanded(ping)


def test_failed_expansion_leaves_context_unchanged():
    ctx = ExpansionContext()

    with pytest.raises(CyclicExpansionError):
        ctx.expand(total, ping)

    assert not ctx.is_expanded(total)
    assert ctx.name_of(total) is None
    assert ctx.dependencies == []
    assert list(ctx.expand(total).bindings) == ["raw", "total"]


def test_comments_travel_with_their_statements():
    program = expand(summary)

    assert program.to_source() == (
        "# Load the data\n"
        "raw = list(range(3))\n"
        "total = sum(raw)\n"
        "# Summarize\n"
        "text = str(total)\n"
        "# Shout it\n"
        "summary = text.upper()\n"
        "# summary is ready\n"
    )
    assert program.pairs()[-1][0] == "Shout it"
    for statement in program:
        node = statement.node
        assert not (isinstance(node, ast.Expr) and isinstance(node.value, ast.Constant))


def test_guard_never_runs_during_expansion():
    program = expand(capped.handle(5))

    assert GUARD_CALLS == []
    assert program.to_source().endswith("total = sum(raw)\ncapped = min(total, 5)\n")

    assert capped(5) == 3
    assert GUARD_CALLS == [5]
    with pytest.raises(ValueError):
        capped(0)


def test_guarded_capture_without_meta_expr_fails_expansion():
    ctx = ExpansionContext()

    with pytest.raises(InvalidMetaExprError):
        ctx.expand(unwrapped.handle(2))

    assert GUARD_CALLS == []
    assert not ctx.is_expanded(unwrapped)


def test_inline_capture_is_spliced_not_bound():
    ctx = ExpansionContext()
    program = ctx.expand(shifted)

    assert program.to_source().endswith("shifted = total + 3 * 10\n")
    assert ctx.name_of(offset) is None
    assert ctx.kinds[offset.identity] == "inline"
    assert expand(offset).to_source() == "3 * 10\n"


def test_observer_statements_are_emitted_without_binding():
    ctx = ExpansionContext()
    program = ctx.expand(announce)

    assert program.to_source().endswith("total = sum(raw)\nprint('total is', total)\n")
    assert ctx.kinds[announce.identity] == "observer"
    assert ctx.name_of(announce) is None


def test_observer_cannot_be_unquoted():
    ctx = ExpansionContext()

    with pytest.raises(UnquoteError, match="without a binding"):
        ctx.expand(uses_observer)

    assert ctx.dependencies == []


def test_statement_only_observer_emits_its_statements():
    program = expand(setup_only)

    assert program.to_source() == "import math\n"


def test_colliding_names_get_numeric_suffixes():
    program = expand(both)

    assert program.to_source().endswith(
        "total = sum(raw)\ntotal_2 = 99\nboth = total + total_2\n"
    )
    assert expand(keyword_named).to_source() == "class_ = 1\n"


def test_literal_code_cannot_shadow_bindings():
    program = expand("raw = None", raw)

    assert list(program.bindings) == ["raw_2"]
    assert program.to_source().endswith("raw_2 = list(range(3))\n")


def test_deparsed_values_add_imports_once_per_context():
    ctx = ExpansionContext()

    first = ctx.expand(start_day)
    second = ctx.expand(next_day)

    assert first.to_source() == (
        "import datetime\nstart_day = datetime.date(2024, 1, 1)\n"
    )
    assert second.to_source() == (
        "next_day = datetime.date(2024, 1, 1) + "
        "datetime.timedelta(days=1, seconds=0, microseconds=0)\n"
    )


def test_literal_roots_are_emitted_verbatim():
    program = expand("import math", quote("x = uq(v)", env={"v": 2}), total)

    assert program.to_source() == (
        "import math\nx = 2\n# Load the data\nraw = list(range(3))\ntotal = sum(raw)\n"
    )


def test_meta_expr_root_resolves_against_its_closure():
    factor = 4

    program = expand(meta_expr(lambda: uq(total()) * uq(factor)))

    assert program.to_source().endswith("total = sum(raw)\ntotal * 4\n")


def test_handle_arguments_reach_the_block():
    program = expand(scaled_by.handle(4))

    assert program.to_source().endswith("scaled_by = total * 4\n")


def test_first_invocation_arguments_win():
    program = expand(twice_scaled)

    assert program.to_source().endswith(
        "scaled_by = total * 2\ntwice_scaled = scaled_by + scaled_by\n"
    )


def test_expression_trees_and_blocks_can_be_spliced():
    assert expand(spliced).to_source() == "spliced = (offset + 1) * 2\n"

    program = expand(prepared)
    assert program.to_source().endswith(
        "total = sum(raw)\nscale = 2\nprepared = total * (scale * 5)\n"
    )


def test_unsupported_unquote_values_fail_expansion():
    ctx = ExpansionContext()

    with pytest.raises(UnquoteError, match="object"):
        ctx.expand(opaque)

    assert not ctx.is_expanded(opaque)


def test_errors_from_unquote_targets_propagate_unchanged():
    with pytest.raises(ZeroDivisionError):
        expand(broken)


def test_unknown_roots_are_rejected():
    with pytest.raises(TypeError):
        expand(42)


def test_dependencies_record_edges():
    ctx = ExpansionContext()
    ctx.expand(mean)

    assert (raw.identity, total.identity) in ctx.dependencies
    assert (total.identity, mean.identity) in ctx.dependencies
    assert (raw.identity, mean.identity) in ctx.dependencies


@capture
def no_value():
    items = [1]


@capture
def needs_value():
    return uq(no_value())


def test_capture_without_value_emits_statements_but_cannot_be_unquoted():
    ctx = ExpansionContext()

    assert ctx.expand(no_value).to_source() == "items = [1]\n"
    assert ctx.name_of(no_value) is None

    with pytest.raises(UnquoteError, match="no value expression"):
        ExpansionContext().expand(needs_value)


@capture
def squared():
    return uq(NEGATIVE) ** 2


@capture
def negative_bits():
    return uq(NEGATIVE).bit_length()


def test_negative_literals_keep_their_precedence():
    program = expand(squared, negative_bits)

    assert program.to_source() == (
        "squared = (-5) ** 2\nnegative_bits = (-5).bit_length()\n"
    )
    namespace = {}
    exec(program.to_source(), namespace)
    assert namespace["squared"] == squared() == 25
    assert namespace["negative_bits"] == negative_bits() == 3


@capture
def numeric_contexts(value):
    return (uq(value) ** 2, -uq(value), uq(value).real, uq(value) * 3)


def _same_number(left, right):
    if isinstance(left, complex) or isinstance(right, complex):
        return _same_number(left.real, right.real) and _same_number(left.imag, right.imag)
    if math.isnan(left) or math.isnan(right):
        return math.isnan(left) and math.isnan(right)
    return left == right


@pytest.mark.parametrize(
    "value",
    [
        -5,
        7,
        -2.5,
        -0.0,
        float("inf"),
        float("-inf"),
        float("nan"),
        3 - 4j,
        complex(0, -2),
        complex(-1, 0),
        -2j,
    ],
)
def test_numeric_unquotes_match_value_mode_in_every_context(value):
    namespace = {}
    exec(expand(numeric_contexts.handle(value)).to_source(), namespace)

    generated = namespace["numeric_contexts"]
    live = numeric_contexts.fn(value)
    assert len(generated) == len(live)
    for got, expected in zip(generated, live):
        assert type(got) is type(expected)
        assert _same_number(got, expected)


@capture
def level():
    return 1


@capture
def doubled_level():
    level = 5
    return level * 2


@capture
def combined_level():
    return uq(level()) + uq(doubled_level())


@capture
def combined_level_reversed():
    return uq(doubled_level()) + uq(level())


def test_block_locals_never_overwrite_other_bindings():
    program = expand(combined_level)

    assert program.to_source() == (
        "level = 1\n"
        "level_2 = 5\n"
        "doubled_level = level_2 * 2\n"
        "combined_level = level + doubled_level\n"
    )
    namespace = {}
    exec(program.to_source(), namespace)
    assert namespace["combined_level"] == combined_level() == 11
    assert namespace["level"] == 1


def test_later_bindings_avoid_earlier_block_locals():
    program = expand(combined_level_reversed)

    assert program.to_source().endswith(
        "level_2 = 1\ncombined_level_reversed = doubled_level + level_2\n"
    )
    namespace = {}
    exec(program.to_source(), namespace)
    assert namespace["combined_level_reversed"] == combined_level_reversed() == 11


@capture
def inner_scratch():
    scratch = 3
    return scratch + 1


@capture
def outer_scratch():
    scratch = 1
    return uq(inner_scratch()) + scratch


def test_dependency_locals_do_not_leak_into_the_dependent():
    program = expand(outer_scratch)

    assert program.to_source() == (
        "scratch = 1\n"
        "scratch_2 = 3\n"
        "inner_scratch = scratch_2 + 1\n"
        "outer_scratch = inner_scratch + scratch\n"
    )
    namespace = {}
    exec(program.to_source(), namespace)
    assert namespace["outer_scratch"] == outer_scratch() == 5


@capture(name="json")
def json_settings():
    return 1


@observe
def loads_json():
    import json


def test_imports_cannot_overwrite_another_binding():
    ctx = ExpansionContext()

    with pytest.raises(UnquoteError, match="binding of"):
        ctx.expand(json_settings, loads_json)

    assert not ctx.is_expanded(json_settings)
