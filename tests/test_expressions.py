import pytest

from specexec.errors import ExpressionError
from specexec.expressions import UNDEFINED, evaluate, evaluate_node, parse, tokenize

SCOPE = {
    "PREREQ": {"1": {"success": True, "exitCode": 0}},
    "STEP": {
        "1": {
            "success": True,
            "status": 200,
            "body": {"items": [1, 2, 3], "name": "demo"},
            "stdout": "all good",
            "durationMs": 120,
        },
        "2": {"success": False, "error": "boom", "status": 500},
    },
    "CLEANUP": {},
}


@pytest.mark.parametrize(
    "source",
    [
        'STEP["1"].success === true',
        "STEP['1'].status == 200 && STEP['2'].status >= 500",
        'STEP["1"].body.items.length === 3',
        'STEP["1"].body.items[0] === 1',
        'STEP["1"].body.name === "demo"',
        'STEP["2"].success === false',
        '!STEP["2"].success',
        'not STEP["2"].success and STEP["1"].success',
        'STEP["2"].success || STEP["1"].durationMs < 1000',
        'STEP["3"] === undefined',
        'PREREQ["1"].exitCode === 0',
        '(-STEP["1"].durationMs < 0) || false',
        'STEP["1"].stdout.length > 0',
        'STEP["1"].body.missing === undefined',
    ],
)
def test_true_conditions(source: str) -> None:
    assert evaluate(source, SCOPE) is True


@pytest.mark.parametrize(
    "source",
    [
        'STEP["1"].status === "200"',
        'STEP["1"].success === 1',
        'STEP["2"].success',
        'STEP["1"].status !== 200',
        "CLEANUP.anything",
        'STEP["1"].body.items.length > 3',
    ],
)
def test_false_conditions(source: str) -> None:
    assert evaluate(source, SCOPE) is False


def test_strict_equality_distinguishes_null_and_undefined() -> None:
    assert evaluate("null === null", {}) is True
    assert evaluate("null === undefined", {}) is False


def test_member_access_on_undefined_raises() -> None:
    with pytest.raises(ExpressionError, match="Cannot read property"):
        evaluate('STEP["9"].success', SCOPE)


def test_unknown_scope_name_raises() -> None:
    with pytest.raises(ExpressionError, match="Unknown name"):
        evaluate("process.exit", SCOPE)


def test_calls_are_not_part_of_the_grammar() -> None:
    with pytest.raises(ExpressionError):
        evaluate('STEP["1"].stdout.includes("good")', SCOPE)


def test_incomparable_types_raise() -> None:
    with pytest.raises(ExpressionError, match="Cannot compare"):
        evaluate('STEP["1"].status > "100"', SCOPE)


def test_tokenizer_rejects_unknown_characters() -> None:
    with pytest.raises(ExpressionError, match="Unexpected character"):
        tokenize("STEP['1'].status ~ 200")


def test_word_operators_tokenize_as_symbols() -> None:
    values = [token.value for token in tokenize("a and not b or c")]

    assert values == ["a", "&&", "!", "b", "||", "c", ""]


def test_missing_list_index_is_undefined() -> None:
    node = parse('STEP["1"].body.items[10]')

    assert evaluate_node(node, SCOPE) is UNDEFINED


def test_negation_binds_tighter_than_comparison() -> None:
    assert evaluate('!PREREQ["1"].exitCode === false', SCOPE) is False
    assert evaluate('!PREREQ["1"].exitCode === true', SCOPE) is True
    assert evaluate('STEP["1"].success === !false', SCOPE) is True
    assert evaluate('STEP["2"].success === !STEP["1"].success', SCOPE) is True
    assert evaluate('not STEP["1"].success === false', SCOPE) is True
