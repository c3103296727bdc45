import pytest

from Claims_Pipeline.orchestration.jsonpath import (
    PathExpression,
    PathResolutionError,
    PathSyntaxError,
    resolve_path,
    set_dotted,
)
from Claims_Pipeline.utils.errors import ProjectionSkipped

DOCUMENT = {
    "score": {"score": 42, "decisiondetails": [{"approved_amount": 100.5}]},
    "rawResponse": {"answer": {"doc type": {"name": "x"}}},
    "items": [1, 2, 3],
}


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("$", DOCUMENT),
        ("/score/score", 42),
        ("/score/decisiondetails/0/approved_amount", 100.5),
        ("$.score.decisiondetails[0].approved_amount", 100.5),
        ("$.rawResponse.answer['doc type'].name", "x"),
        ("score.score", 42),
        ("$.items[-1]", 3),
    ],
)
def test_resolves_supported_syntaxes(path, expected):
    assert resolve_path(DOCUMENT, path) == expected


def test_missing_segment_raises_projection_skipped():
    with pytest.raises(ProjectionSkipped) as excinfo:
        resolve_path(DOCUMENT, "$.score.missing")
    assert isinstance(excinfo.value, PathResolutionError)
    assert excinfo.value.segment == "missing"


def test_default_replaces_missing_value():
    assert resolve_path(DOCUMENT, "/items/9", default=None) is None


def test_malformed_path_is_a_syntax_error():
    with pytest.raises(PathSyntaxError):
        PathExpression.parse("$.a[")


def test_set_dotted_creates_intermediate_objects():
    body = {"claim": "replaced"}
    set_dotted(body, "claim.amount.total", 10)
    assert body == {"claim": {"amount": {"total": 10}}}
