import json
from pathlib import Path
from typing import Any

import pytest

from specexec.errors import SchemaError
from specexec.loader import SpecificationLoader, substitute_placeholders


def _document(**task_overrides: Any) -> dict[str, Any]:
    task: dict[str, Any] = {
        "title": "Health check",
        "testExecution": {
            "prerequisites": [
                {"actionId": "PREREQ.1", "type": "TERMINAL_COMMAND", "parameters": {}}
            ],
            "steps": [
                {
                    "actionId": "STEP.1",
                    "type": "HTTP_REQUEST",
                    "parameters": {"url": "${API_BASE_URL}/health", "method": "GET"},
                }
            ],
            "cleanup": [],
        },
        "validationCriteria": {"successConditions": ['STEP["1"].status === 200']},
    }
    task.update(task_overrides)
    return {
        "schemaVersion": "2.0",
        "metadata": {"taskTitle": "Demo"},
        "globalConfiguration": {"workspaceRoot": "/tmp/ws", "environment": {}},
        "tasks": {"T001": task},
    }


def test_parse_builds_typed_specification() -> None:
    spec = SpecificationLoader(environ={}).parse(_document())

    assert spec.schema_version == "2.0"
    assert spec.title == "Demo"
    task = spec.tasks["T001"]
    assert task.title == "Health check"
    assert [action.action_id for action in task.prerequisites] == ["PREREQ.1"]
    assert task.steps[0].parameters["url"] == "http://localhost:3000/health"
    assert task.validation_criteria.success_conditions[0].condition == 'STEP["1"].status === 200'
    assert task.completion_criteria.all_steps_must_pass is True
    assert spec.global_configuration.workspace_root == Path("/tmp/ws")


def test_environment_precedence_overrides_process_and_document() -> None:
    document = _document()
    document["globalConfiguration"]["environment"] = {"API_BASE_URL": "http://doc:1"}

    from_document = SpecificationLoader(environ={}).parse(document)
    from_process = SpecificationLoader(environ={"API_BASE_URL": "http://env:2"}).parse(document)
    from_override = SpecificationLoader(
        {"API_BASE_URL": "http://cli:3"},
        environ={"API_BASE_URL": "http://env:2"},
    ).parse(document)

    assert from_document.tasks["T001"].steps[0].parameters["url"] == "http://doc:1/health"
    assert from_process.tasks["T001"].steps[0].parameters["url"] == "http://env:2/health"
    assert from_override.tasks["T001"].steps[0].parameters["url"] == "http://cli:3/health"


def test_substitution_keeps_unknown_placeholders_and_coerces_whole_values() -> None:
    variables = {"PORT": "8080", "FLAG": "true", "NAME": "svc"}
    raw = {
        "port": "${PORT}",
        "flag": "${FLAG}",
        "url": "http://${NAME}:${PORT}/${MISSING}",
        "nested": ["${NAME}", {"deep": "${UNKNOWN}"}],
    }

    result = substitute_placeholders(raw, variables)

    assert result["port"] == 8080
    assert result["flag"] is True
    assert result["url"] == "http://svc:8080/${MISSING}"
    assert result["nested"] == ["svc", {"deep": "${UNKNOWN}"}]
    assert substitute_placeholders(result, variables) == result


def test_substitution_is_single_pass() -> None:
    result = substitute_placeholders("${A}", {"A": "${B}", "B": "deep"})

    assert result == "${B}"


def test_spec_dir_and_workspace_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    document = _document()
    document["globalConfiguration"] = {"environment": {}}
    document["tasks"]["T001"]["testExecution"]["steps"][0]["parameters"]["url"] = (
        "${SPEC_DIR}|${WORKSPACE_ROOT}"
    )
    spec_path = tmp_path / "specs" / "demo.json"
    spec_path.parent.mkdir()
    spec_path.write_text(json.dumps(document), encoding="utf-8")

    spec = SpecificationLoader(environ={}).load(spec_path)

    url = spec.tasks["T001"].steps[0].parameters["url"]
    assert url == f"{spec_path.parent.resolve()}|{tmp_path}"
    assert spec.source_path == spec_path


def test_timeout_placeholder_becomes_integer() -> None:
    document = _document(timeout="${TASK_TIMEOUT}")

    spec = SpecificationLoader({"TASK_TIMEOUT": "2500"}, environ={}).parse(document)

    assert spec.tasks["T001"].timeout == 2500


@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda doc: doc.pop("schemaVersion"), "schemaVersion"),
        (lambda doc: doc.update(tasks={}), "No tasks"),
        (lambda doc: doc.pop("globalConfiguration"), "globalConfiguration"),
        (lambda doc: doc["tasks"]["T001"]["testExecution"].update(steps=[]), "steps"),
        (lambda doc: doc["tasks"]["T001"].pop("validationCriteria"), "validationCriteria"),
        (
            lambda doc: doc["tasks"]["T001"]["testExecution"]["steps"][0].pop("type"),
            "missing type",
        ),
        (
            lambda doc: doc["tasks"]["T001"]["testExecution"]["steps"][0].update(
                actionId="PREREQ.1"
            ),
            "duplicate",
        ),
        (lambda doc: doc["tasks"]["T001"].update(timeout="soon"), "milliseconds"),
    ],
)
def test_structural_problems_raise_schema_error(mutate: Any, message: str) -> None:
    document = _document()
    mutate(document)

    with pytest.raises(SchemaError, match=message):
        SpecificationLoader(environ={}).parse(document)


def test_load_reports_invalid_json(tmp_path: Path) -> None:
    spec_path = tmp_path / "broken.json"
    spec_path.write_text("{not json", encoding="utf-8")

    with pytest.raises(SchemaError, match="not valid JSON"):
        SpecificationLoader(environ={}).load(spec_path)


def test_load_reports_missing_file(tmp_path: Path) -> None:
    with pytest.raises(SchemaError, match="not found"):
        SpecificationLoader(environ={}).load(tmp_path / "absent.json")


def test_success_condition_objects_keep_descriptions() -> None:
    document = _document(
        validationCriteria={
            "successConditions": [
                {"condition": "STEP['1'].success", "description": "Health endpoint answers"}
            ]
        },
        completionCriteria={"allStepsMustPass": False, "requiredEvidence": ["STEP.1"]},
    )

    task = SpecificationLoader(environ={}).parse(document).tasks["T001"]

    assert task.validation_criteria.success_conditions[0].description == "Health endpoint answers"
    assert task.completion_criteria.all_steps_must_pass is False
    assert task.completion_criteria.required_evidence == ("STEP.1",)


@pytest.mark.parametrize("raw", ["NaN", "Infinity", "-Infinity"])
def test_non_finite_numbers_stay_strings(raw: str) -> None:
    result = substitute_placeholders({"limit": "${LIMIT}"}, {"LIMIT": raw})

    assert result == {"limit": raw}


def test_schema_errors_name_the_offending_location() -> None:
    document = _document()
    document["tasks"]["T001"]["testExecution"]["steps"][0]["actionId"] = ""

    with pytest.raises(SchemaError, match=r"tasks\.T001\.testExecution\.steps\.0\.actionId"):
        SpecificationLoader(environ={}).parse(document)
