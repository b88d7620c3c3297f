"""Tests for the flowforge command line."""

import json
from pathlib import Path

import pytest

from flowforge.cli import WorkflowFileError, build_execution_config, load_workflow_file, main

DECISION_WORKFLOW = {
    "id": "triage",
    "nodes": [
        {
            "id": "check",
            "type": "decision",
            "config": {"variable": "priority", "operator": "greater_than", "value": 3},
        },
        {
            "id": "escalate",
            "type": "decision",
            "config": {"variable": "check_output.result", "operator": "equals", "value": True},
        },
    ],
    "edges": [{"source": "check", "target": "escalate", "source_port": "true"}],
    "config": {"checkpoint_interval": 1},
    "variables": {"priority": 1},
}


def write_workflow(tmp_path: Path, data) -> Path:
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(data))
    return path


def run_cli(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


class TestLoadWorkflow:
    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(WorkflowFileError, match="not found"):
            load_workflow_file(tmp_path / "nope.json")

    def test_not_an_object(self, tmp_path: Path):
        with pytest.raises(WorkflowFileError, match="JSON object"):
            load_workflow_file(write_workflow(tmp_path, [1, 2]))

    def test_workflow_config_over_file_defaults(self, tmp_path: Path, monkeypatch):
        settings = tmp_path / "settings.json"
        settings.write_text(
            json.dumps({"execution": {"checkpoint_interval": 7, "pause_on_error": True}})
        )
        monkeypatch.setenv("FLOWFORGE_CONFIG", str(settings))

        config = build_execution_config({"config": {"checkpoint_interval": 2}})

        assert config.checkpoint_interval == 2
        assert config.pause_on_error is True


class TestValidateCommand:
    def test_valid_workflow(self, tmp_path: Path, capsys):
        data = dict(DECISION_WORKFLOW)
        data["nodes"] = [*DECISION_WORKFLOW["nodes"], {"id": "draft", "type": "agent"}]

        code = run_cli(["validate", str(write_workflow(tmp_path, data))])

        out = capsys.readouterr().out
        assert code == 0
        assert "✓ triage: 3 nodes, 1 edges" in out
        assert "agent" in out

    def test_cycle_reported(self, tmp_path: Path, capsys):
        data = {
            "id": "loop",
            "nodes": [{"id": "a", "type": "tool"}, {"id": "b", "type": "tool"}],
            "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        }

        code = run_cli(["validate", str(write_workflow(tmp_path, data))])

        assert code == 1
        assert "Dependency cycle" in capsys.readouterr().out

    def test_dangling_edge_reported(self, tmp_path: Path, capsys):
        data = {
            "id": "broken",
            "nodes": [{"id": "a", "type": "tool"}],
            "edges": [{"source": "a", "target": "ghost"}],
        }

        code = run_cli(["validate", str(write_workflow(tmp_path, data))])

        assert code == 1
        assert "ghost" in capsys.readouterr().out


class TestRunCommand:
    def test_run_prints_result(self, tmp_path: Path, capsys):
        code = run_cli(["run", str(write_workflow(tmp_path, DECISION_WORKFLOW))])

        result = json.loads(capsys.readouterr().out)
        assert code == 0
        assert result["status"] == "completed"
        assert result["completed_nodes"] == ["check", "escalate"]
        assert result["output"]["check_output"] == {"result": False, "port": "false"}
        assert result["checkpoints"] == 2

    def test_input_overrides_variables(self, tmp_path: Path, capsys):
        path = write_workflow(tmp_path, DECISION_WORKFLOW)

        code = run_cli(["run", str(path), "--input", '{"priority": 5}'])

        result = json.loads(capsys.readouterr().out)
        assert code == 0
        assert result["output"]["escalate_output"]["result"] is True

    def test_failed_node_exit_code(self, tmp_path: Path, capsys):
        data = {"id": "wf", "nodes": [{"id": "x", "type": "agent"}]}

        code = run_cli(["run", str(write_workflow(tmp_path, data))])

        result = json.loads(capsys.readouterr().out)
        assert code == 1
        assert result["failed_nodes"] == ["x"]

    def test_bad_input_json(self, tmp_path: Path, capsys):
        path = write_workflow(tmp_path, DECISION_WORKFLOW)

        code = run_cli(["run", str(path), "--input", "{oops"])

        assert code == 1
        assert "invalid --input" in capsys.readouterr().err

    def test_checkpoint_dir(self, tmp_path: Path, capsys):
        path = write_workflow(tmp_path, DECISION_WORKFLOW)
        checkpoints = tmp_path / "cps"

        code = run_cli(["run", str(path), "--checkpoint-dir", str(checkpoints)])

        result = json.loads(capsys.readouterr().out)
        assert code == 0
        assert (checkpoints / result["execution_id"] / "index.json").exists()
