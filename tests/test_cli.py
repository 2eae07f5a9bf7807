"""Tests for CLI parser options and command wiring."""

import json
import sys
from pathlib import Path

import pytest

from insight_pipeline.cli import build_parser, main


def test_run_parser_requires_identity_and_input():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["run", "--input", "feedback.jsonl"])


def test_run_parser_accepts_overrides():
    args = build_parser().parse_args(
        [
            "run",
            "--input",
            "data/mock/feedback.jsonl",
            "--company-id",
            "acme",
            "--product-id",
            "prod-1",
            "--mock",
            "--stream",
            "--success-threshold",
            "0.5",
            "--min-cluster-size",
            "3",
            "--include-singletons",
        ]
    )
    assert args.command == "run"
    assert args.mock is True
    assert args.stream is True
    assert args.success_threshold == 0.5
    assert args.min_cluster_size == 3
    assert args.include_singletons is True
    assert args.product_areas is None


def test_events_parser_accepts_replay_flags():
    args = build_parser().parse_args(["events", "run-1", "--after", "12", "--sse"])
    assert args.command == "events"
    assert args.run_id == "run-1"
    assert args.after == 12
    assert args.sse is True


def test_runs_parser_accepts_list_inspect_and_prune():
    parser = build_parser()

    list_args = parser.parse_args(["runs", "list", "--limit", "5", "--json"])
    assert list_args.runs_command == "list"
    assert list_args.limit == 5
    assert list_args.json is True

    inspect_args = parser.parse_args(["runs", "inspect", "run-1", "--runs-root", "tmp/runs"])
    assert inspect_args.runs_command == "inspect"
    assert inspect_args.runs_root == "tmp/runs"

    prune_args = parser.parse_args(["runs", "prune", "--keep-last", "3", "--max-age-days", "7"])
    assert prune_args.keep_last == 3
    assert prune_args.max_age_days == 7
    assert prune_args.yes is False


def test_mock_feedback_parser_defaults():
    args = build_parser().parse_args(["mock-feedback"])
    assert args.count == 60
    assert args.seed == 7
    assert args.output == "data/mock/feedback.jsonl"


def _invoke(monkeypatch, *argv: str) -> int:
    monkeypatch.setattr(sys, "argv", ["insight-pipeline", "--config", "missing.yaml", *argv])
    try:
        main()
    except SystemExit as exc:
        return exc.code or 0
    return 0


def test_mock_run_then_replay_and_list(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    runs_root = tmp_path / "runs"

    assert _invoke(monkeypatch, "mock-feedback", "--count", "20", "--output", "feedback.jsonl") == 0
    assert "Generated 20 mock feedback items" in capsys.readouterr().out

    exit_code = _invoke(
        monkeypatch,
        "run",
        "--input",
        "feedback.jsonl",
        "--company-id",
        "acme",
        "--product-id",
        "prod-demo",
        "--mock",
        "--runs-root",
        str(runs_root),
    )
    output = capsys.readouterr().out
    assert exit_code == 0
    assert "Status:        completed" in output

    (run_root,) = [path for path in runs_root.iterdir() if path.is_dir()]
    result = json.loads((run_root / "result.json").read_text(encoding="utf-8"))
    assert result["run"]["status"] == "completed"
    assert result["insights"]

    assert _invoke(monkeypatch, "events", run_root.name, "--runs-root", str(runs_root)) == 0
    replay = capsys.readouterr().out
    assert "pipeline_started" in replay
    assert "pipeline_complete" in replay

    assert _invoke(monkeypatch, "runs", "list", "--runs-root", str(runs_root), "--json") == 0
    rows = json.loads(capsys.readouterr().out)
    assert [row["run_id"] for row in rows] == [run_root.name]


def test_events_for_unknown_run_exits_with_error(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert _invoke(monkeypatch, "events", "run-missing", "--runs-root", str(tmp_path)) == 1
    assert "Event replay failed" in capsys.readouterr().out


def test_run_with_bad_input_exits_with_error(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    exit_code = _invoke(
        monkeypatch,
        "run",
        "--input",
        "absent.jsonl",
        "--company-id",
        "acme",
        "--product-id",
        "prod-1",
        "--mock",
    )
    assert exit_code == 1
    assert "Input loading failed" in capsys.readouterr().out


def test_info_reports_langsmith_status(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    for key in (
        "LANGSMITH_TRACING",
        "LANGSMITH_API_KEY",
        "LANGSMITH_ENDPOINT",
        "LANGCHAIN_API_KEY",
        "LANGCHAIN_ENDPOINT",
        "LANGCHAIN_PROJECT",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("LANGCHAIN_TRACING_V2", "true")
    monkeypatch.setenv("LANGSMITH_PROJECT", "proj-a")

    assert _invoke(monkeypatch, "info") == 0
    output = capsys.readouterr().out
    assert "LangSmith tracing:  True" in output
    assert "LangSmith project:  proj-a" in output
    assert "LangSmith endpoint: (not set)" in output
    assert "LangSmith key set:  False" in output
