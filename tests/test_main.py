"""
Tests for the command line entry point
"""

import io
import json

import pytest

import main


def run_cli(claude_dirs, *argv):
    return main.main([
        "--agents-dir", str(claude_dirs["agents"]),
        "--skills-dir", str(claude_dirs["skills"]),
        "--expertise-dir", str(claude_dirs["expertise"]),
        *argv,
    ])


def test_compose(claude_dirs, capsys):
    assert run_cli(claude_dirs, "compose", "reviewer") == 0

    out = capsys.readouterr().out
    assert out.startswith("# Environment")
    assert "# Expertise: python" in out


def test_compose_unknown_agent(claude_dirs, capsys):
    assert run_cli(claude_dirs, "compose", "nobody") == 1
    assert "Agent not found" in capsys.readouterr().err


@pytest.mark.parametrize("request_text, expected", [
    ('{"tool_name": "Task", "tool_input": {"subagent_type": "reviewer"}}', "block"),
    ('{"tool_name": "Task", "tool_input": {"subagent_type": "Explore"}}', "allow"),
    ("garbage", "allow"),
])
def test_gate(claude_dirs, capsys, monkeypatch, request_text, expected):
    monkeypatch.setattr("sys.stdin", io.StringIO(request_text))

    assert run_cli(claude_dirs, "gate") == 0

    assert json.loads(capsys.readouterr().out)["decision"] == expected


def test_check_config(claude_dirs, capsys):
    code = run_cli(claude_dirs, "--worker", "sh", "check-config")

    summary = json.loads(capsys.readouterr().out)
    assert code == 0
    assert summary["problems"] == []
    assert summary["agents_dir"] == str(claude_dirs["agents"])


def test_invoke_refuses_bad_config(claude_dirs, capsys):
    code = run_cli(claude_dirs, "--worker", "no-such-binary-xyz", "invoke", "reviewer", "hi")

    assert code == 2
    assert "Worker executable not found" in capsys.readouterr().err
