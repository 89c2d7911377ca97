"""Tests for the llmvm CLI via CliRunner.

The cloud provisioner is replaced with the in-memory fake, so no
credentials or network access are needed.
"""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from llmvm.cli import main

SSH = "203.0.113.5/32"
DEP_ID = "demo-llm-vpc-network"
VARS = ["--var", "project_id=demo", "--var", f"ssh_source_ip={SSH}"]


@pytest.fixture
def runner():
    return CliRunner()


class TestRender:
    """Tests for `llmvm render`."""

    def test_json(self, runner):
        result = runner.invoke(main, ["render", *VARS, "--json"])
        assert result.exit_code == 0, result.output
        doc = json.loads(result.output)
        assert "instance/tinylama-vm" in doc["resources"]
        assert SSH not in result.output

    def test_table(self, runner):
        result = runner.invoke(main, ["render", *VARS])
        assert result.exit_code == 0, result.output
        assert "tinylama-vm" in result.output
        assert SSH not in result.output

    def test_var_file(self, runner, tmp_path):
        path = tmp_path / "stack.yaml"
        path.write_text(f"project_id: demo\nssh_source_ip: {SSH}\nnetwork_name: lab\n")
        result = runner.invoke(main, ["render", "--var-file", str(path), "--json"])
        assert result.exit_code == 0, result.output
        assert "network/lab" in json.loads(result.output)["resources"]

    def test_missing_ssh_source(self, runner):
        result = runner.invoke(main, ["render", "--var", "project_id=demo"])
        assert result.exit_code == 1
        assert "ssh_source_ip" in result.output

    def test_bad_var_pair(self, runner):
        result = runner.invoke(main, ["render", "--var", "oops"])
        assert result.exit_code == 1
        assert "name=value" in result.output


class TestPlanApply:
    """Tests for plan, apply, output, status and destroy."""

    def test_plan_fresh(self, runner, tmp_home):
        result = runner.invoke(main, ["plan", *VARS, "--home", str(tmp_home)])
        assert result.exit_code == 0, result.output
        assert "5 to add" in result.output

    def test_dry_run(self, runner, tmp_home):
        result = runner.invoke(main, ["apply", *VARS, "--home", str(tmp_home), "--dry-run"])
        assert result.exit_code == 0, result.output
        assert "planned" in result.output
        assert (tmp_home / "deployments" / f"{DEP_ID}.json").exists()

    def test_apply_cancelled(self, runner, tmp_home, fake_provisioner):
        with patch("llmvm.cli.deploy._make_provisioner", return_value=fake_provisioner):
            result = runner.invoke(main, ["apply", *VARS, "--home", str(tmp_home)], input="n\n")
        assert result.exit_code == 0
        assert "Cancelled" in result.output
        assert fake_provisioner.calls == []

    def test_full_lifecycle(self, runner, tmp_home, fake_provisioner):
        home = ["--home", str(tmp_home)]
        with patch("llmvm.cli.deploy._make_provisioner", return_value=fake_provisioner):
            result = runner.invoke(main, ["apply", *VARS, *home, "--yes"])
            assert result.exit_code == 0, result.output
            assert "34.1.2.3" in result.output
            assert SSH not in result.output

            result = runner.invoke(main, ["plan", *VARS, *home])
            assert "No changes" in result.output

            result = runner.invoke(main, ["output", DEP_ID, *home, "--json"])
            assert result.exit_code == 0, result.output
            assert json.loads(result.output) == {
                "instance_name": "tinylama-vm",
                "instance_public_ip": "34.1.2.3",
            }

            result = runner.invoke(main, ["status", *home, "--refresh"])
            assert result.exit_code == 0, result.output
            assert DEP_ID in result.output

            result = runner.invoke(main, ["destroy", DEP_ID, *home, "--force"])
            assert result.exit_code == 0, result.output
            assert "destroyed" in result.output

        assert fake_provisioner.live == {}

    def test_apply_failure_exits_nonzero(self, runner, tmp_home, make_provisioner):
        prov = make_provisioner(fail_on={"instance/tinylama-vm"})
        with patch("llmvm.cli.deploy._make_provisioner", return_value=prov):
            result = runner.invoke(main, ["apply", *VARS, "--home", str(tmp_home), "--yes"])
        assert result.exit_code == 1
        assert "partial" in result.output

    def test_output_unknown(self, runner, tmp_home):
        result = runner.invoke(main, ["output", "nope", "--home", str(tmp_home)])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_output_saved_only(self, runner, tmp_home, fake_provisioner):
        with patch("llmvm.cli.deploy._make_provisioner", return_value=fake_provisioner):
            runner.invoke(main, ["apply", *VARS, "--home", str(tmp_home), "--yes"])
        result = runner.invoke(main, ["output", DEP_ID, "--home", str(tmp_home), "--no-refresh"])
        assert result.exit_code == 0, result.output
        assert "instance_public_ip = 34.1.2.3" in result.output

    def test_status_empty(self, runner, tmp_home):
        result = runner.invoke(main, ["status", "--home", str(tmp_home)])
        assert result.exit_code == 0
        assert "No deployments" in result.output

    def test_destroy_unknown(self, runner, tmp_home):
        result = runner.invoke(main, ["destroy", "nope", "--home", str(tmp_home), "--force"])
        assert result.exit_code == 1


class TestScript:
    """Tests for `llmvm script`."""

    def test_default(self, runner):
        result = runner.invoke(main, ["script"])
        assert result.exit_code == 0
        assert result.output.startswith("#!/bin/bash")
        assert "TinyLlama/TinyLlama-1.1B-Chat-v1.0" in result.output

    def test_custom_model(self, runner):
        result = runner.invoke(main, ["script", "--model", "org/other"])
        assert "MODEL_ID = 'org/other'" in result.output


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output
