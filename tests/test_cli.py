"""Tests for the relci command line."""
import json

import pytest
from click.testing import CliRunner

from conftest import requires_bash
from relci.cli import cli


def _write_pipelines(tmp_path, test_cmd="true", extra=""):
    f = tmp_path / "release_pipelines.py"
    f.write_text(
        "from relci import pipeline, template, sh\n"
        "from relci.publish.release import DirectoryReleaseHost\n"
        "from relci.publish.base import PublishTarget\n"
        f"{extra}\n"
        "def pipelines():\n"
        "    return [pipeline('rel', template('linux',\n"
        "        sh('Build', 'echo built > wezterm-$RELCI_TAG.tar.gz'),\n"
        f"        sh('Test', {test_cmd!r}),\n"
        f"        publish=[DirectoryReleaseHost({str(tmp_path / 'releases')!r}, ['wezterm-*.tar.gz'])] + EXTRA_TARGETS,\n"
        "    ))]\n"
    )
    return f


def _args(tmp_path, pipelines, *extra):
    return [
        "run",
        "--pipelines", str(pipelines),
        "--work-dir", str(tmp_path / "work"),
        "--cache-dir", str(tmp_path / "cache"),
        *extra,
    ]


@pytest.fixture
def pipelines_file(tmp_path):
    return _write_pipelines(tmp_path, extra="EXTRA_TARGETS = []")


def test_plan_lists_jobs_without_running(tmp_path, pipelines_file):
    result = CliRunner().invoke(cli, ["plan", "--pipelines", str(pipelines_file), "--tag", "2023.01.01"])

    assert result.exit_code == 0, result.output
    assert "rel/linux" in result.output
    assert "2 steps" in result.output
    assert not (tmp_path / "releases").exists()


def test_plan_json(pipelines_file):
    result = CliRunner().invoke(cli, ["plan", "--pipelines", str(pipelines_file),
                                      "--ref", "refs/tags/2023.01.01", "--json"])
    assert result.exit_code == 0, result.output
    planned = json.loads(result.stdout)
    assert planned[0]["job_id"] == "rel/linux"
    assert planned[0]["steps"] == ["Build", "Test"]


def test_plan_for_branch_is_empty(pipelines_file):
    result = CliRunner().invoke(cli, ["plan", "--pipelines", str(pipelines_file), "--branch", "main-dev"])
    assert result.exit_code == 0
    assert "nothing to do" in result.output


@requires_bash
def test_run_success(tmp_path, pipelines_file):
    result = CliRunner().invoke(cli, _args(tmp_path, pipelines_file, "--tag", "2023.01.01"))

    assert result.exit_code == 0, result.output
    assert "OVERALL: SUCCESS" in result.output
    assert (tmp_path / "releases" / "2023.01.01" / "wezterm-2023.01.01.tar.gz").exists()


@requires_bash
def test_run_failure_exits_one(tmp_path):
    f = _write_pipelines(tmp_path, test_cmd="exit 1", extra="EXTRA_TARGETS = []")
    result = CliRunner().invoke(cli, _args(tmp_path, f, "--tag", "2023.01.01"))
    assert result.exit_code == 1
    assert "OVERALL: FAILED" in result.output


@requires_bash
def test_run_json_report(tmp_path, pipelines_file):
    result = CliRunner().invoke(cli, _args(tmp_path, pipelines_file, "--tag", "2023.01.01", "--json"))

    assert result.exit_code == 0, result.output
    report = json.loads(result.stdout)
    assert report["status"] == "success"
    assert report["jobs"][0]["publishes"][0]["status"] == "published"


def test_run_branch_is_not_triggered(tmp_path, pipelines_file):
    result = CliRunner().invoke(cli, _args(tmp_path, pipelines_file, "--branch", "main-dev"))
    assert result.exit_code == 0
    assert "OVERALL: NOT_TRIGGERED" in result.output


@requires_bash
def test_secrets_come_from_named_env_vars_and_are_redacted(tmp_path, monkeypatch):
    extra = (
        "class Leaky(PublishTarget):\n"
        "    name = 'leaky'\n"
        "    def publish(self, ctx):\n"
        "        raise RuntimeError('rejected ' + ctx.secrets.get('DEPLOY_TOKEN'))\n"
        "EXTRA_TARGETS = [Leaky()]\n"
    )
    f = _write_pipelines(tmp_path, extra=extra)
    monkeypatch.setenv("DEPLOY_TOKEN", "hunter2-value")

    result = CliRunner().invoke(cli, _args(tmp_path, f, "--tag", "2023.01.01", "--secret", "DEPLOY_TOKEN"))

    assert result.exit_code == 3, result.output
    assert "OVERALL: PARTIAL" in result.output
    assert "hunter2-value" not in result.output
    assert "rejected ***" in result.output


@requires_bash
def test_secrets_file(tmp_path):
    extra = (
        "class Checking(PublishTarget):\n"
        "    name = 'checking'\n"
        "    def publish(self, ctx):\n"
        "        from relci.model import PublishOutcome\n"
        "        assert ctx.secrets.get('GH_PAT') == 'from-file'\n"
        "        return PublishOutcome(self.name, 'published')\n"
        "EXTRA_TARGETS = [Checking()]\n"
    )
    f = _write_pipelines(tmp_path, extra=extra)
    secrets = tmp_path / "secrets.json"
    secrets.write_text(json.dumps({"GH_PAT": "from-file"}))

    result = CliRunner().invoke(cli, _args(tmp_path, f, "--tag", "2023.01.01", "--secrets-file", str(secrets)))
    assert result.exit_code == 0, result.output


def test_exactly_one_ref_option_is_required(tmp_path, pipelines_file):
    runner = CliRunner()
    assert runner.invoke(cli, _args(tmp_path, pipelines_file)).exit_code == 2
    assert runner.invoke(cli, _args(tmp_path, pipelines_file, "--tag", "a", "--branch", "b")).exit_code == 2
    assert runner.invoke(cli, _args(tmp_path, pipelines_file, "--ref", "refs/pull/1/head")).exit_code == 2


def test_missing_pipeline_file_is_reported(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["run", "--tag", "2023.01.01"])
    assert result.exit_code == 1
    assert "No pipeline file found" in result.output


def test_default_pipeline_file_is_discovered(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        with open("relci_pipelines.py", "w") as f:
            f.write(
                "from relci import pipeline, template, sh\n"
                "PIPELINES = [pipeline('found', template('linux', sh('b', 'true')))]\n"
            )
        result = runner.invoke(cli, ["plan", "--tag", "2023.01.01"])
    assert result.exit_code == 0, result.output
    assert "found/linux" in result.output


def test_broken_pipeline_file_exits_one(tmp_path):
    f = tmp_path / "broken_pipelines.py"
    f.write_text("PIPELINES = 42\n")
    result = CliRunner().invoke(cli, _args(tmp_path, f, "--tag", "2023.01.01"))
    assert result.exit_code == 1
    assert "List[PipelineDefinition]" in result.output


@requires_bash
def test_named_secret_is_not_visible_to_build_steps(tmp_path, monkeypatch):
    f = _write_pipelines(tmp_path, test_cmd='echo "token=$DEPLOY_TOKEN"; exit 1', extra="EXTRA_TARGETS = []")
    monkeypatch.setenv("DEPLOY_TOKEN", "hunter2-value")

    result = CliRunner().invoke(cli, _args(tmp_path, f, "--tag", "2023.01.01", "--secret", "DEPLOY_TOKEN", "--json"))

    assert result.exit_code == 1
    report = json.loads(result.stdout)
    assert report["jobs"][0]["steps"][1]["detail"] == "token="
    assert "hunter2-value" not in result.output
