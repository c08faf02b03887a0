import hashlib
import threading
import time
from pathlib import Path

import pytest

from conftest import TAG, git, make_job, requires_bash, requires_git
from relci.cache import CacheKey
from relci.cancel import CancelToken
from relci.dsl import cache_restore, cache_save, checkout, sh
from relci.environments.docker import DockerEnvironment
from relci.environments.local import TIMEOUT_EXIT, LocalEnvironment
from relci.model import FAILED, SUCCEEDED, CacheClass, TriggerEvent
from relci.publish.release import DirectoryReleaseHost
from relci.runner import load_pipelines, run_job

DEPS = CacheClass("deps", "deps")


def _run(job, cache, tmp_path, home, **kw):
    ws = tmp_path / "ws"
    return run_job(job, cache, workspace=ws, environment=LocalEnvironment(ws, home=home), **kw)


@requires_bash
def test_steps_run_in_declared_order(tmp_path, cache, home):
    job = make_job(sh("first", "echo a >> order.txt"), sh("second", "echo b >> order.txt"))
    result = _run(job, cache, tmp_path, home)

    assert result.status == SUCCEEDED
    assert job.status == SUCCEEDED
    assert (tmp_path / "ws" / "order.txt").read_text() == "a\nb\n"
    assert [s.status for s in result.steps] == [SUCCEEDED, SUCCEEDED]


@requires_bash
def test_first_failing_step_halts_the_job(tmp_path, cache, home):
    job = make_job(sh("ok", "true"), sh("test", "echo boom; exit 3"), sh("never", "touch never"))
    result = _run(job, cache, tmp_path, home)

    assert result.status == FAILED
    assert [s.status for s in result.steps] == [SUCCEEDED, FAILED, "skipped"]
    assert result.steps[1].exit_code == 3
    assert "boom" in result.steps[1].detail
    assert "test" in result.error
    assert not (tmp_path / "ws" / "never").exists()


@requires_bash
def test_may_fail_step_is_recorded_and_execution_continues(tmp_path, cache, home):
    job = make_job(sh("flaky", "exit 1", may_fail=True), sh("after", "touch after"))
    result = _run(job, cache, tmp_path, home)

    assert result.status == SUCCEEDED
    assert result.steps[0].status == FAILED
    assert (tmp_path / "ws" / "after").exists()


@requires_bash
def test_timeout_counts_as_failure(tmp_path, cache, home):
    job = make_job(sh("slow", "sleep 10", timeout=0.5))
    started = time.monotonic()
    result = _run(job, cache, tmp_path, home)

    assert result.status == FAILED
    assert result.steps[0].exit_code == TIMEOUT_EXIT
    assert "timed out" in result.error
    assert time.monotonic() - started < 9


@requires_bash
def test_job_environment_is_exported(tmp_path, cache, home):
    job = make_job(
        sh("env", 'test "$RELCI_TAG" = 2023.01.01 && test "$RELCI_PLATFORM" = linux '
                  '&& test "$RELCI_ARCH" = arm64 && test "$GREETING" = hi && test "$HOME" = "' + str(home) + '"'),
        env={"GREETING": "hi"},
        axes={"arch": ["arm64"]},
    )
    assert _run(job, cache, tmp_path, home).status == SUCCEEDED


@requires_bash
def test_host_credentials_do_not_reach_build_steps(tmp_path, cache, home, monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_SUPERSECRET")
    monkeypatch.setenv("AUR_SSH_PRIVATE_KEY", "-----BEGIN KEY-----")
    job = make_job(sh("leak", 'echo "token=$GITHUB_TOKEN key=$AUR_SSH_PRIVATE_KEY"; exit 1'))

    result = _run(job, cache, tmp_path, home)

    detail = result.to_dict()["steps"][0]["detail"]
    assert "token= key=" in detail
    assert "ghp_SUPERSECRET" not in detail
    assert "BEGIN KEY" not in detail
    logs = "".join(p.read_text() for p in (tmp_path / "logs").iterdir())
    assert "ghp_SUPERSECRET" not in logs


@requires_bash
def test_host_path_is_still_inherited(tmp_path, cache, home):
    job = make_job(sh("tools", "command -v git || command -v sh"))
    assert _run(job, cache, tmp_path, home).status == SUCCEEDED


@requires_bash
def test_missing_cwd_fails_the_step(tmp_path, cache, home):
    job = make_job(sh("build", "true", cwd="does/not/exist"))
    result = _run(job, cache, tmp_path, home)
    assert result.status == FAILED
    assert "cwd" in result.error


@requires_bash
def test_missed_cache_is_saved_after_success_and_restored_next_run(tmp_path, cache, home):
    steps = [
        sh("lock", "echo 'lock v1' > Cargo.lock"),
        cache_restore(DEPS),
        sh("was warm?", "test -f deps/built && echo warm > warm.txt || true"),
        sh("build", "mkdir -p deps && echo 1 > deps/built"),
    ]
    key = CacheKey("linux", hashlib.sha256(b"lock v1\n").hexdigest(), "deps")

    first = run_job(make_job(*steps), cache, workspace=tmp_path / "one",
                    environment=LocalEnvironment(tmp_path / "one", home=home))
    assert first.status == SUCCEEDED
    assert first.steps[1].detail == "cache miss"
    assert cache.get(key) is not None
    assert not (tmp_path / "one" / "warm.txt").exists()

    second = run_job(make_job(*steps), cache, workspace=tmp_path / "two",
                     environment=LocalEnvironment(tmp_path / "two", home=home))
    assert second.status == SUCCEEDED
    assert second.steps[1].detail.startswith("cache hit")
    assert (tmp_path / "two" / "warm.txt").exists()


@requires_bash
def test_failed_job_does_not_save_missed_caches(tmp_path, cache, home):
    job = make_job(sh("lock", "echo v > Cargo.lock"), cache_restore(DEPS),
                   sh("build", "mkdir deps && touch deps/x && exit 1"))
    assert _run(job, cache, tmp_path, home).status == FAILED
    assert cache.get(CacheKey("linux", hashlib.sha256(b"v\n").hexdigest(), "deps")) is None


@requires_bash
def test_explicit_save_step_writes_immediately(tmp_path, cache, home):
    job = make_job(sh("build", "mkdir -p deps && touch deps/x"), cache_save(DEPS), sh("test", "exit 1"))
    result = _run(job, cache, tmp_path, home)

    assert result.status == FAILED
    # no lockfile in the workspace: the hash part is empty
    assert cache.get(CacheKey("linux", "", "deps")) is not None


@requires_bash
def test_home_relative_cache_paths_resolve_into_runner_home(tmp_path, cache, home):
    registry = CacheClass("cargo-registry", "~/.cargo/registry")
    job = make_job(cache_restore(registry), sh("fetch", "mkdir -p ~/.cargo/registry && touch ~/.cargo/registry/idx"))
    assert _run(job, cache, tmp_path, home).status == SUCCEEDED
    assert cache.get(CacheKey("linux", "", "cargo-registry")) is not None


@requires_bash
def test_cancel_before_start_skips_everything(tmp_path, cache, home):
    token = CancelToken()
    token.cancel()
    result = _run(make_job(sh("a", "touch a")), cache, tmp_path, home, cancel=token)

    assert result.status == FAILED
    assert result.error == "cancelled"
    assert [s.status for s in result.steps] == ["skipped"]


@requires_bash
def test_cancel_terminates_running_step(tmp_path, cache, home):
    token = CancelToken()
    timer = threading.Timer(0.3, token.cancel)
    timer.start()
    started = time.monotonic()
    try:
        result = _run(make_job(sh("long", "sleep 10"), sh("next", "true")), cache, tmp_path, home, cancel=token)
    finally:
        timer.cancel()

    assert result.status == FAILED
    assert result.error == "cancelled"
    assert [s.status for s in result.steps] == [FAILED, "skipped"]
    assert time.monotonic() - started < 9


@requires_bash
def test_artifacts_are_collected_for_publish_patterns(tmp_path, cache, home):
    target = DirectoryReleaseHost(tmp_path / "rel", ["dist/*.tar.gz"])
    job = make_job(
        sh("package", "mkdir -p dist && printf 'payload' > dist/app-1.tar.gz && touch dist/notes.txt"),
        publish=[target],
    )
    result = _run(job, cache, tmp_path, home)

    assert [a.name for a in result.artifacts] == ["app-1.tar.gz"]
    assert result.artifacts[0].sha256 == hashlib.sha256(b"payload").hexdigest()
    assert result.artifacts[0].size == 7
    assert job.produced_artifacts == result.artifacts


@requires_git
def test_checkout_fetches_the_tagged_commit(tmp_path, cache, home, source_repo):
    sha = git("rev-parse", "HEAD", cwd=source_repo)
    event = TriggerEvent("tag", "2023.01.01", sha)
    job = make_job(checkout(submodules=False), event=event, repository=str(source_repo))

    result = _run(job, cache, tmp_path, home)

    assert result.status == SUCCEEDED
    assert result.steps[0].detail == f"checked out {sha[:12]}"
    assert (tmp_path / "ws" / "README").read_text() == "hello\n"


@requires_git
def test_checkout_by_tag_name_without_sha(tmp_path, cache, home, source_repo):
    job = make_job(checkout(), repository=str(source_repo))
    assert _run(job, cache, tmp_path, home).status == SUCCEEDED
    assert (tmp_path / "ws" / "Cargo.lock").exists()


def test_checkout_without_repository_fails(tmp_path, cache, home):
    result = _run(make_job(checkout()), cache, tmp_path, home)
    assert result.status == FAILED
    assert "no repository" in result.error


def test_docker_command_mounts_workspace_and_passes_only_job_env(tmp_path):
    env = DockerEnvironment(tmp_path / "ws", "ubuntu:20.04")
    cmd = env.docker_command("cargo build", cwd="sub", env={"RELCI_TAG": "2023.01.01"})

    assert cmd[:3] == ["docker", "run", "--rm"]
    assert f"{(tmp_path / 'ws').resolve()}:/workspace" in cmd
    assert cmd[cmd.index("-w") + 1] == "/workspace/sub"
    assert "HOME=/workspace/.relci-home" in cmd
    assert "RELCI_TAG=2023.01.01" in cmd
    assert cmd[-4:] == ["ubuntu:20.04", "bash", "-c", "cargo build"]
    assert env.resolve_path("~/.cargo/git") == tmp_path / "ws" / ".relci-home" / ".cargo" / "git"
    with pytest.raises(ValueError):
        env.resolve_path("/abs/path")


@requires_bash
def test_docker_step_timeout_kills_the_named_container(tmp_path):
    fake = tmp_path / "docker"
    fake.write_text(
        "#!/bin/bash\n"
        f'if [ "$1" = kill ]; then echo "$2" >> {tmp_path}/kills; exit 0; fi\n'
        "while [ $# -gt 0 ]; do\n"
        f'  if [ "$1" = --name ]; then echo "$2" >> {tmp_path}/runs; fi\n'
        "  shift\n"
        "done\n"
        "exec sleep 30\n"
    )
    fake.chmod(0o755)
    env = DockerEnvironment(tmp_path / "ws", "ubuntu:20.04", docker=str(fake))

    started = time.monotonic()
    res = env.run("sleep 30", cwd=None, env={}, log_path=tmp_path / "step.log", timeout=0.5)

    assert res.exit_code == TIMEOUT_EXIT and res.timed_out
    assert time.monotonic() - started < 10
    [name] = (tmp_path / "runs").read_text().split()
    assert name.startswith("relci-")
    assert (tmp_path / "kills").read_text().split() == [name]


def test_docker_command_runs_an_init_process_under_a_name(tmp_path):
    cmd = DockerEnvironment(tmp_path, "img").docker_command("true", cwd=None, env={}, name="relci-abc")
    assert "--init" in cmd
    assert cmd[cmd.index("--name") + 1] == "relci-abc"


def test_load_pipelines(tmp_path):
    f = tmp_path / "my_pipelines.py"
    f.write_text(
        "from relci import pipeline, template, sh\n"
        "PIPELINES = [pipeline('rel', template('linux', sh('b', 'true')))]\n"
    )
    defs = load_pipelines(f)
    assert [d.name for d in defs] == ["rel"]
    assert defs[0].trigger_patterns == ["20*"]


def test_load_pipelines_rejects_duplicates_and_bad_values(tmp_path):
    dup = tmp_path / "dup_pipelines.py"
    dup.write_text(
        "from relci import pipeline, template, sh\n"
        "def pipelines():\n"
        "    t = template('linux', sh('b', 'true'))\n"
        "    return [pipeline('rel', t), pipeline('rel', t)]\n"
    )
    with pytest.raises(ValueError, match="Duplicate pipeline names"):
        load_pipelines(dup)

    bad = tmp_path / "bad_pipelines.py"
    bad.write_text("PIPELINES = 'nope'\n")
    with pytest.raises(TypeError):
        load_pipelines(bad)

    with pytest.raises(FileNotFoundError):
        load_pipelines(Path(tmp_path / "missing.py"))
