import shutil
import subprocess
from pathlib import Path

import pytest

from relci.cache import CacheStore, FileCacheBackend
from relci.dsl import pipeline, template
from relci.matrix import expand
from relci.model import TriggerEvent
from relci.ui.console import Console, set_console

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash is not installed")

TAG = TriggerEvent("tag", "2023.01.01", "")
BRANCH = TriggerEvent("branch", "main-dev", "")

ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console()
    set_console(console)
    return console


@pytest.fixture
def cache(tmp_path):
    return CacheStore(FileCacheBackend(tmp_path / "cache"))


@pytest.fixture
def home(tmp_path):
    h = tmp_path / "home"
    h.mkdir()
    return h


def make_job(*steps, platform="linux", publish=None, env=None, event=TAG, repository=None, axes=None):
    definition = pipeline(
        "rel",
        template(platform, *steps, publish=publish, env=env, axes=axes),
        repository=repository,
    )
    return expand(definition, event)[0]


def git(*args, cwd):
    return subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@example.com", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()


@pytest.fixture
def source_repo(tmp_path):
    """A small repository with one commit tagged 2023.01.01."""
    repo = tmp_path / "source"
    repo.mkdir()
    git("init", "--quiet", cwd=repo)
    (repo / "Cargo.lock").write_text("# lock v1\n")
    (repo / "README").write_text("hello\n")
    git("add", "--all", cwd=repo)
    git("commit", "--quiet", "-m", "initial", cwd=repo)
    git("tag", "2023.01.01", cwd=repo)
    return repo


@pytest.fixture
def bare_repo(tmp_path):
    """A bare remote seeded with one commit, standing in for a tap or AUR repo."""
    seed = tmp_path / "seed"
    seed.mkdir()
    git("init", "--quiet", cwd=seed)
    (seed / "README").write_text("formula repo\n")
    git("add", "--all", cwd=seed)
    git("commit", "--quiet", "-m", "seed", cwd=seed)
    bare = tmp_path / "remote.git"
    git("clone", "--quiet", "--bare", str(seed), str(bare), cwd=tmp_path)
    return bare
