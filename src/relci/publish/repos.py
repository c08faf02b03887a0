# publish/repos.py
from __future__ import annotations

import base64
import os
import shutil
import string
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..git_facts import git
from ..model import PUBLISHED, UNCHANGED, PublishOutcome
from .base import PublishContext, PublishFailure, PublishTarget

COMMIT_MESSAGE = "Automated update to match latest tag"
SRCINFO = ".SRCINFO"


class GitRepositoryTarget(PublishTarget):
    """
    Publish by committing a generated package-definition file to a git repo.

    Flow: clone -> render template -> write -> commit -> push. When the
    rendered file equals what the repository already holds there is nothing to
    commit and the outcome is `unchanged`, not a failure.

    The template is read from the job workspace and rendered with
    string.Template.safe_substitute, so a file the packaging step already
    fully rendered passes through untouched. Placeholders:
      ${version}   the pushed tag
      ${sha256}    content hash of the artifact matching `artifact`
      ${filename}  that artifact's file name
    """

    def __init__(
        self,
        *,
        name: str,
        url: str,
        template: str,
        dest_path: str,
        artifact: str | None = None,
        author_name: str = "relci",
        author_email: str = "relci@localhost",
        commit_message: str = COMMIT_MESSAGE,
        timeout: Optional[float] = 120,
    ):
        self.name = name
        self.url = url
        self.template = template
        self.dest_path = dest_path
        self.artifact = artifact
        self.author_name = author_name
        self.author_email = author_email
        self.commit_message = commit_message
        self.timeout = timeout

    def artifact_patterns(self) -> List[str]:
        return [self.artifact] if self.artifact else []

    def render(self, ctx: PublishContext) -> str:
        return self.render_template(ctx, self.template)

    def render_template(self, ctx: PublishContext, template: str) -> str:
        src = ctx.workspace / template
        if not src.is_file():
            raise PublishFailure(self.name, f"template not found in workspace: {template}")

        values: Dict[str, str] = {"version": ctx.version}
        if self.artifact:
            matches = ctx.matching([self.artifact])
            if not matches:
                raise PublishFailure(self.name, f"no artifact matched {self.artifact!r}")
            values["sha256"] = matches[0].sha256
            values["filename"] = matches[0].name

        return string.Template(src.read_text(encoding="utf-8")).safe_substitute(values)

    def remote(self, ctx: PublishContext, scratch: Path) -> Tuple[str, Dict[str, str]]:
        """Clone URL plus the child environment carrying credentials."""
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        return self.url, env

    def companion_files(self, ctx: PublishContext, checkout: Path) -> Tuple[List[str], str]:
        """Write files that must change together with dest_path; returns (paths, note)."""
        return [], ""

    def publish(self, ctx: PublishContext) -> PublishOutcome:
        content = self.render(ctx)

        with tempfile.TemporaryDirectory(prefix="relci-publish-") as tmp:
            scratch = Path(tmp)
            url, env = self.remote(ctx, scratch)
            kw = {"env": env, "timeout": self.timeout}

            checkout = git.clone(url, scratch / "repo", **kw)
            dest = checkout / self.dest_path
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(content, encoding="utf-8")
            extra, note = self.companion_files(ctx, checkout)
            files = [self.dest_path] + extra

            git.add_all(checkout, **kw)
            if not git.is_dirty(checkout, **kw):
                return PublishOutcome(self.name, UNCHANGED, files=files, detail=note or "already up to date")

            git.commit(
                checkout,
                self.commit_message,
                author_name=self.author_name,
                author_email=self.author_email,
                **kw,
            )
            git.push(checkout, **kw)
            sha = git.head_sha(checkout, **kw)

        detail = f"pushed {sha[:12]}" + (f"; {note}" if note else "")
        return PublishOutcome(self.name, PUBLISHED, files=files, detail=detail)


class TapRepository(GitRepositoryTarget):
    """
    A Homebrew/Linuxbrew tap on GitHub, e.g. wez/homebrew-wezterm-linuxbrew.

    Authenticates over HTTPS with a token sent as an extra header through
    GIT_CONFIG_* variables, so it never appears in URLs or argv.
    """

    def __init__(
        self,
        repo: str,
        *,
        template: str,
        formula_path: str,
        token_secret: str | None = "GH_PAT",
        url: str | None = None,
        artifact: str | None = None,
        name: str | None = None,
        **kw,
    ):
        super().__init__(
            name=name or f"tap:{repo}",
            url=url or f"https://github.com/{repo}.git",
            template=template,
            dest_path=formula_path,
            artifact=artifact,
            **kw,
        )
        self.repo = repo
        self.token_secret = token_secret

    def remote(self, ctx: PublishContext, scratch: Path) -> Tuple[str, Dict[str, str]]:
        url, env = super().remote(ctx, scratch)
        if self.token_secret:
            token = ctx.secrets.get(self.token_secret)
            basic = base64.b64encode(f"x-access-token:{token}".encode()).decode()
            env.update({
                "GIT_CONFIG_COUNT": "1",
                "GIT_CONFIG_KEY_0": "http.extraheader",
                "GIT_CONFIG_VALUE_0": f"AUTHORIZATION: basic {basic}",
            })
        return url, env


class FormulaRepository(GitRepositoryTarget):
    """
    A Linux package recipe repository reached over SSH, e.g. the AUR
    (ssh://aur@aur.archlinux.org/<pkgname>.git holding a PKGBUILD).

    The private key is written to a 0600 file inside the scratch directory,
    which is removed when the publication finishes.

    The AUR reads package metadata from .SRCINFO, so it is committed next to
    the PKGBUILD: rendered from the `srcinfo` workspace template when the job
    produced one, otherwise generated with `makepkg --printsrcinfo` when
    makepkg is installed. With neither, only the PKGBUILD is pushed and the
    outcome says so. `srcinfo=None` turns this off.
    """

    def __init__(
        self,
        pkgname: str,
        *,
        template: str = "PKGBUILD",
        dest_path: str = "PKGBUILD",
        ssh_key_secret: str | None = "AUR_SSH_PRIVATE_KEY",
        srcinfo: str | None = SRCINFO,
        url: str | None = None,
        artifact: str | None = None,
        name: str | None = None,
        **kw,
    ):
        super().__init__(
            name=name or f"formula:{pkgname}",
            url=url or f"ssh://aur@aur.archlinux.org/{pkgname}.git",
            template=template,
            dest_path=dest_path,
            artifact=artifact,
            **kw,
        )
        self.pkgname = pkgname
        self.ssh_key_secret = ssh_key_secret
        self.srcinfo = srcinfo

    def remote(self, ctx: PublishContext, scratch: Path) -> Tuple[str, Dict[str, str]]:
        url, env = super().remote(ctx, scratch)
        if self.ssh_key_secret:
            key = scratch / "id_publish"
            key.write_text(ctx.secrets.get(self.ssh_key_secret).rstrip("\n") + "\n", encoding="utf-8")
            key.chmod(0o600)
            env["GIT_SSH_COMMAND"] = (
                f"ssh -i {key} -o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"
            )
        return url, env

    def companion_files(self, ctx: PublishContext, checkout: Path) -> Tuple[List[str], str]:
        if self.srcinfo is None:
            return [], ""
        pkgdir = (checkout / self.dest_path).parent
        rel = str((pkgdir / SRCINFO).relative_to(checkout))

        if (ctx.workspace / self.srcinfo).is_file():
            text = self.render_template(ctx, self.srcinfo)
        elif shutil.which("makepkg"):
            text = self.print_srcinfo(pkgdir)
        else:
            return [], f"{SRCINFO} not updated: no {self.srcinfo} template and makepkg is not installed"

        (pkgdir / SRCINFO).write_text(text, encoding="utf-8")
        return [rel], ""

    def print_srcinfo(self, pkgdir: Path) -> str:
        try:
            proc = subprocess.run(
                ["makepkg", "--printsrcinfo"],
                cwd=str(pkgdir),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise PublishFailure(self.name, f"makepkg --printsrcinfo failed: {e.stderr.strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise PublishFailure(self.name, f"makepkg --printsrcinfo timed out after {self.timeout}s") from e
        return proc.stdout
