# publish/release.py
from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import List, Optional

from ..cache import hash_file
from ..model import PUBLISHED, UNCHANGED, Artifact, PublishOutcome
from .api_client import DEFAULT_API_URL, DEFAULT_UPLOADS_URL, APIError, GitHubClient, NotFound
from .base import PublishContext, PublishFailure, PublishTarget


def _unmatched_note(ctx: PublishContext, patterns: List[str]) -> str:
    missing = ctx.unmatched(patterns)
    return f"no files matched: {', '.join(missing)}" if missing else ""


class GitHubRelease(PublishTarget):
    """
    Upload files to the GitHub release for the pushed tag.

    Idempotency key is (tag, filename): an asset with the same name is deleted
    and re-uploaded, so re-publishing overwrites instead of duplicating.
    """

    def __init__(
        self,
        repo: str,
        files: List[str],
        *,
        token_secret: str = "GITHUB_TOKEN",
        release_name: str | None = None,
        draft: bool = False,
        prerelease: bool = False,
        api_url: str = DEFAULT_API_URL,
        uploads_url: str = DEFAULT_UPLOADS_URL,
        timeout: Optional[float] = 300,
        name: str | None = None,
    ):
        self.repo = repo
        self.files = list(files)
        self.token_secret = token_secret
        self.release_name = release_name
        self.draft = draft
        self.prerelease = prerelease
        self.api_url = api_url
        self.uploads_url = uploads_url
        self.timeout = timeout
        self.name = name or f"github-release:{repo}"

    def artifact_patterns(self) -> List[str]:
        return list(self.files)

    def client(self, ctx: PublishContext) -> GitHubClient:
        return GitHubClient(
            ctx.secrets.get(self.token_secret),
            api_url=self.api_url,
            uploads_url=self.uploads_url,
            timeout=self.timeout,
        )

    def publish(self, ctx: PublishContext) -> PublishOutcome:
        if not ctx.event.is_tag:
            raise PublishFailure(self.name, "releases are only published for tag events")

        api = self.client(ctx)
        release_id = self._release(api, ctx.version)["id"]

        existing = {a["name"]: a["id"] for a in api.list_assets(self.repo, release_id)}
        uploaded: List[str] = []
        for artifact in ctx.matching(self.files):
            if artifact.name in existing:
                self._delete_asset(api, existing[artifact.name])
            self._upload(api, release_id, artifact)
            uploaded.append(artifact.name)

        return PublishOutcome(self.name, PUBLISHED, files=uploaded, detail=_unmatched_note(ctx, self.files))

    def _release(self, api: GitHubClient, tag: str) -> dict:
        release = api.release_for_tag(self.repo, tag)
        if release is not None:
            return release
        try:
            return api.create_release(
                self.repo, tag,
                name=self.release_name, draft=self.draft, prerelease=self.prerelease,
            )
        except APIError as e:
            # 422: a sibling job created it between the lookup and the create
            if e.status != 422:
                raise
            release = api.release_for_tag(self.repo, tag)
            if release is None:
                raise
            return release

    def _delete_asset(self, api: GitHubClient, asset_id: int) -> None:
        try:
            api.delete_asset(self.repo, asset_id)
        except NotFound:
            pass

    def _upload(self, api: GitHubClient, release_id: int, artifact: Artifact) -> None:
        try:
            api.upload_asset(self.repo, release_id, artifact.name, artifact.read_bytes())
        except APIError as e:
            # 422: an asset with this name appeared since the listing; replace it once
            if e.status != 422:
                raise
            for asset in api.list_assets(self.repo, release_id):
                if asset["name"] == artifact.name:
                    self._delete_asset(api, asset["id"])
            api.upload_asset(self.repo, release_id, artifact.name, artifact.read_bytes())


class DirectoryReleaseHost(PublishTarget):
    """
    A release host backed by a directory: root/<tag>/<filename>.

    Writes go through a temp file and a rename, so a reader sees either the
    old or the new file. Same idempotency key as GitHubRelease.
    """

    def __init__(self, root: str | Path, files: List[str], *, name: str | None = None, timeout: Optional[float] = None):
        self.root = Path(root)
        self.files = list(files)
        self.timeout = timeout
        self.name = name or f"directory:{self.root}"

    def artifact_patterns(self) -> List[str]:
        return list(self.files)

    def publish(self, ctx: PublishContext) -> PublishOutcome:
        dest_dir = self.root / ctx.version
        dest_dir.mkdir(parents=True, exist_ok=True)

        written: List[str] = []
        changed = False
        for artifact in ctx.matching(self.files):
            dest = dest_dir / artifact.name
            if dest.exists() and hash_file(dest) == artifact.sha256:
                written.append(artifact.name)
                continue
            tmp = dest.with_name(f".{dest.name}.{os.getpid()}.{threading.get_ident()}.tmp")
            try:
                tmp.write_bytes(artifact.read_bytes())
                tmp.replace(dest)
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)
            written.append(artifact.name)
            changed = True

        status = PUBLISHED if changed or not written else UNCHANGED
        return PublishOutcome(self.name, status, files=written, detail=_unmatched_note(ctx, self.files))
