# publish/api_client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Optional
from urllib.parse import quote, urljoin

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_UPLOADS_URL = "https://uploads.github.com"


class APIError(Exception):
    """Raised when API requests fail."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class NotFound(APIError):
    """The requested resource does not exist (HTTP 404)."""


class GitHubClient:
    """HTTP client for the GitHub releases API."""

    def __init__(
        self,
        token: str,
        *,
        api_url: str = DEFAULT_API_URL,
        uploads_url: str = DEFAULT_UPLOADS_URL,
        timeout: float | None = 60,
    ):
        """
        Initialize API client.

        Args:
            token: Token with contents:write on the repository
            api_url: Base URL of the REST API
            uploads_url: Base URL for release asset uploads
            timeout: Seconds allowed per request
        """
        # Ensure base urls don't end with /
        self.api_url = api_url.rstrip("/")
        self.uploads_url = uploads_url.rstrip("/")
        self.timeout = timeout
        self._token = token

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        *,
        body: bytes | None = None,
        content_type: str = "application/json",
        base_url: str | None = None,
    ) -> Any:
        """
        Make an HTTP request to the API.

        Args:
            method: HTTP method (GET, POST, etc.)
            path: API path (e.g., "/repos/o/r/releases")
            data: Optional JSON data to send in request body
            body: Optional raw bytes (asset uploads)
            content_type: Content-Type of the request body
            base_url: Override of the API base (uploads live elsewhere)

        Returns:
            Parsed JSON response ({} for empty bodies)

        Raises:
            APIError: If the request fails (NotFound for 404)
        """
        url = urljoin((base_url or self.api_url) + "/", path.lstrip("/"))

        req_headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token}",
            "Content-Type": content_type,
            "X-GitHub-Api-Version": "2022-11-28",
        }

        req_data = body
        if data is not None:
            req_data = json.dumps(data).encode("utf-8")

        req = urllib.request.Request(url, data=req_data, headers=req_headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response_data = response.read().decode("utf-8")
                if response_data:
                    return json.loads(response_data)
                return {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            if e.code == 404:
                raise NotFound(f"Not found: {method} {path}", status=404)
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}", status=e.code)
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}")
        except TimeoutError:
            raise APIError(f"Request timed out after {self.timeout}s: {method} {path}")
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}")

    def release_for_tag(self, repo: str, tag: str) -> Optional[dict]:
        try:
            return self._request("GET", f"/repos/{repo}/releases/tags/{quote(tag, safe='')}")
        except NotFound:
            return None

    def create_release(self, repo: str, tag: str, *, name: str | None = None,
                       draft: bool = False, prerelease: bool = False) -> dict:
        return self._request(
            "POST",
            f"/repos/{repo}/releases",
            data={"tag_name": tag, "name": name or tag, "draft": draft, "prerelease": prerelease},
        )

    def list_assets(self, repo: str, release_id: int) -> list[dict]:
        assets: list[dict] = []
        page = 1
        while True:
            batch = self._request("GET", f"/repos/{repo}/releases/{release_id}/assets?per_page=100&page={page}")
            if not batch:
                return assets
            assets.extend(batch)
            if len(batch) < 100:
                return assets
            page += 1

    def delete_asset(self, repo: str, asset_id: int) -> None:
        self._request("DELETE", f"/repos/{repo}/releases/assets/{asset_id}")

    def upload_asset(self, repo: str, release_id: int, name: str, content: bytes) -> dict:
        return self._request(
            "POST",
            f"/repos/{repo}/releases/{release_id}/assets?name={quote(name, safe='')}",
            body=content,
            content_type="application/octet-stream",
            base_url=self.uploads_url,
        )
