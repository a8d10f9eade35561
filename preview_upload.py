"""
Uploads the built worker script to the preview service and returns the
script id that the preview host executes.

Two modes:
  anonymous      → POST https://cloudflareworkers.com/script
  authenticated  → POST .../accounts/<id>/workers/scripts/<name>/preview
"""

import json
import os
from typing import Optional

import httpx
from pydantic import BaseModel

from dev_errors import UploadError

ANONYMOUS_PREVIEW_URL = "https://cloudflareworkers.com/script"
API_BASE = "https://api.cloudflare.com/client/v4"


class Target(BaseModel):
    name: str
    script_path: str
    account_id: Optional[str] = None


class GlobalUser(BaseModel):
    email: Optional[str] = None
    api_key: Optional[str] = None
    api_token: Optional[str] = None

    @classmethod
    def from_env(cls) -> "GlobalUser | None":
        """Credentials from CF_API_TOKEN or CF_EMAIL + CF_API_KEY. None if neither is set."""
        token = os.environ.get("CF_API_TOKEN")
        if token:
            return cls(api_token=token)
        email = os.environ.get("CF_EMAIL")
        key = os.environ.get("CF_API_KEY")
        if email and key:
            return cls(email=email, api_key=key)
        return None

    def auth_headers(self) -> dict:
        if self.api_token:
            return {"Authorization": f"Bearer {self.api_token}"}
        return {"X-Auth-Email": self.email or "", "X-Auth-Key": self.api_key or ""}


def _read_script(target: Target) -> bytes:
    try:
        with open(target.script_path, "rb") as f:
            return f.read()
    except OSError as e:
        raise UploadError(f"Could not read worker script '{target.script_path}': {e}") from e


def _multipart(script: bytes) -> list:
    metadata = json.dumps({"body_part": "script", "bindings": []}).encode()
    return [
        ("metadata", ("metadata.json", metadata, "application/json")),
        ("script", ("script.js", script, "application/javascript")),
    ]


def _post(client: httpx.Client, url: str, script: bytes, headers: dict) -> dict:
    try:
        resp = client.post(url, files=_multipart(script), headers=headers)
    except httpx.HTTPError as e:
        raise UploadError(f"Preview upload failed: {e}") from e
    if resp.status_code >= 400:
        raise UploadError(f"Preview upload failed with status {resp.status_code}: {resp.text[:200]}")
    try:
        return resp.json()
    except ValueError as e:
        raise UploadError("Preview upload returned a response that is not JSON") from e


def upload(
    target: Target,
    user: Optional[GlobalUser],
    sites_preview: bool,
    verbose: bool,
    client: Optional[httpx.Client] = None,
) -> str:
    """Upload the script for `target`, return the script id to preview."""
    authenticated = user is not None and bool(target.account_id)
    if sites_preview and not authenticated:
        raise UploadError("Previewing a Workers Site requires credentials and an account id")

    script = _read_script(target)
    owns_client = client is None
    client = client or httpx.Client(timeout=60.0)
    try:
        if authenticated:
            if verbose:
                print(f"🔑 Uploading '{target.name}' for an authenticated preview")
            url = f"{API_BASE}/accounts/{target.account_id}/workers/scripts/{target.name}/preview"
            data = _post(client, url, script, user.auth_headers())
            script_id = (data.get("result") or {}).get("preview_id")
        else:
            if verbose:
                print("⚠️ No credentials found, using the anonymous preview service")
            data = _post(client, ANONYMOUS_PREVIEW_URL, script, {})
            script_id = data.get("id")
    finally:
        if owns_client:
            client.close()

    if not script_id:
        raise UploadError("Preview upload response did not include a script id")
    return script_id
