"""OneDrive storage provider using the Microsoft Graph API.

Credential triple: key = application (client) id, secret = client secret
(empty for a public client using the device code flow), redirect_url =
drive owner, either ``me`` or a user id / principal name.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from ..auth.microsoft_auth import MicrosoftGraphAuth
from ..auth.vault import Credential
from ..exceptions import ProviderError
from .base import RemoteFile, StorageProvider

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"

# Graph accepts simple PUT uploads up to 4 MiB
SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024
# Upload session fragments must be multiples of 320 KiB
CHUNK_SIZE = 320 * 1024 * 32
REQUEST_TIMEOUT = 60


class OneDriveProvider(StorageProvider):
    """Upload backups to a OneDrive drive."""

    name = "onedrive"

    def __init__(self, credential: Credential, auth: Optional[MicrosoftGraphAuth] = None,
                 session: Optional[requests.Session] = None):
        super().__init__(credential)
        self.auth = auth or MicrosoftGraphAuth.from_credential(credential)
        self.session = session or requests.Session()
        owner = (credential.redirect_url or "me").strip("/")
        self.drive_url = f"{GRAPH_URL}/me/drive" if owner == "me" else f"{GRAPH_URL}/users/{owner}/drive"

    def _item_url(self, remote_path: str) -> str:
        remote_path = remote_path.replace("\\", "/").strip("/")
        if not remote_path:
            return f"{self.drive_url}/root"
        return f"{self.drive_url}/root:/{quote(remote_path)}:"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        headers = kwargs.pop("headers", {})
        headers.update(self.auth.get_auth_headers())
        try:
            response = self.session.request(method, url, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as e:
            raise ProviderError(f"Graph request failed: {e}") from e
        if response.status_code == 401:
            # Token revoked or expired early; refresh once
            headers.update({"Authorization": f"Bearer {self.auth.get_access_token(force_refresh=True)}"})
            try:
                response = self.session.request(method, url, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
            except requests.RequestException as e:
                raise ProviderError(f"Graph request failed: {e}") from e
        if response.status_code >= 400:
            raise ProviderError(f"Graph API error {response.status_code}: {response.text[:200]}")
        return response

    def authenticate(self) -> None:
        self.auth.authenticate()
        self._request("GET", self.drive_url)

    def upload(self, local_path: Path, remote_path: str) -> None:
        for file_path, target in self.iter_upload_pairs(local_path, remote_path):
            size = file_path.stat().st_size
            if size <= SIMPLE_UPLOAD_LIMIT:
                with open(file_path, "rb") as f:
                    self._request("PUT", f"{self._item_url(target)}/content", data=f.read())
            else:
                self._upload_session(file_path, target, size)
            logger.debug(f"Uploaded {file_path} -> onedrive:{target}")

    def _upload_session(self, file_path: Path, target: str, size: int):
        """Upload a large file in fragments through a Graph upload session."""
        session = self._request(
            "POST",
            f"{self._item_url(target)}/createUploadSession",
            json={"item": {"@microsoft.graph.conflictBehavior": "replace"}},
        ).json()
        upload_url = session["uploadUrl"]

        with open(file_path, "rb") as f:
            offset = 0
            while offset < size:
                chunk = f.read(CHUNK_SIZE)
                end = offset + len(chunk) - 1
                try:
                    # The pre-authenticated upload URL must not carry a bearer token
                    response = self.session.put(
                        upload_url,
                        data=chunk,
                        headers={
                            "Content-Length": str(len(chunk)),
                            "Content-Range": f"bytes {offset}-{end}/{size}",
                        },
                        timeout=REQUEST_TIMEOUT,
                    )
                except requests.RequestException as e:
                    raise ProviderError(f"upload session failed for {target}: {e}") from e
                if response.status_code >= 400:
                    raise ProviderError(f"upload session failed for {target}: {response.status_code} {response.text[:200]}")
                offset = end + 1

    def download(self, local_path: Path, remote_id: str) -> None:
        response = self._request("GET", f"{self._item_url(remote_id)}/content", stream=True)
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            with open(local_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=65536):
                    f.write(chunk)
        except (OSError, requests.RequestException) as e:
            raise ProviderError(f"cannot download {remote_id}: {e}") from e

    def list_files(self, remote_folder_id: str) -> List[RemoteFile]:
        url: Optional[str] = f"{self._item_url(remote_folder_id or '')}/children"
        files = []
        while url:
            payload = self._request("GET", url).json()
            files.extend(self._to_remote_file(item) for item in payload.get("value", []))
            url = payload.get("@odata.nextLink")
        return files

    @staticmethod
    def _to_remote_file(item: Dict[str, Any]) -> RemoteFile:
        modified = item.get("lastModifiedDateTime")
        return RemoteFile(
            id=item.get("id", ""),
            name=item.get("name", ""),
            size=item.get("size", 0),
            modified_time=datetime.fromisoformat(modified.replace("Z", "+00:00")) if modified else None,
            is_folder=item.get("folder") is not None,
        )
