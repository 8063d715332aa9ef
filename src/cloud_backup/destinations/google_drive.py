"""Google Drive storage provider using the Drive v3 API.

Credential triple: key = OAuth client id, secret = OAuth client secret,
redirect_url = OAuth redirect URL. A secret holding a service account JSON
key selects the service account instead; redirect_url is then the id of
the folder shared with it.
"""

import io
import logging
import posixpath
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from google.auth.exceptions import GoogleAuthError, RefreshError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload, MediaIoBaseDownload

from ..auth.google_auth import GoogleDriveAuth
from ..auth.vault import Credential
from ..exceptions import CredentialError, ProviderError
from .base import RemoteFile, StorageProvider

logger = logging.getLogger(__name__)

FOLDER_MIME = "application/vnd.google-apps.folder"
LIST_FIELDS = "nextPageToken, files(id, name, size, modifiedTime, mimeType)"
# Larger files go through a resumable upload session
RESUMABLE_THRESHOLD = 5 * 1024 * 1024


def _quote(value: str) -> str:
    """Escape a value for a single-quoted Drive query literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveProvider(StorageProvider):
    """Upload backups to Google Drive."""

    name = "gdrive"

    def __init__(self, credential: Credential, auth: Optional[GoogleDriveAuth] = None, service=None):
        super().__init__(credential)
        self.auth = auth or GoogleDriveAuth.from_credential(credential)
        if self.auth.is_service_account and credential.redirect_url:
            self.root_id = credential.redirect_url.strip()
        else:
            self.root_id = "root"
        self._service = service
        self._folder_cache: Dict[Tuple[str, str], str] = {}

    @property
    def service(self):
        """Drive v3 client, built on first use."""
        if self._service is None:
            self._service = build("drive", "v3", credentials=self.auth.get_credentials(), cache_discovery=False)
        return self._service

    def _execute(self, request, action: str) -> Dict[str, Any]:
        try:
            return request.execute()
        except HttpError as e:
            raise ProviderError(f"Google Drive could not {action}: {e}") from e
        except RefreshError as e:
            raise CredentialError(f"Google Drive token was revoked or has expired: {e}") from e
        except GoogleAuthError as e:
            raise ProviderError(f"Google Drive authentication failed: {e}") from e

    def authenticate(self) -> None:
        self._execute(self.service.about().get(fields="user"), "read the signed-in user")

    def _find_child(self, parent_id: str, name: str, folder: bool) -> Optional[str]:
        operator = "=" if folder else "!="
        query = (
            f"name = '{_quote(name)}' and '{_quote(parent_id)}' in parents "
            f"and mimeType {operator} '{FOLDER_MIME}' and trashed = false"
        )
        response = self._execute(
            self.service.files().list(q=query, spaces="drive", fields="files(id, name)", pageSize=1),
            f"look up {name}",
        )
        files = response.get("files", [])
        return files[0]["id"] if files else None

    def _ensure_folder(self, path: str) -> str:
        """Walk ``path`` from the root folder, creating missing folders.

        Returns:
            Id of the innermost folder
        """
        parent_id = self.root_id
        for part in path.split("/"):
            if not part:
                continue
            key = (parent_id, part)
            folder_id = self._folder_cache.get(key)
            if folder_id is None:
                folder_id = self._find_child(parent_id, part, folder=True)
                if folder_id is None:
                    created = self._execute(
                        self.service.files().create(
                            body={"name": part, "mimeType": FOLDER_MIME, "parents": [parent_id]},
                            fields="id",
                        ),
                        f"create folder {part}",
                    )
                    folder_id = created["id"]
                    logger.debug(f"Created Google Drive folder {part} ({folder_id})")
                self._folder_cache[key] = folder_id
            parent_id = folder_id
        return parent_id

    def upload(self, local_path: Path, remote_path: str) -> None:
        for file_path, target in self.iter_upload_pairs(local_path, remote_path):
            folder, name = posixpath.split(target.replace("\\", "/").strip("/"))
            parent_id = self._ensure_folder(folder)

            media = MediaFileUpload(str(file_path), resumable=file_path.stat().st_size > RESUMABLE_THRESHOLD)
            existing = self._find_child(parent_id, name, folder=False)
            if existing:
                request = self.service.files().update(fileId=existing, media_body=media, fields="id")
            else:
                request = self.service.files().create(
                    body={"name": name, "parents": [parent_id]}, media_body=media, fields="id"
                )
            self._execute(request, f"upload {target}")
            logger.debug(f"Uploaded {file_path} -> gdrive:{target}")

    def download(self, local_path: Path, remote_id: str) -> None:
        local_path = Path(local_path)
        request = self.service.files().get_media(fileId=remote_id)
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            with io.FileIO(str(local_path), "wb") as fh:
                downloader = MediaIoBaseDownload(fh, request)
                done = False
                while not done:
                    _, done = downloader.next_chunk()
        except HttpError as e:
            raise ProviderError(f"Google Drive could not download {remote_id}: {e}") from e
        except OSError as e:
            raise ProviderError(f"cannot download {remote_id}: {e}") from e

    def list_files(self, remote_folder_id: str) -> List[RemoteFile]:
        folder_id = remote_folder_id or self.root_id
        query = f"'{_quote(folder_id)}' in parents and trashed = false"
        files = []
        page_token: Optional[str] = None
        while True:
            response = self._execute(
                self.service.files().list(q=query, spaces="drive", fields=LIST_FIELDS, pageToken=page_token),
                f"list folder {folder_id}",
            )
            files.extend(self._to_remote_file(item) for item in response.get("files", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        return files

    @staticmethod
    def _to_remote_file(item: Dict[str, Any]) -> RemoteFile:
        modified = item.get("modifiedTime")
        return RemoteFile(
            id=item.get("id", ""),
            name=item.get("name", ""),
            size=int(item.get("size", 0)),
            modified_time=datetime.fromisoformat(modified.replace("Z", "+00:00")) if modified else None,
            is_folder=item.get("mimeType") == FOLDER_MIME,
        )
