"""Azure Blob Storage storage provider.

Credential triple: key = storage account name, secret = account key or
connection string (empty for DefaultAzureCredential), redirect_url =
``container[/prefix]``.
"""

import logging
from pathlib import Path
from typing import List, Optional

from azure.core.exceptions import AzureError
from azure.storage.blob import BlobPrefix, ContainerClient

from ..auth.cloud_auth import AzureAuth
from ..auth.vault import Credential
from ..exceptions import ProviderError
from .base import RemoteFile, StorageProvider

logger = logging.getLogger(__name__)


class AzureBlobProvider(StorageProvider):
    """Upload backups to an Azure Blob Storage container."""

    name = "azure_blob"

    def __init__(self, credential: Credential):
        super().__init__(credential)
        location = credential.redirect_url.strip("/")
        if not credential.key and "AccountName=" not in credential.secret:
            raise ProviderError("azure_blob credential needs a storage account name")
        if not location:
            raise ProviderError("azure_blob credential needs a container name in the redirect URL")

        self.container_name, _, prefix = location.partition("/")
        self.prefix = prefix.rstrip('/') + '/' if prefix else ''
        self.auth = AzureAuth.from_credential(credential)
        self._container: Optional[ContainerClient] = None

    def _get_container(self) -> ContainerClient:
        if self._container is None:
            try:
                client = self.auth.get_blob_service_client()
            except ValueError as e:
                raise ProviderError(str(e)) from e
            self._container = client.get_container_client(self.container_name)
        return self._container

    def _blob_path(self, remote_path: str) -> str:
        remote_path = remote_path.replace("\\", "/").lstrip("/")
        return f"{self.prefix}{remote_path}"

    def authenticate(self) -> None:
        try:
            self._get_container().get_container_properties()
        except AzureError as e:
            raise ProviderError(f"cannot access Azure container {self.container_name}: {e}") from e

    def upload(self, local_path: Path, remote_path: str) -> None:
        container = self._get_container()
        for file_path, target in self.iter_upload_pairs(local_path, remote_path):
            blob_path = self._blob_path(target)
            try:
                with open(file_path, "rb") as data:
                    container.upload_blob(
                        name=blob_path,
                        data=data,
                        blob_type="BlockBlob",
                        overwrite=True,
                        max_concurrency=4,
                    )
            except AzureError as e:
                raise ProviderError(f"Azure error uploading {blob_path}: {e}") from e
            logger.debug(f"Uploaded {file_path} -> azure://{self.container_name}/{blob_path}")

    def download(self, local_path: Path, remote_id: str) -> None:
        blob_path = self._blob_path(remote_id)
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            downloader = self._get_container().download_blob(blob_path)
            with open(local_path, "wb") as f:
                downloader.readinto(f)
        except AzureError as e:
            raise ProviderError(f"Azure error downloading {blob_path}: {e}") from e

    def list_files(self, remote_folder_id: str) -> List[RemoteFile]:
        prefix = self._blob_path(remote_folder_id or "")
        if prefix and not prefix.endswith("/"):
            prefix += "/"

        files = []
        try:
            for item in self._get_container().walk_blobs(name_starts_with=prefix, delimiter="/"):
                name = item.name[len(prefix):]
                if isinstance(item, BlobPrefix):
                    files.append(RemoteFile(id=item.name, name=name.rstrip("/"), is_folder=True))
                else:
                    files.append(RemoteFile(
                        id=item.name,
                        name=name,
                        size=item.size or 0,
                        modified_time=item.last_modified,
                    ))
        except AzureError as e:
            raise ProviderError(f"Azure error listing {prefix}: {e}") from e
        return files
