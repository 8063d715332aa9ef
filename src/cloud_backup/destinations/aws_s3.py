"""AWS S3 storage provider.

Credential triple: key = access key id, secret = secret access key (both
empty to use the default AWS credential chain), redirect_url =
``s3://bucket[/prefix][?region=...]``.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError

from ..auth.cloud_auth import AWSAuth, S3Location
from ..auth.vault import Credential
from ..exceptions import ProviderError
from .base import RemoteFile, StorageProvider

logger = logging.getLogger(__name__)

_S3_ERRORS = (BotoCoreError, ClientError, Boto3Error)


class S3Provider(StorageProvider):
    """Upload backups to an S3 bucket."""

    name = "s3"

    def __init__(self, credential: Credential):
        super().__init__(credential)
        try:
            self.location = S3Location.parse(credential.redirect_url)
        except ValueError as e:
            raise ProviderError(f"invalid S3 location in credential: {e}") from e
        self.auth = AWSAuth.from_credential(credential, region=self.location.region)

    def authenticate(self) -> None:
        try:
            self.auth.get_s3_client().head_bucket(Bucket=self.location.bucket)
        except _S3_ERRORS as e:
            raise ProviderError(f"cannot access S3 bucket {self.location.bucket}: {e}") from e

    def upload(self, local_path: Path, remote_path: str) -> None:
        s3_client = self.auth.get_s3_client()
        for file_path, target in self.iter_upload_pairs(local_path, remote_path):
            key = self.location.key_for(target)
            modified = datetime.fromtimestamp(file_path.stat().st_mtime, tz=timezone.utc)
            try:
                s3_client.upload_file(
                    str(file_path),
                    self.location.bucket,
                    key,
                    ExtraArgs={'Metadata': {'source-modified-time': modified.isoformat()}},
                )
            except _S3_ERRORS as e:
                raise ProviderError(f"cannot upload backup to s3://{self.location.bucket}/{key}: {e}") from e
            logger.debug(f"Uploaded {file_path} -> s3://{self.location.bucket}/{key}")

    def download(self, local_path: Path, remote_id: str) -> None:
        key = self.location.key_for(remote_id)
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            self.auth.get_s3_client().download_file(self.location.bucket, key, str(local_path))
        except _S3_ERRORS as e:
            raise ProviderError(f"cannot download s3://{self.location.bucket}/{key}: {e}") from e

    def list_files(self, remote_folder_id: str) -> List[RemoteFile]:
        prefix = self.location.key_for(remote_folder_id or "")
        if prefix and not prefix.endswith("/"):
            prefix += "/"

        files = []
        paginator = self.auth.get_s3_client().get_paginator('list_objects_v2')
        try:
            for page in paginator.paginate(Bucket=self.location.bucket, Prefix=prefix, Delimiter='/'):
                for folder in page.get('CommonPrefixes', []):
                    name = folder['Prefix'][len(prefix):].rstrip('/')
                    files.append(RemoteFile(id=folder['Prefix'], name=name, is_folder=True))
                for obj in page.get('Contents', []):
                    if obj['Key'] == prefix:
                        continue
                    files.append(RemoteFile(
                        id=obj['Key'],
                        name=obj['Key'][len(prefix):],
                        size=obj.get('Size', 0),
                        modified_time=obj.get('LastModified'),
                    ))
        except _S3_ERRORS as e:
            raise ProviderError(f"cannot list s3://{self.location.bucket}/{prefix}: {e}") from e
        return files
