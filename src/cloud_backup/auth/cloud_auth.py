"""Cloud storage authentication handling."""

import logging
from typing import Optional
from urllib.parse import parse_qs, urlparse

import boto3
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobServiceClient

from .vault import Credential

logger = logging.getLogger(__name__)


class AWSAuth:
    """Handle AWS authentication and S3 client creation."""

    def __init__(
        self,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        session_token: Optional[str] = None,
        region: str = "us-east-1"
    ):
        """Initialize AWS authentication.

        Args:
            access_key_id: AWS access key ID
            secret_access_key: AWS secret access key
            session_token: AWS session token (for temporary credentials)
            region: AWS region
        """
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.session_token = session_token
        self.region = region
        self._s3_client = None

    def get_s3_client(self):
        """Get authenticated S3 client.

        Returns:
            boto3 S3 client
        """
        if self._s3_client is None:
            if self.access_key_id and self.secret_access_key:
                self._s3_client = boto3.client(
                    's3',
                    aws_access_key_id=self.access_key_id,
                    aws_secret_access_key=self.secret_access_key,
                    aws_session_token=self.session_token,
                    region_name=self.region
                )
            else:
                # Default credential chain (environment, instance profile, etc.)
                self._s3_client = boto3.client('s3', region_name=self.region)

        return self._s3_client

    @classmethod
    def from_credential(cls, credential: Credential, region: str = "us-east-1") -> "AWSAuth":
        """Create AWS auth from a vault credential (key id / secret access key)."""
        return cls(
            access_key_id=credential.key or None,
            secret_access_key=credential.secret or None,
            region=region,
        )


class S3Location:
    """Bucket, key prefix and region parsed from ``s3://bucket/prefix?region=...``."""

    def __init__(self, bucket: str, prefix: str = "", region: str = "us-east-1"):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.region = region

    @classmethod
    def parse(cls, value: str) -> "S3Location":
        """Parse an ``s3://`` URL or a bare bucket name.

        Raises:
            ValueError: If no bucket can be found
        """
        parsed = urlparse(value if "://" in value else f"s3://{value}")
        if not parsed.netloc:
            raise ValueError(f"no S3 bucket in {value!r}")
        region = parse_qs(parsed.query).get("region", ["us-east-1"])[0]
        return cls(parsed.netloc, parsed.path, region)

    def key_for(self, remote_path: str) -> str:
        remote_path = remote_path.replace("\\", "/").lstrip("/")
        return f"{self.prefix}/{remote_path}" if self.prefix else remote_path


class AzureAuth:
    """Handle Azure Blob Storage authentication."""

    def __init__(
        self,
        account_name: str,
        account_key: Optional[str] = None,
        connection_string: Optional[str] = None,
        use_default_credential: bool = False
    ):
        """Initialize Azure Blob Storage authentication.

        Args:
            account_name: Storage account name
            account_key: Storage account key
            connection_string: Storage connection string
            use_default_credential: Use DefaultAzureCredential
        """
        self.account_name = account_name
        self.account_key = account_key
        self.connection_string = connection_string
        self.use_default_credential = use_default_credential
        self._blob_service_client = None

    @property
    def account_url(self) -> str:
        return f"https://{self.account_name}.blob.core.windows.net"

    def get_blob_service_client(self) -> BlobServiceClient:
        """Get authenticated Blob Service client.

        Returns:
            Azure BlobServiceClient
        """
        if self._blob_service_client is None:
            if self.connection_string:
                self._blob_service_client = BlobServiceClient.from_connection_string(
                    self.connection_string
                )
            elif self.account_key:
                self._blob_service_client = BlobServiceClient(
                    account_url=self.account_url,
                    credential=self.account_key
                )
            elif self.use_default_credential:
                # Managed identity, service principal, CLI login, ...
                self._blob_service_client = BlobServiceClient(
                    account_url=self.account_url,
                    credential=DefaultAzureCredential()
                )
            else:
                raise ValueError(
                    "Must provide either connection_string, account_key, or set use_default_credential=True"
                )

        return self._blob_service_client

    @classmethod
    def from_credential(cls, credential: Credential) -> "AzureAuth":
        """Create Azure auth from a vault credential.

        The credential key is the account name; the secret is either a
        connection string, an account key, or empty for DefaultAzureCredential.
        """
        secret = credential.secret or ""
        is_connection_string = "AccountName=" in secret or "BlobEndpoint=" in secret
        return cls(
            account_name=credential.key,
            account_key=secret if secret and not is_connection_string else None,
            connection_string=secret if is_connection_string else None,
            use_default_credential=not secret,
        )
