"""Google Drive authentication handling."""

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials

from ..exceptions import CredentialError, ProviderError
from .vault import Credential

logger = logging.getLogger(__name__)

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.file"]
AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_REDIRECT_URL = "http://localhost"

DEFAULT_TOKEN_FILE = Path.home() / ".cloud_backup" / "gdrive_token.json"
REQUEST_TIMEOUT = 60


class GoogleDriveAuth:
    """Handle OAuth and service account credentials for the Drive API."""

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        redirect_url: Optional[str] = None,
        service_account_info: Optional[Dict[str, Any]] = None,
        token_file: Optional[Path] = None,
        code_prompt: Optional[Callable[[str], str]] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize Google Drive authentication.

        Args:
            client_id: OAuth client id
            client_secret: OAuth client secret
            redirect_url: OAuth redirect URL registered for the client
            service_account_info: Parsed service account key; replaces the
                OAuth client when given
            token_file: Where the OAuth token is cached between runs
            code_prompt: Called with the consent URL when no token is cached;
                returns the authorization code the user was given
            session: HTTP session for the code exchange
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url or DEFAULT_REDIRECT_URL
        self.service_account_info = service_account_info
        self.token_file = Path(token_file or DEFAULT_TOKEN_FILE)
        self.code_prompt = code_prompt
        self.session = session or requests.Session()
        self._credentials = None

    @classmethod
    def from_credential(cls, credential: Credential, token_file: Optional[Path] = None) -> "GoogleDriveAuth":
        """Create authentication from a vault credential.

        A secret holding a service account JSON key selects the service
        account. Otherwise key and secret are the OAuth client and
        redirect_url is its redirect URL.
        """
        secret = credential.secret.strip()
        if secret.startswith("{"):
            try:
                info = json.loads(secret)
            except ValueError as e:
                raise CredentialError(f"gdrive service account key is not valid JSON: {e}") from e
            return cls(service_account_info=info, token_file=token_file)

        if not credential.key:
            raise CredentialError("gdrive credential needs an OAuth client id")
        return cls(
            client_id=credential.key,
            client_secret=credential.secret,
            redirect_url=credential.redirect_url or None,
            token_file=token_file,
        )

    @property
    def is_service_account(self) -> bool:
        return self.service_account_info is not None

    def authorization_url(self, state: str = "cloud-backup") -> str:
        """Consent page URL that yields an authorization code."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_url,
            "response_type": "code",
            "scope": " ".join(DRIVE_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{AUTH_URI}?{urlencode(params)}"

    def exchange_code(self, code: str) -> Credentials:
        """Trade an authorization code for tokens and cache them.

        Raises:
            CredentialError: If Google rejects the code
            ProviderError: If the token endpoint cannot be reached
        """
        try:
            response = self.session.post(
                TOKEN_URI,
                data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_url,
                    "grant_type": "authorization_code",
                },
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise ProviderError(f"Google token request failed: {e}") from e

        payload = response.json() if response.status_code < 400 else {}
        if "access_token" not in payload:
            raise CredentialError(f"Google rejected the authorization code: {response.text[:200]}")

        expiry = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=payload.get("expires_in", 3600))
        self._credentials = Credentials(
            token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            token_uri=TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=DRIVE_SCOPES,
            expiry=expiry,
        )
        logger.info("Obtained Google Drive access token")
        self._save_token()
        return self._credentials

    def _load_token(self) -> Optional[Credentials]:
        if not self.token_file.exists():
            return None
        try:
            return Credentials.from_authorized_user_file(str(self.token_file), DRIVE_SCOPES)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable Google token cache {self.token_file}: {e}")
            return None

    def _save_token(self):
        self.token_file.parent.mkdir(parents=True, exist_ok=True)
        self.token_file.write_text(self._credentials.to_json())
        os.chmod(self.token_file, 0o600)

    def _refresh(self):
        try:
            self._credentials.refresh(Request())
        except RefreshError as e:
            raise CredentialError(f"Google Drive token was revoked or has expired: {e}") from e
        except TransportError as e:
            raise ProviderError(f"Google token refresh failed: {e}") from e
        logger.info("Refreshed Google Drive access token")
        self._save_token()

    def get_credentials(self):
        """Return credentials for the Drive client, signing in when needed.

        Returns:
            google-auth credentials

        Raises:
            CredentialError: If there is no usable token and no way to ask for one
        """
        if self.is_service_account:
            if self._credentials is None:
                try:
                    self._credentials = service_account.Credentials.from_service_account_info(
                        self.service_account_info, scopes=DRIVE_SCOPES
                    )
                except ValueError as e:
                    raise CredentialError(f"gdrive service account key is incomplete: {e}") from e
            return self._credentials

        if self._credentials is None:
            self._credentials = self._load_token()

        if self._credentials is None:
            if self.code_prompt is None:
                raise CredentialError("Google Drive is not authorized yet, run 'cloud-backup authorize gdrive'")
            code = self.code_prompt(self.authorization_url())
            return self.exchange_code(code.strip())

        if not self._credentials.valid:
            if not self._credentials.refresh_token:
                raise CredentialError("cached Google Drive token has no refresh token, authorize again")
            self._refresh()
        return self._credentials

    def clear_cache(self):
        """Forget the cached token."""
        if self.token_file.exists():
            self.token_file.unlink()
        self._credentials = None
