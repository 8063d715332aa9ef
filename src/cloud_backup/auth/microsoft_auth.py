"""Microsoft Graph authentication handling."""

import logging
import os
import time
from pathlib import Path
from typing import Dict, Optional

import msal

from ..exceptions import ProviderError
from .vault import Credential

logger = logging.getLogger(__name__)

GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_DELEGATED_SCOPES = [
    "https://graph.microsoft.com/Files.ReadWrite.All",
    "https://graph.microsoft.com/User.Read",
]

DEFAULT_TOKEN_CACHE = Path.home() / ".cloud_backup" / "token_cache.json"


class MicrosoftGraphAuth:
    """Handle authentication for Microsoft Graph API."""

    def __init__(
        self,
        app_id: str,
        app_secret: Optional[str] = None,
        tenant_id: Optional[str] = None,
        token_cache_path: Optional[Path] = None,
    ):
        """Initialize Microsoft Graph authentication.

        Args:
            app_id: Azure application ID
            app_secret: Azure application secret (confidential client); when
                empty a public client with the device code flow is used
            tenant_id: Azure tenant ID (optional, defaults to common)
            token_cache_path: Where MSAL's token cache is persisted
        """
        self.app_id = app_id
        self.app_secret = app_secret
        self.tenant_id = tenant_id or "common"
        self.token_cache_path = Path(token_cache_path or DEFAULT_TOKEN_CACHE)

        if self.app_secret:
            # Client credential flow only accepts the .default scope
            self.scopes = [GRAPH_DEFAULT_SCOPE]
        else:
            self.scopes = list(GRAPH_DELEGATED_SCOPES)

        self._access_token: Optional[str] = None
        self._token_expiry: Optional[float] = None
        self._app: Optional[msal.ClientApplication] = None

    @classmethod
    def from_credential(cls, credential: Credential, token_cache_path: Optional[Path] = None) -> "MicrosoftGraphAuth":
        """Create authentication from a vault credential.

        The tenant comes from ``MICROSOFT_TENANT_ID`` when set.
        """
        if not credential.key:
            raise ProviderError("onedrive credential needs an application (client) id")
        return cls(
            app_id=credential.key,
            app_secret=credential.secret or None,
            tenant_id=os.getenv("MICROSOFT_TENANT_ID"),
            token_cache_path=token_cache_path,
        )

    def _get_msal_app(self) -> msal.ClientApplication:
        """Get MSAL application instance."""
        if self._app is None:
            cache = msal.SerializableTokenCache()
            if self.token_cache_path.exists():
                cache.deserialize(self.token_cache_path.read_text())

            authority = f"https://login.microsoftonline.com/{self.tenant_id}"
            if self.app_secret:
                self._app = msal.ConfidentialClientApplication(
                    client_id=self.app_id,
                    client_credential=self.app_secret,
                    authority=authority,
                    token_cache=cache
                )
            else:
                self._app = msal.PublicClientApplication(
                    client_id=self.app_id,
                    authority=authority,
                    token_cache=cache
                )

        return self._app

    def _save_token_cache(self):
        app = self._get_msal_app()
        if app.token_cache.has_state_changed:
            self.token_cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.token_cache_path.write_text(app.token_cache.serialize())
            os.chmod(self.token_cache_path, 0o600)

    def _accept(self, result: Optional[dict]) -> Optional[str]:
        if result and "access_token" in result:
            self._access_token = result["access_token"]
            expires_in = result.get("expires_in", 3600)
            self._token_expiry = time.time() + expires_in
            logger.info(f"Obtained access token (expires in {expires_in} seconds)")
            self._save_token_cache()
            return self._access_token
        return None

    def authenticate(self) -> str:
        """Authenticate and get access token.

        Returns:
            Access token string

        Raises:
            ProviderError: If authentication fails
        """
        app = self._get_msal_app()

        accounts = app.get_accounts()
        if accounts:
            token = self._accept(app.acquire_token_silent(self.scopes, account=accounts[0]))
            if token:
                return token

        if self.app_secret:
            result = app.acquire_token_for_client(scopes=self.scopes)
        else:
            # Device code flow works on headless hosts
            flow = app.initiate_device_flow(scopes=self.scopes)
            if "user_code" not in flow:
                raise ProviderError(f"Authentication failed: {flow.get('error_description', 'cannot start device flow')}")
            logger.warning(flow["message"])
            result = app.acquire_token_by_device_flow(flow)

        token = self._accept(result)
        if token:
            return token
        error_msg = result.get("error_description", result.get("error", "Unknown authentication error"))
        raise ProviderError(f"Authentication failed: {error_msg}")

    def _is_token_expired(self) -> bool:
        """Check if the current access token is expired or expires within 5 minutes."""
        if self._access_token is None or self._token_expiry is None:
            return True
        return time.time() >= (self._token_expiry - 300)

    def get_access_token(self, force_refresh: bool = False) -> str:
        """Get current access token, refreshing it when expired.

        Args:
            force_refresh: Force token refresh even if current token seems valid

        Returns:
            Access token string
        """
        if force_refresh or self._is_token_expired():
            if self._access_token is not None:
                logger.info("Access token expired, refreshing")
            return self.authenticate()
        return self._access_token

    def get_auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.get_access_token()}"}

    def clear_cache(self):
        """Clear stored token cache."""
        if self.token_cache_path.exists():
            self.token_cache_path.unlink()
        self._access_token = None
        self._app = None
