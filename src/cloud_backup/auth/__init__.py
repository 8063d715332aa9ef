"""Credential storage and authentication for cloud storage providers."""

from .vault import Credential, CredentialVault

__all__ = ["Credential", "CredentialVault"]
