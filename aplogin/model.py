"""Token records, provider and store interfaces, and the provider registry."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class TokenRecord:
    """Everything stored for one signed-in account."""

    provider: str
    label: str
    handle: str = ""
    subject: str = ""
    tenant: str = ""
    access_token: str = ""
    refresh_token: str = ""
    scopes: list[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None

    def handle_string(self) -> str:
        """The record's handle, derived from provider and label when unset."""
        return self.handle or f"{self.provider}:{self.label}"


class RecordNotFound(LookupError):
    """No stored record exists for a handle."""


class NotConfigured(Exception):
    """No OAuth client is configured for a provider label."""


class NoClientID(Exception):
    """The provider has no client id to sign in with."""


class InvalidGrant(Exception):
    """The refresh token was rejected by the identity provider."""


class UnknownProvider(LookupError):
    """The registry holds no provider of that name."""


@dataclass
class LoginOptions:
    """Options for a browser sign-in."""

    tenant: str = ""
    scopes: list[str] = field(default_factory=list)
    force: bool = False


class Provider(ABC):
    """An identity provider able to sign in, refresh and revoke tokens."""

    name: str = ""

    @abstractmethod
    def login(self, label: str, options: LoginOptions) -> TokenRecord:
        """Run the interactive sign-in and return a new record."""

    @abstractmethod
    def refresh(self, record: TokenRecord) -> tuple[str, Optional[TokenRecord]]:
        """Return a valid access token and, if it changed, the updated record."""

    @abstractmethod
    def logout(self, record: TokenRecord) -> None:
        """Revoke the record's tokens at the identity provider."""

    def expand_scopes(self, aliases: list[str]) -> list[str]:
        """Turn scope aliases into full scope names."""
        return list(aliases)

    def default_scopes(self) -> list[str]:
        """Scopes requested when the user names none."""
        return []

    def for_label(self, label: str) -> "Provider":
        """The provider configured for a label; raises NotConfigured if none."""
        if not label:
            raise NotConfigured(f"no OAuth client configured for {self.name} without a label")
        return self


class Store(ABC):
    """Persistent storage of token records keyed by handle."""

    @abstractmethod
    def put(self, record: TokenRecord) -> None:
        """Insert or replace a record."""

    @abstractmethod
    def get(self, handle: str) -> TokenRecord:
        """Return the record for a handle; raises RecordNotFound."""

    @abstractmethod
    def list(self) -> list[TokenRecord]:
        """Return all stored records."""

    @abstractmethod
    def delete(self, handle: str) -> None:
        """Remove a record; raises RecordNotFound."""


class Registry:
    """Known providers by name."""

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def register(self, provider: Provider) -> None:
        """Add a provider; its name must be non-empty and not yet taken."""
        if not provider.name:
            raise ValueError("provider has no name")
        if provider.name in self._providers:
            raise ValueError(f"provider {json.dumps(provider.name)} already registered")
        self._providers[provider.name] = provider

    def get(self, name: str) -> Provider:
        """Return the provider of that name."""
        try:
            return self._providers[name]
        except KeyError:
            raise UnknownProvider(f"unknown provider {json.dumps(name)}") from None

    def names(self) -> list[str]:
        """Sorted names of all registered providers."""
        return sorted(self._providers)

    def resolve(self, name: str, label: str) -> Provider:
        """Return the provider configured for a label."""
        return self.get(name).for_label(label)