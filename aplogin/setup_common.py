"""Shared pieces of the setup flows: failure kinds, provider settings and labels."""

from __future__ import annotations

import json
import string
from dataclasses import dataclass, field
from typing import Optional

_LABEL_CHARS = frozenset(string.ascii_letters + string.digits + "-_")
_SEPARATORS = frozenset("\\/")


class SetupFailure(Exception):
    """A setup flow could not finish."""

    kind = "setup failure"

    def __str__(self) -> str:
        detail = super().__str__()
        return f"{self.kind}: {detail}" if detail else self.kind


class MissingCLI(SetupFailure):
    """A command-line tool the flow needs is not installed."""

    kind = "missing CLI dependency"


class NotLoggedIn(SetupFailure):
    """The command-line tool is installed but has no signed-in account."""

    kind = "CLI not logged in"


class ProviderFailure(SetupFailure):
    """The provider's tooling failed or returned something unusable."""

    kind = "provider failure"


@dataclass
class ProviderSettings:
    """The OAuth client configured for one provider label."""

    client_id: str = ""
    client_secret: str = ""
    project_id: str = ""
    tenant: str = ""


@dataclass
class Config:
    """OAuth clients per provider, keyed by label."""

    google: dict[str, ProviderSettings] = field(default_factory=dict)
    microsoft: dict[str, ProviderSettings] = field(default_factory=dict)

    def _section(self, provider: str) -> Optional[dict[str, ProviderSettings]]:
        if provider == "google":
            return self.google
        if provider == "ms":
            return self.microsoft
        return None

    def get_provider(self, provider: str, label: str) -> Optional[ProviderSettings]:
        """The settings stored for provider ("google" or "ms") and label, or None."""
        section = self._section(provider)
        if section is None:
            return None
        return section.get(label)

    def set_provider(self, provider: str, label: str, settings: ProviderSettings) -> None:
        """Store settings for provider ("google" or "ms") and label."""
        section = self._section(provider)
        if section is None:
            raise ValueError(f"unknown provider {json.dumps(provider)}")
        section[label] = settings


def sanitize_label(text: str) -> str:
    """Keep letters, digits, '-' and '_'; path separators become '-'; never empty."""
    kept = "".join(
        "-" if ch in _SEPARATORS else ch
        for ch in text
        if ch in _LABEL_CHARS or ch in _SEPARATORS
    )
    return kept or "x"