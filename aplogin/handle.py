"""Parsing of provider:label handles."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Optional

from .model import Registry, UnknownProvider

_HANDLE_RE = re.compile(r"[a-z]+:[a-zA-Z0-9._-]+")


@dataclass(frozen=True)
class Handle:
    """A parsed provider:label pair."""

    provider: str
    label: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.label}"


class InvalidHandle(ValueError):
    """The text is not of the form provider:label."""


class MissingLabel(ValueError):
    """The text names a provider but no label."""


def _invalid(text: str) -> InvalidHandle:
    return InvalidHandle(
        f"invalid handle {json.dumps(text)}. Expected form: provider:label (e.g. google:work)"
    )


def parse_handle(text: str) -> Handle:
    """Parse and validate a handle; the provider is not checked against a registry."""
    if not text:
        raise _invalid(text)
    if ":" not in text:
        raise MissingLabel(
            f"missing label. Use provider:label form, e.g. apl login {text}:work"
        )
    if not _HANDLE_RE.fullmatch(text):
        raise _invalid(text)
    provider, _, label = text.partition(":")
    return Handle(provider=provider, label=label)


def validate_provider(handle: Handle, registry: Optional[Registry]) -> None:
    """Raise UnknownProvider unless the handle's provider is registered."""
    quoted = json.dumps(handle.provider)
    if registry is None:
        raise UnknownProvider(f"unknown provider {quoted}")
    try:
        registry.get(handle.provider)
    except UnknownProvider:
        known = ", ".join(registry.names())
        raise UnknownProvider(
            f"unknown provider {quoted}. Known providers: {known}"
        ) from None