"""The logout command."""

from __future__ import annotations

from typing import TextIO

from .errors import auth_error, network_error, user_error
from .handle import InvalidHandle, MissingLabel, parse_handle, validate_provider
from .model import NoClientID, NotConfigured, RecordNotFound, Registry, Store, UnknownProvider


def logout(
    registry: Registry, store: Store, handle_text: str, stdout: TextIO, stderr: TextIO
) -> None:
    """Revoke a handle's tokens at the provider (best effort) and delete the record."""
    try:
        handle = parse_handle(handle_text)
        validate_provider(handle, registry)
    except (InvalidHandle, MissingLabel, UnknownProvider) as exc:
        raise user_error(str(exc)) from exc

    try:
        provider = registry.resolve(handle.provider, handle.label)
    except (NotConfigured, NoClientID, UnknownProvider):
        provider = registry.get(handle.provider)

    name = str(handle)
    try:
        record = store.get(name)
    except RecordNotFound as exc:
        raise auth_error(f"no account for {name}") from exc
    except Exception as exc:  # any storage backend failure
        raise network_error(f"store get: {exc}") from exc

    try:
        provider.logout(record)
    except Exception as exc:  # revocation is best effort
        stderr.write(f"warning: provider revoke failed ({exc}); local record removed\n")

    try:
        store.delete(name)
    except Exception as exc:  # any storage backend failure
        raise network_error(f"store delete: {exc}") from exc
    stdout.write(f"Removed {name}\n")