"""The login command: print a valid access token, signing in when needed."""

from __future__ import annotations

import json
from typing import Iterable, TextIO

from .errors import auth_error, network_error, user_error
from .handle import InvalidHandle, MissingLabel, parse_handle, validate_provider
from .model import (
    InvalidGrant,
    LoginOptions,
    NoClientID,
    NotConfigured,
    RecordNotFound,
    Registry,
    Store,
    UnknownProvider,
)


def login(
    registry: Registry,
    store: Store,
    handle_text: str,
    stdout: TextIO,
    stderr: TextIO,
    tenant: str = "",
    scopes: Iterable[str] = (),
    force: bool = False,
) -> None:
    """Print an access token for a handle to stdout.

    A stored record is reused (refreshing if stale) unless force is set or
    scopes are given; otherwise the browser sign-in runs and the new record
    is stored.
    """
    scopes = list(scopes)
    try:
        handle = parse_handle(handle_text)
        validate_provider(handle, registry)
    except (InvalidHandle, MissingLabel, UnknownProvider) as exc:
        raise user_error(str(exc)) from exc
    if tenant and handle.provider != "ms":
        raise user_error("--tenant is only valid for the ms provider")

    name = str(handle)
    try:
        provider = registry.resolve(handle.provider, handle.label)
    except NotConfigured as exc:
        raise user_error(
            f"no OAuth client configured for {name}. "
            f"Run: apl setup {handle.provider} --label {handle.label}"
        ) from exc
    except UnknownProvider as exc:
        raise user_error(str(exc)) from exc

    if not force and not scopes:
        try:
            record = store.get(name)
        except RecordNotFound:
            record = None
        except Exception as exc:  # any storage backend failure
            raise network_error(f"store get: {exc}") from exc
        if record is not None:
            try:
                token, updated = provider.refresh(record)
            except InvalidGrant as exc:
                raise auth_error(
                    f"token refresh failed: refresh token expired. Run: apl login {name} --force"
                ) from exc
            except Exception as exc:  # transport or provider failure
                raise network_error(f"token refresh: {exc}") from exc
            if updated is not None and updated is not record:
                try:
                    store.put(updated)
                except Exception as exc:  # persisting is best effort here
                    stderr.write(f"warning: failed to persist refreshed token: {exc}\n")
            stdout.write(token + "\n")
            return

    requested: list[str] = []
    if scopes:
        try:
            requested = provider.expand_scopes(scopes)
        except ValueError as exc:
            raise user_error(str(exc)) from exc

    options = LoginOptions(tenant=tenant, scopes=requested, force=force)
    stderr.write(f"→ Opening browser for {handle.provider} sign-in…\n")
    try:
        record = provider.login(handle.label, options)
    except NoClientID as exc:
        raise user_error(
            f"provider {json.dumps(handle.provider)} not configured. "
            f"Run: apl setup {handle.provider}"
        ) from exc
    except Exception as exc:  # transport or provider failure
        raise network_error(f"login failed: {exc}") from exc
    try:
        store.put(record)
    except Exception as exc:  # any storage backend failure
        raise network_error(f"store record: {exc}") from exc
    stderr.write(f"✓ Signed in as {record.subject} (handle: {record.handle_string()})\n")
    stdout.write(record.access_token + "\n")