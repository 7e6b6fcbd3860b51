"""Microsoft setup: create or reuse an Azure AD app registration via the az CLI."""

from __future__ import annotations

import getpass
import json
import secrets
import socket
from dataclasses import dataclass
from typing import Any, Optional, TextIO

from .setup_common import (
    MissingCLI,
    NotLoggedIn,
    ProviderFailure,
    ProviderSettings,
    sanitize_label,
)
from .shell import CommandFailed, Prompter, Shell

GRAPH_API_RESOURCE_ID = "00000003-0000-0000-c000-000000000000"

DEFAULT_GRAPH_DELEGATED_SCOPES = (
    "User.Read",
    "offline_access",
    "openid",
    "email",
    "profile",
    "Mail.ReadWrite",
    "Mail.Send",
    "Calendars.ReadWrite",
    "Chat.ReadWrite",
    "ChatMessage.Send",
    "OnlineMeetings.Read",
)

OPT_IN_ADMIN_CONSENT_SCOPE = "OnlineMeetingRecording.Read.All"


@dataclass
class _AzAccount:
    name: str = ""
    tenant_id: str = ""
    user_name: str = ""


@dataclass
class _AzUser:
    user_name: str
    tenant_id: str
    subscription_id: str = ""


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _parse_account(text: str) -> _AzAccount:
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise ProviderFailure(f"parse az account show: {exc}") from exc
    if not isinstance(data, dict):
        raise ProviderFailure("parse az account show: expected a JSON object")
    user = data.get("user")
    return _AzAccount(
        name=_text(data.get("name")),
        tenant_id=_text(data.get("tenantId")),
        user_name=_text(user.get("name")) if isinstance(user, dict) else "",
    )


def _json_objects(text: str) -> list[dict]:
    """The objects of a JSON array, or nothing when the text is not one."""
    if not text:
        return []
    try:
        data = json.loads(text)
    except ValueError:
        return []
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


def _same(a: str, b: str) -> bool:
    return a.casefold() == b.casefold()


def _az_users(shell: Shell, active: _AzAccount) -> list[_AzUser]:
    """Enabled az identities, one per user, the active one first."""
    try:
        listing, _ = shell.run("az", "account", "list", "--all", "--output", "json")
    except CommandFailed:
        listing = ""
    users: list[_AzUser] = []
    seen: set[str] = set()
    for sub in _json_objects(listing):
        if _same(_text(sub.get("state")), "Disabled"):
            continue
        user = sub.get("user")
        name = _text(user.get("name")) if isinstance(user, dict) else ""
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        users.append(_AzUser(name, _text(sub.get("tenantId")), _text(sub.get("id"))))
    if active.user_name and active.user_name.lower() not in seen:
        users.insert(0, _AzUser(active.user_name, active.tenant_id))
    users.sort(key=lambda u: (not _same(u.user_name, active.user_name), u.user_name))
    return users


def _permission_map(text: str) -> dict[str, str]:
    return {
        _text(entry.get("name")): _text(entry.get("id"))
        for entry in _json_objects(text)
        if _text(entry.get("name")) and _text(entry.get("id"))
    }


def fetch_graph_permissions(shell: Shell) -> tuple[dict[str, str], dict[str, str]]:
    """Name-to-GUID maps of Graph's delegated scopes and its app roles."""
    try:
        out, _ = shell.run(
            "az", "ad", "sp", "show",
            "--id", GRAPH_API_RESOURCE_ID,
            "--query", "oauth2PermissionScopes[].{name:value, id:id, type:type}",
            "-o", "json",
        )
    except CommandFailed as exc:
        raise ProviderFailure(
            f"az ad sp show oauth2PermissionScopes: {exc}\n{exc.stderr}"
        ) from exc
    delegated: dict[str, str] = {}
    if out:
        try:
            data = json.loads(out)
        except ValueError as exc:
            raise ProviderFailure(f"parse oauth2PermissionScopes: {exc}") from exc
        if not isinstance(data, list):
            raise ProviderFailure("parse oauth2PermissionScopes: expected a JSON array")
        delegated = _permission_map(out)

    try:
        out, _ = shell.run(
            "az", "ad", "sp", "show",
            "--id", GRAPH_API_RESOURCE_ID,
            "--query", 'appRoles[].{name:value, id:id, type:"Role"}',
            "-o", "json",
        )
    except CommandFailed:
        # App roles only serve the optional scope; their absence is not fatal.
        return delegated, {}
    return delegated, _permission_map(out)


def lookup_optional_scope(
    name: str, delegated: dict[str, str], app_roles: dict[str, str]
) -> Optional[tuple[str, str]]:
    """(GUID, "Scope" or "Role") for a scope, delegated first; None if absent."""
    if name in delegated:
        return delegated[name], "Scope"
    if name in app_roles:
        return app_roles[name], "Role"
    return None


def generate_app_display_name() -> str:
    """A fresh apl-<user>-<host>-<random> app registration name."""
    try:
        username = getpass.getuser()
    except (KeyError, OSError, ImportError):
        username = ""
    whoami = sanitize_label(username) if username else "user"
    host = socket.gethostname()
    host_part = sanitize_label(host) if host else "host"
    return f"apl-{whoami}-{host_part}-{secrets.token_hex(4)}"


def _pick_account(
    shell: Shell, prompter: Prompter, stdout: TextIO, account: _AzAccount
) -> _AzAccount:
    users = _az_users(shell, account)
    options = []
    for user in users:
        label = user.user_name
        if user.tenant_id:
            label += f" (tenant {user.tenant_id})"
        if _same(user.user_name, account.user_name):
            label += "  [active]"
        options.append(label)
    options.append("Sign in another tenant/account")

    stdout.write("\nDetected az accounts:\n")
    choice = prompter.pick("Pick account", options)
    if not 0 <= choice < len(options):
        raise ProviderFailure("invalid account choice")

    if choice == len(options) - 1:
        tenant = prompter.input(
            "Tenant domain (e.g. reqsume.onmicrosoft.com, or 'common'): "
        ).strip()
        if not tenant:
            raise ProviderFailure("empty tenant for sign-in")
        stdout.write(
            f"→ running `az login --tenant {tenant} --allow-no-subscriptions` (browser opens)\n"
        )
        try:
            shell.run_interactive("az", "login", "--tenant", tenant, "--allow-no-subscriptions")
        except CommandFailed as exc:
            raise NotLoggedIn(f"az login: {exc}") from exc
        try:
            shown, _ = shell.run("az", "account", "show")
        except CommandFailed as exc:
            raise ProviderFailure(f"az account show after login: {exc}") from exc
        return _parse_account(shown)

    picked = users[choice]
    if not _same(picked.user_name, account.user_name) and picked.subscription_id:
        try:
            shell.run("az", "account", "set", "--subscription", picked.subscription_id)
        except CommandFailed as exc:
            raise ProviderFailure(f"az account set: {exc}\n{exc.stderr}") from exc
        try:
            shown, _ = shell.run("az", "account", "show")
            account = _parse_account(shown)
        except (CommandFailed, ProviderFailure):
            pass
    return account


def _pick_app(shell: Shell, prompter: Prompter, stdout: TextIO) -> str:
    """The app id of a chosen existing apl-* registration, or "" to create one."""
    try:
        out, _ = shell.run("az", "ad", "app", "list", "--display-name", "apl", "--output", "json")
    except CommandFailed as exc:
        raise ProviderFailure(f"az ad app list: {exc}") from exc
    existing = [
        (_text(app.get("displayName")), _text(app.get("appId")))
        for app in _json_objects(out)
        if _text(app.get("displayName")).startswith("apl")
    ]
    if not existing:
        stdout.write("No existing apl-* app registrations in this tenant.\n")
        return ""

    options = [f"{name}  [apl]" for name, _ in existing]
    options.append("Create a new app registration")
    stdout.write("\nDetected apl-* app registrations in this tenant:\n")
    choice = prompter.pick("Pick app registration", options)
    if not 0 <= choice < len(options):
        raise ProviderFailure("invalid app-registration choice")
    if choice < len(existing):
        name, app_id = existing[choice]
        stdout.write(f"→ using {name} ({app_id})\n")
        return app_id
    return ""


def _create_app(shell: Shell, stdout: TextIO) -> str:
    display_name = generate_app_display_name()
    stdout.write(f"→ creating app registration {display_name}\n")
    try:
        out, _ = shell.run(
            "az", "ad", "app", "create",
            "--display-name", display_name,
            "--sign-in-audience", "AzureADandPersonalMicrosoftAccount",
            "--is-fallback-public-client", "true",
            "--public-client-redirect-uris", "http://localhost",
        )
    except CommandFailed as exc:
        raise ProviderFailure(f"az ad app create: {exc}\n{exc.stderr}") from exc
    try:
        created = json.loads(out)
    except ValueError as exc:
        raise ProviderFailure(f"parse az ad app create output: {exc}") from exc
    app_id = _text(created.get("appId")) if isinstance(created, dict) else ""
    if not app_id:
        raise ProviderFailure("az ad app create returned no appId")
    return app_id


def _add_permission(shell: Shell, app_id: str, name: str, guid: str, kind: str) -> None:
    try:
        shell.run(
            "az", "ad", "app", "permission", "add",
            "--id", app_id,
            "--api", GRAPH_API_RESOURCE_ID,
            "--api-permissions", f"{guid}={kind}",
        )
    except CommandFailed as exc:
        raise ProviderFailure(f"permission add {name}: {exc}\n{exc.stderr}") from exc


def run_microsoft(
    shell: Shell,
    prompter: Prompter,
    stdout: TextIO,
    stderr: TextIO,
    current: Optional[ProviderSettings] = None,
) -> ProviderSettings:
    """Pick an az identity, create or reuse an apl-* app and grant Graph scopes."""
    stdout.write("→ Microsoft setup\n")
    if not shell.available("az"):
        raise MissingCLI(
            "Microsoft setup needs the Azure CLI (az)\n"
            "    Install it, e.g.: brew install azure-cli"
        )

    try:
        shown, _ = shell.run("az", "account", "show")
    except CommandFailed as exc:
        raise NotLoggedIn(
            "Azure CLI is installed but not logged in\n    Run: az login"
        ) from exc
    account = _pick_account(shell, prompter, stdout, _parse_account(shown))

    stdout.write(
        f"\n  Azure signed-in user: {account.user_name}\n"
        f"  Subscription:         {account.name}\n"
        f"  Tenant:               {account.tenant_id}\n\n"
    )
    if not prompter.confirm("Continue as this user?"):
        raise NotLoggedIn("cancelled by user (run `az login` to switch accounts)")

    delegated, app_roles = fetch_graph_permissions(shell)
    include_recording = prompter.confirm(
        f"Include {OPT_IN_ADMIN_CONSENT_SCOPE}? (requires tenant admin consent)"
    )

    app_id = _pick_app(shell, prompter, stdout) or _create_app(shell, stdout)

    granted = 0
    for name in DEFAULT_GRAPH_DELEGATED_SCOPES:
        guid = delegated.get(name)
        if guid is None:
            raise ProviderFailure(
                f"Graph delegated scope {json.dumps(name)} not found in service principal"
            )
        _add_permission(shell, app_id, name, guid, "Scope")
        granted += 1

    if include_recording:
        found = lookup_optional_scope(OPT_IN_ADMIN_CONSENT_SCOPE, delegated, app_roles)
        if found is None:
            stderr.write(
                f"warning: {OPT_IN_ADMIN_CONSENT_SCOPE} not exposed by current Graph SP; skipping\n"
            )
        else:
            guid, kind = found
            _add_permission(shell, app_id, OPT_IN_ADMIN_CONSENT_SCOPE, guid, kind)
            granted += 1
            stderr.write(
                f"note: {OPT_IN_ADMIN_CONSENT_SCOPE} requires tenant admin consent. "
                f"As tenant admin, run:\n    az ad app permission admin-consent --id {app_id}\n"
            )

    stdout.write(
        f"✓ Microsoft configured\n    appId: {app_id}\n    tenant: common\n"
        f"    scopes: {granted} Graph permissions\n"
    )
    return ProviderSettings(client_id=app_id, tenant="common")