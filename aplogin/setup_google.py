"""Google setup: pick a gcloud account and project, then register a desktop OAuth client."""

from __future__ import annotations

import getpass
import json
import os
import re
import secrets
import webbrowser
from dataclasses import dataclass
from typing import Any, Optional, TextIO

from .setup_common import (
    MissingCLI,
    NotLoggedIn,
    ProviderFailure,
    ProviderSettings,
    sanitize_label,
)
from .shell import CommandFailed, Prompter, Shell, Validator

_CLIENT_ID_RE = re.compile(r"[0-9]+-[a-z0-9]{32}\.apps\.googleusercontent\.com")

REQUIRED_APIS = (
    "gmail.googleapis.com",
    "calendar-json.googleapis.com",
    "people.googleapis.com",
    "drive.googleapis.com",
)

_RULE = "─" * 65

_CONSOLE = "https://console.cloud.google.com/auth"


@dataclass
class _GcloudAccount:
    account: str
    status: str

    @property
    def active(self) -> bool:
        return self.status.casefold() == "active"


def is_google_client_id(client_id: str) -> bool:
    """Whether the text has the shape of a desktop-app Google client id."""
    return bool(_CLIENT_ID_RE.fullmatch(client_id))


def generate_project_id() -> str:
    """A fresh apl-<user>-<random> GCP project id."""
    try:
        username = getpass.getuser()
    except (KeyError, OSError, ImportError):
        username = ""
    whoami = sanitize_label(username).lower() if username else "user"
    return f"apl-{whoami}-{secrets.token_hex(3)[:5]}"


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _json_objects(text: str) -> list[dict]:
    if not text:
        return []
    try:
        data = json.loads(text)
    except ValueError:
        return []
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


def _open_browser(url: str, stderr: TextIO) -> None:
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as exc:
        reason = str(exc)
    else:
        if opened:
            return
        reason = "no browser available"
    stderr.write(f"could not open browser: {reason}\n  Open this URL manually: {url}\n")


def _set_account(shell: Shell, account: str) -> None:
    try:
        shell.run("gcloud", "config", "set", "account", account)
    except CommandFailed as exc:
        raise ProviderFailure(f"gcloud config set account: {exc}\n{exc.stderr}") from exc


def _pick_account(shell: Shell, prompter: Prompter, stdout: TextIO) -> str:
    try:
        listing, _ = shell.run("gcloud", "auth", "list", "--format=json")
    except CommandFailed as exc:
        raise NotLoggedIn("gcloud auth list failed\n    Run: gcloud auth login") from exc
    accounts = [
        _GcloudAccount(_text(entry.get("account")), _text(entry.get("status")))
        for entry in _json_objects(listing)
    ]
    accounts.sort(key=lambda a: (not a.active, a.account))

    options = [a.account + ("  [active]" if a.active else "") for a in accounts]
    options.append("Sign in another account")

    stdout.write("\nDetected gcloud accounts:\n")
    choice = prompter.pick("Pick account", options)
    if not 0 <= choice < len(options):
        raise ProviderFailure("invalid account choice")

    if choice == len(options) - 1:
        email = prompter.input("Email to sign in: ").strip()
        if not email:
            raise ProviderFailure("empty email for sign-in")
        stdout.write(f"→ running `gcloud auth login {email}` (browser opens)\n")
        try:
            shell.run_interactive("gcloud", "auth", "login", email)
        except CommandFailed as exc:
            raise NotLoggedIn(f"gcloud auth login: {exc}") from exc
        _set_account(shell, email)
        stdout.write(f"✓ signed in as {email}\n→ set as active gcloud account\n")
        return email

    picked = accounts[choice]
    if not picked.active:
        _set_account(shell, picked.account)
    return picked.account


def _current_project(shell: Shell) -> str:
    try:
        out, _ = shell.run("gcloud", "config", "get-value", "project")
    except CommandFailed:
        out = ""
    project = out.strip()
    if not project or project == "(unset)":
        return "(none set)"
    return project


def _pick_project(
    shell: Shell, prompter: Prompter, stdout: TextIO, current_project: str
) -> str:
    """The chosen existing project id, or a newly created one."""
    try:
        out, _ = shell.run("gcloud", "projects", "list", "--format=json")
    except CommandFailed as exc:
        raise ProviderFailure(f"gcloud projects list: {exc}") from exc
    projects = [
        (_text(entry.get("projectId")), _text(entry.get("name")))
        for entry in _json_objects(out)
    ]
    projects.sort(
        key=lambda p: (p[0] != current_project, not p[0].startswith("apl-"), p[0])
    )

    options: list[str] = []
    for project_id, name in projects:
        label = f"{project_id} ({name})" if name and name != project_id else project_id
        if project_id == current_project:
            label += "  [current]"
        if project_id.startswith("apl-"):
            label += "  [apl]"
        options.append(label)
    options.append("Create a new apl-* project")
    choices = [project_id for project_id, _ in projects] + [""]

    project_id = ""
    if len(options) == 1:
        if not prompter.confirm("No GCP projects visible. Create a new apl-* project?"):
            raise ProviderFailure("user declined project creation")
    else:
        choice = prompter.pick("Which GCP project?", options)
        if not 0 <= choice < len(choices):
            raise ProviderFailure("invalid project choice")
        project_id = choices[choice]
        if project_id:
            stdout.write(f"→ using {project_id}\n")

    if not project_id:
        project_id = generate_project_id()
        stdout.write(f"→ creating project {project_id}\n")
        try:
            shell.run(
                "gcloud", "projects", "create", project_id, "--name", "All Purpose Login"
            )
        except CommandFailed as exc:
            raise ProviderFailure(f"gcloud projects create: {exc}\n{exc.stderr}") from exc
    return project_id


def _try_create_brand(shell: Shell, account: str, project_id: str) -> bool:
    try:
        shell.run(
            "gcloud", "alpha", "iap", "oauth-brands", "create",
            "--application_title", "apl (local)",
            "--support_email", account,
            f"--project={project_id}",
        )
    except CommandFailed:
        return False
    return True


def _has_brand(shell: Shell, project_id: str) -> bool:
    try:
        out, _ = shell.run(
            "gcloud", "alpha", "iap", "oauth-brands", "list",
            f"--project={project_id}", "--format=value(name)",
        )
    except CommandFailed:
        return False
    return bool(out.strip())


def _offer_open(
    prompter: Prompter, question: str, url: str, stdout: TextIO, stderr: TextIO
) -> bool:
    if prompter.confirm(question):
        _open_browser(url, stderr)
        return True
    return False


def run_google(
    shell: Shell,
    prompter: Prompter,
    validator: Validator,
    stdout: TextIO,
    stderr: TextIO,
    current: Optional[ProviderSettings] = None,
) -> ProviderSettings:
    """Walk through project selection, API enablement and OAuth client creation."""
    stdout.write("→ Google setup\n")
    if not shell.available("gcloud"):
        raise MissingCLI(
            "Google setup needs the gcloud CLI\n"
            "    Install it, e.g.: brew install --cask google-cloud-sdk"
        )

    account = _pick_account(shell, prompter, stdout)
    current_project = _current_project(shell)
    stdout.write(
        f"\n  Google signed-in account: {account}\n"
        f"  Active project:           {current_project}\n\n"
    )

    project_id = _pick_project(shell, prompter, stdout, current_project)

    stdout.write("→ enabling Gmail, Calendar, People, Drive APIs\n")
    try:
        shell.run("gcloud", "services", "enable", *REQUIRED_APIS, f"--project={project_id}")
    except CommandFailed as exc:
        raise ProviderFailure(f"gcloud services enable: {exc}\n{exc.stderr}") from exc

    brand_auto = _try_create_brand(shell, account, project_id)
    if brand_auto:
        stdout.write("✓ OAuth consent brand created via gcloud alpha iap oauth-brands\n")
    elif _has_brand(shell, project_id):
        stdout.write("\n→ this project already has an OAuth brand configured\n")
        if prompter.confirm("Do you already have a Client ID you want to reuse?"):
            return google_client_id_loop(prompter, validator, project_id, stdout, stderr)

    brand_url = f"{_CONSOLE}/overview?project={project_id}"
    data_access_url = f"{_CONSOLE}/scopes?project={project_id}"
    audience_url = f"{_CONSOLE}/audience?project={project_id}"
    clients_url = f"{_CONSOLE}/clients/create?project={project_id}"

    if not brand_auto:
        stdout.write(
            f"\n{_RULE}\nStep 1 of 3 — Configure OAuth (Auth Platform wizard)\n{_RULE}\n"
            "Google will walk you through 4 sub-screens. Fill in:\n\n"
            "  App Information\n"
            "    App name:            apl (local)\n"
            f"    User support email:  {account}\n\n"
            "  Audience\n"
            "    Select: External\n"
            "    (keep as Testing — adds you as a test user; supports up to 100\n"
            "     personal Gmail users before verification is required)\n\n"
            "  Contact Information\n"
            f"    Email:               {account}\n\n"
            "  Finish → click CREATE\n\n"
        )
        if not _offer_open(
            prompter, "Open the Auth Platform wizard in your browser now?",
            brand_url, stdout, stderr,
        ):
            stdout.write(f"Open manually: {brand_url}\n")
        prompter.wait("Press ENTER when the wizard finishes...")

    step2 = 1 if brand_auto else 2
    stdout.write(
        f"\n{_RULE}\nStep {step2} — Add scopes and your test user\n{_RULE}\n"
        'Open "Data Access" (left sidebar) → ADD OR REMOVE SCOPES.\n\n'
        'Scroll to "Manually add scopes" and paste this block verbatim\n'
        '(one scope per line), then click "Add to table":\n\n'
        "  openid\n"
        "  https://www.googleapis.com/auth/userinfo.email\n"
        "  https://www.googleapis.com/auth/userinfo.profile\n"
        "  https://www.googleapis.com/auth/gmail.modify\n"
        "  https://www.googleapis.com/auth/calendar\n"
        "  https://www.googleapis.com/auth/contacts.readonly\n"
        "  https://www.googleapis.com/auth/drive.readonly\n\n"
        "Click UPDATE → SAVE.\n\n"
        'Then open "Audience" (left sidebar) → Test users → + ADD USERS:\n'
        f"  {account}\n"
        "Click SAVE.\n\n"
    )
    if _offer_open(
        prompter, "Open Data Access page in your browser now?",
        data_access_url, stdout, stderr,
    ):
        stdout.write(f"After saving scopes, open: {audience_url}\n")
    else:
        stdout.write(
            f"Open manually:\n  Data Access: {data_access_url}\n  Audience:    {audience_url}\n"
        )
    prompter.wait("Press ENTER when scopes and test user are saved...")

    stdout.write(
        f"\n{_RULE}\nStep {step2 + 1} — Create OAuth 2.0 Client ID\n{_RULE}\n"
        "On the Clients page:\n"
        "  + CREATE CLIENT\n"
        "  Application type:  Desktop app\n"
        "  Name:              apl-desktop\n"
        "  Click CREATE\n\n"
        "A dialog shows your Client ID and Client secret. Click DOWNLOAD JSON\n"
        "(top-right of the dialog). apl needs the file, not just the ID —\n"
        "Google's Desktop OAuth requires the secret even with PKCE.\n\n"
    )
    if not _offer_open(
        prompter, "Open the Clients page in your browser now?", clients_url, stdout, stderr
    ):
        stdout.write(f"Open manually: {clients_url}\n")
    prompter.wait("Press ENTER when you've clicked CREATE and have the Client ID...")

    return google_client_id_loop(prompter, validator, project_id, stdout, stderr)


def _read_client_file(raw: str, stderr: TextIO) -> Optional[tuple[str, str]]:
    """(client_id, client_secret) from a downloaded client JSON, or None after reporting why not."""
    try:
        with open(raw, "rb") as handle:
            body = handle.read()
    except OSError as exc:
        stderr.write(f"✗ cannot read {json.dumps(raw)}: {exc}\n")
        return None
    try:
        data = json.loads(body)
    except ValueError as exc:
        stderr.write(f"✗ not valid JSON: {exc}\n")
        return None
    installed = data.get("installed") if isinstance(data, dict) else None
    if not isinstance(installed, dict):
        stderr.write(
            "✗ JSON missing `installed` object — is this a Desktop-app client download?\n"
        )
        return None
    client_id = _text(installed.get("client_id"))
    client_secret = _text(installed.get("client_secret"))
    if not is_google_client_id(client_id):
        stderr.write(f"✗ client_id format invalid: {json.dumps(client_id)}\n")
        return None
    if not client_secret:
        stderr.write("✗ client_secret missing from JSON\n")
        return None
    return client_id, client_secret


def google_client_id_loop(
    prompter: Prompter,
    validator: Validator,
    project_id: str,
    stdout: TextIO,
    stderr: TextIO,
) -> ProviderSettings:
    """Ask up to three times for the client-secret JSON and return the settings it holds."""
    found: Optional[tuple[str, str]] = None
    for _ in range(3):
        raw = prompter.input(
            "Path to downloaded client-secret JSON (drag-drop from Finder works): "
        )
        raw = raw.strip().strip("'\"")
        if raw.startswith("~/"):
            raw = os.path.expanduser(raw)
        candidate = _read_client_file(raw, stderr)
        if candidate is None:
            continue
        try:
            validator.validate(candidate[0])
        except Exception as exc:  # any validator failure is reported and retried
            stderr.write(f"✗ OAuth round-trip failed: {exc}\n")
            if not prompter.confirm("Try again?"):
                raise ProviderFailure("client ID validation failed") from exc
            continue
        found = candidate
        break

    if found is None:
        raise ProviderFailure(
            "failed to read a valid client-secret JSON after 3 attempts"
        )
    client_id, client_secret = found
    stdout.write(f"✓ Google configured\n    project: {project_id}\n    client: {client_id}\n")
    return ProviderSettings(
        client_id=client_id, client_secret=client_secret, project_id=project_id
    )