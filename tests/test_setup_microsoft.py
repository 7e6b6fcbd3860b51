import io
import re
from dataclasses import dataclass, field

import pytest

from aplogin.setup_common import MissingCLI, NotLoggedIn, ProviderFailure
from aplogin.setup_microsoft import (
    GRAPH_API_RESOURCE_ID,
    fetch_graph_permissions,
    generate_app_display_name,
    lookup_optional_scope,
    run_microsoft,
)
from aplogin.shell import CommandFailed, Prompter, Shell

CANONICAL_GRAPH_SP = """[
  {"name":"User.Read","id":"guid-user-read","type":"User"},
  {"name":"offline_access","id":"guid-offline-access","type":"User"},
  {"name":"openid","id":"guid-openid","type":"User"},
  {"name":"email","id":"guid-email","type":"User"},
  {"name":"profile","id":"guid-profile","type":"User"},
  {"name":"Mail.ReadWrite","id":"guid-mail-readwrite","type":"User"},
  {"name":"Mail.Send","id":"guid-mail-send","type":"User"},
  {"name":"Calendars.ReadWrite","id":"guid-calendars-readwrite","type":"User"},
  {"name":"Chat.ReadWrite","id":"guid-chat-readwrite","type":"User"},
  {"name":"ChatMessage.Send","id":"guid-chatmessage-send","type":"User"},
  {"name":"OnlineMeetings.Read","id":"guid-onlinemeetings-read","type":"User"}
]"""

WITH_RECORDING_SP = CANONICAL_GRAPH_SP[:-2] + """,
  {"name":"OnlineMeetingRecording.Read.All","id":"guid-recording-all","type":"User"}
]"""


@dataclass
class Call:
    name: str
    args: tuple
    interactive: bool = False


@dataclass
class Resp:
    stdout: str = ""
    stderr: str = ""
    fail: bool = False


def _lookup(table, name, args):
    for n in (3, 2, 1, 0):
        if len(args) >= n:
            key = " ".join([name, *args[:n]])
            if key in table:
                return table[key]
    return None


class FakeShell(Shell):
    def __init__(self):
        self.calls = []
        self.responses = {}
        self.interactive_failures = {}
        self.availability = {}

    def respond(self, key, **kwargs):
        self.responses[key] = Resp(**kwargs)

    def run(self, name, *args):
        self.calls.append(Call(name, args))
        resp = _lookup(self.responses, name, args)
        if resp is None:
            return "", ""
        if resp.fail:
            raise CommandFailed(name, args, resp.stderr, 1)
        return resp.stdout, resp.stderr

    def run_interactive(self, name, *args):
        self.calls.append(Call(name, args, interactive=True))
        if _lookup(self.interactive_failures, name, args):
            raise CommandFailed(name, args, "", 1)

    def available(self, name):
        return self.availability.get(name, True)


@dataclass
class FakePrompter(Prompter):
    confirms: list = field(default_factory=list)
    picks: list = field(default_factory=list)
    inputs: list = field(default_factory=list)

    def confirm(self, message):
        return self.confirms.pop(0) if self.confirms else False

    def pick(self, message, options):
        return self.picks.pop(0) if self.picks else 0

    def input(self, message):
        return self.inputs.pop(0) if self.inputs else ""

    def wait(self, message):
        return None


def stub_graph_sp(fs, body=CANONICAL_GRAPH_SP):
    fs.respond("az ad sp", stdout=body)


def base_shell():
    fs = FakeShell()
    fs.availability["az"] = True
    fs.respond("az account", stdout='{"user":{"name":"u"}}')
    stub_graph_sp(fs)
    return fs


def calls_of(fs, *prefix):
    return [c for c in fs.calls if c.name == "az" and c.args[: len(prefix)] == prefix]


def arg_after(args, flag):
    index = args.index(flag)
    return args[index + 1]


def test_preflight_cli_missing():
    fs = FakeShell()
    fs.availability["az"] = False
    with pytest.raises(MissingCLI) as info:
        run_microsoft(fs, FakePrompter(), io.StringIO(), io.StringIO())
    assert "az" in str(info.value)
    assert "install" in str(info.value)


def test_preflight_not_logged_in():
    fs = FakeShell()
    fs.respond("az account", stderr="Please run 'az login'", fail=True)
    with pytest.raises(NotLoggedIn) as info:
        run_microsoft(fs, FakePrompter(), io.StringIO(), io.StringIO())
    assert "az login" in str(info.value)


def test_reuse_existing_app():
    fs = base_shell()
    fs.respond(
        "az ad app list",
        stdout='[{"displayName":"apl-muthu","appId":"11111111-2222-3333-4444-555555555555"}]',
    )
    fs.respond("az ad app permission", stdout="")
    prompter = FakePrompter(picks=[0, 0], confirms=[True, False])
    settings = run_microsoft(fs, prompter, io.StringIO(), io.StringIO())
    assert settings.client_id == "11111111-2222-3333-4444-555555555555"
    assert settings.tenant == "common"
    assert calls_of(fs, "ad", "app", "create") == []


def test_create_new_app():
    fs = base_shell()
    fs.respond("az ad app list", stdout="[]")
    fs.respond(
        "az ad app",
        stdout='{"appId":"aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee","displayName":"apl-muthu-host"}',
    )
    fs.respond("az ad app permission", stdout="")
    prompter = FakePrompter(picks=[0], confirms=[True, False])
    settings = run_microsoft(fs, prompter, io.StringIO(), io.StringIO())
    assert settings.client_id == "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"

    creates = calls_of(fs, "ad", "app", "create")
    assert len(creates) == 1
    args = creates[0].args
    for expected in (
        "--sign-in-audience",
        "AzureADandPersonalMicrosoftAccount",
        "--is-fallback-public-client",
        "--public-client-redirect-uris",
        "http://localhost",
    ):
        assert expected in args
    assert arg_after(args, "--display-name").startswith("apl-")


def test_permissions_added_for_all_scopes():
    fs = base_shell()
    fs.respond("az ad app list", stdout="[]")
    fs.respond("az ad app", stdout='{"appId":"aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"}')
    fs.respond("az ad app permission", stdout="")
    run_microsoft(fs, FakePrompter(picks=[0], confirms=[True, False]), io.StringIO(), io.StringIO())

    seen = {}
    for call in calls_of(fs, "ad", "app", "permission"):
        assert arg_after(call.args, "--api") == GRAPH_API_RESOURCE_ID
        guid, _, kind = arg_after(call.args, "--api-permissions").partition("=")
        seen[guid] = kind
    want = [
        "guid-user-read",
        "guid-offline-access",
        "guid-openid",
        "guid-email",
        "guid-profile",
        "guid-mail-readwrite",
        "guid-mail-send",
        "guid-calendars-readwrite",
        "guid-chat-readwrite",
        "guid-chatmessage-send",
        "guid-onlinemeetings-read",
    ]
    assert sorted(seen) == sorted(want)
    assert set(seen.values()) == {"Scope"}


def test_opt_in_admin_consent_scope():
    fs = base_shell()
    stub_graph_sp(fs, WITH_RECORDING_SP)
    fs.respond("az ad app list", stdout="[]")
    fs.respond("az ad app", stdout='{"appId":"aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"}')
    fs.respond("az ad app permission", stdout="")
    stderr = io.StringIO()
    run_microsoft(fs, FakePrompter(picks=[0], confirms=[True, True]), io.StringIO(), stderr)

    perms = [arg_after(c.args, "--api-permissions") for c in calls_of(fs, "ad", "app", "permission")]
    assert any(p.startswith("guid-recording-all=") for p in perms)
    assert "admin-consent" in stderr.getvalue()


def test_user_declines_account_confirmation():
    fs = FakeShell()
    fs.respond("az account", stdout='{"name":"Sub","tenantId":"t","user":{"name":"user@example.com"}}')
    out = io.StringIO()
    with pytest.raises(NotLoggedIn):
        run_microsoft(fs, FakePrompter(picks=[0], confirms=[False]), out, io.StringIO())
    assert "user@example.com" in out.getvalue()
    assert calls_of(fs, "ad") == []


def test_account_picker_sign_in_new():
    fs = FakeShell()
    fs.respond("az account show", stdout='{"name":"Sub","tenantId":"t","user":{"name":"user@example.com"}}')
    fs.respond("az account list", stdout="[]")
    stub_graph_sp(fs)
    fs.respond("az ad app list", stdout="[]")
    fs.respond("az ad app", stdout='{"appId":"aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"}')
    fs.respond("az ad app permission", stdout="")
    prompter = FakePrompter(picks=[1], inputs=["reqsume.onmicrosoft.com"], confirms=[True, False])
    run_microsoft(fs, prompter, io.StringIO(), io.StringIO())

    logins = [c for c in fs.calls if c.interactive and c.name == "az" and c.args[:1] == ("login",)]
    assert len(logins) == 1
    for expected in ("--tenant", "reqsume.onmicrosoft.com", "--allow-no-subscriptions"):
        assert expected in logins[0].args
    assert len(calls_of(fs, "account", "show")) >= 2


def test_sign_in_new_failure_is_not_logged_in():
    fs = FakeShell()
    fs.respond("az account show", stdout='{"user":{"name":"user@example.com"}}')
    fs.interactive_failures["az login"] = True
    prompter = FakePrompter(picks=[1], inputs=["common"])
    with pytest.raises(NotLoggedIn):
        run_microsoft(fs, prompter, io.StringIO(), io.StringIO())


def test_app_reg_picker_existing_selected():
    fs = FakeShell()
    fs.respond("az account show", stdout='{"user":{"name":"u"}}')
    fs.respond("az account list", stdout="[]")
    stub_graph_sp(fs)
    fs.respond(
        "az ad app list",
        stdout="""[
          {"displayName":"apl-first","appId":"11111111-1111-1111-1111-111111111111"},
          {"displayName":"apl-second","appId":"22222222-2222-2222-2222-222222222222"}
        ]""",
    )
    fs.respond("az ad app permission", stdout="")
    settings = run_microsoft(
        fs, FakePrompter(picks=[0, 1], confirms=[True, False]), io.StringIO(), io.StringIO()
    )
    assert settings.client_id == "22222222-2222-2222-2222-222222222222"
    assert calls_of(fs, "ad", "app", "create") == []


def test_switching_to_other_user_sets_subscription():
    fs = FakeShell()
    fs.respond("az account show", stdout='{"user":{"name":"a@example.com"}}')
    fs.respond(
        "az account list",
        stdout='[{"id":"sub-b","tenantId":"tb","state":"Enabled","user":{"name":"b@example.com"}},'
        '{"id":"sub-c","tenantId":"tc","state":"Disabled","user":{"name":"c@example.com"}}]',
    )
    fs.respond("az account set", stdout="")
    prompter = FakePrompter(picks=[1], confirms=[False])
    with pytest.raises(NotLoggedIn):
        run_microsoft(fs, prompter, io.StringIO(), io.StringIO())
    sets = calls_of(fs, "account", "set")
    assert len(sets) == 1
    assert arg_after(sets[0].args, "--subscription") == "sub-b"


def test_missing_delegated_scope_fails():
    fs = base_shell()
    stub_graph_sp(fs, '[{"name":"User.Read","id":"guid-user-read"}]')
    fs.respond("az ad app list", stdout='[{"displayName":"apl-x","appId":"app-x"}]')
    with pytest.raises(ProviderFailure) as info:
        run_microsoft(fs, FakePrompter(picks=[0, 0], confirms=[True, False]), io.StringIO(), io.StringIO())
    assert "offline_access" in str(info.value)


def test_create_without_app_id_fails():
    fs = base_shell()
    fs.respond("az ad app list", stdout="[]")
    fs.respond("az ad app", stdout="{}")
    with pytest.raises(ProviderFailure):
        run_microsoft(fs, FakePrompter(picks=[0], confirms=[True, False]), io.StringIO(), io.StringIO())


def test_fetch_graph_permissions_maps_names():
    fs = FakeShell()
    stub_graph_sp(fs)
    delegated, app_roles = fetch_graph_permissions(fs)
    assert delegated["Mail.Send"] == "guid-mail-send"
    assert app_roles["openid"] == "guid-openid"
    assert len(delegated) == 11


def test_fetch_graph_permissions_failure():
    fs = FakeShell()
    fs.respond("az ad sp", stderr="denied", fail=True)
    with pytest.raises(ProviderFailure):
        fetch_graph_permissions(fs)


def test_fetch_graph_permissions_bad_json():
    fs = FakeShell()
    fs.respond("az ad sp", stdout="not json")
    with pytest.raises(ProviderFailure):
        fetch_graph_permissions(fs)


def test_lookup_optional_scope_prefers_delegated():
    assert lookup_optional_scope("s", {"s": "d-guid"}, {"s": "r-guid"}) == ("d-guid", "Scope")
    assert lookup_optional_scope("s", {}, {"s": "r-guid"}) == ("r-guid", "Role")
    assert lookup_optional_scope("s", {}, {}) is None


def test_generate_app_display_name_shape():
    first = generate_app_display_name()
    second = generate_app_display_name()
    pattern = re.compile(r"^apl-[A-Za-z0-9_-]+-[A-Za-z0-9_-]+-[0-9a-f]{8}$")
    assert pattern.match(first)
    assert pattern.match(second)
    assert first != second