import io
from dataclasses import replace

import pytest

from aplogin.errors import CLIError, ExitCode
from aplogin.login import login
from aplogin.model import (
    InvalidGrant,
    NoClientID,
    NotConfigured,
    Provider,
    RecordNotFound,
    Registry,
    Store,
    TokenRecord,
)


class FakeProvider(Provider):
    def __init__(self, name="google", refresh_fn=None, login_error=None,
                 configured=True, expand_error=None):
        self.name = name
        self.refresh_fn = refresh_fn
        self.login_error = login_error
        self.configured = configured
        self.expand_error = expand_error
        self.login_calls = []

    def login(self, label, options):
        self.login_calls.append((label, options))
        if self.login_error:
            raise self.login_error
        return TokenRecord(provider=self.name, label=label, subject="user@example.com",
                           access_token="token", scopes=list(options.scopes))

    def refresh(self, record):
        if self.refresh_fn:
            return self.refresh_fn(record)
        return record.access_token, record

    def logout(self, record):
        return None

    def expand_scopes(self, aliases):
        if self.expand_error:
            raise self.expand_error
        return [f"full:{a}" for a in aliases]

    def for_label(self, label):
        if not self.configured:
            raise NotConfigured(label)
        return self


class FakeStore(Store):
    def __init__(self, get_error=None):
        self.records = {}
        self.put_calls = 0
        self.get_error = get_error

    def put(self, record):
        self.put_calls += 1
        self.records[record.handle_string()] = record

    def get(self, handle):
        if self.get_error:
            raise self.get_error
        try:
            return self.records[handle]
        except KeyError:
            raise RecordNotFound(handle) from None

    def list(self):
        return list(self.records.values())

    def delete(self, handle):
        del self.records[handle]


def registry_with(*providers):
    reg = Registry()
    for p in providers:
        reg.register(p)
    return reg


def seeded(store):
    rec = TokenRecord(provider="google", label="work", handle="google:work",
                      access_token="placeholder")
    store.records["google:work"] = rec
    return rec


def run(reg, st, text="google:work", **kwargs):
    out, err = io.StringIO(), io.StringIO()
    login(reg, st, text, out, err, **kwargs)
    return out.getvalue(), err.getvalue()


def test_cached_token_printed_without_browser():
    fp = FakeProvider()
    st = FakeStore()
    seeded(st)
    out, _ = run(registry_with(fp), st)
    assert out == "placeholder\n"
    assert fp.login_calls == []
    assert st.put_calls == 0


def test_refreshed_record_is_persisted():
    fp = FakeProvider(refresh_fn=lambda rec: ("token", replace(rec, access_token="token")))
    st = FakeStore()
    seeded(st)
    out, _ = run(registry_with(fp), st)
    assert out == "token\n"
    assert st.put_calls == 1
    assert st.records["google:work"].access_token == "token"


def test_invalid_grant_is_auth_error():
    def fail(rec):
        raise InvalidGrant("expired")

    st = FakeStore()
    seeded(st)
    with pytest.raises(CLIError) as info:
        run(registry_with(FakeProvider(refresh_fn=fail)), st)
    assert info.value.code == ExitCode.AUTH
    assert "apl login google:work --force" in str(info.value)


def test_other_refresh_failure_is_network_error():
    def fail(rec):
        raise ConnectionError("unreachable")

    st = FakeStore()
    seeded(st)
    with pytest.raises(CLIError) as info:
        run(registry_with(FakeProvider(refresh_fn=fail)), st)
    assert info.value.code == ExitCode.NETWORK


def test_no_record_runs_browser_flow_and_stores():
    fp = FakeProvider()
    st = FakeStore()
    out, err = run(registry_with(fp), st)
    assert len(fp.login_calls) == 1
    assert out == st.records["google:work"].access_token + "\n"
    assert "Signed in as user@example.com (handle: google:work)" in err


def test_force_skips_cache():
    fp = FakeProvider()
    st = FakeStore()
    seeded(st)
    run(registry_with(fp), st, force=True)
    assert fp.login_calls[0][1].force is True


def test_scopes_are_expanded_and_force_login():
    fp = FakeProvider()
    st = FakeStore()
    seeded(st)
    run(registry_with(fp), st, scopes=["mail"])
    assert fp.login_calls[0][1].scopes == ["full:mail"]


def test_bad_scope_is_user_error():
    with pytest.raises(CLIError) as info:
        run(registry_with(FakeProvider(expand_error=ValueError("unknown scope"))), FakeStore(), scopes=["x"])
    assert info.value.code == ExitCode.USER


def test_tenant_only_for_ms():
    with pytest.raises(CLIError) as info:
        run(registry_with(FakeProvider()), FakeStore(), tenant="contoso")
    assert info.value.code == ExitCode.USER
    assert "--tenant is only valid for the ms provider" in str(info.value)


def test_tenant_passed_for_ms():
    fp = FakeProvider(name="ms")
    run(registry_with(fp), FakeStore(), text="ms:volentis", tenant="volentis.onmicrosoft.com")
    assert fp.login_calls[0][1].tenant == "volentis.onmicrosoft.com"


def test_not_configured_suggests_setup():
    with pytest.raises(CLIError) as info:
        run(registry_with(FakeProvider(configured=False)), FakeStore())
    assert info.value.code == ExitCode.USER
    assert "apl setup google --label work" in str(info.value)


def test_no_client_id_is_user_error():
    with pytest.raises(CLIError) as info:
        run(registry_with(FakeProvider(login_error=NoClientID())), FakeStore())
    assert info.value.code == ExitCode.USER
    assert "Run: apl setup google" in str(info.value)


def test_login_failure_is_network_error():
    with pytest.raises(CLIError) as info:
        run(registry_with(FakeProvider(login_error=RuntimeError("denied"))), FakeStore())
    assert info.value.code == ExitCode.NETWORK
    assert "login failed: denied" in str(info.value)


def test_store_get_failure_is_network_error():
    with pytest.raises(CLIError) as info:
        run(registry_with(FakeProvider()), FakeStore(get_error=OSError("locked")))
    assert info.value.code == ExitCode.NETWORK


@pytest.mark.parametrize("text", ["google", "slack:work", ""])
def test_bad_handle_is_user_error(text):
    with pytest.raises(CLIError) as info:
        run(registry_with(FakeProvider()), FakeStore(), text=text)
    assert info.value.code == ExitCode.USER