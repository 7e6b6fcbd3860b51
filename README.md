# aplogin

`aplogin` holds the pieces of an OAuth token broker for Google and
Microsoft accounts. Every account is addressed by a *handle* of the form
`provider:label`, for example `google:work` or `ms:personal`, so one person
can keep several accounts per provider side by side.

It provides:

- parsing and checking of handles;
- the `TokenRecord` type, the `Provider` and `Store` interfaces, and a
  `Registry` of providers;
- the login, logout, accounts and call operations, written as functions
  that write to the streams they are given and raise `CLIError` with an
  exit code on failure;
- guided setup flows that drive the `gcloud` and `az` command-line tools to
  create or reuse the OAuth clients a sign-in needs.

There are no third-party runtime dependencies.

## Handles

```python
from aplogin.handle import parse_handle, validate_provider, InvalidHandle, MissingLabel

handle = parse_handle("google:work")
handle.provider   # "google"
handle.label      # "work"
str(handle)       # "google:work"

parse_handle("google")        # raises MissingLabel
parse_handle("GOOGLE:work")   # raises InvalidHandle
```

A provider name is lower-case letters; a label may use letters, digits,
`.`, `_` and `-`. `validate_provider(handle, registry)` raises
`aplogin.model.UnknownProvider`, listing the known names, when the registry
has no such provider.

## Providers, stores and the registry

`aplogin.model` defines:

- `TokenRecord` — provider, label, handle, subject, tenant, access and
  refresh tokens, scopes and expiry; `handle_string()` falls back to
  `provider:label` when no handle is set.
- `Provider` — abstract `login`, `refresh` and `logout`, with
  `expand_scopes`, `default_scopes` and `for_label` that subclasses may
  override. `refresh` returns the access token and, if it changed, the
  updated record.
- `Store` — abstract `put`, `get`, `list` and `delete`; `get` and `delete`
  raise `RecordNotFound` for unknown handles.
- `Registry` — `register` (a name must be non-empty and unique, otherwise
  `ValueError`), `get`, `names` (sorted) and `resolve(name, label)`.
- The exceptions `NotConfigured`, `NoClientID`, `InvalidGrant` and
  `UnknownProvider`, and the `LoginOptions` dataclass.

```python
from aplogin.model import Registry

registry = Registry()
registry.register(my_google_provider)
registry.names()                  # ["google"]
registry.resolve("google", "work")
```

## Operations

Each operation raises `aplogin.errors.CLIError`, whose `code` is an
`ExitCode` and whose `message` is meant for the user:

| code | `ExitCode`  | meaning                    |
|------|-------------|----------------------------|
| 0    | `OK`        | success                    |
| 1    | `USER`      | user error                 |
| 2    | `AUTH`      | authentication error       |
| 3    | `NETWORK`   | network or storage error   |
| 4    | `THROTTLED` | throttled (HTTP 429)       |
| 5    | `SERVER`    | server error (HTTP 5xx)    |

```python
import sys
from aplogin.errors import CLIError
from aplogin.login import login
from aplogin.accounts import list_accounts
from aplogin.logout import logout

try:
    login(registry, store, "google:work", sys.stdout, sys.stderr)
except CLIError as err:
    print(err.message, file=sys.stderr)
    sys.exit(err.code)

list_accounts(store, sys.stdout, as_json=True)
logout(registry, store, "google:work", sys.stdout, sys.stderr)
```

- `login(registry, store, handle_text, stdout, stderr, tenant="", scopes=(), force=False)`
  prints only the access token to standard output. A stored record is
  refreshed and reused unless `force` is set or scopes are given; otherwise
  the provider's sign-in runs and the new record is stored. `tenant` is
  accepted only for the `ms` provider.
- `logout(...)` asks the provider to revoke the tokens (a failure there is
  only a warning), deletes the stored record and prints `Removed <handle>`.
- `list_accounts(store, stdout, as_json=False)` prints a table sorted by
  provider and label, with a `TENANT` column only when some account has
  one, or a JSON array with `provider`, `label`, `handle`, `email`,
  `tenant`, `stored`, `scopes` and `expires_at`.

### Authenticated requests

```python
from aplogin.call import call, CallOptions

call(registry, store, "google:work", "GET",
     "https://www.googleapis.com/oauth2/v3/userinfo",
     sys.stdout, sys.stderr, CallOptions(timeout=30))
```

`call` sends `GET`, `POST`, `PUT`, `PATCH` or `DELETE` to an absolute
`http` or `https` URL with a bearer token from the stored handle. The token
is refreshed before the first request; on a 401 it is refreshed once more
and the request retried. `CallOptions` holds an inline `body` or a
`body_file` (`-` for standard input), extra `headers` as `"Key: Value"`
strings, an `output` file, a `content_type`, `status_only`, required
`scopes` and an overall `timeout` in seconds. A body without an explicit
content type is sent as `application/json`, and the `Authorization` header
cannot be overridden. Required scopes are checked before any network
traffic (`missing_scopes(granted, required)`). The status line is written
to standard error when it is a terminal or `status_only` is set, and
`status_to_error(status)` maps the HTTP status to the error raised.

## Setup flows

`aplogin.shell` supplies the seams the flows use: `Shell`
(`SubprocessShell` runs real commands and raises `CommandFailed`),
`Prompter` (`StdPrompter` reads and writes text streams) and `Validator`
(`NoopValidator` accepts every client id).

- `aplogin.setup_google.run_google(shell, prompter, validator, stdout, stderr)`
  picks or signs in a gcloud account, picks or creates a project, enables
  the Gmail, Calendar, People and Drive APIs, walks through the consent
  screen and client creation in the browser, and reads the downloaded
  client-secret JSON (`google_client_id_loop`, up to three attempts).
- `aplogin.setup_microsoft.run_microsoft(shell, prompter, stdout, stderr)`
  picks or signs in an az identity, reuses or creates an `apl-*` app
  registration, and grants the delegated Microsoft Graph scopes, looking
  their GUIDs up at run time; the meeting-recording scope is added only on
  request.

Both return a `ProviderSettings` and raise `MissingCLI`, `NotLoggedIn` or
`ProviderFailure` (all `SetupFailure`) from `aplogin.setup_common`. That
module also has `Config`, an in-memory map of settings per provider
(`"google"` or `"ms"`) and label, and `sanitize_label`.

## What is not included

- No command-line program: there is no `apl` command, only the functions
  above for an application to call.
- No concrete providers or token store: the browser OAuth flow, token
  refresh, revocation and keychain storage are for the caller to supply
  through `Provider` and `Store`. The accounts listing always reports the
  storage as `keychain`.
- No configuration file: `Config` is never read from or written to disk,
  and nothing combines the setup flows into one run that saves their
  results.
- No table of scope aliases per provider.