"""The accounts listing."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional, Sequence, TextIO

from .errors import network_error
from .model import Store


def _format_table(rows: Sequence[Sequence[str]]) -> str:
    """Align columns with two spaces of padding; the last column is not padded."""
    if not rows:
        return ""
    widths = [max(map(len, column)) for column in list(zip(*rows))[:-1]]
    lines = (
        "".join(cell.ljust(width + 2) for cell, width in zip(row, widths)) + row[-1]
        for row in rows
    )
    return "".join(line + "\n" for line in lines)


def _format_time(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    text = moment.isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def list_accounts(store: Store, stdout: TextIO, as_json: bool = False) -> None:
    """Write the stored accounts as a table or as a JSON array."""
    try:
        records = store.list()
    except Exception as exc:  # any storage backend failure
        raise network_error(f"store list: {exc}") from exc
    records = sorted(records, key=lambda r: (r.provider, r.label))

    if as_json:
        entries = [
            {
                "provider": r.provider,
                "label": r.label,
                "handle": r.handle_string(),
                "email": r.subject,
                "tenant": r.tenant or None,
                "stored": "keychain",
                "scopes": list(r.scopes),
                "expires_at": _format_time(r.expires_at),
            }
            for r in records
        ]
        stdout.write(json.dumps(entries, indent=2) + "\n")
        return

    if not records:
        stdout.write("No accounts. Run: apl login <provider>:<label>\n")
        return

    show_tenant = any(r.tenant for r in records)
    if show_tenant:
        rows = [["PROVIDER", "LABEL", "EMAIL", "TENANT", "STORED"]]
        rows += [
            [r.provider, r.label, r.subject, r.tenant or "-", "keychain"]
            for r in records
        ]
    else:
        rows = [["PROVIDER", "LABEL", "EMAIL", "STORED"]]
        rows += [[r.provider, r.label, r.subject, "keychain"] for r in records]
    stdout.write(_format_table(rows))