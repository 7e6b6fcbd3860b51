"""Handles, token records, login/logout/accounts/call operations and gcloud/az setup flows for an OAuth token broker."""

__version__ = "0.1.0"