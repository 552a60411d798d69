"""Shared utilities: executable lookup, credentials, config and process tracking."""
