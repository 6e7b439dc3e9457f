"""Linked calendar accounts, providers and credentials."""
