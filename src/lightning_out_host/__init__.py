"""Salesforce Lightning Out host with OAuth 2.0 + PKCE login."""

__version__ = "0.1.0"
