"""Clients for the row store and the session service."""
