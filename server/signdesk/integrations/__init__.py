"""Clients for external signing providers."""
