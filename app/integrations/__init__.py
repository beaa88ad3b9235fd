"""Adapters for the catalog server and the AI providers."""
