"""Utility helpers for the enrichment pipeline."""
