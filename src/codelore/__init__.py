"""Codelore: background enrichment of indexed code chunks."""
