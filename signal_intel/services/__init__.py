"""Embedding and clustering services."""
