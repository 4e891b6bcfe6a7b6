"""Bulk catalog import and search index synchronization service."""
