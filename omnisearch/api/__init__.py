"""Omnisearch HTTP API."""
