"""Omnisearch: unified retrieval across internal content and external providers."""

__version__ = "0.1.0"
