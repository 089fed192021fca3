"""Embedding generation and the content-hash keyed embedding cache."""
