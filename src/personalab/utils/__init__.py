"""Shared utility helpers (logging, file IO)."""
