"""Shared types and structured logging."""
