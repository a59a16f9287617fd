"""Recurring job entrypoints for loyalty maintenance."""

__all__ = ["loyalty"]
