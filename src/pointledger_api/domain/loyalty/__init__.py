"""Pure loyalty rules and the ledger error taxonomy."""

from . import constants, errors  # noqa: F401

__all__ = ["constants", "errors"]
