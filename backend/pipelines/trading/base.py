from __future__ import annotations


class OracleExecutionError(Exception):
    """Raised when an oracle call fails and the remaining batches must be abandoned."""


class OracleUnavailable(Exception):
    """Raised when the configured oracle provider cannot be used (missing credentials)."""


__all__ = ["OracleExecutionError", "OracleUnavailable"]
