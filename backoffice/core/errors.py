from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for errors raised by the query/mutation engine."""

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = context


class NotFound(EngineError):
    def __init__(self, resource: str, key: str, value: Any) -> None:
        super().__init__(f'{resource} with {key}="{value}" not found', resource=resource, key=key, value=value)


class Conflict(EngineError):
    """Optimistic-lock mismatch: the record changed after the caller read it."""

    def __init__(self, resource: str, record_id: Any, expected: Any, current: Any) -> None:
        super().__init__(
            "The record was modified by another user. Reload it and try again.",
            resource=resource,
            record_id=record_id,
            expected=expected,
            current=current,
        )


class DomainRuleViolation(EngineError):
    pass


class InvalidFilterValue(EngineError, ValueError):
    def __init__(self, column_key: str, kind: str) -> None:
        super().__init__(f'Invalid filter value for field "{column_key}" ({kind})', column=column_key, kind=kind)


class UnsupportedExportFormat(EngineError, LookupError):
    def __init__(self, fmt: str) -> None:
        super().__init__(f'Export format "{fmt}" is not supported', format=fmt)
