from __future__ import annotations

import logging

from mugfunnel.core.config import get_settings

_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class _ExtraFormatter(logging.Formatter):
    """Appends the ``extra={...}`` context to the event name."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = {key: value for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS}
        if not context:
            return base
        rendered = " ".join(f"{key}={value!r}" for key, value in sorted(context.items()))
        return f"{base} {rendered}"


def configure_logging() -> None:
    settings = get_settings()
    root = logging.getLogger()
    if any(getattr(handler, "_mugfunnel", False) for handler in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(_ExtraFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    handler._mugfunnel = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
