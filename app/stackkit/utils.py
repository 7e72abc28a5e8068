from __future__ import annotations


class ValidationError(ValueError):
    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


def parse_flag(raw: str | None) -> bool:
    """Query-string boolean: "1", "true", "yes", "on" (any case) are true."""
    return (raw or "").strip().lower() in ("1", "true", "yes", "on")


def like_pattern(search: str) -> str:
    """Substring pattern for `ilike` with a backslash escape; `%` and `_` match literally."""
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
