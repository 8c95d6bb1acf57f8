from __future__ import annotations


class DaystoreError(RuntimeError):
    """Base class for errors raised by daystore."""


class ConfigError(DaystoreError, ValueError):
    pass


class MigrationError(DaystoreError):
    def __init__(self, version: int, description: str, cause: BaseException | None = None):
        self.version = version
        self.description = description
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"migration {version} ({description}) failed{detail}")


class UnknownEntryType(DaystoreError, KeyError):
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"unknown entry type: {kind}")

    def __str__(self) -> str:
        return f"unknown entry type: {self.kind}"


class RemoteError(DaystoreError):
    pass


class RemoteUnavailable(RemoteError):
    """The replica could not be reached, or did not answer in time."""


class RemoteStatementError(RemoteError):
    """The replica answered but rejected the statement."""

    def __init__(self, message: str, *, code: str | None = None):
        self.code = code
        super().__init__(message)

    @property
    def is_constraint_violation(self) -> bool:
        text = str(self)
        if "UNIQUE constraint failed" in text:
            return True
        return bool(self.code and "CONSTRAINT" in self.code.upper())
