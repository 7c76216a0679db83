from __future__ import annotations


class MirrorError(RuntimeError):
    code = "MIRROR_ERROR"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code
        self.message = message


class ConfigError(MirrorError):
    code = "CONFIG_INVALID"


class InventoryError(MirrorError):
    code = "INVENTORY_INVALID"


class FetchError(MirrorError):
    """Raised once every attempt against ``uri`` has failed."""

    code = "FETCH_EXHAUSTED"

    def __init__(self, uri: str, attempts: int, last_error: str | None = None):
        detail = f" ({last_error})" if last_error else ""
        super().__init__(f"fetch failed uri={uri} attempts={attempts}{detail}")
        self.uri = uri
        self.attempts = attempts
        self.last_error = last_error


class ManifestParseError(MirrorError):
    code = "MANIFEST_INVALID"


class PersistError(MirrorError):
    code = "PERSIST_FAILED"
