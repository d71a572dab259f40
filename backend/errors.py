"""
Figment error taxonomy.

Every failure inside a selection or export pass maps onto one of these types.
They are caught at the pass boundary and turned into a UI notification; none
of them is fatal to the process.
"""

from typing import Any, Dict, Optional


class FigmentError(Exception):
    """Base class for all Figment failures.

    Carries a stable machine-readable ``code`` alongside the human message so
    the UI layer and consumer tools can branch without parsing text.
    """

    code: str = "figment_error"

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        self.message = message or self.code
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NoSelection(FigmentError):
    code = "no_selection"


class UnresolvableSelection(FigmentError):
    code = "unresolvable_selection"


class ExtractionFailure(FigmentError):
    code = "extraction_failure"


class StorageError(FigmentError):
    code = "storage_error"


class StorageQuotaExceeded(StorageError):
    code = "storage_quota_exceeded"

    def __init__(self, key: str, required: int, available: int):
        self.key = key
        self.required = required
        self.available = available
        super().__init__(
            f"Storage quota exceeded writing '{key}': needs {required} bytes, {available} available",
            details={"key": key, "required": required, "available": available},
        )


class StorageCorruption(StorageError):
    code = "storage_corruption"
