from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class LabError(Exception):
    """Base error envelope. Prefer returning/printing these rather than raising raw exceptions."""

    code: str
    message: str
    file: Optional[str] = None
    path: Optional[str] = None

    def __str__(self) -> str:
        parts: list[str] = []
        if self.file:
            parts.append(self.file)
        if self.path:
            parts.append(self.path)
        loc = ":".join(parts) if parts else "<tree>"
        return f"{loc}: {self.code}: {self.message}"


class LabLoadError(LabError):
    pass


class LabValidationError(LabError):
    pass


class LabConfigError(LabError):
    pass


class GenerationError(LabError):
    """The oracle returned unusable output or the transport failed."""


class RateLimitError(GenerationError):
    """Quota / 429 failures that survived every retry attempt."""
