"""Relay exceptions.

These exception types let the session runtime and the channel layer format
failures consistently without scraping strings.
"""

from __future__ import annotations


CLI_NOT_FOUND_HINT = (
    "Claude CLI not found. Please install it first: "
    "npm install -g @anthropic-ai/claude-code"
)


def looks_like_not_found(text: str) -> bool:
    """True when diagnostic output points at a missing executable."""
    return "not found" in (text or "").lower()


class RelayError(RuntimeError):
    """Base class for relay errors."""


class LaunchFailure(RelayError):
    """The external unit could not be started."""

    def __init__(self, message: str, *, not_found: bool = False):
        self.message = message
        self.not_found = not_found
        super().__init__(message)

    @property
    def user_message(self) -> str:
        if self.not_found:
            return CLI_NOT_FOUND_HINT
        return self.message


class RuntimeFailure(RelayError):
    """The unit reported or raised an error mid-run."""


class DecodeFailure(RelayError):
    """A single output line could not be decoded."""

    def __init__(self, message: str, *, line_preview: str | None = None):
        self.message = message
        self.line_preview = line_preview
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.line_preview:
            return f"{self.message} (line={self.line_preview!r})"
        return self.message


class AttachmentFailure(RelayError):
    """A single attachment could not be materialised."""

    def __init__(self, index: int, reason: str):
        self.index = index
        self.reason = reason
        super().__init__(self.__str__())

    def __str__(self) -> str:
        return f"Attachment #{self.index} skipped: {self.reason}"


class AttachmentIOError(RelayError):
    """The sandbox directory could not be created."""


class TeardownFailure(RelayError):
    """Sandbox deletion or registry cleanup failed."""
