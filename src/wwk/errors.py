"""Exceptions raised by wwk."""

from __future__ import annotations


class WwkError(Exception):
    """Base exception for wwk errors."""

    pass


class StorageError(WwkError):
    """Raised when the event store cannot read or append."""

    pass


class CodecError(WwkError):
    """Raised when a stored value does not map to a known enum member."""

    def __init__(self, enum_name: str, raw: object) -> None:
        super().__init__(f"Unknown {enum_name} value: {raw!r}")
        self.enum_name = enum_name
        self.raw = raw


class EditError(WwkError):
    """Base exception for rejected user edits."""

    pass


class InvalidTimeRangeError(EditError):
    """Raised when an edit range is malformed."""

    pass


class InvalidTagNameError(EditError):
    """Raised when a tag name fails validation."""

    pass


class TagNotFoundError(EditError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tag not found: {name}")
        self.name = name


class TagAlreadyExistsError(EditError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tag already exists: {name}")
        self.name = name


class UndoTargetNotFoundError(EditError):
    """Raised when an undo targets an edit id that does not exist."""

    def __init__(self, uee_id: int) -> None:
        super().__init__(f"undo target not found: edit {uee_id}")
        self.uee_id = uee_id


class UndoTargetAlreadyUndoneError(EditError):
    """Raised when an undo targets an edit that is already undone."""

    def __init__(self, uee_id: int) -> None:
        super().__init__(f"undo target already undone: edit {uee_id}")
        self.uee_id = uee_id


class AgentError(WwkError):
    """Base exception for agent lifecycle errors."""

    pass


class AgentNotStartedError(AgentError):
    def __init__(self) -> None:
        super().__init__("Agent has not been started")
