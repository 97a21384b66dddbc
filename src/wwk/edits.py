"""Validation and append path for user edits and the tag registry."""

from __future__ import annotations

import logging
import unicodedata
from collections.abc import Iterable

from wwk.config import Settings
from wwk.db import EventStore
from wwk.errors import (
    InvalidTagNameError,
    InvalidTimeRangeError,
    TagAlreadyExistsError,
    TagNotFoundError,
    UndoTargetAlreadyUndoneError,
    UndoTargetNotFoundError,
)
from wwk.models import EditOp
from wwk.sensors import Clock, SystemClock
from wwk.timeline import resolve_undone_ids

logger = logging.getLogger(__name__)

MAX_TAG_NAME_LENGTH = 255


def validate_time_range(start_ts_us: int, end_ts_us: int) -> None:
    """Raise InvalidTimeRangeError unless ``0 < start < end``."""
    if start_ts_us <= 0 or end_ts_us <= 0:
        raise InvalidTimeRangeError(
            f"Timestamps must be positive (got {start_ts_us}, {end_ts_us})"
        )
    if end_ts_us <= start_ts_us:
        raise InvalidTimeRangeError("End time must be after start time")


def normalize_tag_name(name: str) -> str:
    """Strip and validate a tag name.

    Raises:
        InvalidTagNameError: If the name is empty, too long, or contains
            control characters.
    """
    stripped = name.strip()
    if not stripped:
        raise InvalidTagNameError("Tag name cannot be empty")
    if len(stripped) > MAX_TAG_NAME_LENGTH:
        raise InvalidTagNameError(f"Tag name exceeds {MAX_TAG_NAME_LENGTH} characters")
    if any(unicodedata.category(ch) == "Cc" for ch in stripped):
        raise InvalidTagNameError("Tag name cannot contain control characters")
    return stripped


class EditService:
    """Appends validated user edits to an ``EventStore``.

    Every check runs before anything is written, so a rejected edit leaves
    the log untouched.
    """

    def __init__(
        self,
        store: EventStore,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._clock = clock or SystemClock()

    def _append(self, op: EditOp, start_ts_us: int, end_ts_us: int, **fields: object) -> int:
        uee_id = self._store.append_user_edit_event(
            created_ts_us=self._clock.now_us(),
            created_monotonic_ns=self._clock.monotonic_ns(),
            author_username=self._settings.author_username,
            author_uid=self._settings.author_uid,
            client=self._settings.client,
            client_version=self._settings.client_version,
            op=op,
            start_ts_us=start_ts_us,
            end_ts_us=end_ts_us,
            **fields,
        )
        logger.info("Appended %s edit %d", op.value, uee_id)
        return uee_id

    def delete_range(self, start_ts_us: int, end_ts_us: int, note: str | None = None) -> int:
        validate_time_range(start_ts_us, end_ts_us)
        return self._append(EditOp.DELETE_RANGE, start_ts_us, end_ts_us, note=note)

    def add_range(
        self,
        start_ts_us: int,
        end_ts_us: int,
        *,
        app_bundle_id: str | None = None,
        app_name: str | None = None,
        window_title: str | None = None,
        tags: Iterable[str] = (),
        note: str | None = None,
    ) -> int:
        """Append an ``add_range`` plus one ``tag_range`` per tag.

        Unknown tags are created.

        Returns:
            The uee_id of the ``add_range`` edit.
        """
        validate_time_range(start_ts_us, end_ts_us)
        tag_names = sorted({normalize_tag_name(t) for t in tags})

        uee_id = self._append(
            EditOp.ADD_RANGE,
            start_ts_us,
            end_ts_us,
            manual_app_bundle_id=app_bundle_id,
            manual_app_name=app_name,
            manual_window_title=window_title,
            note=note,
        )
        for name in tag_names:
            tag = self._store.find_tag(name)
            tag_id = tag["tag_id"] if tag else self._store.create_tag(name, self._clock.now_us())
            self._append(EditOp.TAG_RANGE, start_ts_us, end_ts_us, tag_id=tag_id)
        return uee_id

    def tag_range(self, start_ts_us: int, end_ts_us: int, tag: str) -> int:
        validate_time_range(start_ts_us, end_ts_us)
        tag_id = self._require_tag(tag)
        return self._append(EditOp.TAG_RANGE, start_ts_us, end_ts_us, tag_id=tag_id)

    def untag_range(self, start_ts_us: int, end_ts_us: int, tag: str) -> int:
        validate_time_range(start_ts_us, end_ts_us)
        tag_id = self._require_tag(tag)
        return self._append(EditOp.UNTAG_RANGE, start_ts_us, end_ts_us, tag_id=tag_id)

    def undo(self, target_uee_id: int) -> int:
        """Append an ``undo_edit`` mirroring the target's range.

        Undoing an undo re-applies its target.

        Raises:
            UndoTargetNotFoundError: No edit with that id.
            UndoTargetAlreadyUndoneError: The target is currently undone.
        """
        target = self._store.get_user_edit_event(target_uee_id)
        if target is None:
            raise UndoTargetNotFoundError(target_uee_id)
        if self.is_undone(target_uee_id):
            raise UndoTargetAlreadyUndoneError(target_uee_id)
        return self._append(
            EditOp.UNDO_EDIT,
            target.start_ts_us,
            target.end_ts_us,
            target_uee_id=target_uee_id,
        )

    def undone_ids(self) -> set[int]:
        """Ids of edits that are currently undone, resolved as the builder does."""
        return resolve_undone_ids(self._store.get_user_edit_events())

    def is_undone(self, uee_id: int) -> bool:
        return uee_id in self.undone_ids()

    # Tag registry

    def create_tag(self, name: str) -> int:
        name = normalize_tag_name(name)
        if self._store.find_tag(name) is not None:
            raise TagAlreadyExistsError(name)
        return self._store.create_tag(name, self._clock.now_us())

    def retire_tag(self, name: str) -> bool:
        """Retire a tag. Returns False if it was already retired."""
        name = normalize_tag_name(name)
        if self._store.find_tag(name) is None:
            raise TagNotFoundError(name)
        return self._store.retire_tag(name, self._clock.now_us())

    def _require_tag(self, name: str) -> int:
        name = normalize_tag_name(name)
        tag = self._store.find_tag(name)
        if tag is None:
            raise TagNotFoundError(name)
        return tag["tag_id"]
