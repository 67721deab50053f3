"""Conversation and generation history."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from studiosync.models import HistoryKind, HistoryRecord, Message
from studiosync.repository.base import EntityRepository

logger = logging.getLogger(__name__)

TITLE_LENGTH = 30
DUPLICATE_WINDOW = 5 * 60  # seconds


def make_title(content: str) -> str:
    return content[:TITLE_LENGTH] + "..."


def _same_turns(a: Sequence[Message], b: Sequence[Message]) -> bool:
    return len(a) == len(b) and all(
        x.content == y.content and x.is_user == y.is_user for x, y in zip(a, b)
    )


class HistoryRepository(EntityRepository[HistoryRecord]):
    collection = "histories"
    entity_cls = HistoryRecord

    def save_conversation(
        self,
        owner_id: str | None,
        messages: Sequence[Message],
        model_label: str,
        kind: HistoryKind | str = HistoryKind.CHAT,
    ) -> HistoryRecord | None:
        """Save a finished session.

        Blank messages are dropped; nothing is saved if none remain. Saving the
        same turns under the same kind and model again within five minutes
        returns the earlier record instead of creating a duplicate.
        """
        kind = HistoryKind(kind)
        valid = [m for m in messages if isinstance(m.content, str) and m.content.strip()]
        if not valid:
            logger.debug("No non-empty messages, history not saved")
            return None

        now = self._clock()
        for existing in self.list(owner_id):
            if (
                existing.kind == kind
                and existing.model_label == model_label
                and _same_turns(existing.messages, valid)
                and now - existing.updated_at < DUPLICATE_WINDOW
            ):
                logger.info("Identical history %s saved moments ago, reusing it", existing.id)
                return existing

        return self.create(
            owner_id,
            {
                "title": make_title(valid[0].content),
                "model_label": model_label,
                "kind": kind,
                "messages": valid,
            },
        )

    def append_messages(
        self,
        owner_id: str | None,
        history_id: str,
        messages: Sequence[Message],
        model_label: str | None = None,
    ) -> HistoryRecord | None:
        """Replace a session's turns, keeping its title and kind."""
        current = self.get(owner_id, history_id)
        if current is None:
            logger.debug("append_messages: history %s not found", history_id)
            return None
        if [m.to_dict() for m in current.messages] == [m.to_dict() for m in messages]:
            return current
        return self.update(
            owner_id,
            history_id,
            {
                "messages": list(messages),
                "model_label": model_label or current.model_label,
            },
        )

    def rename(self, owner_id: str | None, history_id: str, title: str) -> HistoryRecord | None:
        return self.update(owner_id, history_id, {"title": title})

    def by_kind(self, owner_id: str | None, kind: HistoryKind | str) -> list[HistoryRecord]:
        kind = HistoryKind(kind)
        return [h for h in self.list(owner_id) if h.kind == kind]
