"""Build the ordered conversation sent upstream for a chat turn."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from ..repository import MessageRecord
from ..services.files import FileStore, is_image

logger = logging.getLogger(__name__)

ContentPart = dict[str, Any]
Turn = dict[str, Any]

_HISTORY_ROLES = frozenset({"user", "assistant"})


def history_to_turns(
    recent: Sequence[MessageRecord],
    *,
    current_message_id: str | None = None,
    current_text: str | None = None,
) -> list[Turn]:
    """Convert most-recent-first rows into chronological turns.

    The newest row is dropped when it is the user turn about to be added, either
    matched by ID or, failing that, by identical user content.
    """

    rows = list(recent)
    if rows:
        newest = rows[0]
        if current_message_id is not None and newest.get("id") == current_message_id:
            rows = rows[1:]
        elif (
            current_message_id is None
            and current_text is not None
            and newest.get("role") == "user"
            and newest.get("content") == current_text
        ):
            rows = rows[1:]

    turns: list[Turn] = []
    for row in reversed(rows):
        role = row.get("role")
        if role not in _HISTORY_ROLES:
            continue
        turns.append({"role": role, "content": row.get("content") or ""})
    return turns


async def _document_prefix(
    documents: Sequence[Mapping[str, Any]], file_store: FileStore
) -> str:
    prefix = ""
    for document in documents:
        name = document["file_name"]
        try:
            content = await file_store.get_text_content(document["storage_key"])
        except Exception:
            logger.warning(
                "Could not read attachment %s (%s)",
                name,
                document["storage_key"],
                exc_info=True,
            )
            prefix += f"[Attached: {name} — could not read]\n\n"
            continue
        prefix += f"[Attached: {name}]\n{content}\n\n"
    return prefix


async def build_current_turn(
    text: str,
    attachments: Sequence[Mapping[str, Any]],
    file_store: FileStore,
) -> str | list[ContentPart]:
    """Return the user turn content with attachments inlined."""

    if not attachments:
        return text

    images = [item for item in attachments if is_image(item["file_type"])]
    documents = [item for item in attachments if not is_image(item["file_type"])]

    prefix = await _document_prefix(documents, file_store)

    if not images:
        return prefix + text

    parts: list[ContentPart] = []
    for image in images:
        try:
            url = await file_store.get_signed_url(image["storage_key"])
        except Exception:
            logger.warning(
                "Could not sign URL for image %s", image["storage_key"], exc_info=True
            )
            prefix += f"[Attached: {image['file_name']} — could not load image]\n\n"
            continue
        parts.append({"type": "image_url", "image_url": {"url": url}})
    parts.append({"type": "text", "text": prefix + text})
    return parts


async def assemble(
    system_prompt: str,
    history: Sequence[Turn],
    current_text: str,
    attachments: Sequence[Mapping[str, Any]],
    file_store: FileStore,
) -> list[Turn]:
    """Return system, history (chronological), then the current user turn."""

    current_content = await build_current_turn(current_text, attachments, file_store)
    turns: list[Turn] = [{"role": "system", "content": system_prompt}]
    turns.extend(history)
    turns.append({"role": "user", "content": current_content})
    return turns


__all__ = [
    "ContentPart",
    "Turn",
    "assemble",
    "build_current_turn",
    "history_to_turns",
]
