"""Boundary to best-effort drafting collaborators.

Drafting (e.g. proposing a record from a session transcript) must never
block or fail the command that triggered it. A collaborator supplies a
``propose`` callable returning a ``RecordDraft`` (or None); what it proposes
is stored as an unrated auto-draft for the operator to review.
"""

from __future__ import annotations

import logging
import pathlib
import threading
from typing import Any, Callable, Optional, Union

from myr.models import RecordDraft
from myr.store import RecordStore

logger = logging.getLogger(__name__)


def spawn_detached(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> threading.Thread:
    """Run ``fn`` on a daemon thread. Its result is discarded, its errors logged at debug."""

    def _run() -> None:
        try:
            fn(*args, **kwargs)
        except Exception as ex:
            logger.debug(
                "Detached task failed",
                extra={"context": {"task": getattr(fn, "__name__", repr(fn)), "error": str(ex)}},
            )

    thread = threading.Thread(target=_run, name=f"myr-draft-{getattr(fn, '__name__', 'task')}", daemon=True)
    thread.start()
    return thread


def store_auto_draft(
    db_path: Union[str, pathlib.Path],
    node_id: str,
    propose: Callable[..., Optional[RecordDraft]],
    *args: Any,
    **kwargs: Any,
) -> Optional[str]:
    """Ask ``propose`` for a draft and store it; returns the new record id."""
    draft = propose(*args, **kwargs)
    if draft is None:
        return None
    draft.auto_draft = True
    # sqlite connections stay on the thread that opened them
    with RecordStore.open(db_path, node_id) as store:
        record = store.create_record(draft)
    logger.info("Stored auto-draft", extra={"context": {"id": record.id}})
    return record.id


def spawn_auto_draft(
    db_path: Union[str, pathlib.Path],
    node_id: str,
    propose: Callable[..., Optional[RecordDraft]],
    *args: Any,
    **kwargs: Any,
) -> threading.Thread:
    """Fire-and-forget ``store_auto_draft``."""
    return spawn_detached(store_auto_draft, db_path, node_id, propose, *args, **kwargs)
