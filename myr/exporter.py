"""Export pipeline: select local records, sign what is not signed yet, write one batch file."""

from __future__ import annotations

import json
import logging
import pathlib
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

from myr.core import utc_now
from myr.identity import NodeIdentity
from myr.keys import NodeKeypair
from myr.models import Record
from myr.observability import timed_operation
from myr.signing import sign_record
from myr.store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_MIN_RATING = 3


@dataclass
class ExportResult:
    path: Optional[pathlib.Path]
    record_ids: List[str] = field(default_factory=list)
    newly_signed: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.record_ids)


def select_for_export(
    store: RecordStore,
    ids: Optional[Sequence[str]] = None,
    min_rating: int = DEFAULT_MIN_RATING,
    since: Optional[date] = None,
) -> List[Record]:
    """Explicit ids win; otherwise rated local records, optionally since a day."""
    if ids:
        return store.select_local(ids)
    return store.select_rated(min_rating=min_rating, since=since)


def export_filename(node_id: str, now: datetime) -> str:
    return f"{now:%Y%m%d-%H%M%S}-{node_id}.myr.json"


@timed_operation(logger, "export")
def export_records(
    store: RecordStore,
    records: Sequence[Record],
    keypair: NodeKeypair,
    identity: NodeIdentity,
    out_dir: pathlib.Path,
    now: Optional[datetime] = None,
) -> ExportResult:
    """Write ``records`` as one JSON array of envelopes.

    A cached envelope is shipped verbatim; records without one are signed
    (and cached) first. Nothing is written for an empty selection.
    """
    result = ExportResult(path=None)
    envelopes: List[Dict[str, Any]] = []
    for record in records:
        if record.is_imported:
            continue
        envelope = record.cached_envelope
        if envelope is None:
            envelope = sign_record(store, record, keypair, identity)
            result.newly_signed.append(record.id)
        envelopes.append(envelope)
        result.record_ids.append(record.id)

    if not envelopes:
        logger.info("Nothing to export")
        return result

    out_dir = pathlib.Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / export_filename(identity.node_id, now or utc_now())
    path.write_text(json.dumps(envelopes, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    result.path = path

    logger.info(
        "Exported records",
        extra={"context": {"path": str(path), "count": result.count, "newly_signed": len(result.newly_signed)}},
    )
    return result
