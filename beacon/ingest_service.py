import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Tuple

from beacon.events import log_event, E
from beacon.log import get_logger
from beacon.models.event import RecordBase
from beacon.models.tracked_event import TrackedEvent

logger = get_logger(__name__)

MAX_BATCH_EVENTS = 500


def _to_row(record: RecordBase, received_at: datetime) -> Dict[str, Any]:
    wire = record.to_wire()
    return {
        "id": record.id,
        "event_type": wire["type"],
        "session_id": str(record.session_id or "")[:120],
        "user_id": str(record.user_id or "")[:255],
        "captured_at_ms": int(record.timestamp),
        "version": int(record.version),
        "payload_json": json.dumps(wire.get("payload") or {}, ensure_ascii=False)[:8000],
        "received_at": received_at,
    }


def save_events(session, records: Iterable[RecordBase]) -> Tuple[int, int]:
    """写入一批事件，返回 (accepted, duplicates)。

    客户端重试可能重复投递同一批次，已存在的 id（包括同批次内重复）只计入 duplicates。
    """
    records = list(records)[:MAX_BATCH_EVENTS]
    if not records:
        return 0, 0

    ids = [r.id for r in records]
    existing = {
        row[0]
        for row in session.query(TrackedEvent.id).filter(TrackedEvent.id.in_(ids)).all()
    }
    now = datetime.now()
    accepted = 0
    duplicates = 0
    for record in records:
        if record.id in existing:
            duplicates += 1
            continue
        session.add(TrackedEvent(**_to_row(record, now)))
        existing.add(record.id)
        accepted += 1

    log_event(logger, E.INGEST_ACCEPT, accepted=accepted, duplicates=duplicates)
    return accepted, duplicates


def list_recent_events(session, limit: int = 50) -> List[Dict[str, Any]]:
    rows = (
        session.query(TrackedEvent)
        .order_by(TrackedEvent.captured_at_ms.desc())
        .limit(max(1, min(int(limit), 500)))
        .all()
    )
    return [
        {
            "id": row.id,
            "type": row.event_type,
            "timestamp": row.captured_at_ms,
            "sessionId": row.session_id,
            "userId": row.user_id or None,
            "version": row.version,
            "payload": json.loads(row.payload_json or "{}"),
        }
        for row in rows
    ]
