from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from .models import ClassData, DailyRecord, Document


T = TypeVar("T")


def _aware(t: datetime) -> datetime:
    # Naive timestamps are taken as UTC so they compare against aware ones
    return t if t.tzinfo is not None else t.replace(tzinfo=timezone.utc)


def _is_later(a: Optional[datetime], b: Optional[datetime]) -> bool:
    """True when `a` is strictly later than `b`; a missing time never wins."""
    if a is None:
        return False
    if b is None:
        return True
    return _aware(a) > _aware(b)


def _union_by_key(
    local: Sequence[T],
    remote: Sequence[T],
    key: Callable[[T], str],
    *,
    prefer_local: bool,
) -> List[T]:
    """Union two sequences by key, keeping local order then remote-only entries.

    On a key collision the whole entry from the preferred side is kept.
    Duplicate keys inside one side collapse to their last occurrence.
    """
    local_by_key: Dict[str, T] = {}
    for item in local:
        local_by_key[key(item)] = item
    remote_by_key: Dict[str, T] = {}
    for item in remote:
        remote_by_key[key(item)] = item

    out: List[T] = []
    for k, item in local_by_key.items():
        if k in remote_by_key and not prefer_local:
            out.append(remote_by_key[k])
        else:
            out.append(item)
    out.extend(item for k, item in remote_by_key.items() if k not in local_by_key)
    return out


def _by_id(item) -> str:
    return item.id


def _by_date(record: DailyRecord) -> str:
    return record.date


def _merge_class_data(
    local: ClassData,
    remote: ClassData,
    *,
    prefer_local_entries: bool,
    prefer_local_records: bool,
) -> ClassData:
    return ClassData(
        students=_union_by_key(local.students, remote.students, _by_id, prefer_local=prefer_local_entries),
        records=_union_by_key(local.records, remote.records, _by_date, prefer_local=prefer_local_records),
        todos=_union_by_key(local.todos, remote.todos, _by_id, prefer_local=prefer_local_entries),
    )


def _ordered_keys(*maps: Iterable[str]) -> List[str]:
    out: List[str] = []
    for keys in maps:
        for k in keys:
            if k not in out:
                out.append(k)
    return out


def merge_documents(
    local: Document,
    remote: Document,
    local_last_synced_at: Optional[datetime],
    remote_updated_at: Optional[datetime],
) -> Document:
    """
    Combine a local and a remote Document after a sync conflict.

    Rules
    - Classes, students, todos, templates, subjects: union by `id`. On a
      collision the entry from the side with the later implicit timestamp wins
      wholesale. The local side's time is its last mutation (`local.updated_at`,
      falling back to `local_last_synced_at`); the remote side's is
      `remote_updated_at`. Ties go to the remote copy.
    - Daily records: union by `date`. When both sides hold the same date, the
      record from the more recently synced side wins wholesale: local only if
      `local_last_synced_at` is later than `remote_updated_at`. Fields are never
      merged inside one record.
    - Unknown top-level keys come from the remote copy, overlaid by local ones.

    Pure: the result depends only on the four arguments.
    """
    local_time = local.updated_at or local_last_synced_at
    prefer_local_entries = _is_later(local_time, remote_updated_at)
    prefer_local_records = _is_later(local_last_synced_at, remote_updated_at)

    classes = _union_by_key(local.classes, remote.classes, _by_id, prefer_local=prefer_local_entries)

    class_data: Dict[str, ClassData] = {}
    for class_id in _ordered_keys(local.class_data.keys(), remote.class_data.keys()):
        mine = local.class_data.get(class_id)
        theirs = remote.class_data.get(class_id)
        if mine is None:
            class_data[class_id] = theirs  # type: ignore[assignment]
        elif theirs is None:
            class_data[class_id] = mine
        else:
            class_data[class_id] = _merge_class_data(
                mine,
                theirs,
                prefer_local_entries=prefer_local_entries,
                prefer_local_records=prefer_local_records,
            )

    class_ids = {c.id for c in classes}
    active = local.active_class_id if local.active_class_id in class_ids else remote.active_class_id
    if active not in class_ids:
        active = classes[0].id if classes else None

    candidates = [_aware(t) for t in (local_time, remote_updated_at) if t is not None]
    extras = {**(remote.model_extra or {}), **(local.model_extra or {})}

    return Document(
        version=max(local.version, remote.version),
        classes=classes,
        class_data=class_data,
        templates=_union_by_key(local.templates, remote.templates, _by_id, prefer_local=prefer_local_entries),
        subjects=_union_by_key(local.subjects, remote.subjects, _by_id, prefer_local=prefer_local_entries),
        active_class_id=active,
        updated_at=max(candidates) if candidates else None,
        **extras,
    )


__all__ = ["merge_documents"]
