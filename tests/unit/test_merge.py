from __future__ import annotations

from datetime import datetime, timedelta, timezone

from state.merge import merge_documents
from state.models import ClassData, ClassInfo, DailyRecord, Document, Student, TodoItem


T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


def _doc(*, students=(), records=(), todos=(), classes=("c1",), updated_at=None, **extra) -> Document:
    return Document(
        classes=[ClassInfo(id=c, name=c) for c in classes],
        class_data={
            classes[0]: ClassData(students=list(students), records=list(records), todos=list(todos))
        }
        if classes
        else {},
        active_class_id=classes[0] if classes else None,
        updated_at=updated_at,
        **extra,
    )


def _student(sid: str, name: str | None = None) -> Student:
    return Student(id=sid, name=name or sid.upper(), number=1)


def test_union_by_id_without_duplicates():
    local = _doc(students=[_student("a"), _student("b")])
    remote = _doc(students=[_student("b"), _student("c")])

    merged = merge_documents(local, remote, T0, T0 + timedelta(minutes=5))

    assert [s.id for s in merged.class_data["c1"].students] == ["a", "b", "c"]


def test_collision_prefers_later_local_mutation():
    local = _doc(students=[_student("b", "Local B")], updated_at=T0 + timedelta(minutes=10))
    remote = _doc(students=[_student("b", "Remote B")])

    merged = merge_documents(local, remote, T0, T0 + timedelta(minutes=5))

    assert merged.class_data["c1"].students[0].name == "Local B"


def test_collision_prefers_newer_remote():
    local = _doc(students=[_student("b", "Local B")], updated_at=T0 + timedelta(minutes=1))
    remote = _doc(students=[_student("b", "Remote B")])

    merged = merge_documents(local, remote, T0, T0 + timedelta(minutes=5))

    assert merged.class_data["c1"].students[0].name == "Remote B"


def test_same_date_record_taken_wholesale_from_more_recently_synced_side():
    local_record = DailyRecord(date="2024-03-04", weather="Sunny", classLog="local log")
    remote_record = DailyRecord(date="2024-03-04", atmosphere="Calm", classLog="remote log")
    local = _doc(records=[local_record, DailyRecord(date="2024-03-05")], updated_at=T0 + timedelta(hours=1))
    remote = _doc(records=[remote_record, DailyRecord(date="2024-03-01")])

    merged = merge_documents(local, remote, T0, T0 + timedelta(minutes=5))

    records = {r.date: r for r in merged.class_data["c1"].records}
    assert set(records) == {"2024-03-04", "2024-03-05", "2024-03-01"}
    # Remote synced after the local watermark: its record wins, no field mixing
    assert records["2024-03-04"] == remote_record
    assert records["2024-03-04"].weather is None


def test_same_date_record_local_wins_when_local_synced_later():
    local_record = DailyRecord(date="2024-03-04", classLog="local log")
    remote_record = DailyRecord(date="2024-03-04", classLog="remote log")

    merged = merge_documents(
        _doc(records=[local_record]),
        _doc(records=[remote_record]),
        T0 + timedelta(hours=1),
        T0,
    )

    assert merged.class_data["c1"].records == [local_record]


def test_classes_from_both_sides_and_their_data_are_kept():
    local = _doc(classes=("c1",), todos=[TodoItem(id="t1", content="local")])
    remote = _doc(classes=("c2",), todos=[TodoItem(id="t2", content="remote")])

    merged = merge_documents(local, remote, T0, T0 + timedelta(minutes=1))

    assert [c.id for c in merged.classes] == ["c1", "c2"]
    assert merged.class_data["c1"].todos[0].id == "t1"
    assert merged.class_data["c2"].todos[0].id == "t2"
    assert merged.active_class_id == "c1"


def test_merge_is_deterministic_and_pure():
    local = _doc(students=[_student("a")], updated_at=T0 + timedelta(minutes=2))
    remote = _doc(students=[_student("a", "Other"), _student("z")])
    local_before = local.model_copy(deep=True)

    first = merge_documents(local, remote, T0, T0 + timedelta(minutes=1))
    second = merge_documents(local, remote, T0, T0 + timedelta(minutes=1))

    assert first == second
    assert local == local_before
    assert first.updated_at == T0 + timedelta(minutes=2)


def test_unknown_top_level_keys_are_kept():
    local = _doc(theme="dark")
    remote = _doc(theme="light", lastExport="2024-01-01")

    merged = merge_documents(local, remote, T0, T0 + timedelta(minutes=1))

    assert merged.model_extra == {"theme": "dark", "lastExport": "2024-01-01"}
