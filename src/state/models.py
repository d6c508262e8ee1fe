from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


CURRENT_VERSION = 2


class _Record(BaseModel):
    # camelCase on the wire, snake_case in Python; unknown keys survive a round trip
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Student(_Record):
    id: str
    name: str = ""
    number: int = 0
    photo: Optional[str] = None
    notes: List[str] = Field(default_factory=list)


class AttendanceEntry(_Record):
    student_id: str = Field(..., alias="studentId")
    status: str = "Present"


class LessonLog(_Record):
    period: int
    subject: str = ""
    content: str = ""


class DailyRecord(_Record):
    date: str = Field(..., description="ISO day, YYYY-MM-DD")
    weather: Optional[str] = None
    atmosphere: Optional[str] = None
    attendance: List[AttendanceEntry] = Field(default_factory=list)
    lesson_logs: List[LessonLog] = Field(default_factory=list, alias="lessonLogs")
    class_log: str = Field(default="", alias="classLog")
    student_notes: Dict[str, str] = Field(default_factory=dict, alias="studentNotes")


class TodoItem(_Record):
    id: str
    content: str = ""
    completed: bool = False
    due_date: Optional[str] = Field(default=None, alias="dueDate")


class ClassInfo(_Record):
    id: str
    name: str = ""
    order: int = 0
    timetable: Optional[Dict[str, Any]] = None


class TimetableTemplate(_Record):
    id: str
    name: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


class Subject(_Record):
    id: str
    name: str = ""
    order: int = 0


class ClassData(_Record):
    students: List[Student] = Field(default_factory=list)
    records: List[DailyRecord] = Field(default_factory=list)
    todos: List[TodoItem] = Field(default_factory=list)


class Document(_Record):
    """
    The whole local application state that is synchronized.

    Fields
    - classes: ordered class list shown in the class selector.
    - class_data: per-class students, daily records and todos keyed by class id.
    - templates / subjects: timetable templates and the subject catalogue.
    - active_class_id: class selected in the UI when the document was saved.
    - updated_at: time of the last local mutation (stamped by the local store).

    Notes
    - The sync engine treats this as an opaque value; only the merge step
      looks inside.
    """

    version: int = CURRENT_VERSION
    classes: List[ClassInfo] = Field(default_factory=list)
    class_data: Dict[str, ClassData] = Field(default_factory=dict, alias="classData")
    templates: List[TimetableTemplate] = Field(default_factory=list)
    subjects: List[Subject] = Field(default_factory=list)
    active_class_id: Optional[str] = Field(default=None, alias="activeClassId")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @classmethod
    def empty(cls) -> "Document":
        """Convenience constructor for a fresh, empty document."""
        return cls()

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class EncryptedBlob(_Record):
    """
    Wire/storage representation of one owner's backup.

    `payload` is the codec's ciphertext string when `is_encrypted` is true.
    Legacy backups written before encryption carry the Document mapping itself
    with `is_encrypted` false.
    """

    is_encrypted: bool = Field(default=True, alias="isEncrypted")
    payload: Union[str, Dict[str, Any]]
    updated_at: datetime = Field(..., alias="updatedAt")
    device_id: Optional[str] = Field(default=None, alias="deviceId")


class RemoteMetadata(_Record):
    updated_at: datetime = Field(..., alias="updatedAt")
    device_id: Optional[str] = Field(default=None, alias="deviceId")
