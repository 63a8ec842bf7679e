"""
Data Models - Rollcall QR Attendance

Typed records for the rows held by the backend store. Rows come back from the
store as plain dictionaries; ``from_row`` validates them at the boundary so the
managers only ever work with well-formed records.
"""

from dataclasses import dataclass, asdict, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from rollcall.modules.errors import ValidationError

ROLE_STUDENT = 'student'
ROLE_TEACHER = 'teacher'
ROLES = (ROLE_STUDENT, ROLE_TEACHER)

STATUS_PRESENT = 'present'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any, field_name: str) -> datetime:
    """
    Parse a stored timestamp into an aware UTC datetime.

    Accepts datetime objects and ISO 8601 strings, including the trailing
    ``Z`` form returned by PostgREST. Naive values are taken to be UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f'Invalid timestamp for {field_name}: {value!r}')
    else:
        raise ValidationError(f'Missing timestamp for {field_name}')

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_date(value: Any, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise ValidationError(f'Invalid date for {field_name}: {value!r}')


def _require(row: Dict[str, Any], *names: str) -> None:
    if row is None:
        raise ValidationError('Empty row returned by the store')
    missing = [name for name in names if row.get(name) in (None, '')]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")


def _optional_timestamp(row: Dict[str, Any], name: str) -> Optional[datetime]:
    if row.get(name) in (None, ''):
        return None
    return parse_timestamp(row[name], name)


@dataclass
class AuthUser:
    """Identity returned by the auth collaborator."""
    id: str
    email: Optional[str] = None
    access_token: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Profile:
    id: str
    full_name: str
    email: Optional[str]
    role: str
    created_at: Optional[datetime] = None

    @property
    def is_teacher(self) -> bool:
        return self.role == ROLE_TEACHER

    @property
    def is_student(self) -> bool:
        return self.role == ROLE_STUDENT

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Profile':
        _require(row, 'id', 'role')
        if row['role'] not in ROLES:
            raise ValidationError(f"Unknown role: {row['role']!r}")
        return cls(
            id=str(row['id']),
            full_name=row.get('full_name') or '',
            email=row.get('email'),
            role=row['role'],
            created_at=_optional_timestamp(row, 'created_at')
        )


@dataclass
class ClassRecord:
    id: str
    name: str
    description: Optional[str]
    teacher_id: str
    invite_code: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'ClassRecord':
        _require(row, 'id', 'name', 'teacher_id', 'invite_code')
        return cls(
            id=str(row['id']),
            name=row['name'],
            description=row.get('description'),
            teacher_id=str(row['teacher_id']),
            invite_code=row['invite_code'],
            created_at=_optional_timestamp(row, 'created_at')
        )


@dataclass
class Enrollment:
    id: str
    student_id: str
    class_id: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Enrollment':
        _require(row, 'id', 'student_id', 'class_id')
        return cls(
            id=str(row['id']),
            student_id=str(row['student_id']),
            class_id=str(row['class_id']),
            created_at=_optional_timestamp(row, 'created_at')
        )


@dataclass
class AttendanceSession:
    """One scannable window for a class meeting."""
    id: str
    class_id: str
    session_date: date
    qr_code_token: str
    expires_at: datetime
    created_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        # The expiry instant itself is already expired.
        return now < self.expires_at

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'AttendanceSession':
        _require(row, 'id', 'class_id', 'session_date', 'qr_code_token', 'expires_at')
        return cls(
            id=str(row['id']),
            class_id=str(row['class_id']),
            session_date=parse_date(row['session_date'], 'session_date'),
            qr_code_token=row['qr_code_token'],
            expires_at=parse_timestamp(row['expires_at'], 'expires_at'),
            created_at=_optional_timestamp(row, 'created_at')
        )


@dataclass
class AttendanceLog:
    id: str
    session_id: str
    student_id: str
    status: str
    marked_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'AttendanceLog':
        _require(row, 'id', 'session_id', 'student_id')
        return cls(
            id=str(row['id']),
            session_id=str(row['session_id']),
            student_id=str(row['student_id']),
            status=row.get('status') or STATUS_PRESENT,
            marked_at=_optional_timestamp(row, 'marked_at')
        )


def to_json(record: Any) -> Dict[str, Any]:
    """Serialize a record for a JSON response."""
    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, (datetime, date)):
            data[key] = value.isoformat()
    return data
