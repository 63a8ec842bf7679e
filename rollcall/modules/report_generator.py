"""
Report Generator Module - Rollcall QR Attendance

This module aggregates a class's attendance into a per-student report and
exports it as a spreadsheet.

Aggregation is a single in-memory pass over the enrollments, sessions and
logs of one class:
- present = sessions with a ``present`` log for the student
- absent = total sessions - present
- percentage = present / total, rounded half-up to a whole number
  (0 when the class has no sessions)

Features:
- Excel export (one sheet) and CSV export
- One status column per session, labelled by session date
- Empty report, not an error, for a class without enrollments
"""

import io
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pandas as pd
from openpyxl.utils import get_column_letter
from werkzeug.utils import secure_filename

from rollcall.modules.errors import PermissionDeniedError, ValidationError
from rollcall.modules.models import (
    STATUS_PRESENT,
    AttendanceLog,
    AttendanceSession,
    ClassRecord,
    Enrollment,
    Profile,
    utcnow,
)

SHEET_NAME = 'Attendance'
COLUMN_WIDTH = 15

PRESENT_LABEL = 'Present'
ABSENT_LABEL = 'Absent'
UNKNOWN_NAME = 'Unknown'
NO_EMAIL = 'No Email'


@dataclass
class ReportRow:
    student_id: str
    student_name: str
    email: str
    statuses: Dict[str, str]
    present: int
    absent: int
    total_sessions: int
    percentage: int

    def to_record(self) -> Dict[str, Any]:
        """Flatten into spreadsheet column order."""
        record = {'Student Name': self.student_name, 'Email': self.email}
        record.update(self.statuses)
        record['Total Present'] = self.present
        record['Total Absent'] = self.absent
        record['Total Sessions'] = self.total_sessions
        record['Attendance %'] = f"{self.percentage}%"
        return record


@dataclass
class AttendanceReport:
    class_id: str
    class_name: Optional[str]
    session_columns: List[str] = field(default_factory=list)
    rows: List[ReportRow] = field(default_factory=list)
    generated_at: Optional[datetime] = None

    @property
    def total_sessions(self) -> int:
        return len(self.session_columns)

    @property
    def columns(self) -> List[str]:
        return (['Student Name', 'Email'] + self.session_columns +
                ['Total Present', 'Total Absent', 'Total Sessions', 'Attendance %'])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'class_id': self.class_id,
            'class_name': self.class_name,
            'total_sessions': self.total_sessions,
            'session_columns': self.session_columns,
            'generated_at': self.generated_at.isoformat() if self.generated_at else None,
            'rows': [
                {
                    'student_id': row.student_id,
                    'student_name': row.student_name,
                    'email': row.email,
                    'statuses': row.statuses,
                    'present': row.present,
                    'absent': row.absent,
                    'total_sessions': row.total_sessions,
                    'percentage': row.percentage
                }
                for row in self.rows
            ]
        }


def attendance_percentage(present: int, total: int) -> int:
    """Whole-number percentage, halves rounded up; 0 when there are no sessions."""
    if total <= 0:
        return 0
    return (present * 200 + total) // (2 * total)


def session_column_labels(sessions: List[AttendanceSession]) -> List[str]:
    """
    One label per session: its date, suffixed " (2)", " (3)" ... when several
    sessions share a date.
    """
    seen = Counter()
    labels = []
    for session in sessions:
        day = session.session_date.isoformat()
        seen[day] += 1
        labels.append(day if seen[day] == 1 else f"{day} ({seen[day]})")
    return labels


def aggregate_attendance(enrollments: List[Enrollment],
                         profiles: Dict[str, Profile],
                         sessions: List[AttendanceSession],
                         logs: List[AttendanceLog]) -> List[ReportRow]:
    """
    Build one report row per enrolled student.

    Args:
        enrollments (List[Enrollment]): Enrollments of the class
        profiles (Dict[str, Profile]): Student profiles by ID
        sessions (List[AttendanceSession]): Sessions in column order
        logs (List[AttendanceLog]): Logs for those sessions

    Returns:
        List[ReportRow]: Rows sorted by student name
    """
    labels = session_column_labels(sessions)
    total = len(sessions)

    attended = {
        (log.session_id, log.student_id)
        for log in logs
        if log.status == STATUS_PRESENT
    }

    rows = []
    for enrollment in enrollments:
        profile = profiles.get(enrollment.student_id)
        statuses = {}
        present = 0
        for session, label in zip(sessions, labels):
            if (session.id, enrollment.student_id) in attended:
                statuses[label] = PRESENT_LABEL
                present += 1
            else:
                statuses[label] = ABSENT_LABEL

        rows.append(ReportRow(
            student_id=enrollment.student_id,
            student_name=(profile.full_name if profile and profile.full_name else UNKNOWN_NAME),
            email=(profile.email if profile and profile.email else NO_EMAIL),
            statuses=statuses,
            present=present,
            absent=total - present,
            total_sessions=total,
            percentage=attendance_percentage(present, total)
        ))

    rows.sort(key=lambda row: (row.student_name.lower(), row.email))
    return rows


class ReportGenerator:
    """
    Builds class attendance reports and serializes them.
    """

    def __init__(self, backend, clock: Callable[[], datetime] = utcnow):
        """
        Args:
            backend: Store collaborator
            clock (Callable): Source of the current UTC time
        """
        self.db = backend
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self.supported_formats = ['excel', 'csv']

    def build_class_report(self, class_id: str,
                           requester: Optional[Profile] = None) -> AttendanceReport:
        """
        Aggregate attendance for a class.

        A class that does not exist (for instance one just deleted) yields an
        empty report. When ``requester`` is given and the class exists, the
        requester must own it.
        """
        class_row = self.db.select_one('classes', {'id': class_id})
        record = ClassRecord.from_row(class_row) if class_row else None
        if record and requester is not None and record.teacher_id != requester.id:
            self.logger.warning(f"User {requester.id} denied report for class {class_id}")
            raise PermissionDeniedError('You do not own this class.')

        report = AttendanceReport(
            class_id=class_id,
            class_name=record.name if record else None,
            generated_at=self.clock()
        )

        enrollments = [
            Enrollment.from_row(row)
            for row in self.db.select('enrollments', {'class_id': class_id})
        ]
        session_rows = self.db.select('attendance_sessions', {'class_id': class_id},
                                      order_by='created_at')
        sessions = sorted(
            (AttendanceSession.from_row(row) for row in session_rows),
            key=lambda s: s.session_date
        )
        report.session_columns = session_column_labels(sessions)

        if not enrollments:
            return report

        profiles = {
            str(row['id']): Profile.from_row(row)
            for row in self.db.select('profiles', {'id': [e.student_id for e in enrollments]})
        }
        logs = [
            AttendanceLog.from_row(row)
            for row in self.db.select('attendance_logs', {'session_id': [s.id for s in sessions]})
        ]

        report.rows = aggregate_attendance(enrollments, profiles, sessions, logs)
        self.logger.info(f"Report built for class {class_id}: "
                         f"{len(report.rows)} students, {len(sessions)} sessions")
        return report

    def export_report(self, report: AttendanceReport,
                      output_format: str = 'excel') -> Dict[str, Any]:
        """
        Serialize a report for download.

        Args:
            report (AttendanceReport): Report to export
            output_format (str): 'excel' or 'csv'

        Returns:
            Dict[str, Any]: filename, content (BytesIO), mime_type, size
        """
        if output_format not in self.supported_formats:
            raise ValidationError(f'Unsupported output format: {output_format}')

        df = pd.DataFrame([row.to_record() for row in report.rows], columns=report.columns)
        base_name = secure_filename(f"{report.class_name or 'Class'}_Report") or 'Class_Report'

        if output_format == 'excel':
            result = self._generate_excel_report(df, base_name)
        else:
            result = self._generate_csv_report(df, base_name)

        self.logger.info(f"Report exported: {result['filename']} ({result['size']} bytes)")
        return result

    def _generate_excel_report(self, df: pd.DataFrame, base_name: str) -> Dict[str, Any]:
        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine='openpyxl') as writer:
            df.to_excel(writer, sheet_name=SHEET_NAME, index=False)
            worksheet = writer.sheets[SHEET_NAME]
            for index in range(1, len(df.columns) + 1):
                worksheet.column_dimensions[get_column_letter(index)].width = COLUMN_WIDTH

        size = len(buffer.getvalue())
        buffer.seek(0)
        return {
            'filename': f"{base_name}.xlsx",
            'content': buffer,
            'format': 'excel',
            'mime_type': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
            'size': size
        }

    def _generate_csv_report(self, df: pd.DataFrame, base_name: str) -> Dict[str, Any]:
        data = df.to_csv(index=False).encode('utf-8')
        return {
            'filename': f"{base_name}.csv",
            'content': io.BytesIO(data),
            'format': 'csv',
            'mime_type': 'text/csv',
            'size': len(data)
        }
