"""
Attendance Manager Module - Rollcall QR Attendance

This module records attendance from scanned QR codes and answers the
student-facing attendance queries.

Scan processing:
- Parse the scanned text into a session token
- Look the session up and reject unknown or expired tokens
- Insert the attendance log; the store's (session, student) uniqueness
  constraint turns a repeated scan into "already marked present"
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from rollcall.modules.errors import (
    ConflictError,
    ExpiredTokenError,
    InvalidTokenError,
    PermissionDeniedError,
)
from rollcall.modules.models import (
    STATUS_PRESENT,
    AttendanceLog,
    AttendanceSession,
    Profile,
    utcnow,
)
from rollcall.modules.qr_generator import parse_scanned_token


@dataclass
class ScanResult:
    """Outcome of a successful scan."""
    session: AttendanceSession
    log: Optional[AttendanceLog]
    already_marked: bool
    message: str


class AttendanceManager:
    """
    Attendance recording and student attendance history.
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

    def process_attendance_scan(self, student: Profile, scanned_text: str) -> ScanResult:
        """
        Mark the student present for the session named by the scanned text.

        Args:
            student (Profile): Authenticated student
            scanned_text (str): Raw decoder output, a scan URL or a bare token

        Returns:
            ScanResult: Recorded (or already existing) attendance

        Raises:
            InvalidTokenError: Malformed text or no session with this token
            ExpiredTokenError: The session's window has closed
        """
        if not student.is_student:
            raise PermissionDeniedError('Only students can mark attendance.')

        token = parse_scanned_token(scanned_text)
        session = self._get_session_by_token(token)

        now = self.clock()
        if not session.is_live(now):
            self.logger.warning(f"Expired scan: student {student.id}, session {session.id}")
            raise ExpiredTokenError()

        try:
            row = self.db.insert('attendance_logs', {
                'session_id': session.id,
                'student_id': student.id,
                'status': STATUS_PRESENT,
                'marked_at': now
            })
        except ConflictError:
            self.logger.warning(f"Duplicate scan: student {student.id}, session {session.id}")
            existing = self.db.select_one('attendance_logs', {
                'session_id': session.id,
                'student_id': student.id
            })
            return ScanResult(
                session=session,
                log=AttendanceLog.from_row(existing) if existing else None,
                already_marked=True,
                message='Already marked present for this session.'
            )

        log = AttendanceLog.from_row(row)
        self.logger.info(f"Attendance recorded: student {student.id}, session {session.id}")
        return ScanResult(
            session=session,
            log=log,
            already_marked=False,
            message='Attendance Marked!'
        )

    def _get_session_by_token(self, token: str) -> AttendanceSession:
        rows = self.db.select('attendance_sessions', {'qr_code_token': token}, limit=2)
        if len(rows) != 1:
            raise InvalidTokenError()
        return AttendanceSession.from_row(rows[0])

    def get_student_history(self, student: Profile,
                            class_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        The student's attendance logs, newest first.

        Args:
            student (Profile): Student
            class_id (str): Restrict to one class

        Returns:
            List[Dict[str, Any]]: status, marked_at, session_date, class_id
        """
        logs = [
            AttendanceLog.from_row(row)
            for row in self.db.select('attendance_logs', {'student_id': student.id},
                                      order_by='marked_at', descending=True)
        ]
        if not logs:
            return []

        sessions = {
            str(row['id']): AttendanceSession.from_row(row)
            for row in self.db.select('attendance_sessions',
                                      {'id': list({log.session_id for log in logs})})
        }

        history = []
        for log in logs:
            session = sessions.get(log.session_id)
            if session is None:
                continue
            if class_id is not None and session.class_id != class_id:
                continue
            history.append({
                'status': log.status,
                'marked_at': log.marked_at,
                'session_date': session.session_date,
                'class_id': session.class_id
            })
        return history

    def get_student_summary(self, student: Profile) -> Dict[str, int]:
        """Counts shown on the student dashboard."""
        enrolled = self.db.select('enrollments', {'student_id': student.id})
        logs = self.db.select('attendance_logs', {'student_id': student.id})
        return {
            'enrolled_classes': len(enrolled),
            'present_count': sum(1 for row in logs if row.get('status') == STATUS_PRESENT)
        }
