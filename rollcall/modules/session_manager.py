"""
Session Manager Module - Rollcall QR Attendance

Issues the time-limited attendance sessions a teacher projects as a QR code.
A live session for today is reused; otherwise a new one is created with a
random token and a fixed validity window. Backend errors are not retried.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from rollcall.modules.class_manager import ClassManager
from rollcall.modules.models import AttendanceSession, Profile, utcnow
from rollcall.modules.qr_generator import QRGenerator, build_scan_url, generate_token


class SessionManager:
    """
    Creates, reuses and renders attendance sessions.
    """

    def __init__(self, backend, class_manager: ClassManager,
                 qr_generator: QRGenerator,
                 session_duration: timedelta = timedelta(hours=1),
                 token_bytes: int = 32,
                 clock: Callable[[], datetime] = utcnow):
        """
        Args:
            backend: Store collaborator
            class_manager (ClassManager): Used for ownership checks
            qr_generator (QRGenerator): Renders the scan URL
            session_duration (timedelta): Validity window of a new session
            token_bytes (int): Random bytes per session token
            clock (Callable): Source of the current UTC time
        """
        self.db = backend
        self.classes = class_manager
        self.qr_generator = qr_generator
        self.session_duration = session_duration
        self.token_bytes = token_bytes
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def find_live_session(self, class_id: str) -> Optional[AttendanceSession]:
        """
        Newest session for today's date that has not expired yet.
        """
        now = self.clock()
        rows = self.db.select('attendance_sessions', {
            'class_id': class_id,
            'session_date': now.date().isoformat()
        }, order_by='created_at', descending=True)

        for row in rows:
            session = AttendanceSession.from_row(row)
            if session.is_live(now):
                return session
        return None

    def create_session(self, class_id: str) -> AttendanceSession:
        now = self.clock()
        row = self.db.insert('attendance_sessions', {
            'class_id': class_id,
            'session_date': now.date().isoformat(),
            'qr_code_token': generate_token(self.token_bytes),
            'expires_at': now + self.session_duration
        })
        session = AttendanceSession.from_row(row)
        self.logger.info(f"Attendance session {session.id} opened for class {class_id} "
                         f"until {session.expires_at.isoformat()}")
        return session

    def get_or_create_session(self, teacher: Profile, class_id: str) -> AttendanceSession:
        """
        Reuse today's live session for an owned class or open a new one.
        """
        self.classes.get_owned_class(teacher, class_id)
        session = self.find_live_session(class_id)
        if session is not None:
            return session
        return self.create_session(class_id)

    def regenerate_session(self, teacher: Profile, class_id: str) -> AttendanceSession:
        """Always open a new session; earlier ones stay valid until they expire."""
        self.classes.get_owned_class(teacher, class_id)
        return self.create_session(class_id)

    def get_session_qr(self, teacher: Profile, class_id: str, origin: str,
                       regenerate: bool = False) -> Dict[str, Any]:
        """
        Session plus the scan URL and QR image to project.

        Args:
            teacher (Profile): Requesting teacher (must own the class)
            class_id (str): Class ID
            origin (str): Public origin for the scan URL
            regenerate (bool): Force a new session

        Returns:
            Dict[str, Any]: session, scan_url and image data
        """
        if regenerate:
            session = self.regenerate_session(teacher, class_id)
        else:
            session = self.get_or_create_session(teacher, class_id)
        record = self.classes.get_class(class_id)

        scan_url = build_scan_url(origin, session.qr_code_token)
        qr = self.qr_generator.generate_session_qr_code(
            scan_url, class_name=record.name, expires_at=session.expires_at
        )
        return {
            'class': record,
            'session': session,
            'scan_url': scan_url,
            'qr': qr
        }
