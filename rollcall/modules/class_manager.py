"""
Class Manager Module - Rollcall QR Attendance

Teachers create and delete classes; students join them with the class's
invite code. Uniqueness of invite codes and of (student, class) enrollments is
enforced by the store.
"""

import logging
import secrets
import string
from typing import Any, Dict, List

from rollcall.modules.errors import (
    AlreadyEnrolledError,
    BackendError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from rollcall.modules.models import ClassRecord, Enrollment, Profile

INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_invite_code(length: int = 6) -> str:
    return ''.join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(length))


class ClassManager:
    """
    Class lifecycle and enrollment by invite code.
    """

    def __init__(self, backend, invite_code_length: int = 6,
                 max_code_attempts: int = 5):
        """
        Args:
            backend: Store collaborator
            invite_code_length (int): Characters per invite code
            max_code_attempts (int): Inserts tried before giving up on
                invite code collisions
        """
        self.db = backend
        self.invite_code_length = invite_code_length
        self.max_code_attempts = max_code_attempts
        self.logger = logging.getLogger(__name__)

    def create_class(self, teacher: Profile, name: str, description: str = None) -> ClassRecord:
        """
        Create a class owned by ``teacher`` with a fresh invite code.

        Args:
            teacher (Profile): Owning teacher
            name (str): Class name
            description (str): Optional description

        Returns:
            ClassRecord: The stored class
        """
        if not teacher.is_teacher:
            raise PermissionDeniedError('Only teachers can create classes.')

        name = (name or '').strip()
        if not name:
            raise ValidationError('Class name is required')

        for attempt in range(1, self.max_code_attempts + 1):
            invite_code = generate_invite_code(self.invite_code_length)
            try:
                row = self.db.insert('classes', {
                    'name': name,
                    'description': (description or '').strip() or None,
                    'teacher_id': teacher.id,
                    'invite_code': invite_code
                })
            except ConflictError:
                self.logger.warning(f"Invite code collision on attempt {attempt}, retrying")
                continue

            record = ClassRecord.from_row(row)
            self.logger.info(f"Class created: {record.name} ({record.id}) by {teacher.id}")
            return record

        raise BackendError('Could not allocate a unique invite code. Please try again.')

    def get_class(self, class_id: str) -> ClassRecord:
        row = self.db.select_one('classes', {'id': class_id})
        if not row:
            raise NotFoundError('Class not found')
        return ClassRecord.from_row(row)

    def get_owned_class(self, teacher: Profile, class_id: str) -> ClassRecord:
        """Return the class if ``teacher`` owns it."""
        record = self.get_class(class_id)
        if record.teacher_id != teacher.id:
            self.logger.warning(f"User {teacher.id} denied access to class {class_id}")
            raise PermissionDeniedError('You do not own this class.')
        return record

    def list_teacher_classes(self, teacher: Profile) -> List[Dict[str, Any]]:
        """
        Classes owned by the teacher, newest first, with their session counts.
        """
        classes = [
            ClassRecord.from_row(row)
            for row in self.db.select('classes', {'teacher_id': teacher.id},
                                      order_by='created_at', descending=True)
        ]

        session_counts = {record.id: 0 for record in classes}
        if classes:
            for row in self.db.select('attendance_sessions', {'class_id': list(session_counts)}):
                session_counts[str(row['class_id'])] += 1

        return [
            {'class': record, 'session_count': session_counts[record.id]}
            for record in classes
        ]

    def delete_class(self, teacher: Profile, class_id: str) -> None:
        """
        Delete an owned class. Sessions, enrollments and logs go with it.
        """
        self.get_owned_class(teacher, class_id)
        self.db.delete('classes', {'id': class_id})
        self.logger.info(f"Class {class_id} deleted by {teacher.id}")

    def enroll_with_code(self, student: Profile, code: str) -> ClassRecord:
        """
        Enroll a student in the class identified by an invite code.

        Raises:
            NotFoundError: No class has this code
            AlreadyEnrolledError: The student is already a member
        """
        if not student.is_student:
            raise PermissionDeniedError('Only students can join classes.')

        code = (code or '').strip().upper()
        row = self.db.select_one('classes', {'invite_code': code}) if code else None
        if not row:
            raise NotFoundError('Invalid Invite Code. Please check and try again.')
        record = ClassRecord.from_row(row)

        existing = self.db.select_one('enrollments', {
            'student_id': student.id,
            'class_id': record.id
        })
        if existing:
            raise AlreadyEnrolledError()

        try:
            self.db.insert('enrollments', {
                'student_id': student.id,
                'class_id': record.id
            })
        except ConflictError:
            raise AlreadyEnrolledError()

        self.logger.info(f"Student {student.id} joined class {record.id}")
        return record

    def list_student_classes(self, student: Profile) -> List[Dict[str, Any]]:
        """
        Classes the student is enrolled in, with the teacher's name.
        """
        enrollments = [
            Enrollment.from_row(row)
            for row in self.db.select('enrollments', {'student_id': student.id},
                                      order_by='created_at')
        ]
        if not enrollments:
            return []

        classes = {
            str(row['id']): ClassRecord.from_row(row)
            for row in self.db.select('classes', {'id': [e.class_id for e in enrollments]})
        }
        teacher_ids = list({record.teacher_id for record in classes.values()})
        teachers = {
            str(row['id']): row.get('full_name')
            for row in self.db.select('profiles', {'id': teacher_ids})
        }

        result = []
        for enrollment in enrollments:
            record = classes.get(enrollment.class_id)
            if record is None:
                continue
            result.append({
                'class': record,
                'teacher_name': teachers.get(record.teacher_id) or 'Unknown Teacher',
                'enrolled_at': enrollment.created_at
            })
        return result
