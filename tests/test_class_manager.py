import re
from unittest import mock

import pytest

from rollcall.modules import class_manager as class_manager_module
from rollcall.modules.errors import (
    AlreadyEnrolledError,
    BackendError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)


def test_create_class_assigns_six_character_code(classes, teacher):
    codes = set()
    for index in range(10):
        record = classes.create_class(teacher, f'Class {index}')
        assert re.fullmatch(r'[A-Z0-9]{6}', record.invite_code)
        assert record.teacher_id == teacher.id
        codes.add(record.invite_code)
    assert len(codes) == 10


def test_create_class_retries_on_code_collision(classes, teacher, course):
    codes = iter([course.invite_code, 'ZZZ999'])
    with mock.patch.object(class_manager_module, 'generate_invite_code',
                           side_effect=lambda length: next(codes)):
        record = classes.create_class(teacher, 'Second class')
    assert record.invite_code == 'ZZZ999'


def test_create_class_gives_up_after_repeated_collisions(classes, teacher, course):
    with mock.patch.object(class_manager_module, 'generate_invite_code',
                           return_value=course.invite_code):
        with pytest.raises(BackendError):
            classes.create_class(teacher, 'Doomed class')


def test_create_class_requires_teacher_and_name(classes, teacher, student):
    with pytest.raises(PermissionDeniedError):
        classes.create_class(student, 'Nope')
    with pytest.raises(ValidationError):
        classes.create_class(teacher, '   ')


def test_enroll_with_code(classes, db, student, course):
    record = classes.enroll_with_code(student, f'  {course.invite_code.lower()} ')
    assert record.id == course.id
    assert db.select_one('enrollments', {'student_id': student.id, 'class_id': course.id})


def test_enroll_with_unknown_code(classes, student, course):
    with pytest.raises(NotFoundError):
        classes.enroll_with_code(student, 'NOPE00')
    with pytest.raises(NotFoundError):
        classes.enroll_with_code(student, '')


def test_enroll_twice_is_already_enrolled(classes, db, student, course):
    classes.enroll_with_code(student, course.invite_code)
    with pytest.raises(AlreadyEnrolledError):
        classes.enroll_with_code(student, course.invite_code)
    assert len(db.select('enrollments', {'student_id': student.id})) == 1


def test_teacher_cannot_enroll(classes, teacher, course):
    with pytest.raises(PermissionDeniedError):
        classes.enroll_with_code(teacher, course.invite_code)


def test_list_teacher_classes_newest_first_with_session_counts(classes, sessions, teacher, course):
    newer = classes.create_class(teacher, 'Physics 201')
    sessions.create_session(course.id)
    sessions.create_session(course.id)

    entries = classes.list_teacher_classes(teacher)
    assert [entry['class'].id for entry in entries] == [newer.id, course.id]
    assert [entry['session_count'] for entry in entries] == [0, 2]


def test_list_student_classes(classes, student, teacher, course):
    classes.enroll_with_code(student, course.invite_code)
    entries = classes.list_student_classes(student)
    assert len(entries) == 1
    assert entries[0]['class'].name == 'Computer Science 101'
    assert entries[0]['teacher_name'] == teacher.full_name


def test_delete_class_cascades(classes, sessions, attendance, db, student, teacher, course):
    classes.enroll_with_code(student, course.invite_code)
    session = sessions.create_session(course.id)
    attendance.process_attendance_scan(student, session.qr_code_token)

    classes.delete_class(teacher, course.id)

    assert db.select('classes', {'id': course.id}) == []
    assert db.select('enrollments', {'class_id': course.id}) == []
    assert db.select('attendance_sessions', {'class_id': course.id}) == []
    assert db.select('attendance_logs', {'session_id': session.id}) == []
    with pytest.raises(NotFoundError):
        classes.get_class(course.id)


def test_delete_class_requires_owner(classes, auth, course):
    intruder = auth.register('other@uni.edu', 'secret123', 'Other Teacher', 'teacher')
    with pytest.raises(PermissionDeniedError):
        classes.delete_class(intruder, course.id)
    assert classes.get_class(course.id).id == course.id
