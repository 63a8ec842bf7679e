import sqlite3
from unittest import mock

import pytest

from rollcall.modules.errors import BackendError, ConflictError, ValidationError


@pytest.fixture
def locked_connection(db, monkeypatch):
    locked = sqlite3.OperationalError('database is locked')
    connection = mock.MagicMock()
    connection.execute.side_effect = locked
    connection.cursor.return_value.execute.side_effect = locked
    monkeypatch.setattr(db._local, 'connection', connection)
    return connection


def test_insert_and_select_round_trip(db, teacher):
    row = db.insert('classes', {
        'name': 'Chemistry',
        'teacher_id': teacher.id,
        'invite_code': 'CHEM01'
    })
    assert row['id']
    assert row['created_at']
    assert db.select('classes', {'invite_code': ['CHEM01', 'NONE00']}) == [row]
    assert db.select('classes', {'invite_code': []}) == []


def test_duplicate_insert_is_conflict(db, teacher):
    values = {'name': 'Chemistry', 'teacher_id': teacher.id, 'invite_code': 'CHEM01'}
    db.insert('classes', values)
    with pytest.raises(ConflictError):
        db.insert('classes', dict(values, name='Other'))


def test_unknown_columns_and_unfiltered_deletes_are_rejected(db):
    with pytest.raises(ValidationError):
        db.select('classes', {'password': 'x'})
    with pytest.raises(ValidationError):
        db.delete('classes', {})


def test_missing_foreign_key_is_backend_error(db):
    with pytest.raises(BackendError):
        db.insert('classes', {'name': 'Orphan', 'teacher_id': 'nobody', 'invite_code': 'ORPH01'})


def test_locked_database_is_backend_error(db, locked_connection):
    with pytest.raises(BackendError):
        db.select('classes', {'id': 'c1'})
    with pytest.raises(BackendError):
        db.insert('classes', {'name': 'X', 'teacher_id': 't1', 'invite_code': 'LOCK01'})
    with pytest.raises(BackendError):
        db.delete('classes', {'id': 'c1'})
    with pytest.raises(BackendError):
        db.sign_up('juan@uni.edu', 'secret123')
    with pytest.raises(BackendError):
        db.sign_in('juan@uni.edu', 'secret123')
    with pytest.raises(BackendError):
        db.sign_out('some-token')


def test_locked_database_returns_502(app, client, monkeypatch):
    backend = app.extensions['rollcall'].backend
    locked = sqlite3.OperationalError('database is locked')
    connection = mock.MagicMock()
    connection.execute.side_effect = locked
    connection.cursor.return_value.execute.side_effect = locked
    monkeypatch.setattr(backend._local, 'connection', connection)

    response = client.post('/auth/register', json={
        'email': 'juan@uni.edu',
        'password': 'secret123',
        'full_name': 'Dela Cruz, Juan',
        'role': 'student'
    })
    assert response.status_code == 502
    assert response.get_json()['error_type'] == 'backend_error'
