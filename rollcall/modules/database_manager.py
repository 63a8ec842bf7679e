"""
Database Manager Module - Rollcall QR Attendance

This module defines the store interface every manager talks to and the SQLite
implementation of it. In production the same interface is served by the hosted
backend (see ``supabase_backend``); the SQLite store is used for local
development and for the test suite.

The store owns all durability and consistency guarantees:
- uniqueness of invite codes, session tokens, enrollments and attendance logs
- cascading deletes from classes to sessions, enrollments and logs
- password hashing and opaque access tokens for the auth tables
"""

import json
import logging
import os
import secrets
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from rollcall.modules.errors import (
    AuthenticationError,
    BackendError,
    ConflictError,
    ValidationError,
)
from rollcall.modules.models import AuthUser, parse_timestamp, utcnow

# Columns each table may be filtered, ordered or inserted on.
TABLE_COLUMNS = {
    'profiles': ('id', 'full_name', 'email', 'role', 'created_at'),
    'classes': ('id', 'name', 'description', 'teacher_id', 'invite_code', 'created_at'),
    'enrollments': ('id', 'student_id', 'class_id', 'created_at'),
    'attendance_sessions': ('id', 'class_id', 'session_date', 'qr_code_token',
                            'expires_at', 'created_at'),
    'attendance_logs': ('id', 'session_id', 'student_id', 'status', 'marked_at'),
}

TIMESTAMP_DEFAULT = "(strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))"


class Backend:
    """
    Store and auth collaborator used by every manager.

    Implementations are passed explicitly to the managers; nothing in the
    package holds a global client.
    """

    def select(self, table: str, filters: Optional[Dict[str, Any]] = None,
               order_by: Optional[str] = None, descending: bool = False,
               limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Fetch rows from a table.

        Args:
            table (str): Table name
            filters (Dict[str, Any]): Column equality filters; list or tuple
                values mean "column IN values"
            order_by (str): Column to order by
            descending (bool): Reverse the ordering
            limit (int): Maximum number of rows

        Returns:
            List[Dict[str, Any]]: Matching rows
        """
        raise NotImplementedError

    def select_one(self, table: str, filters: Dict[str, Any],
                   order_by: Optional[str] = None,
                   descending: bool = False) -> Optional[Dict[str, Any]]:
        rows = self.select(table, filters, order_by=order_by,
                           descending=descending, limit=1)
        return rows[0] if rows else None

    def scoped(self, access_token: Optional[str]) -> 'Backend':
        """
        The store as seen by the holder of ``access_token``.

        Stores that enforce access per user return a view whose queries carry
        that user's identity; the local store has no such policies and
        returns itself.
        """
        return self

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it as stored. Raises ConflictError on a uniqueness violation."""
        raise NotImplementedError

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        raise NotImplementedError

    def sign_up(self, email: str, password: str,
                metadata: Optional[Dict[str, Any]] = None) -> AuthUser:
        raise NotImplementedError

    def sign_in(self, email: str, password: str) -> AuthUser:
        raise NotImplementedError

    def get_user(self, access_token: str) -> Optional[AuthUser]:
        raise NotImplementedError

    def sign_out(self, access_token: str) -> None:
        raise NotImplementedError


class DatabaseManager(Backend):
    """
    SQLite implementation of the store.

    Connections are thread-local and kept open for reuse within the thread.
    Foreign keys are enforced so deleting a class cascades to everything that
    hangs off it.
    """

    def __init__(self, db_path: str, auth_session_hours: int = 8,
                 clock: Callable[[], datetime] = utcnow):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file
            auth_session_hours (int): Lifetime of access tokens issued by sign_in
            clock (Callable): Source of the current UTC time
        """
        self.db_path = str(db_path)
        self.auth_session_hours = auth_session_hours
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()

        directory = os.path.dirname(self.db_path)
        if directory and self.db_path != ':memory:':
            os.makedirs(directory, exist_ok=True)

        self.initialize_database()

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Thread-local database connection
        """
        if not hasattr(self._local, 'connection'):
            self._local.connection = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=30.0
            )
            self._local.connection.row_factory = sqlite3.Row
            self._local.connection.execute("PRAGMA foreign_keys = ON")

        try:
            yield self._local.connection
        except sqlite3.Error as e:
            self._local.connection.rollback()
            self.logger.error(f"Database operation failed: {str(e)}")
            raise

    @contextmanager
    def transaction(self):
        """
        Context manager for a transaction with automatic rollback on error.

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception as e:
                conn.rollback()
                self.logger.error(f"Transaction rolled back: {str(e)}")
                raise

    def initialize_database(self):
        """
        Create all tables and indexes. Idempotent.
        """
        try:
            with self.transaction() as conn:
                cursor = conn.cursor()

                # Auth tables stand in for the hosted auth service
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS auth_users (
                        id TEXT PRIMARY KEY,
                        email TEXT UNIQUE NOT NULL COLLATE NOCASE,
                        password_hash TEXT NOT NULL,
                        user_metadata TEXT,
                        created_at TEXT NOT NULL DEFAULT """ + TIMESTAMP_DEFAULT + """
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS auth_sessions (
                        access_token TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        created_at TEXT NOT NULL DEFAULT """ + TIMESTAMP_DEFAULT + """,
                        FOREIGN KEY (user_id) REFERENCES auth_users(id) ON DELETE CASCADE
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS profiles (
                        id TEXT PRIMARY KEY,
                        full_name TEXT,
                        email TEXT,
                        role TEXT NOT NULL CHECK (role IN ('student', 'teacher')),
                        created_at TEXT NOT NULL DEFAULT """ + TIMESTAMP_DEFAULT + """,
                        FOREIGN KEY (id) REFERENCES auth_users(id) ON DELETE CASCADE
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS classes (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        description TEXT,
                        teacher_id TEXT NOT NULL,
                        invite_code TEXT UNIQUE NOT NULL,
                        created_at TEXT NOT NULL DEFAULT """ + TIMESTAMP_DEFAULT + """,
                        FOREIGN KEY (teacher_id) REFERENCES profiles(id) ON DELETE CASCADE
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS enrollments (
                        id TEXT PRIMARY KEY,
                        student_id TEXT NOT NULL,
                        class_id TEXT NOT NULL,
                        created_at TEXT NOT NULL DEFAULT """ + TIMESTAMP_DEFAULT + """,
                        FOREIGN KEY (student_id) REFERENCES profiles(id) ON DELETE CASCADE,
                        FOREIGN KEY (class_id) REFERENCES classes(id) ON DELETE CASCADE,
                        UNIQUE(student_id, class_id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS attendance_sessions (
                        id TEXT PRIMARY KEY,
                        class_id TEXT NOT NULL,
                        session_date TEXT NOT NULL,
                        qr_code_token TEXT UNIQUE NOT NULL,
                        expires_at TEXT NOT NULL,
                        created_at TEXT NOT NULL DEFAULT """ + TIMESTAMP_DEFAULT + """,
                        FOREIGN KEY (class_id) REFERENCES classes(id) ON DELETE CASCADE
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS attendance_logs (
                        id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL,
                        student_id TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'present',
                        marked_at TEXT NOT NULL DEFAULT """ + TIMESTAMP_DEFAULT + """,
                        FOREIGN KEY (session_id) REFERENCES attendance_sessions(id) ON DELETE CASCADE,
                        FOREIGN KEY (student_id) REFERENCES profiles(id) ON DELETE CASCADE,
                        UNIQUE(session_id, student_id)
                    )
                """)

                cursor.execute("CREATE INDEX IF NOT EXISTS idx_classes_teacher ON classes(teacher_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_enrollments_class ON enrollments(class_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_class ON attendance_sessions(class_id, session_date)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_logs_student ON attendance_logs(student_id)")

            self.logger.info("Database initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())

                if fetch_all:
                    return [dict(row) for row in cursor.fetchall()]
                result = cursor.fetchone()
                return dict(result) if result else None

        except sqlite3.Error as e:
            self.logger.error(f"Query execution failed: {str(e)}")
            raise BackendError(details={'reason': str(e)})

    def execute_update(self, query, params=None):
        """
        Execute an INSERT, UPDATE, or DELETE query.

        Returns:
            int: Number of affected rows
        """
        try:
            with self.transaction() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())
                return cursor.rowcount

        except sqlite3.Error as e:
            raise BackendError(details={'reason': str(e)})

    def _check_columns(self, table: str, columns) -> None:
        allowed = TABLE_COLUMNS.get(table)
        if allowed is None:
            raise ValidationError(f"Unknown table: {table}")
        unknown = [column for column in columns if column not in allowed]
        if unknown:
            raise ValidationError(f"Unknown column(s) for {table}: {', '.join(unknown)}")

    def _where_clause(self, filters: Dict[str, Any]):
        """Build a WHERE clause; returns (None, None) when a filter can match nothing."""
        conditions = []
        params = []
        for column, value in filters.items():
            if isinstance(value, (list, tuple, set)):
                values = list(value)
                if not values:
                    return None, None
                conditions.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            elif value is None:
                conditions.append(f"{column} IS NULL")
            else:
                conditions.append(f"{column} = ?")
                params.append(value)
        return (" AND ".join(conditions) if conditions else "1=1"), params

    def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        filters = filters or {}
        self._check_columns(table, list(filters) + ([order_by] if order_by else []))

        where_clause, params = self._where_clause(filters)
        if where_clause is None:
            return []

        query = f"SELECT * FROM {table} WHERE {where_clause}"
        direction = 'DESC' if descending else 'ASC'
        if order_by:
            query += f" ORDER BY {order_by} {direction}, rowid {direction}"
        else:
            query += " ORDER BY rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        return self.execute_query(query, params)

    def insert(self, table, row):
        row = {key: self._to_db(value) for key, value in row.items()}
        row.setdefault('id', str(uuid.uuid4()))
        self._check_columns(table, row)

        columns = ', '.join(row)
        placeholders = ', '.join('?' for _ in row)
        with self.get_connection() as conn:
            try:
                conn.execute(
                    f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                    tuple(row.values())
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                if 'UNIQUE' in str(e):
                    raise ConflictError(details={'table': table, 'reason': str(e)})
                self.logger.error(f"Insert into {table} rejected: {str(e)}")
                raise BackendError(f"Could not save {table} record: {str(e)}")
            except sqlite3.Error as e:
                conn.rollback()
                self.logger.error(f"Insert into {table} failed: {str(e)}")
                raise BackendError(details={'table': table, 'reason': str(e)})

        return self.select_one(table, {'id': row['id']})

    def delete(self, table, filters):
        if not filters:
            raise ValidationError("Refusing to delete without filters")
        self._check_columns(table, filters)

        where_clause, params = self._where_clause(filters)
        if where_clause is None:
            return 0
        return self.execute_update(f"DELETE FROM {table} WHERE {where_clause}", params)

    @staticmethod
    def _to_db(value):
        # datetime, date
        if hasattr(value, 'isoformat'):
            return value.isoformat()
        return value

    # ---- auth ----

    def sign_up(self, email, password, metadata=None):
        user_id = str(uuid.uuid4())
        email = email.strip().lower()
        with self.get_connection() as conn:
            try:
                conn.execute(
                    """INSERT INTO auth_users (id, email, password_hash, user_metadata)
                       VALUES (?, ?, ?, ?)""",
                    (user_id, email, generate_password_hash(password),
                     json.dumps(metadata or {}))
                )
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                raise ConflictError('User already registered')
            except sqlite3.Error as e:
                conn.rollback()
                self.logger.error(f"Sign up failed for {email}: {str(e)}")
                raise BackendError(details={'reason': str(e)})

        self.logger.info(f"Auth user created: {email}")
        return AuthUser(id=user_id, email=email, metadata=metadata or {})

    def sign_in(self, email, password):
        user = self.execute_query(
            "SELECT * FROM auth_users WHERE email = ?",
            (email.strip().lower(),),
            fetch_all=False
        )
        if not user or not check_password_hash(user['password_hash'], password):
            raise AuthenticationError('Invalid login credentials')

        access_token = secrets.token_urlsafe(32)
        expires_at = self.clock() + timedelta(hours=self.auth_session_hours)
        self.execute_update(
            "INSERT INTO auth_sessions (access_token, user_id, expires_at) VALUES (?, ?, ?)",
            (access_token, user['id'], expires_at.isoformat())
        )
        return self._auth_user(user, access_token)

    def get_user(self, access_token):
        if not access_token:
            return None

        row = self.execute_query(
            """SELECT u.*, s.expires_at AS token_expires_at
               FROM auth_sessions s
               JOIN auth_users u ON s.user_id = u.id
               WHERE s.access_token = ?""",
            (access_token,),
            fetch_all=False
        )
        if not row:
            return None

        if parse_timestamp(row['token_expires_at'], 'expires_at') <= self.clock():
            self.sign_out(access_token)
            return None
        return self._auth_user(row, access_token)

    def sign_out(self, access_token):
        self.execute_update("DELETE FROM auth_sessions WHERE access_token = ?", (access_token,))

    @staticmethod
    def _auth_user(row, access_token=None):
        return AuthUser(
            id=row['id'],
            email=row['email'],
            access_token=access_token,
            metadata=json.loads(row.get('user_metadata') or '{}')
        )

    def close_all_connections(self):
        """Close the connection held by the current thread."""
        if hasattr(self._local, 'connection'):
            self._local.connection.close()
            del self._local.connection
