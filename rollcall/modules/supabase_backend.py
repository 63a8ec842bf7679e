"""
Supabase Backend Module - Rollcall QR Attendance

Serves the store interface from the hosted backend through supabase-py.
Row-level access is enforced by the backend's own policies; this adapter only
translates calls and errors.

supabase-py clients are stateful: a sign-in rewrites the Authorization header
of the client it ran on. Table queries therefore run on a client built for the
caller's access token (see ``scoped``), and sign-up/sign-in each run on a
throwaway client so no user's session ever lands on a shared one.
"""

import logging
from typing import Any, Callable, Dict, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client, ClientOptions, create_client
from supabase_auth.errors import AuthApiError

from rollcall.modules.database_manager import Backend, TABLE_COLUMNS
from rollcall.modules.errors import (
    AuthenticationError,
    BackendError,
    ConflictError,
    ValidationError,
)
from rollcall.modules.models import AuthUser

# PostgreSQL unique_violation
UNIQUE_VIOLATION = '23505'


def client_factory_for(url: str, key: str) -> Callable[[Optional[str]], Client]:
    """
    Build a factory of supabase clients for one project.

    The factory takes an access token; the client it returns sends that token
    as its bearer credential (the project key when the token is None) and
    keeps no session of its own.
    """
    def make_client(access_token: Optional[str] = None) -> Client:
        options = ClientOptions(auto_refresh_token=False, persist_session=False)
        if access_token:
            options.headers['Authorization'] = f'Bearer {access_token}'
        return create_client(url, key, options=options)

    return make_client


class SupabaseBackend(Backend):
    """Store and auth collaborator backed by a hosted Supabase project."""

    def __init__(self, client_factory: Callable[[Optional[str]], Client],
                 access_token: Optional[str] = None):
        """
        Args:
            client_factory (Callable): Builds a client for an access token
            access_token (str): Caller whose identity table queries carry
        """
        self.client_factory = client_factory
        self.access_token = access_token
        self.logger = logging.getLogger(__name__)
        self._client = None

    @classmethod
    def from_credentials(cls, url: str, key: str) -> 'SupabaseBackend':
        if not url or not key:
            raise ValidationError('SUPABASE_URL and SUPABASE_KEY are required')
        return cls(client_factory_for(url, key))

    @property
    def client(self) -> Client:
        """Client bound to this backend's access token, built on first use."""
        if self._client is None:
            self._client = self.client_factory(self.access_token)
        return self._client

    def scoped(self, access_token: Optional[str]) -> 'SupabaseBackend':
        if access_token == self.access_token:
            return self
        return SupabaseBackend(self.client_factory, access_token)

    def _check_table(self, table: str) -> None:
        if table not in TABLE_COLUMNS:
            raise ValidationError(f"Unknown table: {table}")

    def _execute(self, query, action: str):
        try:
            return query.execute()
        except APIError as e:
            if str(e.code) == UNIQUE_VIOLATION:
                raise ConflictError(details={'action': action, 'reason': e.message})
            self.logger.error(f"Supabase {action} failed: {e.message}")
            raise BackendError(details={'action': action, 'reason': e.message})
        except httpx.HTTPError as e:
            self.logger.error(f"Supabase {action} request failed: {str(e)}")
            raise BackendError(details={'action': action, 'reason': str(e)})

    @staticmethod
    def _apply_filters(query, filters: Dict[str, Any]):
        for column, value in filters.items():
            if isinstance(value, (list, tuple, set)):
                query = query.in_(column, list(value))
            elif value is None:
                query = query.is_(column, 'null')
            else:
                query = query.eq(column, value)
        return query

    def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        self._check_table(table)
        filters = filters or {}
        if any(isinstance(v, (list, tuple, set)) and not v for v in filters.values()):
            return []

        query = self._apply_filters(self.client.table(table).select('*'), filters)
        if order_by:
            query = query.order(order_by, desc=descending)
        if limit is not None:
            query = query.limit(limit)

        response = self._execute(query, f'select {table}')
        return response.data or []

    def insert(self, table, row):
        self._check_table(table)
        payload = {
            key: value.isoformat() if hasattr(value, 'isoformat') else value
            for key, value in row.items()
        }
        response = self._execute(self.client.table(table).insert(payload), f'insert {table}')
        if not response.data:
            raise BackendError(f'Insert into {table} returned no row')
        return response.data[0]

    def delete(self, table, filters):
        self._check_table(table)
        if not filters:
            raise ValidationError("Refusing to delete without filters")
        query = self._apply_filters(self.client.table(table).delete(), filters)
        response = self._execute(query, f'delete {table}')
        return len(response.data or [])

    # ---- auth ----

    def sign_up(self, email, password, metadata=None):
        try:
            response = self.client_factory(None).auth.sign_up({
                'email': email,
                'password': password,
                'options': {'data': metadata or {}}
            })
        except AuthApiError as e:
            if 'already' in e.message.lower():
                raise ConflictError('User already registered')
            raise ValidationError(e.message)

        if not response.user:
            raise BackendError('Sign up did not return a user')
        return AuthUser(id=response.user.id, email=response.user.email,
                        metadata=metadata or {})

    def sign_in(self, email, password):
        try:
            response = self.client_factory(None).auth.sign_in_with_password({
                'email': email,
                'password': password
            })
        except AuthApiError as e:
            raise AuthenticationError(e.message)

        if not response.user or not response.session:
            raise AuthenticationError('Invalid login credentials')
        return AuthUser(
            id=response.user.id,
            email=response.user.email,
            access_token=response.session.access_token,
            metadata=response.user.user_metadata or {}
        )

    def get_user(self, access_token: Optional[str]):
        if not access_token:
            return None
        try:
            response = self.client.auth.get_user(access_token)
        except AuthApiError as e:
            self.logger.warning(f"Access token rejected: {e.message}")
            return None

        if not response or not response.user:
            return None
        return AuthUser(
            id=response.user.id,
            email=response.user.email,
            access_token=access_token,
            metadata=response.user.user_metadata or {}
        )

    def sign_out(self, access_token):
        """Revoke the sessions of the user owning ``access_token`` (needs the service key)."""
        if not access_token:
            return
        try:
            self.client_factory(None).auth.admin.sign_out(access_token)
        except AuthApiError as e:
            self.logger.warning(f"Sign out failed: {e.message}")
