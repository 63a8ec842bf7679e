"""
Authentication Manager Module - Rollcall QR Attendance

This module handles registration, sign-in and role checks. Credentials and
access tokens belong to the backend's auth service; this module keeps the
public ``profiles`` row in step with the auth user and answers "who is
calling and what may they do".

Features:
- Registration with profile creation
- Sign-in with role-based dashboard routing
- Current user lookup from an access token
- Role checks for teacher and student actions
- Recovery of a missing profile row
"""

import logging
import re
from typing import Any, Dict, Optional, Tuple

from rollcall.modules.errors import (
    AuthenticationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from rollcall.modules.models import ROLE_TEACHER, ROLES, AuthUser, Profile

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'

RECOVERED_PROFILE_NAME = 'Teacher (Recovered)'

DASHBOARDS = {
    'teacher': '/dashboard/teacher',
    'student': '/dashboard/student'
}


class AuthManager:
    """
    Authentication and authorization for teachers and students.
    """

    def __init__(self, backend, password_min_length: int = 6):
        """
        Initialize the authentication manager.

        Args:
            backend: Store and auth collaborator
            password_min_length (int): Minimum accepted password length
        """
        self.db = backend
        self.logger = logging.getLogger(__name__)

        self.security_config = {
            'password_min_length': password_min_length,
            'password_require_letters': False,
            'password_require_numbers': False
        }

    def register(self, email: str, password: str, full_name: str,
                 role: str = 'student') -> Profile:
        """
        Create an auth user and its public profile.

        Args:
            email (str): Email address
            password (str): Password
            full_name (str): Display name
            role (str): 'student' or 'teacher'

        Returns:
            Profile: The created profile
        """
        email = (email or '').strip().lower()
        full_name = (full_name or '').strip()
        self._validate_registration(email, password, full_name, role)

        user = self.db.sign_up(email, password, {'full_name': full_name, 'role': role})

        row = self.db.insert('profiles', {
            'id': user.id,
            'email': email,
            'full_name': full_name,
            'role': role
        })

        self.logger.info(f"Registered {role} account: {email}")
        return Profile.from_row(row)

    def sign_in(self, email: str, password: str) -> Tuple[AuthUser, Optional[Profile]]:
        """
        Sign in and load the caller's profile.

        Returns:
            Tuple[AuthUser, Optional[Profile]]: The signed-in user and the
            profile, which is None when the profile row is missing
        """
        email = (email or '').strip().lower()
        if not email or not password:
            raise ValidationError('Please provide both email and password.')

        try:
            user = self.db.sign_in(email, password)
        except AuthenticationError:
            self.logger.warning(f"Failed login attempt for {email}")
            raise

        row = self.db.scoped(user.access_token).select_one('profiles', {'id': user.id})
        profile = Profile.from_row(row) if row else None
        self.logger.info(f"User {email} logged in successfully")
        return user, profile

    @staticmethod
    def dashboard_for(profile: Optional[Profile]) -> str:
        """Teachers go to the teacher dashboard; everyone else to the student one."""
        if profile is not None and profile.role == ROLE_TEACHER:
            return DASHBOARDS['teacher']
        return DASHBOARDS['student']

    def get_current_user(self, access_token: Optional[str]) -> AuthUser:
        user = self.db.get_user(access_token) if access_token else None
        if user is None:
            raise AuthenticationError()
        return user

    def get_profile(self, user_id: str) -> Profile:
        profile = self._find_profile(user_id)
        if profile is None:
            raise NotFoundError('Profile not found. Use the account repair page to restore it.')
        return profile

    def get_current_profile(self, access_token: Optional[str]) -> Profile:
        user = self.get_current_user(access_token)
        return self.get_profile(user.id)

    def require_role(self, access_token: Optional[str], role: str) -> Profile:
        """
        Return the caller's profile if it has the given role.

        Raises:
            AuthenticationError: No active user
            PermissionDeniedError: The profile has another role
        """
        profile = self.get_current_profile(access_token)
        if profile.role != role:
            self.logger.warning(f"User {profile.id} ({profile.role}) denied {role} action")
            raise PermissionDeniedError(f'This action is only available to {role}s.')
        return profile

    def repair_profile(self, access_token: Optional[str]) -> Dict[str, Any]:
        """
        Recreate a missing profile row for the signed-in user.

        Returns:
            Dict[str, Any]: ``created`` tells whether a row was written
        """
        user = self.get_current_user(access_token)

        existing = self._find_profile(user.id)
        if existing is not None:
            return {
                'created': False,
                'profile': existing,
                'message': 'Your profile already exists! You are good to go.'
            }

        row = self.db.insert('profiles', {
            'id': user.id,
            'email': user.email,
            'full_name': RECOVERED_PROFILE_NAME,
            'role': ROLE_TEACHER
        })
        self.logger.warning(f"Recovered missing profile for user {user.id}")
        return {
            'created': True,
            'profile': Profile.from_row(row),
            'message': 'Success! Your missing profile has been created.'
        }

    def sign_out(self, access_token: Optional[str]) -> None:
        if access_token:
            self.db.sign_out(access_token)

    def _find_profile(self, user_id: str) -> Optional[Profile]:
        row = self.db.select_one('profiles', {'id': user_id})
        return Profile.from_row(row) if row else None

    def _validate_registration(self, email: str, password: str,
                               full_name: str, role: str) -> None:
        if not full_name:
            raise ValidationError('Full name is required')

        if not re.match(EMAIL_PATTERN, email):
            raise ValidationError('Invalid email address format')

        if role not in ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(ROLES)}")

        self._validate_password(password)

    def _validate_password(self, password: str) -> None:
        if not password:
            raise ValidationError('Password is required')

        min_length = self.security_config['password_min_length']
        if len(password) < min_length:
            raise ValidationError(f'Password must be at least {min_length} characters long')

        if self.security_config['password_require_letters'] and not re.search(r'[A-Za-z]', password):
            raise ValidationError('Password must contain at least one letter')

        if self.security_config['password_require_numbers'] and not re.search(r'\d', password):
            raise ValidationError('Password must contain at least one number')
