"""
Unit tests for authentication and role permissions.
"""

from datetime import timedelta

import pytest
from fastapi import HTTPException
from jose import jwt

from visitqueue.api.auth import (
    AuthenticatedUser,
    can_perform,
    create_access_token,
    decode_token,
    require_permission,
)
from visitqueue.config import get_settings
from visitqueue.constants import Permission, Role


class TestAuth:
    """Tests for authentication utilities."""

    def test_create_access_token(self):
        """Test JWT token creation."""
        token = create_access_token(subject="patient-1")

        assert isinstance(token, str)
        assert len(token) > 0

    def test_decode_valid_token(self):
        """Test decoding a valid token."""
        token = create_access_token(subject="nurse-1", role=Role.OPERATOR)

        token_data = decode_token(token)

        assert token_data.subject == "nurse-1"
        assert token_data.role == Role.OPERATOR
        assert token_data.exp is not None

    def test_role_defaults_to_consumer(self):
        settings = get_settings()
        token = jwt.encode(
            {"sub": "patient-1", "exp": 4102444800},
            settings.api_secret_key,
            algorithm=settings.api_algorithm,
        )

        assert decode_token(token).role == Role.CONSUMER

    def test_decode_expired_token(self):
        """Test decoding an expired token raises error."""
        token = create_access_token(
            subject="patient-1",
            expires_delta=timedelta(hours=-1),
        )

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)

        assert exc_info.value.status_code == 401

    def test_decode_invalid_token(self):
        """Test decoding an invalid token raises error."""
        with pytest.raises(HTTPException) as exc_info:
            decode_token("invalid-token")

        assert exc_info.value.status_code == 401

    def test_missing_subject(self):
        settings = get_settings()
        token = jwt.encode(
            {"role": "admin", "exp": 4102444800},
            settings.api_secret_key,
            algorithm=settings.api_algorithm,
        )

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)

        assert exc_info.value.status_code == 401

    def test_unknown_role_rejected(self):
        settings = get_settings()
        token = jwt.encode(
            {"sub": "someone", "role": "superuser", "exp": 4102444800},
            settings.api_secret_key,
            algorithm=settings.api_algorithm,
        )

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)

        assert exc_info.value.status_code == 401


class TestPermissions:
    """Tests for the role permission table."""

    @pytest.mark.parametrize(
        ("role", "permission", "allowed"),
        [
            (Role.CONSUMER, Permission.JOIN_QUEUE, True),
            (Role.CONSUMER, Permission.CANCEL_OWN, True),
            (Role.CONSUMER, Permission.CANCEL_ANY, False),
            (Role.CONSUMER, Permission.ADVANCE, False),
            (Role.CONSUMER, Permission.VIEW_STATS, False),
            (Role.OPERATOR, Permission.ADVANCE, True),
            (Role.OPERATOR, Permission.COMPLETE, True),
            (Role.OPERATOR, Permission.SKIP, True),
            (Role.OPERATOR, Permission.TOGGLE_ACCEPTING, True),
            (Role.OPERATOR, Permission.CANCEL_ANY, True),
            (Role.OPERATOR, Permission.JOIN_QUEUE, False),
            (Role.ADMIN, Permission.JOIN_QUEUE, True),
            (Role.ADMIN, Permission.VIEW_STATS, True),
        ],
    )
    def test_can_perform(self, role: Role, permission: Permission, allowed: bool):
        assert can_perform(role, permission) is allowed

    async def test_require_permission_rejects(self):
        dependency = require_permission(Permission.ADVANCE)

        with pytest.raises(HTTPException) as exc_info:
            await dependency(AuthenticatedUser(subject="patient-1", role=Role.CONSUMER))

        assert exc_info.value.status_code == 403

    async def test_require_permission_passes_user_through(self):
        dependency = require_permission(Permission.ADVANCE)
        user = AuthenticatedUser(subject="nurse-1", role=Role.OPERATOR)

        assert await dependency(user) is user
