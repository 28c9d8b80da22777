"""Shared request dependencies for the box routes."""

from __future__ import annotations

from fastapi import Header

from ..errors import ValidationFailedError


async def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity, set by the authenticating proxy in front of us."""
    user_id = (x_user_id or '').strip()
    if not user_id:
        raise ValidationFailedError('X-User-Id header is required')
    return user_id
