"""Global key/value settings shared by the CLI and the API."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Setting
from .. import store
from .errors import NotFoundError, ValidationError

MAX_SETTING_KEY_LENGTH = 100


def validate_setting_key(key: str) -> str:
    if not isinstance(key, str) or not key.strip() or key != key.strip():
        raise ValidationError("Setting key must be a non-empty trimmed string", code="invalid_setting_key")
    if len(key) > MAX_SETTING_KEY_LENGTH:
        raise ValidationError(
            f"Setting key must be at most {MAX_SETTING_KEY_LENGTH} characters",
            code="invalid_setting_key",
        )
    return key


async def read_setting(db: AsyncSession, key: str) -> Setting:
    setting = await store.get_setting(db, validate_setting_key(key))
    if setting is None:
        raise NotFoundError(f"Setting not found: {key}", code="setting_not_found")
    return setting


async def write_setting(db: AsyncSession, key: str, value: str) -> Setting:
    return await store.set_setting(db, validate_setting_key(key), value)


async def remove_setting(db: AsyncSession, key: str) -> bool:
    return await store.delete_setting(db, validate_setting_key(key))
