from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from ..core.errors import NotFoundError
from ..core.settings import read_setting, remove_setting, write_setting
from ..database import get_db
from .. import store
from ..schemas import SettingResponse, SettingUpdate

router = APIRouter(
    prefix="/settings",
    tags=["settings"],
)


@router.get("", response_model=List[SettingResponse])
async def get_settings(db: AsyncSession = Depends(get_db)):
    return await store.list_settings(db)


@router.get("/{key}", response_model=SettingResponse)
async def get_setting(key: str, db: AsyncSession = Depends(get_db)):
    return await read_setting(db, key)


@router.put("/{key}", response_model=SettingResponse)
async def update_setting(key: str, setting_update: SettingUpdate, db: AsyncSession = Depends(get_db)):
    return await write_setting(db, key, setting_update.value)


@router.delete("/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_setting(key: str, db: AsyncSession = Depends(get_db)):
    if not await remove_setting(db, key):
        raise NotFoundError(f"Setting not found: {key}", code="setting_not_found")
