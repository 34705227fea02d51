from __future__ import annotations

from sqlalchemy import delete, func, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from .config import HOST_PORT_RANGE_START
from .models import EnvFile, Environment, PortMapping, Project, Setting


def is_host_port_unique_violation(error: IntegrityError) -> bool:
    text = f"{error}".lower()
    if error.orig is not None:
        text += f" {error.orig}".lower()
    return "port_mappings.host_port" in text or "port_mappings_host_port_key" in text or "(host_port)" in text


def is_hostname_unique_violation(error: IntegrityError) -> bool:
    text = f"{error}".lower()
    if error.orig is not None:
        text += f" {error.orig}".lower()
    return "port_mappings.hostname" in text or "port_mappings_hostname_key" in text or "(hostname)" in text


def is_environment_name_unique_violation(error: IntegrityError) -> bool:
    text = f"{error}".lower()
    if error.orig is not None:
        text += f" {error.orig}".lower()
    return "environments.name" in text or "environments_name_key" in text


# Projects

async def get_project_by_name(db: AsyncSession, name: str) -> Project | None:
    result = await db.execute(select(Project).where(Project.name == name))
    return result.scalars().first()


async def get_or_create_project(db: AsyncSession, name: str, repo_path: str) -> tuple[Project, bool]:
    project = await get_project_by_name(db, name)
    if project is not None:
        return project, False

    project = Project(name=name, repo_path=repo_path)
    db.add(project)
    try:
        await db.commit()
    except IntegrityError:
        # Lost an insert race against another caller for the same repo.
        await db.rollback()
        existing = await get_project_by_name(db, name)
        if existing is None:
            raise
        return existing, False
    await db.refresh(project)
    return project, True


async def list_projects_with_environments(db: AsyncSession) -> list[Project]:
    result = await db.execute(
        select(Project)
        .options(selectinload(Project.environments).selectinload(Environment.port_mappings))
        .order_by(Project.name)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# Environments

async def get_environment_by_name(db: AsyncSession, name: str) -> Environment | None:
    result = await db.execute(
        select(Environment)
        .options(
            selectinload(Environment.project),
            selectinload(Environment.port_mappings),
            selectinload(Environment.env_files),
        )
        .where(Environment.name == name)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def insert_environment(
    db: AsyncSession,
    project_id: int,
    name: str,
    branch: str,
    worktree_path: str | None = None,
    runtime_config: str | None = None,
) -> Environment:
    environment = Environment(
        project_id=project_id,
        name=name,
        branch=branch,
        worktree_path=worktree_path,
        runtime_config=runtime_config,
    )
    db.add(environment)
    await db.commit()
    return await get_environment_by_name(db, name)


async def update_environment_status(db: AsyncSession, environment_id: int, status: str) -> None:
    await db.execute(
        update(Environment)
        .where(Environment.id == environment_id)
        .values(status=status, updated_at=func.now())
    )
    await db.commit()


async def update_environment_container(db: AsyncSession, environment_id: int, container_id: str) -> None:
    await db.execute(
        update(Environment)
        .where(Environment.id == environment_id)
        .values(container_id=container_id, updated_at=func.now())
    )
    await db.commit()


async def delete_environment(db: AsyncSession, environment_id: int) -> None:
    await db.execute(delete(Environment).where(Environment.id == environment_id))
    await db.commit()


# Env files

async def upsert_env_file(db: AsyncSession, environment_id: int, relative_path: str, content: str) -> None:
    stmt = sqlite_insert(EnvFile).values(
        environment_id=environment_id,
        relative_path=relative_path,
        content=content,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[EnvFile.environment_id, EnvFile.relative_path],
        set_={"content": stmt.excluded.content},
    )
    await db.execute(stmt)
    await db.commit()


async def get_env_files(db: AsyncSession, environment_id: int) -> list[EnvFile]:
    result = await db.execute(
        select(EnvFile)
        .where(EnvFile.environment_id == environment_id)
        .order_by(EnvFile.relative_path)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def delete_env_files(db: AsyncSession, environment_id: int) -> None:
    await db.execute(delete(EnvFile).where(EnvFile.environment_id == environment_id))
    await db.commit()


# Port mappings

async def insert_port_mapping(
    db: AsyncSession,
    environment_id: int,
    container_port: int,
    host_port: int,
    hostname: str,
) -> PortMapping:
    mapping = PortMapping(
        environment_id=environment_id,
        container_port=container_port,
        host_port=host_port,
        hostname=hostname,
    )
    db.add(mapping)
    await db.commit()
    return mapping


async def get_port_mappings(db: AsyncSession, environment_id: int) -> list[PortMapping]:
    result = await db.execute(
        select(PortMapping)
        .where(PortMapping.environment_id == environment_id)
        .order_by(PortMapping.container_port)
    )
    return list(result.scalars().all())


async def delete_port_mappings(db: AsyncSession, environment_id: int) -> None:
    await db.execute(delete(PortMapping).where(PortMapping.environment_id == environment_id))
    await db.commit()


async def get_next_available_host_port(db: AsyncSession) -> int:
    result = await db.execute(select(func.max(PortMapping.host_port)))
    max_port = result.scalar()
    return max_port + 1 if max_port else HOST_PORT_RANGE_START


async def list_settings(db: AsyncSession) -> list[Setting]:
    result = await db.execute(select(Setting).order_by(Setting.key))
    return list(result.scalars().all())


async def get_setting(db: AsyncSession, key: str) -> Setting | None:
    result = await db.execute(select(Setting).where(Setting.key == key))
    return result.scalars().first()


async def set_setting(db: AsyncSession, key: str, value: str) -> Setting:
    setting = await get_setting(db, key)
    if setting is None:
        setting = Setting(key=key, value=value)
        db.add(setting)
    else:
        setting.value = value
    await db.commit()
    await db.refresh(setting)
    return setting


async def delete_setting(db: AsyncSession, key: str) -> bool:
    result = await db.execute(delete(Setting).where(Setting.key == key))
    await db.commit()
    return bool(result.rowcount)
