import asyncio

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import open_session
from devenv import store


def test_get_or_create_project_is_idempotent(database_url):
    async def scenario():
        async with open_session(database_url) as session:
            project, created = await store.get_or_create_project(session, "demo", "/repos/demo")
            again, created_again = await store.get_or_create_project(session, "demo", "/elsewhere/demo")
            assert created is True
            assert created_again is False
            assert again.id == project.id
            assert again.repo_path == "/repos/demo"
            assert project.status == "active"

    asyncio.run(scenario())


def test_environment_lifecycle_columns(database_url):
    async def scenario():
        async with open_session(database_url) as session:
            project, _ = await store.get_or_create_project(session, "demo", "/repos/demo")
            environment = await store.insert_environment(session, project.id, "demo-main", "main", "/wt/main")
            environment_id = environment.id
            assert environment.status == "created"
            assert environment.project.name == "demo"

            await store.update_environment_container(session, environment_id, "container-1")
            await store.update_environment_status(session, environment_id, "running")
            reloaded = await store.get_environment_by_name(session, "demo-main")
            assert reloaded.container_id == "container-1"
            assert reloaded.status == "running"

    asyncio.run(scenario())


def test_duplicate_environment_name_is_detected(database_url):
    async def scenario():
        async with open_session(database_url) as session:
            project, _ = await store.get_or_create_project(session, "demo", "/repos/demo")
            project_id = project.id
            await store.insert_environment(session, project_id, "demo-main", "main")
            with pytest.raises(IntegrityError) as exc_info:
                await store.insert_environment(session, project_id, "demo-main", "main")
            await session.rollback()
            assert store.is_environment_name_unique_violation(exc_info.value)
            assert not store.is_host_port_unique_violation(exc_info.value)

    asyncio.run(scenario())


def test_env_file_upsert_replaces_content(database_url):
    async def scenario():
        async with open_session(database_url) as session:
            project, _ = await store.get_or_create_project(session, "demo", "/repos/demo")
            environment = await store.insert_environment(session, project.id, "demo-main", "main")
            environment_id = environment.id

            await store.upsert_env_file(session, environment_id, ".env", "A=1\n")
            await store.upsert_env_file(session, environment_id, "api/.env", "B=1\n")
            await store.upsert_env_file(session, environment_id, ".env", "A=2\n")

            files = await store.get_env_files(session, environment_id)
            assert [(item.relative_path, item.content) for item in files] == [(".env", "A=2\n"), ("api/.env", "B=1\n")]

            await store.delete_env_files(session, environment_id)
            assert await store.get_env_files(session, environment_id) == []

    asyncio.run(scenario())


def test_projects_listed_with_environments_and_mappings(database_url):
    async def scenario():
        async with open_session(database_url) as session:
            beta, _ = await store.get_or_create_project(session, "beta", "/repos/beta")
            alpha, _ = await store.get_or_create_project(session, "alpha", "/repos/alpha")
            environment = await store.insert_environment(session, alpha.id, "alpha-main", "main")
            await store.insert_environment(session, beta.id, "beta-main", "main")
            await store.insert_port_mapping(session, environment.id, 3000, 49200, "alpha-main.localhost")

            projects = await store.list_projects_with_environments(session)
            assert [project.name for project in projects] == ["alpha", "beta"]
            alpha_env = projects[0].environments[0]
            assert [(m.container_port, m.host_port) for m in alpha_env.port_mappings] == [(3000, 49200)]

            await store.delete_port_mappings(session, alpha_env.id)
            assert await store.get_port_mappings(session, alpha_env.id) == []

    asyncio.run(scenario())


def test_settings_set_replace_and_delete(database_url):
    async def scenario():
        async with open_session(database_url) as session:
            assert await store.get_setting(session, "editor") is None

            await store.set_setting(session, "editor", "code")
            await store.set_setting(session, "default_branch", "main")
            updated = await store.set_setting(session, "editor", "cursor")
            assert updated.value == "cursor"
            assert [(s.key, s.value) for s in await store.list_settings(session)] == [
                ("default_branch", "main"),
                ("editor", "cursor"),
            ]

            assert await store.delete_setting(session, "editor") is True
            assert await store.delete_setting(session, "editor") is False
            assert [s.key for s in await store.list_settings(session)] == ["default_branch"]

    asyncio.run(scenario())
