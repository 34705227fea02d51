import pytest

from devenv.core.envfiles import discover_env_files, parse_env_content, set_env_value, split_assignment
from devenv.core.errors import ValidationError


def test_discover_env_files_respects_depth_and_exclusions(tmp_path):
    files = {
        ".env": "ROOT=1",
        ".env.local": "LOCAL=1",
        "apps/api/.env": "API=1",
        "apps/api/deep/.env": "TOO_DEEP=1",
        "node_modules/pkg/.env": "SKIP=1",
        ".devenv/worktrees/main/.env": "SKIP=1",
        "apps/.envrc.bak/readme": "not env",
        "apps/environment.txt": "not env",
    }
    for relative_path, content in files.items():
        target = tmp_path / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)

    discovered = discover_env_files(tmp_path)

    assert [(item.relative_path, item.content) for item in discovered] == [
        (".env", "ROOT=1"),
        (".env.local", "LOCAL=1"),
        ("apps/api/.env", "API=1"),
    ]


def test_parse_env_content():
    content = "# comment\nA=1\n\n  B = spaced\nURL=http://x?a=b\nnot-an-assignment\n"
    assert parse_env_content(content) == {"A": "1", "B ": " spaced", "URL": "http://x?a=b"}


def test_split_assignment():
    assert split_assignment("KEY=VALUE") == ("KEY", "VALUE")
    assert split_assignment("KEY=") == ("KEY", "")
    with pytest.raises(ValidationError):
        split_assignment("KEY")
    with pytest.raises(ValidationError):
        split_assignment("=VALUE")


def test_set_env_value_replaces_or_appends():
    assert set_env_value("A=1\nB=2\n", "B", "3") == "A=1\nB=3\n"
    assert set_env_value("A=1", "B", "2") == "A=1\nB=2\n"
    assert set_env_value("", "A", "1") == "A=1\n"
