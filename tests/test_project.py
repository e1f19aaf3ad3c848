"""
Unit tests for project directory discovery and creation.
"""

import json

import pytest

from core.errors import ProjectDirectoryError
from core.sync.hashing import shorten_id
from core.workspace.project import (
    find_or_create_project_dir,
    find_project_dir,
    get_project_hash_from_cwd,
    to_dir_name,
    to_package_name,
)

PROJECT_ID = "a1b2c3d4e5f60718293a4b5c6d7e8f90"


class TestNames:

    def test_to_package_name(self):
        assert to_package_name("Hello World!") == "hello-world"
        assert to_package_name("--My__App--") == "my-app"

    def test_to_dir_name(self):
        assert to_dir_name("Hello World!") == "Hello World"
        assert to_dir_name("a/b:c") == "a-b-c"


class TestFindOrCreateProjectDir:
    """Test lookup order and creation"""

    def test_creates_new_directory(self, tmp_path):
        result = find_or_create_project_dir(PROJECT_ID, "My App", base_dir=tmp_path)

        assert result.created is True
        assert result.directory == tmp_path.resolve() / "My App"
        assert result.files_dir.is_dir()

        package = json.loads((result.directory / "package.json").read_text())
        assert package == {
            "name": "my-app",
            "version": "1.0.0",
            "private": True,
            "shortProjectHash": shorten_id(PROJECT_ID),
            "projectName": "My App",
        }

    def test_finds_existing_directory(self, tmp_path):
        created = find_or_create_project_dir(PROJECT_ID, "My App", base_dir=tmp_path)
        found = find_or_create_project_dir(PROJECT_ID, base_dir=tmp_path)

        assert found.created is False
        assert found.directory == created.directory

    def test_base_dir_itself_matches(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({"shortProjectHash": shorten_id(PROJECT_ID)}))
        assert find_or_create_project_dir(PROJECT_ID, base_dir=tmp_path).directory == tmp_path.resolve()

    def test_name_collision_appends_short_id(self, tmp_path):
        (tmp_path / "My App").mkdir()
        result = find_or_create_project_dir(PROJECT_ID, "My App", base_dir=tmp_path)
        assert result.directory.name == f"My App-{shorten_id(PROJECT_ID)}"

    def test_explicit_directory(self, tmp_path):
        target = tmp_path / "chosen"
        result = find_or_create_project_dir(PROJECT_ID, explicit_dir=target, base_dir=tmp_path)

        assert result.directory == target.resolve()
        assert result.created is True
        assert (target / "files").is_dir()

    def test_missing_name_raises(self, tmp_path):
        with pytest.raises(ProjectDirectoryError):
            find_or_create_project_dir(PROJECT_ID, base_dir=tmp_path)


class TestLookups:

    def test_find_project_dir(self, tmp_path):
        assert find_project_dir(PROJECT_ID, tmp_path) is None
        created = find_or_create_project_dir(PROJECT_ID, "Demo", base_dir=tmp_path)
        assert find_project_dir(PROJECT_ID, tmp_path) == created.directory

    def test_short_id_finds_same_directory(self, tmp_path):
        created = find_or_create_project_dir(PROJECT_ID, "Demo", base_dir=tmp_path)
        assert find_project_dir(shorten_id(PROJECT_ID), tmp_path) == created.directory

    def test_hash_from_cwd(self, tmp_path):
        assert get_project_hash_from_cwd(tmp_path) is None
        (tmp_path / "package.json").write_text(json.dumps({"shortProjectHash": "abcdefgh"}))
        assert get_project_hash_from_cwd(tmp_path) == "abcdefgh"

    def test_hash_from_corrupt_package_json(self, tmp_path):
        (tmp_path / "package.json").write_text("{nope")
        assert get_project_hash_from_cwd(tmp_path) is None
