"""
Tests for path normalization, sanitization and remote name resolution.
"""

from pathlib import Path

import pytest

from core.errors import SanitizationError
from core.sync.paths import (
    canonical_file_name,
    ensure_extension,
    file_key_for_lookup,
    is_supported_extension,
    normalize_path,
    resolve_remote_reference,
    sanitize_file_name,
    sanitize_file_path,
    strip_extension,
)


class TestNormalizePath:
    """Test filesystem-free path canonicalization"""

    @pytest.mark.parametrize("raw, expected", [
        ("a/../b", "b"),
        ("a/b/../../c", "c"),
        ("/x/./y/", "/x/y"),
        ("a\\b\\c.tsx", "a/b/c.tsx"),
        ("../a.tsx", "a.tsx"),
        ("./a//b.tsx", "a/b.tsx"),
        ("", ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_path(raw) == expected

    @pytest.mark.parametrize("raw", ["a/../b", "/x/./y/", "../../z", "dir\\f.ts"])
    def test_idempotent(self, raw):
        once = normalize_path(raw)
        assert normalize_path(once) == once


class TestExtensions:
    """Test supported extension handling"""

    @pytest.mark.parametrize("name", ["a.ts", "a.tsx", "a.js", "a.jsx", "a.json", "A.TSX"])
    def test_supported(self, name):
        assert is_supported_extension(name)

    @pytest.mark.parametrize("name", ["a.txt", "a.css", "a", "a.tsx.bak"])
    def test_unsupported(self, name):
        assert not is_supported_extension(name)

    def test_ensure_extension(self):
        assert ensure_extension("Button") == "Button.tsx"
        assert ensure_extension("util.ts") == "util.ts"

    def test_strip_extension(self):
        assert strip_extension("dir/App.tsx") == "dir/App"
        assert strip_extension("data.json") == "data.json"


class TestSanitize:
    """Test sanitization of file and directory names"""

    def test_invalid_characters_replaced(self):
        assert sanitize_file_path("bad name!.tsx", capitalize=False).path == "bad_name_.tsx"

    def test_component_names_capitalized(self):
        result = sanitize_file_path("button.tsx")
        assert result.path == "Button.tsx"
        assert result.name == "Button"
        assert result.extension == "tsx"

    def test_non_component_keeps_case(self):
        assert sanitize_file_path("utils.ts").path == "utils.ts"

    def test_leading_digit_gets_prefix(self):
        assert sanitize_file_path("1abc.ts").path == "$1abc.ts"

    def test_directory_segments_sanitized(self):
        result = sanitize_file_path("my dir/sub-dir/file.ts")
        assert result.dir_name == "my_dir/sub_dir"
        assert result.path == "my_dir/sub_dir/file.ts"

    def test_dot_only_directories_dropped(self):
        assert sanitize_file_path("../file.ts").path == "file.ts"

    def test_empty_name_raises(self):
        with pytest.raises(SanitizationError):
            sanitize_file_path("dir/   ")

    def test_sanitize_file_name_flattens_slashes(self):
        assert sanitize_file_name("bad name!.tsx") == "bad_name_.tsx"
        assert sanitize_file_name("a/b.ts") == "a_b.ts"

    def test_valid_name_unchanged(self):
        assert sanitize_file_path("components/Header.tsx").path == "components/Header.tsx"


class TestCanonicalNames:
    """Test identity keys used for tracker and metadata lookups"""

    @pytest.mark.parametrize("spelling", ["./a.tsx", "/a.tsx", "b/../a.tsx", "a.tsx"])
    def test_spellings_collapse(self, spelling):
        assert canonical_file_name(spelling) == "a.tsx"

    def test_lookup_key_is_case_insensitive(self):
        assert file_key_for_lookup("Dir/App.tsx") == "dir/app.tsx"


class TestResolveRemoteReference:
    """Test resolution of names received from the remote side"""

    def test_default_extension(self, tmp_path):
        ref = resolve_remote_reference(tmp_path, "Button")
        assert ref.relative_path == "Button.tsx"
        assert ref.absolute_path == tmp_path / "Button.tsx"
        assert ref.extension == "tsx"

    def test_whitespace_trimmed(self, tmp_path):
        assert resolve_remote_reference(tmp_path, "  util.ts  ").relative_path == "util.ts"

    def test_nested_path(self, tmp_path):
        ref = resolve_remote_reference(tmp_path, "components/Card.tsx")
        assert ref.absolute_path == tmp_path / "components" / "Card.tsx"

    @pytest.mark.parametrize("raw", ["../../etc/passwd", "/../../x.ts", "a/../../../b.tsx", "..\\..\\c.js"])
    def test_never_escapes_files_dir(self, tmp_path, raw):
        ref = resolve_remote_reference(tmp_path, raw)
        assert ref.absolute_path.resolve().is_relative_to(tmp_path.resolve())
        assert not ref.relative_path.startswith("/")
        assert ".." not in Path(ref.relative_path).parts
