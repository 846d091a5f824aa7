import os

import pytest

from mcpanel import paths
from mcpanel.errors import ContainmentError, InvalidArgument


@pytest.mark.parametrize("rel", [
    "..",
    "../other",
    "plugins/../../other",
    "..\\..\\etc\\passwd",
    "a/b/../../../x",
])
def test_escaping_paths_are_rejected(tmp_path, rel):
    root = tmp_path / "root"
    root.mkdir()
    with pytest.raises(ContainmentError):
        paths.resolve(str(root), rel)


def test_sibling_with_common_prefix_is_outside(tmp_path):
    root = tmp_path / "root"
    evil = tmp_path / "root-evil"
    root.mkdir()
    evil.mkdir()
    assert not paths.is_within(str(root), str(evil))
    with pytest.raises(ContainmentError):
        paths.resolve(str(root), "../root-evil/x")


def test_leading_separator_is_relative_to_root(tmp_path):
    root = str(tmp_path)
    assert paths.resolve(root, "/plugins") == os.path.join(root, "plugins")
    assert paths.resolve(root, "\\plugins\\a.jar") == os.path.join(root, "plugins", "a.jar")


def test_empty_and_dot_resolve_to_root(tmp_path):
    root = str(tmp_path)
    for rel in (None, "", ".", "/", "plugins/.."):
        assert paths.resolve(root, rel) == root


def test_normalization_is_idempotent(tmp_path):
    root = str(tmp_path)
    for rel in ("a//b/./c", "/x/../y", "plugins\\cfg", "logs/"):
        once = paths.normalize_relative(rel)
        assert paths.normalize_relative(once) == once
        assert paths.resolve(root, once) == paths.resolve(root, rel)


def test_null_byte_is_rejected(tmp_path):
    with pytest.raises(ContainmentError):
        paths.resolve(str(tmp_path), "server.properties\0.txt")


def test_symlink_escape_rejected_in_strict_mode(tmp_path):
    root = tmp_path / "root"
    outside = tmp_path / "outside"
    root.mkdir()
    outside.mkdir()
    (outside / "secret.txt").write_text("x")
    os.symlink(outside, root / "link")

    with pytest.raises(ContainmentError):
        paths.resolve(str(root), "link/secret.txt")
    assert paths.resolve(str(root), "link/secret.txt", strict=False) == str(root / "link" / "secret.txt")


def test_leaf_symlink_is_kept_when_not_following(tmp_path):
    root = tmp_path / "root"
    outside = tmp_path / "outside"
    root.mkdir()
    outside.mkdir()
    os.symlink(outside, root / "link")

    with pytest.raises(ContainmentError):
        paths.resolve(str(root), "link")
    assert paths.resolve(str(root), "link", follow_leaf=False) == str(root / "link")
    with pytest.raises(ContainmentError):
        paths.resolve(str(root), "link/secret.txt", follow_leaf=False)


def test_join_skips_empty_fragments():
    assert paths.join("", "plugins", "a.jar") == "plugins/a.jar"
    assert paths.join("/logs/", None, "server.log") == "logs/server.log"
    assert paths.join("", "") == ""


@pytest.mark.parametrize("name", ["", "  ", ".", "..", "a/b", "a\\b", "a\0b"])
def test_invalid_names(name):
    with pytest.raises(InvalidArgument):
        paths.validate_name(name)


def test_valid_name_is_stripped():
    assert paths.validate_name(" world_nether ") == "world_nether"
