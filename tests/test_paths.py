from __future__ import annotations

from pathlib import Path

import pytest

from imagejobs_cli.errors import InvalidInputError
from imagejobs_cli.gen.paths import display_path, numbered_path, resolve_input_path, resolve_output_path, unique_path


class TestResolveOutputPath:
    def test_relative_goes_under_base(self, tmp_path: Path) -> None:
        path = resolve_output_path("sub/dir/a.png", tmp_path)
        assert path == (tmp_path / "sub" / "dir" / "a.png").resolve()
        assert path.parent.is_dir()

    def test_absolute_is_kept(self, tmp_path: Path) -> None:
        target = tmp_path / "elsewhere" / "a.png"
        assert resolve_output_path(target, tmp_path / "base") == target
        assert target.parent.is_dir()

    def test_traversal_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(InvalidInputError):
            resolve_output_path("../outside.png", tmp_path / "base")


class TestUniquePath:
    def test_free_path_unchanged(self, tmp_path: Path) -> None:
        assert unique_path(tmp_path / "a.png") == tmp_path / "a.png"

    def test_suffix_added_on_collision(self, tmp_path: Path) -> None:
        (tmp_path / "a.png").write_bytes(b"x")
        (tmp_path / "a-1.png").write_bytes(b"x")
        assert unique_path(tmp_path / "a.png") == tmp_path / "a-2.png"

    def test_numbered_collisions_checked_for_samples(self, tmp_path: Path) -> None:
        (tmp_path / "a_2.png").write_bytes(b"x")
        assert unique_path(tmp_path / "a.png", sample_count=3) == tmp_path / "a-1.png"


def test_numbered_path() -> None:
    assert numbered_path(Path("/x/out.png"), 2) == Path("/x/out_2.png")


def test_resolve_input_path_missing(tmp_path: Path) -> None:
    with pytest.raises(InvalidInputError):
        resolve_input_path(tmp_path / "missing.png")


def test_display_path_uses_tilde() -> None:
    assert display_path(Path.home() / "pics" / "a.png") == "~/pics/a.png"
    assert display_path("/not/home/a.png") == "/not/home/a.png"
