"""Tests for manifest parsing and the slice stack."""

import pytest

from histostack.contracts import ConfigurationError
from histostack.project.manifest import (
    Slice,
    SliceStack,
    format_manifest,
    parse_manifest,
    read_manifest,
    write_manifest,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def slide_files(temp_dir):
    paths = []
    for name in ("a.nii.gz", "b.nii.gz", "c.nii.gz"):
        p = temp_dir / name
        p.touch()
        paths.append(p.resolve())
    return paths


class TestParseManifest:

    def test_parses_lines(self, slide_files):
        lines = [f"s1 0.5 {slide_files[0]}", f"s2 -1 {slide_files[1]}"]
        stack = parse_manifest(lines)

        assert len(stack) == 2
        assert stack[0] == Slice("s1", slide_files[0], 0.5)
        assert stack[1].z_position == -1.0

    def test_skips_blank_and_comment_lines(self, slide_files):
        lines = ["# header", "", f"s1 0 {slide_files[0]}", "   "]
        assert len(parse_manifest(lines)) == 1

    def test_path_with_spaces(self, temp_dir):
        p = temp_dir / "my slide.nii.gz"
        p.touch()
        stack = parse_manifest([f"s1 0 {p}"])
        assert stack[0].raw_path == p.resolve()

    def test_relative_path_uses_base_dir(self, temp_dir, slide_files):
        stack = parse_manifest(["s1 0 a.nii.gz"], base_dir=temp_dir)
        assert stack[0].raw_path == slide_files[0]

    def test_missing_field_is_error(self, slide_files):
        with pytest.raises(ConfigurationError, match="m.txt:1"):
            parse_manifest(["s1 0"], source="m.txt")

    def test_bad_z_is_error(self, slide_files):
        with pytest.raises(ConfigurationError, match="'abc'.*'s1'"):
            parse_manifest([f"s1 abc {slide_files[0]}"])

    def test_missing_file_is_error(self, temp_dir):
        with pytest.raises(ConfigurationError, match="not found"):
            parse_manifest([f"s1 0 {temp_dir / 'nope.nii.gz'}"])

    def test_duplicate_id_is_error(self, slide_files):
        lines = [f"s1 0 {slide_files[0]}", f"s1 1 {slide_files[1]}"]
        with pytest.raises(ConfigurationError, match="Duplicate"):
            parse_manifest(lines)


class TestRoundTrip:

    def test_write_then_read_identical(self, temp_dir, slide_files):
        stack = SliceStack([
            Slice("s2", slide_files[1], 0.1 + 0.2),
            Slice("s1", slide_files[0], -3.25),
            Slice("s3", slide_files[2], 1e-7),
        ])
        path = temp_dir / "config" / "manifest.txt"
        write_manifest(path, stack)

        assert read_manifest(path) == stack

    def test_format_is_one_line_per_slice(self, slide_files):
        stack = SliceStack([Slice("s1", slide_files[0], 2.0)])
        assert format_manifest(stack) == f"s1 2.0 {slide_files[0]}\n"

    def test_read_missing_manifest(self, temp_dir):
        with pytest.raises(ConfigurationError, match="Manifest not found"):
            read_manifest(temp_dir / "missing.txt")


class TestSliceStack:

    def test_sorted_order_breaks_ties_by_id(self, slide_files):
        stack = SliceStack([
            Slice("b", slide_files[0], 1.0),
            Slice("a", slide_files[1], 1.0),
            Slice("c", slide_files[2], 0.0),
        ])
        assert stack.sorted_indices == [2, 1, 0]

    def test_z_neighbors(self, slide_files):
        stack = SliceStack([
            Slice("b", slide_files[0], 5.0),
            Slice("a", slide_files[1], 0.0),
            Slice("c", slide_files[2], 1.0),
        ])
        assert stack.z_neighbors(1) == [2]          # lowest z
        assert stack.z_neighbors(2) == [1, 0]       # middle
        assert stack.z_neighbors(0) == [2]          # highest z

    def test_index_of(self, slide_files):
        stack = SliceStack([Slice("a", slide_files[0], 0.0)])
        assert stack.index_of("a") == 0
        with pytest.raises(ConfigurationError, match="Unknown slice id"):
            stack.index_of("zz")
