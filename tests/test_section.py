import pytest

from narrowssh.errors import CorruptSection
from narrowssh.section import DEFAULT_MARKERS, Markers, merge_section, split_section, strip_section

BEGIN = DEFAULT_MARKERS.begin
END = DEFAULT_MARKERS.end


def section(*lines):
    return BEGIN + b"\n" + b"".join(l + b"\n" for l in lines) + END + b"\n"


def test_merge_into_empty_file():
    assert merge_section(b"", ["a", "b"]) == section(b"a", b"b")


def test_merge_appends_after_foreign_lines():
    out = merge_section(b"ssh-ed25519 AAAA me\n", ["x"])
    assert out == b"ssh-ed25519 AAAA me\n" + section(b"x")


def test_missing_trailing_newline_gets_one():
    out = merge_section(b"ssh-ed25519 AAAA me", ["x"])
    assert out == b"ssh-ed25519 AAAA me\n" + section(b"x")


def test_replace_preserves_prefix_and_suffix_bytes():
    prefix = b"# mine\r\nssh-rsa AAAA \xff\xfe odd\n"
    suffix = b"\nlast line without newline"
    content = prefix + section(b"old1", b"old2") + suffix

    out = merge_section(content, ["new"])

    assert out == prefix + section(b"new") + suffix


def test_merge_is_idempotent():
    once = merge_section(b"keep\n", ["a", "b"])
    assert merge_section(once, ["a", "b"]) == once


def test_empty_desired_set_keeps_markers():
    out = merge_section(section(b"a"), [])
    assert out == BEGIN + b"\n" + END + b"\n"
    assert split_section(out) == (b"", [], b"")


def test_markers_tolerate_whitespace_and_crlf():
    content = b"x\n  " + BEGIN + b"\r\nold\n" + END + b"  \r\ny\n"
    prefix, body, suffix = split_section(content)
    assert prefix == b"x\n"
    assert body == [b"old\n"]
    assert suffix == b"y\n"


@pytest.mark.parametrize("content", [
    BEGIN + b"\nx\n",
    b"x\n" + END + b"\n",
    section(b"a") + section(b"b"),
    END + b"\n" + BEGIN + b"\n",
    BEGIN + b"\n" + BEGIN + b"\n" + END + b"\n",
])
def test_corrupt_layouts(content):
    with pytest.raises(CorruptSection):
        merge_section(content, ["a"])


def test_strip_section():
    content = b"a\n" + section(b"k") + b"b\n"
    assert strip_section(content) == b"a\nb\n"
    assert strip_section(b"a\nb\n") is None


def test_custom_markers_do_not_collide():
    other = Markers.for_token("othertool")
    content = merge_section(b"", ["mine"])
    content = merge_section(content, ["theirs"], markers=other)

    assert split_section(content)[1] == [b"mine\n"]
    assert split_section(content, other)[1] == [b"theirs\n"]


def test_marker_text_mid_line_is_not_a_marker():
    content = b"ssh-ed25519 AAAA " + BEGIN + b"\n"
    assert split_section(content) is None


@pytest.mark.parametrize("line", ["a\nb", "a\r", b"x\n"])
def test_lines_with_breaks_rejected(line):
    with pytest.raises(ValueError):
        merge_section(b"", [line])
