import asyncio

import pytest

from gitflow.diff import (
    DiffFileStatus,
    DiffView,
    HunkRange,
    LineKind,
    build_diff_args,
    collect_markers,
    hunk_ranges,
    next_marker,
    parse_files,
    parse_hunk_header,
    parse_hunk_range,
    split_lines,
)
from gitflow.errors import ExecutionFailure


SAMPLE_DIFF = "\n".join(
    [
        "diff --git a/lua/m.lua b/lua/m.lua",
        "index 1111111..2222222 100644",
        "--- a/lua/m.lua",
        "+++ b/lua/m.lua",
        "@@ -10,2 +10,3 @@ local M = {}",
        " context a",
        "-old b",
        "+new b",
        "+new c",
        "diff --git a/new.txt b/new.txt",
        "new file mode 100644",
        "index 0000000..3333333",
        "--- /dev/null",
        "+++ b/new.txt",
        "@@ -0,0 +1,2 @@",
        "+one",
        "+two",
        "diff --git a/gone.txt b/gone.txt",
        "deleted file mode 100644",
        "index 4444444..0000000",
        "--- a/gone.txt",
        "+++ /dev/null",
        "@@ -1 +0,0 @@",
        "-bye",
        "diff --git a/old_name.py b/new_name.py",
        "similarity index 90%",
        "rename from old_name.py",
        "rename to new_name.py",
        "index 5555555..6666666 100644",
        "--- a/old_name.py",
        "+++ b/new_name.py",
        "@@ -3,3 +3,3 @@ def f():",
        " a",
        "--- removed content",
        "+++ added content",
        " z",
    ]
) + "\n"


def test_parse_hunk_header_examples():
    assert parse_hunk_header("@@ -10,2 +10,3 @@ local M = {}") == (10, 10)
    assert parse_hunk_header("@@ -1 +1,5 @@") == (1, 1)


def test_parse_hunk_range_defaults_missing_count_to_one():
    assert parse_hunk_range("@@ -1 +1,5 @@") == HunkRange(1, 1, 1, 5)
    assert parse_hunk_range("@@ -7,0 +8 @@") == HunkRange(7, 0, 8, 1)


def test_parse_hunk_header_malformed_degrades():
    assert parse_hunk_range("@@ -x +y @@") is None
    assert parse_hunk_header("@@ -x +y @@") == (0, 0)
    assert parse_hunk_header("not a header") == (0, 0)


def test_split_lines_drops_trailing_newline_only():
    assert split_lines("") == []
    assert split_lines("a\n\nb\n") == ["a", "", "b"]
    assert split_lines("a\r\nb") == ["a\r", "b"]


def test_file_markers_and_statuses():
    files, hunks, _ = collect_markers(split_lines(SAMPLE_DIFF))

    assert [(f.path, f.status, f.displayed_line) for f in files] == [
        ("lua/m.lua", DiffFileStatus.MODIFIED, 1),
        ("new.txt", DiffFileStatus.ADDED, 10),
        ("gone.txt", DiffFileStatus.DELETED, 18),
        ("new_name.py", DiffFileStatus.RENAMED, 25),
    ]
    assert files[3].old_path == "old_name.py"
    assert [(h.old_start, h.new_start, h.displayed_line) for h in hunks] == [
        (10, 10, 5),
        (0, 1, 15),
        (1, 0, 23),
        (3, 3, 32),
    ]
    assert [h.path for h in hunks] == ["lua/m.lua", "new.txt", "gone.txt", "new_name.py"]


def test_line_context_numbers():
    _, _, ctx = collect_markers(split_lines(SAMPLE_DIFF))

    assert (ctx[6].old_line, ctx[6].new_line, ctx[6].kind) == (10, 10, LineKind.CONTEXT)
    assert (ctx[7].old_line, ctx[7].new_line, ctx[7].kind) == (11, None, LineKind.DELETED)
    assert (ctx[8].old_line, ctx[8].new_line) == (None, 11)
    assert (ctx[9].old_line, ctx[9].new_line) == (None, 12)
    assert (ctx[16].new_line, ctx[17].new_line) == (1, 2)
    assert (ctx[24].old_line, ctx[24].new_line) == (1, None)
    assert ctx[6].path == "lua/m.lua"
    # headers and metadata have no line context
    for header_line in (1, 2, 3, 4, 5, 10, 15, 25, 32):
        assert header_line not in ctx


def test_dash_and_plus_headers_inside_hunk_are_content():
    files, _, ctx = collect_markers(split_lines(SAMPLE_DIFF))

    assert len(files) == 4
    assert ctx[34].kind is LineKind.DELETED
    assert (ctx[34].old_line, ctx[34].new_line) == (4, None)
    assert ctx[35].kind is LineKind.ADDED
    assert (ctx[35].old_line, ctx[35].new_line) == (None, 4)
    assert (ctx[36].old_line, ctx[36].new_line) == (5, 5)


def test_line_context_recovers_header_ranges():
    lines = split_lines(SAMPLE_DIFF)
    _, hunks, ctx = collect_markers(lines)

    expected = [parse_hunk_range(h.header) for h in hunks]
    assert hunk_ranges(ctx, hunks) == expected


def test_hunk_ranges_without_markers():
    _, _, ctx = collect_markers(split_lines(SAMPLE_DIFF))
    assert hunk_ranges(ctx)[0] == HunkRange(10, 2, 10, 3)
    assert hunk_ranges(ctx)[3] == HunkRange(3, 3, 3, 3)


@pytest.mark.parametrize("offset", [0, 1, 7, 250])
def test_offset_shifts_every_key(offset):
    lines = split_lines(SAMPLE_DIFF)
    base_files, base_hunks, base_ctx = collect_markers(lines, 0)
    files, hunks, ctx = collect_markers(lines, offset)

    assert [f.displayed_line for f in files] == [f.displayed_line + offset for f in base_files]
    assert [h.displayed_line for h in hunks] == [h.displayed_line + offset for h in base_hunks]
    assert sorted(ctx) == [key + offset for key in sorted(base_ctx)]
    for key, value in base_ctx.items():
        assert ctx[key + offset] == value


def test_no_newline_marker_is_skipped():
    lines = [
        "@@ -1 +1 @@",
        "-a",
        "\\ No newline at end of file",
        "+b",
        "\\ No newline at end of file",
    ]
    files, hunks, ctx = collect_markers(lines)

    assert files == []
    assert len(hunks) == 1 and hunks[0].path is None
    assert sorted(ctx) == [2, 4]
    assert ctx[2].old_line == 1
    assert ctx[4].new_line == 1


def test_plain_unified_diff_without_git_header():
    lines = [
        "--- a.txt\t2024-01-01 10:00:00",
        "+++ b.txt\t2024-01-02 10:00:00",
        "@@ -1,2 +1,2 @@",
        " x",
        "-y",
        "+z",
    ]
    files, hunks, ctx = collect_markers(lines)

    assert len(files) == 1
    assert files[0].path == "b.txt"
    assert files[0].old_path == "a.txt"
    assert files[0].displayed_line == 1
    assert hunks[0].displayed_line == 3
    assert (ctx[5].old_line, ctx[6].new_line) == (2, 2)


def test_malformed_hunk_header_keeps_parsing():
    lines = [
        "diff --git a/f b/f",
        "@@ -x +y @@",
        " a",
        "+b",
        "diff --git a/g b/g",
        "@@ -1 +1 @@",
        "-c",
        "+d",
    ]
    files, hunks, ctx = collect_markers(lines)

    assert [f.path for f in files] == ["f", "g"]
    assert (hunks[0].old_start, hunks[0].new_start) == (0, 0)
    assert ctx[3].kind is LineKind.CONTEXT
    assert ctx[4].kind is LineKind.ADDED
    assert ctx[7].old_line == 1
    assert ctx[8].new_line == 1


def test_next_marker_wraps():
    files, _, _ = collect_markers(split_lines(SAMPLE_DIFF))

    assert next_marker(files, 1, 1).displayed_line == 10
    assert next_marker(files, 12, 1).displayed_line == 18
    assert next_marker(files, 25, 1).displayed_line == 1
    assert next_marker(files, 12, -1).displayed_line == 10
    assert next_marker(files, 1, -1).displayed_line == 25
    assert next_marker([], 1, 1) is None


def test_parse_files_summaries():
    summaries = parse_files(SAMPLE_DIFF)

    assert [(s.old_path, s.new_path) for s in summaries] == [
        ("lua/m.lua", "lua/m.lua"),
        ("new.txt", "new.txt"),
        ("gone.txt", "gone.txt"),
        ("old_name.py", "new_name.py"),
    ]
    assert summaries[0].hunks == ["@@ -10,2 +10,3 @@ local M = {}"]


def test_build_diff_args():
    assert build_diff_args() == ["diff"]
    assert build_diff_args(staged=True, path="a.txt") == ["diff", "--staged", "--", "a.txt"]
    assert build_diff_args(commit="abc123", staged=True) == ["show", "--patch", "abc123"]


@pytest.mark.anyio
async def test_diff_view_refresh_builds_markers(gateway):
    gateway.respond("git", "diff", stdout=SAMPLE_DIFF)
    view = DiffView(gateway, offset=2)

    assert await view.refresh() is True
    assert [f.displayed_line for f in view.files] == [3, 12, 20, 27]
    assert view.context_at(8).new_line == 10
    assert view.next_hunk(3).displayed_line == 7


@pytest.mark.anyio
async def test_diff_view_keeps_latest_refresh(manual_gateway):
    manual_gateway.respond("git", "show", "--patch", "aaa", stdout="diff --git a/a b/a\n")
    manual_gateway.respond("git", "show", "--patch", "bbb", stdout="diff --git a/b b/b\n")
    view = DiffView(manual_gateway)

    first = asyncio.create_task(view.refresh(commit="aaa"))
    second = asyncio.create_task(view.refresh(commit="bbb"))
    await manual_gateway.wait_for_calls(2)
    manual_gateway.release("git", "show", "--patch", "bbb")
    manual_gateway.release("git", "show", "--patch", "aaa")

    assert await second is True
    assert await first is False
    assert view.request == ("show", "--patch", "bbb")
    assert [f.path for f in view.files] == ["b"]


@pytest.mark.anyio
async def test_diff_view_drops_results_after_close(manual_gateway):
    manual_gateway.respond("git", "diff", stdout=SAMPLE_DIFF)
    view = DiffView(manual_gateway)

    task = asyncio.create_task(view.refresh())
    await manual_gateway.wait_for_calls(1)
    view.close()
    manual_gateway.release("git", "diff")

    assert await task is False
    assert view.files == []
    assert await view.refresh() is False
    assert len(manual_gateway.calls) == 1


@pytest.mark.anyio
async def test_diff_view_failure_surfaces_diagnostic(gateway):
    gateway.respond("git", "diff", exit_code=128, stderr="fatal: not a git repository")
    view = DiffView(gateway)

    with pytest.raises(ExecutionFailure) as excinfo:
        await view.refresh()
    assert excinfo.value.diagnostic == "fatal: not a git repository"
