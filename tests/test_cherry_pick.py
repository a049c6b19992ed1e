import pytest

from conftest import commit_file
from gitflow.cherry_pick import (
    cherry_pick,
    list_branches,
    list_unique_commits,
    list_unique_commits_args,
    parse_branches,
    parse_commits,
)
from gitflow.conflicts import mentions_conflict, parse_conflicted_paths
from gitflow.errors import ExecutionFailure
from gitflow.gateway import ProcessGateway


def test_mentions_conflict_vocabulary():
    assert mentions_conflict("CONFLICT (content): Merge conflict in a.txt")
    assert mentions_conflict("Automatic merge failed; fix conflicts and then commit the result.")
    assert mentions_conflict("error: could not apply 1234567... change")
    assert mentions_conflict("hint: Resolve all conflicts manually")
    assert mentions_conflict("a.txt: needs merge")
    assert not mentions_conflict("fatal: unable to access remote")
    assert not mentions_conflict("")


def test_parse_conflicted_paths_unique_in_order():
    output = "\n".join(
        [
            "Auto-merging b.txt",
            "CONFLICT (content): Merge conflict in b.txt",
            "CONFLICT (add/add): Merge conflict in a.txt",
            "CONFLICT (content): Merge conflict in b.txt",
        ]
    )
    assert parse_conflicted_paths(output) == ["b.txt", "a.txt"]
    assert parse_conflicted_paths("nothing to see") == []


def test_parse_commits():
    raw = "0123456789abcdef0123456789abcdef01234567\t0123456 Fix bug\n\ngarbage line\n"
    entries = parse_commits(raw)

    assert len(entries) == 1
    assert entries[0].short_sha == "0123456"
    assert entries[0].summary == "0123456 Fix bug"


def test_parse_branches_filters():
    raw = "\n".join(
        [
            "* main",
            "feature",
            "origin/HEAD",
            "origin/main",
            "(HEAD detached at 1234567)",
            "",
            "  release  ",
        ]
    )
    assert parse_branches(raw, "main") == ["feature", "origin/main", "release"]


def test_list_unique_commits_args():
    assert list_unique_commits_args("feature", 10) == [
        "log",
        "--cherry-pick",
        "--right-only",
        "--no-merges",
        "--pretty=format:%H%x09%h %s",
        "-n10",
        "HEAD...feature",
    ]


@pytest.mark.anyio
async def test_list_branches_drops_current(gateway):
    gateway.respond("git", "rev-parse", "--abbrev-ref", "HEAD", stdout="main\n")
    gateway.respond("git", "branch", "--all", stdout="main\nfeature\norigin/HEAD\n")

    assert await list_branches(gateway) == ["feature"]


@pytest.mark.anyio
async def test_cherry_pick_conflict_is_reported(gateway):
    gateway.respond(
        "git",
        "cherry-pick",
        exit_code=1,
        stderr="error: could not apply abc1234... change\nCONFLICT (content): Merge conflict in app.py",
    )

    result = await cherry_pick(gateway, "abc1234")

    assert not result.ok
    assert result.conflict
    assert result.conflict_paths == ["app.py"]


@pytest.mark.anyio
async def test_cherry_pick_other_failure_raises(gateway):
    gateway.respond("git", "cherry-pick", exit_code=128, stderr="fatal: bad revision 'nope'")

    with pytest.raises(ExecutionFailure) as excinfo:
        await cherry_pick(gateway, "nope")
    assert excinfo.value.diagnostic == "fatal: bad revision 'nope'"


@pytest.mark.anyio
async def test_cherry_pick_requires_sha(gateway):
    with pytest.raises(ValueError):
        await cherry_pick(gateway, "")
    assert gateway.calls == []


@pytest.mark.anyio
async def test_unique_commits_and_pick_in_real_repository(git_repo):
    git_repo.git.checkout("-b", "feature")
    picked = commit_file(git_repo, "feature.txt", "feature\n", "add feature file")
    git_repo.git.checkout("main")
    gateway = ProcessGateway(cwd=git_repo.working_tree_dir)

    entries = await list_unique_commits(gateway, "feature")
    assert [e.sha for e in entries] == [picked]
    assert entries[0].summary.endswith("add feature file")

    result = await cherry_pick(gateway, picked)
    assert result.ok
    assert git_repo.head.commit.message.strip() == "add feature file"
    assert await list_unique_commits(gateway, "feature") == []
