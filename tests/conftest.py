"""Shared test fixtures for twig tests."""

from pathlib import Path

import pytest

import libtwig


@pytest.fixture
def worktree(tmp_path: Path) -> Path:
    return tmp_path / "project"


@pytest.fixture
def repo(worktree: Path) -> libtwig.TwigRepository:
    return libtwig.repo_create(str(worktree))


@pytest.fixture
def write_tree(repo):
    """Store a tree built from (mode, name, sha) triples; return its sha."""

    def _write(entries):
        tree = libtwig.TwigTree()
        tree.items = [libtwig.TwigTreeLeaf(mode, name, sha) for mode, name, sha in entries]
        return libtwig.object_write(repo, "tree", tree.serialize())

    return _write


@pytest.fixture
def write_commit(repo):
    """Store a commit payload by hand, since commits cannot be serialized."""

    def _write(tree, parents=(), message="A commit message\n"):
        lines = [f"tree {tree.hex()}"]
        lines += [f"parent {p.hex()}" for p in parents]
        lines += [
            "author Bob R <bobr@example.com> 1580755918 +0100",
            "committer Bob R <bobr@example.com> 1580755918 +0100",
        ]
        payload = ("\n".join(lines) + "\n\n" + message).encode()
        return libtwig.object_write(repo, "commit", payload)

    return _write
