"""Tests for revision resolution."""

from __future__ import annotations

import pytest

from treesync.command import GitRunner
from treesync.errors import AmbiguousRevision, RevisionNotFound, TransportError
from treesync.refs import (
    RefResolver,
    Resolution,
    literal_commit,
    match_ref,
    parse_ls_remote,
    parse_symrefs,
)

SHA_A = "a" * 40
SHA_B = "b" * 40
SHA_C = "c" * 40

LS_REMOTE = (
    f"ref: refs/heads/main\tHEAD\n"
    f"{SHA_A}\tHEAD\n"
    f"{SHA_A}\trefs/heads/main\n"
    f"{SHA_B}\trefs/tags/v1\n"
    f"{SHA_C}\trefs/tags/v1^{{}}\n"
)


def test_parse_ls_remote_prefers_peeled():
    refs = parse_ls_remote(LS_REMOTE)
    assert refs == {"HEAD": SHA_A, "refs/heads/main": SHA_A, "refs/tags/v1": SHA_C}


def test_parse_symrefs():
    assert parse_symrefs(LS_REMOTE) == {"HEAD": "refs/heads/main"}


@pytest.mark.parametrize(
    "rev,expected",
    [
        (SHA_A, SHA_A),
        ("sha:" + SHA_A.upper(), SHA_A),
        ("f" * 64, "f" * 64),
        ("abc123", None),
        ("main", None),
    ],
)
def test_literal_commit(rev, expected):
    assert literal_commit(rev) == expected


class TestMatchRef:
    refs = {
        "refs/heads/main": SHA_A,
        "refs/heads/v2": SHA_A,
        "refs/tags/v2": SHA_B,
        "refs/pull/7/head": SHA_C,
        "refs/remotes/x/feature": SHA_A,
        "refs/remotes/y/feature": SHA_B,
    }

    def test_exact(self):
        assert match_ref(self.refs, "refs/tags/v2") == "refs/tags/v2"

    def test_branch_before_tag(self):
        assert match_ref(self.refs, "v2") == "refs/heads/v2"

    def test_unique_suffix(self):
        assert match_ref(self.refs, "7/head") == "refs/pull/7/head"

    def test_ambiguous(self):
        with pytest.raises(AmbiguousRevision):
            match_ref(self.refs, "feature")

    def test_not_found(self):
        with pytest.raises(RevisionNotFound):
            match_ref(self.refs, "nope")


def test_resolution_branch():
    assert Resolution(SHA_A, "refs/heads/feature/x").branch == "feature/x"
    assert Resolution(SHA_A, "refs/tags/v1").branch is None
    assert Resolution(SHA_A, None, advertised=False).branch is None


class TestResolveAgainstRemote:
    @pytest.fixture
    def resolver(self):
        return RefResolver(GitRunner())

    def test_head_follows_default_branch(self, remote, resolver):
        resolution = resolver.resolve(remote.url)
        assert resolution.commit == remote.head
        assert resolution.ref == "refs/heads/main"
        assert resolution.branch == "main"

    def test_branch(self, remote, resolver):
        main = remote.head
        remote.repo.git.checkout("-q", "-b", "feature")
        feature = remote.commit({"f": "x"}, "feature")
        remote.repo.git.checkout("-q", "main")
        assert resolver.resolve(remote.url, "feature").commit == feature
        assert resolver.resolve(remote.url, "main").commit == main

    def test_annotated_tag_resolves_to_commit(self, remote, resolver):
        remote.repo.git.tag("-a", "v1.0", "-m", "release")
        resolution = resolver.resolve(remote.url, "v1.0")
        assert resolution.commit == remote.head
        assert resolution.ref == "refs/tags/v1.0"

    def test_advertised_literal(self, remote, resolver):
        resolution = resolver.resolve(remote.url, remote.head)
        assert resolution.advertised
        assert resolution.commit == remote.head

    def test_unadvertised_literal(self, remote, resolver):
        old = remote.head
        remote.commit({"file": "v2"}, "v2")
        resolution = resolver.resolve(remote.url, "sha:" + old)
        assert resolution.commit == old
        assert resolution.ref is None
        assert not resolution.advertised

    def test_unknown_revision(self, remote, resolver):
        with pytest.raises(RevisionNotFound) as info:
            resolver.resolve(remote.url, "does-not-exist")
        assert info.value.kind == "revision_not_found"

    def test_empty_remote_has_no_head(self, make_remote, resolver):
        empty = make_remote("empty")
        with pytest.raises(RevisionNotFound):
            resolver.resolve(empty.url)

    def test_unreachable_remote(self, tmp_path, resolver):
        with pytest.raises(TransportError):
            resolver.resolve((tmp_path / "missing").as_uri())
