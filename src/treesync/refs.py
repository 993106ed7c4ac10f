"""Resolve a revision to a commit identifier by asking the remote."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from .command import GitRunner
from .errors import AmbiguousRevision, RevisionNotFound, TransportError
from .observability import log_debug

_SHA_RE = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")

HEAD = "HEAD"


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving a revision.

    Attributes:
        commit: Full commit identifier
        ref: The remote ref that matched, or None for a literal commit
        advertised: Whether the remote listed the commit as a ref tip
    """

    commit: str
    ref: Optional[str]
    advertised: bool = True

    @property
    def branch(self) -> Optional[str]:
        if self.ref and self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        return None


def literal_commit(rev: str) -> Optional[str]:
    """Return the commit id if ``rev`` is a literal (``sha:`` prefix optional)."""
    candidate = rev[4:] if rev.startswith("sha:") else rev
    candidate = candidate.lower()
    if _SHA_RE.match(candidate):
        return candidate
    return None


def parse_ls_remote(output: str) -> Dict[str, str]:
    """Map ref name -> commit id, preferring peeled (``^{}``) tag targets."""
    refs: Dict[str, str] = {}
    peeled: Dict[str, str] = {}
    for line in output.splitlines():
        sha, sep, name = line.strip().partition("\t")
        if not sep or sha.startswith("ref: "):
            continue
        if name.endswith("^{}"):
            peeled[name[:-3]] = sha
        else:
            refs[name] = sha
    refs.update(peeled)
    return refs


def parse_symrefs(output: str) -> Dict[str, str]:
    """Map symbolic ref -> target from ``ls-remote --symref`` lines."""
    symrefs: Dict[str, str] = {}
    for line in output.splitlines():
        head, sep, name = line.strip().partition("\t")
        if sep and head.startswith("ref: "):
            symrefs[name] = head[len("ref: "):]
    return symrefs


def match_ref(refs: Dict[str, str], rev: str) -> str:
    """Pick the ref a revision names.

    Rank: exact ref path, then branch, then tag, then a unique match on
    any other ref ending in ``/<rev>``.

    Raises:
        RevisionNotFound: Nothing matches
        AmbiguousRevision: More than one ref matches at the lowest rank
    """
    for candidate in (rev, f"refs/heads/{rev}", f"refs/tags/{rev}"):
        if candidate in refs:
            return candidate

    suffix = f"/{rev}"
    others: List[str] = sorted(
        name for name in refs
        if name.endswith(suffix)
        and not name.startswith(("refs/heads/", "refs/tags/"))
    )
    if len(others) == 1:
        return others[0]
    if others:
        raise AmbiguousRevision(f"revision {rev!r} matches several refs: {', '.join(others)}")
    raise RevisionNotFound(f"revision {rev!r} not found on remote")


class RefResolver:
    """Resolves revisions against a remote with ``git ls-remote``."""

    def __init__(self, runner: GitRunner):
        self.runner = runner

    def resolve(self, url: str, rev: str = HEAD) -> Resolution:
        """Resolve ``rev`` on ``url`` to a commit.

        A literal commit id that no ref advertises is returned with
        ``advertised=False``; its existence is confirmed when it is fetched.
        """
        output = self.runner.output(["ls-remote", "--symref", "--", url], error=TransportError)
        refs = parse_ls_remote(output)
        literal = literal_commit(rev)
        if literal is not None:
            tips = [name for name, sha in refs.items() if sha == literal]
            resolution = Resolution(literal, sorted(tips)[0] if tips else None, advertised=bool(tips))
        elif rev == HEAD:
            if HEAD not in refs:
                raise RevisionNotFound(f"remote {url} has no HEAD (empty repository?)")
            resolution = Resolution(refs[HEAD], parse_symrefs(output).get(HEAD, HEAD))
        else:
            name = match_ref(refs, rev)
            resolution = Resolution(refs[name], name)

        log_debug("REV_RESOLVED", rev=rev, ref=resolution.ref, commit=resolution.commit)
        return resolution
