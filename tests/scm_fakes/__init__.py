"""In-memory git transport and source-control host for promotion tests.

Usage:
    from scm_fakes import FakeGitClient, FakeScmProvider

    git = FakeGitClient()
    git.add_repository("https://github.com/acme/environment-staging.git", fixture_dir)
    scm = FakeScmProvider()

    engine = PromoteEngine(registry, VersionResolver(), git, scm, config)
    result = await engine.promote(request)

    assert scm.get_pr("acme/environment-staging", 1) is not None
    assert git.pushes == [(url, "promote-myapp-1.2.3")]
"""

from .git import FakeCommit, FakeGitClient, FakeRemote, restore, snapshot
from .host import FakeScmProvider

__all__ = [
    "FakeCommit",
    "FakeGitClient",
    "FakeRemote",
    "FakeScmProvider",
    "restore",
    "snapshot",
]
