"""Cache key derivation for predictions."""

import hashlib
from typing import Sequence

FINGERPRINT_LENGTH = 32


def compute_fingerprint(history: Sequence[str], cwd: str, git_branch: str) -> str:
    """Digest redacted history, working directory and branch into a cache key.

    Order-sensitive: the commands are hashed in sequence, followed by cwd
    and then the branch.

    Args:
        history: Redacted recent commands, oldest first
        cwd: Working directory
        git_branch: Current branch, empty outside a repository

    Returns:
        Hex digest truncated to FINGERPRINT_LENGTH characters
    """
    digest = hashlib.sha256()
    for command in history:
        digest.update(command.encode("utf-8"))
    digest.update(cwd.encode("utf-8"))
    digest.update(git_branch.encode("utf-8"))
    return digest.hexdigest()[:FINGERPRINT_LENGTH]
