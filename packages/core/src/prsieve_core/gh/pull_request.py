from __future__ import annotations

import logging

from github import Github

from prsieve_core.models import LINE_REMOVED, ExistingComment, Violation

logger = logging.getLogger(__name__)


def get_repo(repo_name: str, token: str):
    return Github(token).get_repo(repo_name)


def get_pull(repo, pr_number: int):
    return repo.get_pull(pr_number)


def get_pull_requests(repo, state: str = "open"):
    return repo.get_pulls(state=state)


def get_file_diffs(pr) -> dict[str, str]:
    """Map each changed filename to its unified patch.

    Binary and oversized files come back from GitHub without a patch and are skipped.
    """
    diffs: dict[str, str] = {}
    for f in pr.get_files():
        if f.filename and f.patch:
            diffs[f.filename] = f.patch
    return diffs


def _login(user) -> str:
    return getattr(user, "login", "") or ""


def get_existing_comments(pr) -> list[ExistingComment]:
    """Review (inline) comments followed by conversation comments."""
    comments = [
        ExistingComment(
            id=c.id,
            body=c.body or "",
            author=_login(c.user),
            path=c.path,
            # line is None once the commented line left the diff.
            line=c.line if c.line is not None else getattr(c, "original_line", None),
        )
        for c in pr.get_review_comments()
    ]
    comments.extend(
        ExistingComment(id=c.id, body=c.body or "", author=_login(c.user)) for c in pr.get_issue_comments()
    )
    return comments


def post_inline_comment(pr, violation: Violation, body: str):
    side = "LEFT" if violation.line_type == LINE_REMOVED else "RIGHT"
    return pr.create_review_comment(
        body=body,
        commit=pr.head.repo.get_commit(pr.head.sha),
        path=violation.file,
        line=violation.line_number,
        side=side,
    )


def post_issue_comment(pr, body: str):
    return pr.create_issue_comment(body)
