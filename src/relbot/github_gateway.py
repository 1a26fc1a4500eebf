from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
from typing import cast
from urllib.parse import quote

from relbot.errors import GitHubApiError, PreconditionConflict
from relbot.models import (
    BranchRef,
    Comment,
    DraftPullRequest,
    DraftRelease,
    Label,
    Reaction,
    Tag,
)
from relbot.observability import log_event, log_warning
from relbot.shell import CommandError, run


LOGGER = logging.getLogger("relbot.github_gateway")
_CLIENT_MUTATION_ID = "relbot"
_TAG_LOOKUP_LIMIT = 20
_PULL_REQUEST_LOOKUP_LIMIT = 5
_PRECONDITION_MARKERS = (
    "expected branch to point to",
    "expectedheadoid",
)

_FIND_DRAFT_RELEASE_QUERY = """
query FindDraftRelease(
  $owner: String!, $repo: String!, $project: String!, $tagQuery: String!,
  $branch: String!, $qualifiedBranch: String!, $releaseLabel: String!,
  $tagLimit: Int!, $prLimit: Int!, $commentLimit: Int!
) {
  repository(owner: $owner, name: $repo) {
    id
    tags: refs(
      last: $tagLimit, refPrefix: "refs/tags/", query: $tagQuery,
      orderBy: {field: TAG_COMMIT_DATE, direction: ASC}
    ) {
      nodes { name }
    }
    branch: ref(qualifiedName: $qualifiedBranch) {
      id
      name
      target { oid }
    }
    releaseLabel: label(name: $releaseLabel) { id name }
    projectLabel: label(name: $project) { id name }
    pullRequests(
      last: $prLimit, headRefName: $branch, states: OPEN,
      orderBy: {field: CREATED_AT, direction: ASC}
    ) {
      nodes {
        id
        number
        title
        body
        createdAt
        baseRefName
        headRefOid
        labels(first: 20) { nodes { name } }
        comments(last: $commentLimit) {
          nodes {
            id
            body
            author { login }
          }
        }
      }
    }
  }
}
"""

_GET_FILE_TEXT_QUERY = """
query GetFileText($owner: String!, $repo: String!, $expression: String!) {
  repository(owner: $owner, name: $repo) {
    file: object(expression: $expression) {
      ... on Blob { text }
    }
  }
}
"""

_CREATE_REF_MUTATION = """
mutation CreateRef($input: CreateRefInput!) {
  createRef(input: $input) {
    ref { id name target { oid } }
  }
}
"""

_UPDATE_REF_MUTATION = """
mutation UpdateRef($input: UpdateRefInput!) {
  updateRef(input: $input) {
    ref { id name target { oid } }
  }
}
"""

_CREATE_COMMIT_MUTATION = """
mutation CreateCommitOnBranch($input: CreateCommitOnBranchInput!) {
  createCommitOnBranch(input: $input) {
    commit { oid }
  }
}
"""

_CREATE_PULL_REQUEST_MUTATION = """
mutation CreatePullRequest($input: CreatePullRequestInput!) {
  createPullRequest(input: $input) {
    pullRequest { id number }
  }
}
"""

_UPDATE_PULL_REQUEST_MUTATION = """
mutation UpdatePullRequest($input: UpdatePullRequestInput!) {
  updatePullRequest(input: $input) {
    pullRequest { id }
  }
}
"""

_ADD_REACTION_MUTATION = """
mutation AddReaction($input: AddReactionInput!) {
  addReaction(input: $input) {
    reaction { content }
  }
}
"""

_ADD_COMMENT_MUTATION = """
mutation AddComment($input: AddCommentInput!) {
  addComment(input: $input) {
    commentEdge { node { id } }
  }
}
"""

_UPDATE_COMMENT_MUTATION = """
mutation UpdateIssueComment($input: UpdateIssueCommentInput!) {
  updateIssueComment(input: $input) {
    issueComment { id }
  }
}
"""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    token: str | None = field(default=None, repr=False, compare=False)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def find_draft_release(
        self,
        *,
        project: str,
        branch_name: str,
        release_label: str,
        comment_limit: int = 50,
    ) -> DraftRelease:
        data = self._graphql(
            _FIND_DRAFT_RELEASE_QUERY,
            {
                "owner": self.owner,
                "repo": self.name,
                "project": project,
                "tagQuery": f"{project}@v",
                "branch": branch_name,
                "qualifiedBranch": f"refs/heads/{branch_name}",
                "releaseLabel": release_label,
                "tagLimit": _TAG_LOOKUP_LIMIT,
                "prLimit": _PULL_REQUEST_LOOKUP_LIMIT,
                "commentLimit": comment_limit,
            },
        )
        repository = _require_object(data.get("repository"), what="repository")

        tag_prefix = f"{project}@v"
        tags = tuple(
            Tag(name=name)
            for node in _nodes(repository.get("tags"))
            if (name := _as_string(node.get("name"))).startswith(tag_prefix)
        )

        branch: BranchRef | None = None
        branch_obj = _as_object_dict(repository.get("branch"))
        if branch_obj is not None:
            target = _as_object_dict(branch_obj.get("target")) or {}
            branch = BranchRef(
                ref_id=_as_string(branch_obj.get("id")),
                name=_as_string(branch_obj.get("name")),
                head_sha=_as_string(target.get("oid")),
            )

        open_prs = [_parse_pull_request(node) for node in _nodes(repository.get("pullRequests"))]
        candidates = [pr for pr in open_prs if release_label in pr.label_names]
        # Fall back to an unlabelled PR from the release branch; the reconciler relabels it.
        pull_request: DraftPullRequest | None = None
        if candidates:
            pull_request = candidates[-1]
        elif open_prs:
            pull_request = open_prs[-1]
            log_warning(
                LOGGER,
                "github_release_pr_unlabelled",
                project=project,
                pr_number=pull_request.number,
            )

        draft = DraftRelease(
            repository_id=_as_string(repository.get("id")),
            project=project,
            branch_name=branch_name,
            tags=tags,
            branch=branch,
            pull_request=pull_request,
            release_label=_parse_label(repository.get("releaseLabel")),
            project_label=_parse_label(repository.get("projectLabel")),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="draft_release",
            project=project,
            tag_count=len(tags),
            latest_tag=tags[-1].name if tags else None,
            branch_exists=draft.branch_exists,
            open_release_pr_count=len(candidates),
            pr_number=pull_request.number if pull_request else None,
        )
        return draft

    def get_file_text(self, *, ref: str, path: str) -> str | None:
        data = self._graphql(
            _GET_FILE_TEXT_QUERY,
            {"owner": self.owner, "repo": self.name, "expression": f"{ref}:{path}"},
        )
        repository = _require_object(data.get("repository"), what="repository")
        file_obj = _as_object_dict(repository.get("file"))
        log_event(
            LOGGER,
            "github_read",
            endpoint="file_text",
            ref=ref,
            path=path,
            found=file_obj is not None,
        )
        if file_obj is None:
            return None
        text = file_obj.get("text")
        if not isinstance(text, str):
            raise GitHubApiError(f"{path} at {ref} has no text content (binary or truncated)")
        return text

    def get_branch_head_sha(self, branch: str) -> str:
        path = f"/repos/{self.owner}/{self.name}/git/ref/heads/{quote(branch, safe='/')}"
        payload = _require_object(self._api_json("GET", path), what="git ref")
        target = _require_object(payload.get("object"), what="git ref object")
        sha = _as_string(target.get("sha"))
        if not sha:
            raise GitHubApiError(f"Unexpected GitHub response: missing sha for branch {branch}")
        log_event(LOGGER, "github_read", endpoint="branch_head", branch=branch, sha=sha)
        return sha

    def list_commit_files(self, sha: str) -> tuple[str, ...]:
        path = f"/repos/{self.owner}/{self.name}/commits/{sha}"
        payload = _require_object(self._api_json("GET", path), what="commit")
        files_payload = payload.get("files")
        if not isinstance(files_payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected files list for commit")
        files: list[str] = []
        for item in files_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            filename = item_obj.get("filename")
            if isinstance(filename, str) and filename:
                files.append(filename)
        log_event(LOGGER, "github_read", endpoint="commit_files", sha=sha, count=len(files))
        return tuple(files)

    def create_branch(self, *, repository_id: str, branch: str, sha: str) -> BranchRef:
        data = self._graphql(
            _CREATE_REF_MUTATION,
            {
                "input": {
                    "clientMutationId": _CLIENT_MUTATION_ID,
                    "repositoryId": repository_id,
                    "name": f"refs/heads/{branch}",
                    "oid": sha,
                }
            },
        )
        ref = _parse_ref_payload(data, "createRef")
        log_event(LOGGER, "github_branch_created", branch=branch, sha=sha)
        return ref

    def force_update_branch(self, *, ref_id: str, branch: str, sha: str) -> BranchRef:
        data = self._graphql(
            _UPDATE_REF_MUTATION,
            {
                "input": {
                    "clientMutationId": _CLIENT_MUTATION_ID,
                    "refId": ref_id,
                    "oid": sha,
                    "force": True,
                }
            },
        )
        ref = _parse_ref_payload(data, "updateRef")
        log_event(LOGGER, "github_branch_force_updated", branch=branch, sha=sha)
        return ref

    def create_commit_on_branch(
        self,
        *,
        branch: str,
        expected_head_sha: str,
        headline: str,
        additions: dict[str, str],
    ) -> str:
        file_additions = [
            {
                "path": path,
                "contents": base64.b64encode(contents.encode("utf-8")).decode("ascii"),
            }
            for path, contents in additions.items()
        ]
        try:
            data = self._graphql(
                _CREATE_COMMIT_MUTATION,
                {
                    "input": {
                        "clientMutationId": _CLIENT_MUTATION_ID,
                        "branch": {
                            "repositoryNameWithOwner": self.full_name,
                            "branchName": branch,
                        },
                        "message": {"headline": headline},
                        "expectedHeadOid": expected_head_sha,
                        "fileChanges": {"additions": file_additions},
                    }
                },
            )
        except PreconditionConflict:
            log_event(
                LOGGER,
                "github_commit_rejected",
                branch=branch,
                expected_head_sha=expected_head_sha,
                reason="head_moved",
            )
            raise
        payload = _require_object(data.get("createCommitOnBranch"), what="createCommitOnBranch")
        commit = _require_object(payload.get("commit"), what="commit")
        oid = _as_string(commit.get("oid"))
        log_event(
            LOGGER,
            "github_commit_created",
            branch=branch,
            parent_sha=expected_head_sha,
            sha=oid,
            file_count=len(file_additions),
        )
        return oid

    def create_pull_request(
        self,
        *,
        repository_id: str,
        base: str,
        head: str,
        title: str,
        body: str,
        draft: bool = True,
    ) -> tuple[str, int]:
        try:
            data = self._graphql(
                _CREATE_PULL_REQUEST_MUTATION,
                {
                    "input": {
                        "clientMutationId": _CLIENT_MUTATION_ID,
                        "repositoryId": repository_id,
                        "baseRefName": base,
                        "headRefName": head,
                        "title": title,
                        "body": body,
                        "draft": draft,
                    }
                },
            )
            payload = _require_object(data.get("createPullRequest"), what="createPullRequest")
            pr_obj = _require_object(payload.get("pullRequest"), what="pullRequest")
            pr_id = _as_string(pr_obj.get("id"))
            number = _as_int(pr_obj.get("number"), field="number")
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=number,
            base=base,
            head=head,
        )
        return pr_id, number

    def update_pull_request(
        self,
        pr_id: str,
        *,
        title: str | None = None,
        body: str | None = None,
        label_ids: tuple[str, ...] | None = None,
    ) -> None:
        update: dict[str, object] = {
            "clientMutationId": _CLIENT_MUTATION_ID,
            "pullRequestId": pr_id,
        }
        if title is not None:
            update["title"] = title
        if body is not None:
            update["body"] = body
        if label_ids is not None:
            update["labelIds"] = list(label_ids)
        self._graphql(_UPDATE_PULL_REQUEST_MUTATION, {"input": update})
        log_event(
            LOGGER,
            "github_pr_updated",
            pr_id=pr_id,
            title=title is not None,
            body=body is not None,
            label_count=len(label_ids) if label_ids is not None else None,
        )

    def ensure_label(self, name: str, existing: Label | None) -> Label:
        if existing is not None:
            return existing
        path = f"/repos/{self.owner}/{self.name}/labels"
        payload = _require_object(
            self._api_json("POST", path, payload={"name": name, "color": "ededed"}),
            what="label",
        )
        label = Label(label_id=_as_string(payload.get("node_id")), name=name)
        if not label.label_id:
            raise GitHubApiError(f"Unexpected GitHub response: missing node_id for label {name}")
        log_event(LOGGER, "github_label_created", label=name)
        return label

    def add_reaction(self, subject_id: str, reaction: Reaction) -> None:
        self._graphql(
            _ADD_REACTION_MUTATION,
            {
                "input": {
                    "clientMutationId": _CLIENT_MUTATION_ID,
                    "subjectId": subject_id,
                    "content": reaction,
                }
            },
        )
        log_event(LOGGER, "github_reaction_added", subject_id=subject_id, reaction=reaction)

    def add_comment(self, subject_id: str, body: str) -> str:
        try:
            data = self._graphql(
                _ADD_COMMENT_MUTATION,
                {
                    "input": {
                        "clientMutationId": _CLIENT_MUTATION_ID,
                        "subjectId": subject_id,
                        "body": body,
                    }
                },
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                subject_id=subject_id,
                error_type=type(exc).__name__,
            )
            raise
        payload = _require_object(data.get("addComment"), what="addComment")
        edge = _require_object(payload.get("commentEdge"), what="commentEdge")
        node = _require_object(edge.get("node"), what="comment")
        comment_id = _as_string(node.get("id"))
        log_event(
            LOGGER, "github_issue_comment_posted", subject_id=subject_id, comment_id=comment_id
        )
        return comment_id

    def update_comment(self, comment_id: str, body: str) -> None:
        self._graphql(
            _UPDATE_COMMENT_MUTATION,
            {
                "input": {
                    "clientMutationId": _CLIENT_MUTATION_ID,
                    "id": comment_id,
                    "body": body,
                }
            },
        )
        log_event(LOGGER, "github_issue_comment_updated", comment_id=comment_id)

    def _env(self) -> dict[str, str] | None:
        if not self.token:
            return None
        return {"GH_TOKEN": self.token}

    def _secrets(self) -> tuple[str, ...]:
        return (self.token,) if self.token else ()

    def _graphql(self, query: str, variables: dict[str, object]) -> dict[str, object]:
        cmd = ["gh", "api", "graphql", "--input", "-"]
        request = json.dumps({"query": query, "variables": variables})
        try:
            raw = run(cmd, input_text=request, env=self._env(), secrets=self._secrets())
        except CommandError as exc:
            raise _classify_failure(f"{exc.stdout}\n{exc.stderr}", operation="graphql") from exc

        try:
            response = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GitHubApiError(f"GitHub GraphQL returned invalid JSON: {exc}") from exc
        response_obj = _require_object(response, what="GraphQL response")
        errors = response_obj.get("errors")
        if isinstance(errors, list) and errors:
            messages = "; ".join(
                _as_string(error_obj.get("message"))
                for error in errors
                if (error_obj := _as_object_dict(error)) is not None
            )
            raise _classify_failure(messages or "<empty>", operation="graphql")
        return _require_object(response_obj.get("data"), what="GraphQL data")

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        try:
            raw = run(cmd, input_text=stdin_payload, env=self._env(), secrets=self._secrets())
        except CommandError as exc:
            raise _classify_failure(
                f"{exc.stdout}\n{exc.stderr}", operation=f"{method_upper} {path}"
            ) from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GitHubApiError(f"GitHub API returned invalid JSON for {path}: {exc}") from exc


def _classify_failure(message: str, *, operation: str) -> GitHubApiError | PreconditionConflict:
    compact = " ".join(message.split())
    log_event(
        LOGGER,
        "github_request_failed",
        operation=operation,
        error=compact or "<empty>",
    )
    lowered = compact.lower()
    if any(marker in lowered for marker in _PRECONDITION_MARKERS):
        return PreconditionConflict(f"GitHub rejected {operation}: {compact}")
    return GitHubApiError(f"GitHub request failed ({operation}): {compact or '<empty>'}")


def _parse_pull_request(node: dict[str, object]) -> DraftPullRequest:
    comments = tuple(
        Comment(
            comment_id=_as_string(comment.get("id")),
            body=_as_string(comment.get("body")),
            author_login=_as_login(
                (_as_object_dict(comment.get("author")) or {}).get("login")
            ),
        )
        for comment in _nodes(node.get("comments"))
    )
    return DraftPullRequest(
        pr_id=_as_string(node.get("id")),
        number=_as_int(node.get("number"), field="number"),
        title=_as_string(node.get("title")),
        body=_as_string(node.get("body")),
        head_sha=_as_string(node.get("headRefOid")),
        base_branch_name=_as_string(node.get("baseRefName")),
        created_at=_as_datetime(node.get("createdAt"), field="createdAt"),
        comments=comments,
        label_names=tuple(_as_string(label.get("name")) for label in _nodes(node.get("labels"))),
    )


def _parse_label(value: object) -> Label | None:
    label_obj = _as_object_dict(value)
    if label_obj is None:
        return None
    return Label(label_id=_as_string(label_obj.get("id")), name=_as_string(label_obj.get("name")))


def _parse_ref_payload(data: dict[str, object], key: str) -> BranchRef:
    payload = _require_object(data.get(key), what=key)
    ref = _require_object(payload.get("ref"), what=f"{key}.ref")
    target = _as_object_dict(ref.get("target")) or {}
    return BranchRef(
        ref_id=_as_string(ref.get("id")),
        name=_as_string(ref.get("name")),
        head_sha=_as_string(target.get("oid")),
    )


def _nodes(connection: object) -> list[dict[str, object]]:
    connection_obj = _as_object_dict(connection)
    if connection_obj is None:
        return []
    raw_nodes = connection_obj.get("nodes")
    if not isinstance(raw_nodes, list):
        return []
    return [node for item in raw_nodes if (node := _as_object_dict(item)) is not None]


def _require_object(value: object, *, what: str) -> dict[str, object]:
    obj = _as_object_dict(value)
    if obj is None:
        raise GitHubApiError(f"Unexpected GitHub response: expected object for {what}")
    return obj


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")


def _as_datetime(value: object, *, field: str) -> datetime:
    if not isinstance(value, str) or not value:
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
