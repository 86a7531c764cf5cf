# subsplitctl/models.py
import copy
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Optional, Tuple

TAG_RELEASE = 'tag-release'
BRANCH_UPDATE = 'branch-update'
REJECTED = 'rejected'

TAGS_PATTERN = re.compile(r'refs/tags/(.+)$')
HEADS_PATTERN = re.compile(r'refs/heads/(.+)$')


class NotificationError(ValueError):
    """Raised when a queue payload cannot be read as a notification."""


@dataclass(frozen=True)
class ProjectDefinition:
    name: str
    url: str
    splits: Tuple[str, ...]
    repository_url: Optional[str] = None

    @property
    def checkout_url(self) -> str:
        """URL used for the working checkout."""
        return self.repository_url or self.url

    def to_dict(self) -> dict:
        data = {'url': self.url}
        if self.repository_url:
            data['repository-url'] = self.repository_url
        data['splits'] = list(self.splits)
        return data


@dataclass(frozen=True)
class PublishMode:
    kind: str
    branch: Optional[str] = None

    @classmethod
    def tag_release(cls, branch: str):
        return cls(TAG_RELEASE, branch)

    @classmethod
    def branch_update(cls, branch: str):
        return cls(BRANCH_UPDATE, branch)

    @classmethod
    def rejected(cls):
        return cls(REJECTED)

    @property
    def is_rejected(self) -> bool:
        return self.kind == REJECTED

    def __str__(self):
        if self.branch is None:
            return self.kind
        return f"{self.kind}({self.branch})"


@dataclass
class Notification:
    """
    A repository-change notification pulled from the broker.

    `extra` holds the payload exactly as received so unknown fields
    survive the round trip through enrichment.
    """
    repository_url: str
    ref: str
    base_ref: Optional[str] = None
    extra: dict = field(default_factory=dict)
    processed_at: Optional[str] = None
    project_name: Optional[str] = None
    project: Optional[dict] = None

    @classmethod
    def from_json(cls, body: str):
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as e:
            raise NotificationError(f"Payload is not valid JSON: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise NotificationError("Payload must be a JSON object.")

        repository = data.get('repository')
        if not isinstance(repository, dict) or not isinstance(repository.get('url'), str):
            raise NotificationError("Payload has no 'repository.url'.")

        ref = data.get('ref')
        base_ref = data.get('base_ref')
        return cls(
            repository_url=repository['url'],
            ref=ref if isinstance(ref, str) else '',
            base_ref=base_ref if isinstance(base_ref, str) else None,
            extra=copy.deepcopy(data),
        )

    def mark_processed(self):
        """Stamps the notification with the current UTC time."""
        self.processed_at = datetime.now(timezone.utc).isoformat()

    def assign_project(self, name: str, project: ProjectDefinition):
        self.project_name = name
        self.project = project.to_dict()

    def to_dict(self) -> dict:
        data = copy.deepcopy(self.extra)
        repository = data.get('repository')
        if not isinstance(repository, dict):
            repository = data['repository'] = {}
        repository['url'] = self.repository_url
        # A missing or non-string ref in the payload is left as received
        if self.ref or isinstance(self.extra.get('ref'), str):
            data['ref'] = self.ref
        if self.base_ref is not None:
            data['base_ref'] = self.base_ref

        if self.processed_at is not None:
            data['processed_at'] = self.processed_at
        if self.project_name is not None:
            data['project_name'] = self.project_name
            data['project'] = copy.deepcopy(self.project)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def classify_reference(ref: str, base_ref: str = None) -> PublishMode:
    """
    Decides how a changed reference is published.

    A tag is only published when its base reference is a branch; the
    branch name then comes from the base reference, not from the tag.
    A tag without such a base is not treated as a branch update.
    """
    ref = ref or ''

    if TAGS_PATTERN.match(ref) and base_ref is not None:
        heads = HEADS_PATTERN.match(base_ref)
        if heads:
            return PublishMode.tag_release(heads.group(1))

    heads = HEADS_PATTERN.match(ref)
    if heads:
        return PublishMode.branch_update(heads.group(1))

    return PublishMode.rejected()


def resolve_project(notification: Notification, projects: Mapping[str, ProjectDefinition]):
    """
    Returns (name, project) for the first configured project whose url
    equals the notification's repository url, or None.
    """
    for name, project in projects.items():
        if project.url == notification.repository_url:
            return name, project
    return None
