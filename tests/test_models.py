import json

import pytest

from subsplitctl.models import (
    BRANCH_UPDATE,
    REJECTED,
    TAG_RELEASE,
    Notification,
    NotificationError,
    ProjectDefinition,
    PublishMode,
    classify_reference,
    resolve_project,
)
from conftest import LIB_URL, notification


@pytest.mark.parametrize("ref, branch", [
    ("refs/heads/main", "main"),
    ("refs/heads/feature/login", "feature/login"),
    ("refs/heads/1.x", "1.x"),
])
def test_branch_reference_is_branch_update(ref, branch):
    assert classify_reference(ref) == PublishMode(BRANCH_UPDATE, branch)
    assert classify_reference(ref, None) == PublishMode.branch_update(branch)


def test_tag_with_branch_base_uses_base_branch_name():
    mode = classify_reference("refs/tags/v1.0", "refs/heads/release-1")
    assert mode.kind == TAG_RELEASE
    assert mode.branch == "release-1"


@pytest.mark.parametrize("base_ref", [None, "refs/tags/v0.9", "main", ""])
def test_tag_without_branch_base_is_rejected(base_ref):
    mode = classify_reference("refs/tags/v1.0", base_ref)
    assert mode.is_rejected
    assert mode.branch is None


@pytest.mark.parametrize("ref", ["HEAD", "", "refs/notes/commits", "main", None])
def test_unknown_reference_is_rejected(ref):
    assert classify_reference(ref).kind == REJECTED


def test_branch_reference_ignores_base_ref():
    assert classify_reference("refs/heads/main", "refs/heads/other") == PublishMode.branch_update("main")


def test_classify_is_repeatable():
    first = classify_reference("refs/tags/v2", "refs/heads/2.x")
    assert classify_reference("refs/tags/v2", "refs/heads/2.x") == first


def test_publish_mode_str():
    assert str(PublishMode.branch_update("main")) == "branch-update(main)"
    assert str(PublishMode.rejected()) == "rejected"


PROJECTS = {
    "first": ProjectDefinition(name="first", url=LIB_URL, splits=("a:a.git",)),
    "second": ProjectDefinition(name="second", url=LIB_URL, splits=("b:b.git",)),
    "other": ProjectDefinition(name="other", url="https://example/other.git", splits=("c:c.git",)),
}


def test_resolve_returns_first_match_in_order():
    name, project = resolve_project(Notification.from_json(notification()), PROJECTS)
    assert name == "first"
    assert project is PROJECTS["first"]


def test_resolve_matches_exact_url():
    n = Notification.from_json(notification(url="https://example/other.git"))
    assert resolve_project(n, PROJECTS)[0] == "other"


@pytest.mark.parametrize("url", [
    LIB_URL + "/",
    "HTTPS://example/lib.git",
    "http://example/lib.git",
    "https://example/unknown.git",
])
def test_resolve_does_not_normalize(url):
    n = Notification.from_json(notification(url=url))
    assert resolve_project(n, PROJECTS) is None


def test_checkout_url_defaults_to_url():
    project = ProjectDefinition(name="lib", url=LIB_URL, splits=("a:a.git",))
    assert project.checkout_url == LIB_URL
    override = ProjectDefinition(name="lib", url=LIB_URL, splits=("a:a.git",), repository_url="git@example:lib.git")
    assert override.checkout_url == "git@example:lib.git"
    assert override.to_dict() == {"url": LIB_URL, "repository-url": "git@example:lib.git", "splits": ["a:a.git"]}


def test_notification_keeps_passthrough_fields():
    body = notification(after="abc123", pusher={"name": "someone"})
    n = Notification.from_json(body)
    n.mark_processed()
    n.assign_project("first", PROJECTS["first"])

    data = n.to_dict()
    original = json.loads(body)
    for key, value in original.items():
        assert data[key] == value
    assert data["project_name"] == "first"
    assert data["project"] == {"url": LIB_URL, "splits": ["a:a.git"]}
    assert data["processed_at"]


def test_notification_without_base_ref_stays_without_it():
    n = Notification.from_json(json.dumps({"repository": {"url": LIB_URL}, "ref": "refs/heads/main"}))
    assert n.base_ref is None
    assert "base_ref" not in n.to_dict()


def test_notification_missing_ref_is_classified_rejected():
    n = Notification.from_json(json.dumps({"repository": {"url": LIB_URL}}))
    assert n.ref == ""
    assert classify_reference(n.ref, n.base_ref).is_rejected


@pytest.mark.parametrize("body", [
    "not json",
    "[1, 2]",
    json.dumps({"ref": "refs/heads/main"}),
    json.dumps({"repository": {"name": "lib"}, "ref": "refs/heads/main"}),
])
def test_malformed_notification_raises(body):
    with pytest.raises(NotificationError):
        Notification.from_json(body)


@pytest.mark.parametrize("payload", [
    {"repository": {"url": LIB_URL}},
    {"repository": {"url": LIB_URL}, "ref": 42},
    {"repository": {"url": LIB_URL}, "ref": None, "base_ref": ["odd"]},
])
def test_unusable_ref_round_trips_verbatim(payload):
    assert Notification.from_json(json.dumps(payload)).to_dict() == payload
