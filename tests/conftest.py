import json
import os
import stat
import types

import pytest

from subsplitctl.broker import FAILURES, INCOMING, PROCESSED, PROCESSING
from subsplitctl.config import Config, RedisSettings
from subsplitctl.models import ProjectDefinition

LIB_URL = "https://example/lib.git"

FAKE_GIT = """#!/bin/sh
echo "$(pwd) git $*" >> "$GIT_LOG"
if [ -n "$LATIN1_OUTPUT" ]; then printf 'caf\\351\\n'; fi
if [ "$2" = "init" ] && [ -n "$FAIL_INIT" ]; then exit 1; fi
if [ "$2" = "publish" ] && [ -n "$FAIL_PUBLISH" ]; then exit 3; fi
exit 0
"""


class InMemoryBroker:
    """Same interface as RedisBroker, backed by plain lists (index 0 is the head)."""

    def __init__(self):
        self.lists = {name: [] for name in (INCOMING, PROCESSING, PROCESSED, FAILURES)}
        self.in_flight = None

    def next_notification(self):
        self.in_flight = None
        # An empty incoming list stands in for a pop that returned without payload
        if not self.lists[INCOMING]:
            return None
        body = self.lists[INCOMING].pop()
        self.lists[PROCESSING].insert(0, body)
        self.in_flight = body
        return body

    def acknowledge(self, body, payload, succeeded):
        self.lists[PROCESSING].remove(body)
        if succeeded:
            self.lists[PROCESSED].append(payload)
        else:
            self.lists[FAILURES].insert(0, payload)
        if body == self.in_flight:
            self.in_flight = None

    def enqueue(self, payload):
        self.lists[INCOMING].insert(0, payload)

    def length(self, name):
        return len(self.lists[name])

    def entries(self, name):
        return list(self.lists[name])

    def requeue_failure(self, body):
        if body not in self.lists[FAILURES]:
            return False
        self.lists[FAILURES].remove(body)
        self.lists[INCOMING].insert(0, body)
        return True

    def decoded(self, name):
        return [json.loads(body) for body in self.lists[name]]


def notification(url=LIB_URL, ref="refs/heads/main", base_ref=None, **extra):
    data = {"repository": {"url": url}, "ref": ref, "base_ref": base_ref}
    data.update(extra)
    return json.dumps(data)


def make_config(working_directory, projects=None):
    if projects is None:
        projects = {
            "lib": ProjectDefinition(name="lib", url=LIB_URL, splits=("sub:->out.git",)),
        }
    return Config(
        working_directory=str(working_directory),
        projects=types.MappingProxyType(projects),
        redis=RedisSettings(),
    )


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path / "work")


@pytest.fixture
def fake_git(tmp_path, monkeypatch):
    """Puts a stand-in `git` first on PATH and returns the file it logs calls to."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    git = bin_dir / "git"
    git.write_text(FAKE_GIT)
    git.chmod(git.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    log = tmp_path / "git.log"
    log.touch()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("GIT_LOG", str(log))
    monkeypatch.delenv("FAIL_INIT", raising=False)
    monkeypatch.delenv("FAIL_PUBLISH", raising=False)
    monkeypatch.delenv("LATIN1_OUTPUT", raising=False)
    return log
