from __future__ import annotations

import subprocess

from stageci.git_facts import git


def _fake_git(responses):
    def _git(args, cwd=None):
        key = " ".join(args)
        value = responses[key]
        if isinstance(value, Exception):
            raise value
        return value

    return _git


def test_branch_checkout(monkeypatch):
    monkeypatch.setattr(git, "_git", _fake_git({"rev-parse --abbrev-ref HEAD": "master"}))
    assert git.get_current_ref() == ("master", "branch")


def test_detached_head_on_tag(monkeypatch):
    monkeypatch.setattr(
        git,
        "_git",
        _fake_git({
            "rev-parse --abbrev-ref HEAD": "HEAD",
            "describe --tags --exact-match HEAD": "v1.2.0",
        }),
    )
    assert git.get_current_ref() == ("v1.2.0", "tag")


def test_detached_head_without_tag_uses_sha(monkeypatch):
    monkeypatch.setattr(
        git,
        "_git",
        _fake_git({
            "rev-parse --abbrev-ref HEAD": "HEAD",
            "describe --tags --exact-match HEAD": subprocess.CalledProcessError(128, "git"),
            "rev-parse --short HEAD": "abc1234",
        }),
    )
    assert git.get_current_ref() == ("abc1234", "branch")
