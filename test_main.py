"""Tests for the service launcher."""

import subprocess
import sys

import main


class FakeChild:
    pid = 4242

    def poll(self):
        return None


def test_children_share_the_console(monkeypatch):
    launched = []

    def fake_popen(args, **kwargs):
        launched.append((args, kwargs))
        return FakeChild()

    monkeypatch.setattr(subprocess, "Popen", fake_popen)
    monkeypatch.setattr(main.time, "sleep", lambda seconds: None)
    monkeypatch.setattr(main, "children", [])

    child = main.launch(main.Service("webhook API", "api_server.py"))

    [(args, kwargs)] = launched
    assert args == [sys.executable, "api_server.py"]
    assert kwargs["cwd"] == main.BASE_DIR
    assert kwargs.get("stdout") is None
    assert kwargs.get("stderr") is None
    assert main.children == [child]


def test_worker_is_only_started_when_enabled(monkeypatch):
    monkeypatch.setattr(main.settings, "WORKER_ENABLED", False)
    assert [s.script for s in main.services()] == ["api_server.py"]

    monkeypatch.setattr(main.settings, "WORKER_ENABLED", True)
    assert [s.script for s in main.services()] == ["api_server.py", "background_worker.py"]
