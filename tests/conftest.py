"""Shared fixtures for the Control Panel engine tests."""

import logging

import pytest

from controlpanel import logging_setup
from controlpanel.config import Settings
from controlpanel.core.session import TaskSession

NOW = 1_700_000_000_000.0


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: float = NOW):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sent():
    """Commands passed to the session's sender, in order."""
    return []


@pytest.fixture
def session(clock, sent):
    task_session = TaskSession(
        settings=Settings(tick_interval_seconds=0.01, log_poll_interval_seconds=0.01),
        sender=sent.append,
        clock=clock,
    )
    yield task_session
    task_session.close()


@pytest.fixture
def catalog():
    """Host task catalog: a composite build with nested dependencies."""
    return [
        {
            "id": "shell: build-all",
            "label": "build-all",
            "displayLabel": "Build All",
            "source": "Workspace",
            "dependsOrder": "sequence",
            "dependsOn": [
                {
                    "id": "shell: compile",
                    "label": "compile",
                    "source": "Workspace",
                    "dependsOn": [
                        {"id": "shell: codegen", "label": "codegen", "source": "Workspace"},
                    ],
                },
                {"id": "npm: lint", "label": "lint", "source": "npm"},
            ],
        },
        {"label": "serve", "source": "Workspace"},
    ]


@pytest.fixture
def restore_logging(monkeypatch):
    """Undo handlers and levels installed by ``setup_logging``."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    monkeypatch.setattr(logging_setup, "_buffer_handler", None)
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.captureWarnings(False)
