"""Pytest configuration and shared fixtures."""

import os
from pathlib import Path

import pytest

from tweeplay.play import StoryEngine

CAVE_STORY = """\
:: Start [start]
Go [[North->Cave]] or [[South]]

:: Cave
Dead end.
"""

LIGHTHOUSE_STORY = """\
:: StoryTitle
The Lighthouse

:: StoryData
{
  "ifid": "D674C58C-DEFA-4F70-B7A2-27742230C0FC",
  "format": "SugarCube",
  "format-version": "2.36.1",
  "start": "Shore"
}

:: Shore {"position":"100,100"}
Waves break against the rocks. A lighthouse stands on the cliff.

[[Climb the path->Cliff]]
[[Wait for the tide|Tide]]

:: Cliff [outdoor]
The door of the lighthouse is ajar.

[[Enter->Lamp Room]]
[[Shore<-Go back down]]

:: Tide
The water rises and you are swept away.

:: Lamp Room [indoor]
The great lamp is dark. You light it, and a ship turns toward the harbor.
"""


@pytest.fixture(autouse=True)
def clean_tweeplay_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep TWEEPLAY_* variables from the developer environment out of tests."""
    for key in list(os.environ):
        if key.startswith("TWEEPLAY_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def cave_story() -> str:
    """Two passages, one dangling choice."""
    return CAVE_STORY


@pytest.fixture
def lighthouse_story() -> str:
    """Titled story with StoryData, every passage reachable, two endings."""
    return LIGHTHOUSE_STORY


@pytest.fixture
def engine() -> StoryEngine:
    """Engine with default configuration."""
    return StoryEngine()


@pytest.fixture
def story_file(tmp_path: Path, lighthouse_story: str) -> Path:
    """The lighthouse story written to disk."""
    path = tmp_path / "lighthouse.twee"
    path.write_text(lighthouse_story, encoding="utf-8")
    return path
