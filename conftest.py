"""
Pytest configuration for the CHIP-8 test suite.

    python -m pytest              # whole suite
    python -m pytest -m "not display"

SDL is pointed at its dummy video and audio drivers before anything
imports pygame, so display/audio tests run without a screen or sound
card.
"""

import os

import pytest

os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "display: tests that open pygame display or audio (dummy SDL drivers)")


@pytest.fixture
def rom_file(tmp_path):
    """Factory: write bytes to a ROM file and return its path."""
    def _make(data: bytes, name: str = "test.ch8") -> str:
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)
    return _make
