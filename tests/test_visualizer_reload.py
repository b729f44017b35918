"""Tests for signalling cava to reload its config."""

from __future__ import annotations

import asyncio

import cava_art.services.visualizer_reload as reload_module
from cava_art.services.visualizer_reload import reload_visualizer


class FakeProcess:
    def __init__(self, returncode: int) -> None:
        self.returncode = returncode

    async def wait(self) -> int:
        return self.returncode


def _patch_pkill(monkeypatch, returncode: int) -> list[tuple]:
    calls: list[tuple] = []

    async def fake_exec(*argv, **kwargs):
        calls.append(argv)
        return FakeProcess(returncode)

    monkeypatch.setattr(reload_module.shutil, "which", lambda name: "/usr/bin/pkill")
    monkeypatch.setattr(reload_module.asyncio, "create_subprocess_exec", fake_exec)
    return calls


def test_reload_signals_exact_process_name(monkeypatch) -> None:
    calls = _patch_pkill(monkeypatch, 0)
    assert asyncio.run(reload_visualizer("cava")) is True
    assert calls == [("/usr/bin/pkill", "-USR2", "-x", "cava")]


def test_reload_without_running_process_returns_false(monkeypatch) -> None:
    _patch_pkill(monkeypatch, 1)
    assert asyncio.run(reload_visualizer()) is False


def test_reload_without_pkill_returns_false(monkeypatch, caplog) -> None:
    monkeypatch.setattr(reload_module.shutil, "which", lambda name: None)
    assert asyncio.run(reload_visualizer()) is False
    assert "pkill not found" in caplog.text
