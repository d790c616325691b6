from __future__ import annotations

import runpy
import sys

import pytest

import donation_thermometer.cli as cli_mod
from donation_thermometer import __version__


def test_python_m_entrypoint_invokes_cli_app(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    called = {"value": False}

    def _fake_app() -> None:
        called["value"] = True

    monkeypatch.setattr(cli_mod, "app", _fake_app)
    runpy.run_module("donation_thermometer.__main__", run_name="__main__")

    assert called["value"] is True


def test_python_m_version_flag(monkeypatch, capsys) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(sys, "argv", ["thermo", "--version"])

    with pytest.raises(SystemExit) as exc_info:
        runpy.run_module("donation_thermometer.__main__", run_name="__main__")

    assert exc_info.value.code == 0
    assert f"donation-thermometer v{__version__}" in capsys.readouterr().out
