"""
Tests for the command line interface (paths that do not reach the network).
"""

import pytest
from solders.keypair import Keypair
from typer.testing import CliRunner

from beastswap_relay import __version__
from beastswap_relay.cli import app

from conftest import keypair_secret, new_address

runner = CliRunner()


@pytest.fixture
def relay_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SOL_WALLET", new_address())
    monkeypatch.setenv("PRIVATE_KEY", keypair_secret(Keypair()))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("SOLANA_RPC_URL", "http://127.0.0.1:1")
    return monkeypatch


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert f"v{__version__}" in result.output


def test_missing_configuration(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SOL_WALLET", raising=False)
    monkeypatch.delenv("PRIVATE_KEY", raising=False)

    result = runner.invoke(app, ["check", new_address(), "0.5"])

    assert result.exit_code == 2


def test_check_rejects_invalid_amount(relay_env):
    result = runner.invoke(app, ["check", new_address(), "0.01"])

    assert result.exit_code == 1
    assert "Minimum purchase amount is 0.1 SOL" in result.output


def test_sync_requires_ledger(relay_env):
    relay_env.setenv("LEDGER_ENABLED", "false")

    result = runner.invoke(app, ["sync"])

    assert result.exit_code == 1
    assert "LEDGER_ENABLED" in result.output


def test_invalid_payout_key(relay_env):
    relay_env.setenv("PRIVATE_KEY", "not-a-keypair")

    result = runner.invoke(app, ["check", new_address(), "0.5"])

    assert result.exit_code == 2
    assert "Error: PRIVATE_KEY" in result.output


def test_serve_runs_api_server(relay_env):
    calls = []
    relay_env.setattr("beastswap_relay.main.run", lambda **kwargs: calls.append(kwargs))

    result = runner.invoke(app, ["serve", "--port", "8080"])

    assert result.exit_code == 0
    assert calls == [{"host": None, "port": 8080, "reload": False}]


def test_run_falls_back_to_settings(relay_env):
    from beastswap_relay import main
    from beastswap_relay.config import load_settings

    relay_env.delenv("HOST", raising=False)
    calls = []
    relay_env.setattr(main, "get_settings", load_settings)
    relay_env.setattr(main.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    main.run(port=8080)

    app_path, options = calls[0]
    assert app_path == "beastswap_relay.main:create_app"
    assert options["factory"] is True
    assert options["host"] == "0.0.0.0"
    assert options["port"] == 8080
