"""Tests for the dvmpay CLI."""

import sys

import pytest

from dvmpay import cli
from dvmpay.identity import Identity, encode_npub


def _run(monkeypatch, *args):
    monkeypatch.setattr(sys, "argv", ["dvmpay", *args])
    cli.main()


class TestCli:
    def test_keygen(self, monkeypatch, capsys):
        _run(monkeypatch, "keygen")
        out = capsys.readouterr().out
        assert "npub1" in out
        assert "DVMPAY_PRIVATE_KEY=" in out

    def test_resolve(self, monkeypatch, capsys):
        identity = Identity.generate()
        _run(monkeypatch, "resolve", encode_npub(identity.public_key))
        assert capsys.readouterr().out.strip() == identity.public_key

    def test_resolve_invalid(self, monkeypatch, capsys):
        with pytest.raises(SystemExit):
            _run(monkeypatch, "resolve", "nope")
        assert "Invalid identifier" in capsys.readouterr().out

    def test_config(self, monkeypatch, capsys):
        monkeypatch.setenv("DVMPAY_AUTO_PAY_THRESHOLD_SATS", "7")
        _run(monkeypatch, "config")
        assert "auto_pay_threshold_sats: 7" in capsys.readouterr().out

    def test_no_command(self, monkeypatch, capsys):
        with pytest.raises(SystemExit):
            _run(monkeypatch)
        assert "keygen" in capsys.readouterr().out

    def test_unknown_command(self, monkeypatch, capsys):
        with pytest.raises(SystemExit):
            _run(monkeypatch, "worker")
        assert "Unknown command" in capsys.readouterr().out
