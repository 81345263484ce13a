"""
Tests for the CLI
"""

import pytest

from tollgate.cli import main
from tollgate.persistence.database import Database


@pytest.fixture(autouse=True)
def cli_database(tmp_path, monkeypatch):
    """Point the CLI at a fresh database."""
    Database.reset_instance()
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("ARTIFACT_DIR", str(tmp_path / "artifacts"))
    yield
    Database.reset_instance()


class TestCli:
    """Test operator commands."""

    def test_topup_then_balance(self, capsys):
        main(["topup", "Ops@Example.com", "12.5"])
        main(["balance", "ops@example.com"])

        out = capsys.readouterr().out
        assert "Credited 12.5 to ops@example.com" in out
        assert "ops@example.com: 12.5 credits" in out

    def test_low_balance_is_flagged(self, capsys):
        main(["balance", "empty@example.com"])

        assert "(low)" in capsys.readouterr().out

    def test_invalid_amount(self, capsys):
        with pytest.raises(SystemExit):
            main(["topup", "ops@example.com", "lots"])

    @pytest.mark.parametrize("amount", ["NaN", "Infinity", "sNaN"])
    def test_non_finite_amount(self, capsys, amount):
        with pytest.raises(SystemExit) as exc_info:
            main(["topup", "ops@example.com", amount])

        assert exc_info.value.code == 1
        assert f"Error: invalid amount: {amount}" in capsys.readouterr().out

    def test_non_positive_amount(self, capsys):
        with pytest.raises(SystemExit):
            main(["topup", "ops@example.com", "-1"])

        assert "Error:" in capsys.readouterr().out

    def test_sweep_empty_queue(self, capsys):
        main(["sweep"])

        assert "Processed 0 job(s)" in capsys.readouterr().out

    def test_stale_claims_none(self, capsys):
        main(["stale-claims"])

        assert "No stale claims" in capsys.readouterr().out
