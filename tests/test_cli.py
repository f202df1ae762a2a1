"""
Tests for the jwksync command line interface.
"""

import json

import httpx
import pytest

from jwksync import TokenSigner, TokenValidator
from jwksync.cli import build_parser, main


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args(["provision"])
        assert args.store == "memory"
        assert args.secretsmap == "secrets"
        assert args.nonsecretsmap == "settings"
        assert args.keystrength == 2048

    def test_partition_flags(self):
        args = build_parser().parse_args(["-S", "vault", "-N", "public", "keys", "-U"])
        assert (args.secretsmap, args.nonsecretsmap) == ("vault", "public")
        assert args.update is True

    def test_unknown_family_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["rotate", "dsa"])


class TestCommands:
    """Tests for CLI commands against the memory store."""

    def test_config(self, capsys):
        assert main(["config"]) == 0
        assert "SECRETS_PARTITION" in capsys.readouterr().out

    def test_no_command(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_provision(self, capsys):
        assert main(["provision", "--families", "ec"]) == 0
        out = capsys.readouterr().out
        assert out.startswith("ec: ec__")

    def test_provision_failure(self, capsys):
        assert main(["--curve", "P-999", "provision"]) == 1
        captured = capsys.readouterr()
        assert captured.out.startswith("rsa: rsa__")
        assert "Error:" in captured.err

    def test_rotate(self, capsys):
        assert main(["rotate", "ec"]) == 0
        assert capsys.readouterr().out.strip().startswith("ec__")

    def test_keys_without_partitions(self, capsys):
        """A store without partitions is reported as an error."""
        assert main(["keys"]) == 1
        assert "Error:" in capsys.readouterr().err

    def test_sign_invalid_json(self, capsys):
        assert main(["sign", "{nope", "--kid", "ec__x", "--json"]) == 1
        assert "Invalid JSON" in capsys.readouterr().err


class TestValidateCommand:
    """Tests for the validate command with a stubbed JWKS endpoint."""

    @pytest.fixture
    def stub_validator(self, monkeypatch, jwks_transport, jwks_for, ec_keypair):
        transport = jwks_transport(jwks_for(ec_keypair))
        monkeypatch.setattr(
            "jwksync.cli.TokenValidator",
            lambda http_timeout: TokenValidator(client=httpx.AsyncClient(transport=transport)),
        )

    def test_valid(self, stub_validator, ec_keypair, capsys):
        token = TokenSigner(ec_keypair.private_key, ec_keypair.kid).sign({"sub": "test"})

        code = main(["validate", "-t", token, "--endpoint", "https://issuer/jwks", "--json"])

        assert code == 0
        assert json.loads(capsys.readouterr().out) == {
            "valid": True,
            "payload": {"sub": "test"},
            "error": None,
        }

    def test_invalid(self, stub_validator, capsys):
        assert main(["validate", "-t", "garbage", "--endpoint", "https://issuer/jwks"]) == 1
        assert capsys.readouterr().out.startswith("INVALID:")
