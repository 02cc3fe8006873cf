"""Tests for PBKDF2 password hashing and session token hashing."""

import re
from unittest.mock import patch

import pytest

from tenantgate.config import PASSWORD_ITERATIONS_DEFAULT, PASSWORD_ITERATIONS_MIN
from tenantgate.service import passwords as passwords_module
from tenantgate.service.passwords import (
    PasswordService,
    hash_password,
    verify_password,
)
from tenantgate.service.tokens import generate_token, hash_token

PEPPER = "pepper-for-tests"


class TestHashPassword:
    """Tests for the stored hash format."""

    def test_format_is_self_describing(self):
        stored = hash_password("correct horse", PEPPER, PASSWORD_ITERATIONS_MIN)
        algorithm, iterations, salt, digest = stored.split("$")
        assert algorithm == "pbkdf2_sha256"
        assert int(iterations) == PASSWORD_ITERATIONS_MIN
        # base64url without padding
        assert re.fullmatch(r"[A-Za-z0-9_-]+", salt)
        assert re.fullmatch(r"[A-Za-z0-9_-]+", digest)
        assert "=" not in stored

    def test_salt_differs_per_hash(self):
        first = hash_password("same", PEPPER, PASSWORD_ITERATIONS_MIN)
        second = hash_password("same", PEPPER, PASSWORD_ITERATIONS_MIN)
        assert first != second

    def test_out_of_range_iterations_use_default(self):
        stored = hash_password("pw", PEPPER, 10)
        assert int(stored.split("$")[1]) == PASSWORD_ITERATIONS_DEFAULT


class TestVerifyPassword:
    """Tests for verification against stored hashes."""

    @pytest.fixture(scope="class")
    def stored(self):
        return hash_password("Tr0ub4dor&3", PEPPER, PASSWORD_ITERATIONS_MIN)

    def test_round_trip(self, stored):
        assert verify_password("Tr0ub4dor&3", PEPPER, stored) is True

    def test_single_character_mutation_fails(self, stored):
        assert verify_password("Tr0ub4dor&4", PEPPER, stored) is False
        assert verify_password("tr0ub4dor&3", PEPPER, stored) is False
        assert verify_password("Tr0ub4dor&", PEPPER, stored) is False

    def test_wrong_pepper_fails(self, stored):
        assert verify_password("Tr0ub4dor&3", "other-pepper", stored) is False

    @pytest.mark.parametrize(
        "malformed",
        [
            None,
            "",
            "not-a-hash",
            "bcrypt$100000$abc$def",
            "pbkdf2_sha256$notanumber$abc$def",
            "pbkdf2_sha256$100000$!!!$def",
            "pbkdf2_sha256$100000$c2FsdA$c2hvcnQ",
            "pbkdf2_sha256$1$c2FsdA$" + "A" * 43,
        ],
    )
    def test_malformed_hashes_are_a_mismatch(self, malformed):
        assert verify_password("anything", PEPPER, malformed) is False


class TestPasswordService:
    """Tests for the pepper-bound service wrapper."""

    @pytest.fixture
    def service(self):
        return PasswordService(PEPPER, PASSWORD_ITERATIONS_MIN)

    def test_hash_and_verify(self, service):
        stored = service.hash("s3cret-value")
        assert service.verify("s3cret-value", stored)
        assert not service.verify("s3cret-valuE", stored)

    def test_dummy_verify_is_always_false(self, service):
        assert service.dummy_verify("whatever") is False
        # The dummy hash is built once and reused
        first = service._get_dummy_hash()
        assert service._get_dummy_hash() == first

    async def test_async_helpers(self, service):
        stored = await service.hash_async("async-password")
        assert await service.verify_async("async-password", stored) is True
        assert await service.dummy_verify_async("async-password") is False

    @pytest.mark.parametrize("unusable", [None, "", "garbage", "pbkdf2_sha256$1$c2FsdA$ZGln"])
    def test_unusable_hash_still_runs_the_kdf(self, service, unusable):
        service.warm_up()
        with patch.object(
            passwords_module, "_derive", wraps=passwords_module._derive
        ) as derive, patch("tenantgate.service.passwords.logger") as mock_logger:
            assert service.verify("whatever", unusable) is False
        assert derive.call_count == 1
        assert mock_logger.warning.call_args.args[0] == "password_hash_unusable"

    def test_warm_up_builds_the_dummy_hash_once(self, service):
        assert service._dummy_hash is None
        service.warm_up()
        built = service._dummy_hash
        assert built is not None
        with patch.object(passwords_module, "_derive", wraps=passwords_module._derive) as derive:
            assert service.dummy_verify("whatever") is False
        assert service._dummy_hash == built
        assert derive.call_count == 1

    def test_needs_rehash(self, service):
        assert service.needs_rehash(service.hash("pw")) is False
        assert service.needs_rehash(hash_password("pw", PEPPER, 200_000)) is True
        assert service.needs_rehash("garbage") is True
        assert service.needs_rehash(None) is True


class TestTokens:
    """Tests for opaque session tokens."""

    def test_generate_token_is_url_safe_and_unique(self):
        tokens = {generate_token() for _ in range(50)}
        assert len(tokens) == 50
        for token in tokens:
            assert re.fullmatch(r"[A-Za-z0-9_-]{43}", token)

    def test_hash_token_is_keyed(self):
        token = generate_token()
        digest = hash_token(token, "secret-a")
        assert re.fullmatch(r"[0-9a-f]{64}", digest)
        assert digest == hash_token(token, "secret-a")
        assert digest != hash_token(token, "secret-b")
        assert token not in digest
