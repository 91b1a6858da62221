"""Password policy: hashing, strength rules and the breach check."""

from unittest.mock import AsyncMock, MagicMock

import httpx

from framegate.service.passwords import (
    PasswordPolicy,
    entropy_bits,
    generate_secure_password,
    strength_label,
)


class TestHashing:
    def test_hash_then_verify(self, settings):
        policy = PasswordPolicy(settings)
        hashed = policy.hash("Str0ng!Pass")
        assert hashed != "Str0ng!Pass"
        assert policy.verify("Str0ng!Pass", hashed)

    def test_other_password_does_not_verify(self, settings):
        policy = PasswordPolicy(settings)
        hashed = policy.hash("Str0ng!Pass")
        assert not policy.verify("Str0ng!Pas", hashed)
        assert not policy.verify("", hashed)

    def test_verify_tolerates_garbage_hash(self, settings):
        policy = PasswordPolicy(settings)
        assert policy.verify("anything", "not-a-hash") is False
        assert policy.verify("anything", None) is False

    def test_same_password_hashes_differently(self, settings):
        policy = PasswordPolicy(settings)
        assert policy.hash("Str0ng!Pass") != policy.hash("Str0ng!Pass")

    def test_needs_rehash_when_cost_rises(self, settings):
        old = PasswordPolicy(settings)
        hashed = old.hash("Str0ng!Pass")
        assert old.needs_rehash(hashed) is False
        stronger = PasswordPolicy(
            settings.model_copy(update={"password_hash_rounds": settings.password_hash_rounds + 1})
        )
        assert stronger.needs_rehash(hashed) is True
        assert stronger.verify("Str0ng!Pass", hashed)


class TestStrength:
    def test_strong_password_passes(self, settings):
        result = PasswordPolicy(settings).validate_strength("Str0ng!Pass")
        assert result.valid
        assert result.errors == []
        assert result.score >= 4

    def test_each_failed_rule_is_reported(self, settings):
        result = PasswordPolicy(settings).validate_strength("abc")
        assert not result.valid
        joined = " ".join(result.errors)
        assert "at least 8 characters" in joined
        assert "uppercase" in joined
        assert "number" in joined
        assert "special" in joined
        assert len(result.errors) == 4

    def test_common_prefix_rejected(self, settings):
        result = PasswordPolicy(settings).validate_strength("Password1!xyz")
        assert not result.valid
        assert any("common pattern" in e for e in result.errors)

    def test_repeated_run_rejected(self, settings):
        result = PasswordPolicy(settings).validate_strength("Zaaaa1!bcd")
        assert not result.valid
        assert any("repeat" in e for e in result.errors)

    def test_optional_rules_can_be_disabled(self, settings):
        relaxed = settings.model_copy(
            update={
                "password_require_uppercase": False,
                "password_require_numbers": False,
                "password_require_special": False,
            }
        )
        assert PasswordPolicy(relaxed).validate_strength("plainletters").valid

    def test_score_is_clamped(self, settings):
        result = PasswordPolicy(settings).validate_strength("Very$trong-Passphrase-2024")
        assert result.score == 5
        assert result.label == "very strong"
        assert result.entropy == entropy_bits("Very$trong-Passphrase-2024")
        assert strength_label(-3) == "very weak"

    def test_entropy_grows_with_classes(self):
        assert entropy_bits("") == 0.0
        assert entropy_bits("abcdefgh") < entropy_bits("abcdEFG1")

    def test_generated_password_satisfies_policy(self, settings):
        policy = PasswordPolicy(settings)
        for _ in range(20):
            assert policy.validate_strength(generate_secure_password()).valid


class TestBreachCheck:
    @staticmethod
    def _client_returning(text: str):
        response = MagicMock()
        response.text = text
        response.raise_for_status = MagicMock()
        client = MagicMock()
        client.get = AsyncMock(return_value=response)
        return client

    async def test_suffix_match_is_compromised(self, settings):
        # SHA-1("password") = 5BAA61E4C9B93F3F0682250B6CF8331B7EE68FD8
        client = self._client_returning(
            "0018A45C4D1DEF81644B54AB7F969B88D65:1\r\n1E4C9B93F3F0682250B6CF8331B7EE68FD8:3730471"
        )
        policy = PasswordPolicy(settings)
        assert await policy.is_compromised("password", client=client) is True
        url = client.get.await_args.args[0]
        assert url.endswith("/range/5BAA6")

    async def test_padding_rows_are_ignored(self, settings):
        client = self._client_returning("1E4C9B93F3F0682250B6CF8331B7EE68FD8:0")
        assert await PasswordPolicy(settings).is_compromised("password", client=client) is False

    async def test_network_failure_counts_as_clean(self, settings):
        client = MagicMock()
        client.get = AsyncMock(side_effect=httpx.ConnectTimeout("timed out"))
        assert await PasswordPolicy(settings).is_compromised("password", client=client) is False
