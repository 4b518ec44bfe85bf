"""
Unit Tests for Unlock Code Generation

Tests cover:
1. Normalization and hashing
2. Code format
3. Bounded retry on digest collision
"""

import hashlib
import re
from concurrent.futures import ThreadPoolExecutor

import pytest

from unlock_ledger.codes import (
    CODE_ALPHABET,
    CodeGenerator,
    hash_code,
    mask_code,
    normalize_code,
)
from unlock_ledger.errors import CodeGenerationExhausted, DuplicateCodeHash, ErrorKind


class ScriptedGenerator(CodeGenerator):
    def __init__(self, codes):
        super().__init__()
        self.codes = list(codes)

    def generate(self):
        plaintext = self.codes.pop(0)
        return plaintext, hash_code(plaintext)


class TestNormalization:
    """Tests for code normalization and hashing."""

    def test_normalize_strips_separators_and_uppercases(self):
        """Test that separators, case and whitespace do not matter."""
        assert normalize_code("abcd-1234") == "ABCD1234"
        assert normalize_code("  AbCd - 12 34 ") == "ABCD1234"
        assert normalize_code("AB-CD-12-34") == "ABCD1234"

    def test_normalize_is_idempotent(self):
        """Test that normalizing twice changes nothing."""
        for raw in ["abcd-1234", "ABCD1234", " x-y-z ", "--"]:
            assert normalize_code(normalize_code(raw)) == normalize_code(raw)

    def test_hash_is_sha256_of_normalized_code(self):
        """Test that the digest is computed over the normalized form."""
        expected = hashlib.sha256(b"ABCD1234").hexdigest()

        assert hash_code("ABCD-1234") == expected
        assert hash_code("abcd1234") == expected
        assert hash_code(" abcd-12-34") == expected

    def test_generated_digest_matches_hash_of_plaintext(self):
        """Test that generation and lookup hash the same way."""
        generator = CodeGenerator()

        for _ in range(50):
            plaintext, digest = generator.generate()
            assert hash_code(plaintext) == digest
            assert hash_code(plaintext.lower()) == digest

    def test_mask_code_hides_tail(self):
        """Test that log masking keeps only the first block."""
        assert mask_code("abcd-1234") == "ABCD-****"


class TestCodeFormat:
    """Tests for the human-readable code format."""

    def test_default_format_is_two_groups_of_four(self):
        """Test the XXXX-XXXX layout and alphabet."""
        generator = CodeGenerator()

        plaintext, _ = generator.generate()

        assert re.fullmatch(r"[A-Z0-9]{4}-[A-Z0-9]{4}", plaintext)
        assert all(c in CODE_ALPHABET for c in normalize_code(plaintext))

    def test_custom_length_and_grouping(self):
        """Test that length and group size are configurable."""
        plaintext, _ = CodeGenerator(length=12, group_size=3).generate()
        assert re.fullmatch(r"([A-Z0-9]{3}-){3}[A-Z0-9]{3}", plaintext)

        ungrouped, _ = CodeGenerator(length=10, group_size=0).generate()
        assert re.fullmatch(r"[A-Z0-9]{10}", ungrouped)

    def test_concurrent_generation_yields_unique_digests(self):
        """Test that codes generated from many threads do not collide."""
        generator = CodeGenerator()

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: generator.generate(), range(500)))

        digests = [digest for _, digest in results]
        assert len(set(digests)) == len(digests)


class TestBoundedRetry:
    """Tests for retry-on-collision."""

    def test_retry_engages_on_collision(self):
        """Test that taken digests are skipped until a free one appears."""
        taken = {hash_code("AAAA-0001"), hash_code("AAAA-0002")}
        generator = ScriptedGenerator(["AAAA-0001", "AAAA-0002", "BBBB-0003"])

        plaintext, digest = generator.generate_unique(lambda d: d in taken, max_attempts=10)

        assert plaintext == "BBBB-0003"
        assert digest == hash_code("BBBB-0003")
        assert generator.codes == []

    def test_success_on_last_attempt(self):
        """Test that the final allowed attempt may still succeed."""
        colliding = [f"AAAA-000{i}" for i in range(1, 10)]
        taken = {hash_code(c) for c in colliding}
        generator = ScriptedGenerator(colliding + ["ZZZZ-9999"])

        plaintext, _ = generator.generate_unique(lambda d: d in taken, max_attempts=10)

        assert plaintext == "ZZZZ-9999"

    def test_claim_result_returned(self):
        """Test that the claim callback receives the free candidate."""
        generator = ScriptedGenerator(["CCCC-0001"])
        claimed = []

        def claim(plaintext, digest):
            claimed.append((plaintext, digest))
            return "row-1"

        plaintext, result = generator.generate_unique(lambda d: False, max_attempts=3, claim=claim)

        assert plaintext == "CCCC-0001"
        assert result == "row-1"
        assert claimed == [("CCCC-0001", hash_code("CCCC-0001"))]

    def test_claim_race_counts_as_collision(self):
        """Test that a digest taken between check and insert is retried."""
        generator = ScriptedGenerator(["RACE-0001", "RACE-0002"])

        def claim(plaintext, digest):
            if plaintext == "RACE-0001":
                raise DuplicateCodeHash()
            return plaintext

        plaintext, result = generator.generate_unique(lambda d: False, max_attempts=2, claim=claim)

        assert plaintext == "RACE-0002"
        assert result == "RACE-0002"

    def test_claim_races_exhaust_attempts(self):
        """Test that repeated insert races still respect the attempt limit."""
        generator = ScriptedGenerator(["RACE-0001", "RACE-0002", "RACE-0003"])

        def claim(plaintext, digest):
            raise DuplicateCodeHash()

        with pytest.raises(CodeGenerationExhausted):
            generator.generate_unique(lambda d: False, max_attempts=2, claim=claim)

        assert generator.codes == ["RACE-0003"]

    def test_exhaustion_raises(self):
        """Test that exceeding the attempt limit is fatal."""
        generator = CodeGenerator()
        calls = []

        def always_taken(digest):
            calls.append(digest)
            return True

        with pytest.raises(CodeGenerationExhausted) as exc_info:
            generator.generate_unique(always_taken, max_attempts=10)

        assert len(calls) == 10
        assert exc_info.value.kind == ErrorKind.CODE_GENERATION_EXHAUSTED


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
