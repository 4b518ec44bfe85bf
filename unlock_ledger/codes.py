import hashlib
import logging
import secrets
import string
from typing import Callable, Iterator, Optional, TypeVar

from .errors import CodeGenerationExhausted, DuplicateCodeHash

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_SEPARATOR = "-"

T = TypeVar("T")


def normalize_code(raw: str) -> str:
    """Canonical form used for hashing: uppercase, no separators, no whitespace."""
    return "".join(raw.split()).upper().replace(CODE_SEPARATOR, "")


def hash_code(raw: str) -> str:
    return hashlib.sha256(normalize_code(raw).encode("utf-8")).hexdigest()


def mask_code(raw: str) -> str:
    """Keeps the first block for log lines, e.g. ``ABCD-****``."""
    normalized = normalize_code(raw)
    visible = normalized[:4]
    return f"{visible}{CODE_SEPARATOR}{'*' * max(len(normalized) - len(visible), 0)}"


class CodeGenerator:
    def __init__(self, length: int = 8, group_size: int = 4, alphabet: str = CODE_ALPHABET):
        if length <= 0:
            raise ValueError("length must be positive")
        self.length = length
        self.group_size = group_size
        self.alphabet = alphabet

    def generate(self) -> tuple[str, str]:
        chars = "".join(secrets.choice(self.alphabet) for _ in range(self.length))
        plaintext = self._group(chars)
        return plaintext, hash_code(plaintext)

    def candidates(self, max_attempts: int) -> Iterator[tuple[int, str, str]]:
        """Yield ``(attempt, plaintext, digest)`` at most ``max_attempts`` times."""
        for attempt in range(1, max_attempts + 1):
            plaintext, digest = self.generate()
            yield attempt, plaintext, digest

    def generate_unique(
        self,
        exists: Callable[[str], bool],
        max_attempts: int = 10,
        claim: Optional[Callable[[str, str], T]] = None,
    ) -> tuple[str, T]:
        """Generate a code whose digest is not yet taken.

        ``exists`` is asked about each candidate digest. When ``claim`` is
        given it is called with ``(plaintext, digest)`` for a free candidate
        and its result is returned; a ``DuplicateCodeHash`` from it counts as
        a collision. Without ``claim`` the digest itself is returned. After
        ``max_attempts`` collisions ``CodeGenerationExhausted`` is raised.
        """
        for attempt, plaintext, digest in self.candidates(max_attempts):
            if exists(digest):
                logger.warning("Unlock code digest collision on attempt %d/%d", attempt, max_attempts)
                continue
            if claim is None:
                return plaintext, digest
            try:
                claimed = claim(plaintext, digest)
            except DuplicateCodeHash:
                logger.warning("Unlock code digest taken concurrently on attempt %d/%d", attempt, max_attempts)
                continue
            if attempt > 1:
                logger.info("Unique unlock code found after %d attempts", attempt)
            return plaintext, claimed
        raise CodeGenerationExhausted(
            f"Failed to generate unique code after {max_attempts} attempts"
        )

    def _group(self, chars: str) -> str:
        if not self.group_size:
            return chars
        return CODE_SEPARATOR.join(
            chars[i:i + self.group_size] for i in range(0, len(chars), self.group_size)
        )
