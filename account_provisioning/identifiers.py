"""
Identifier Allocator Module

Draws 12-digit account numbers uniformly from [100000000000, 999999999999]
and checks them against the profile registry with bounded retry. The
pre-check is an optimisation; the storage-layer unique index is authoritative.
"""

import random
import re
import secrets
from typing import Collection, Optional, Protocol, Tuple

from .errors import AllocationExhausted
from .logging_config import get_logger


ACCOUNT_NUMBER_MIN = 100_000_000_000
ACCOUNT_NUMBER_MAX = 999_999_999_999
DEFAULT_MAX_ATTEMPTS = 10

_ACCOUNT_NUMBER_PATTERN = re.compile(r'[1-9][0-9]{11}')

logger = get_logger("provisioning.identifiers")


class AccountNumberRegistry(Protocol):
    def account_number_in_use(self, account_number: str) -> bool: ...


def generate_account_number(rng: Optional[random.Random] = None) -> str:
    """Draw a 12-digit account number with a non-zero leading digit"""
    rng = rng or secrets.SystemRandom()
    return str(rng.randint(ACCOUNT_NUMBER_MIN, ACCOUNT_NUMBER_MAX))


def is_valid_account_number(value: object) -> bool:
    """Check account number format (exactly 12 ASCII digits, first non-zero)"""
    return isinstance(value, str) and bool(_ACCOUNT_NUMBER_PATTERN.fullmatch(value))


class AccountNumberAllocator:
    """
    Allocates account numbers not yet present in the registry
    """

    def __init__(
        self,
        registry: AccountNumberRegistry,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        rng: Optional[random.Random] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.registry = registry
        self.max_attempts = max_attempts
        self.rng = rng or secrets.SystemRandom()

    def allocate(
        self,
        exclude: Collection[str] = (),
        max_attempts: Optional[int] = None
    ) -> str:
        """
        Find an account number that is not in use.

        Args:
            exclude: Numbers to treat as taken without asking the registry
                (e.g. ones that already lost a race at commit time)
            max_attempts: Draws allowed for this call; defaults to the
                allocator's bound

        Returns:
            12-digit account number string

        Raises:
            AllocationExhausted: if every attempt collided
        """
        account_number, _ = self.allocate_counted(exclude, max_attempts)
        return account_number

    def allocate_counted(
        self,
        exclude: Collection[str] = (),
        max_attempts: Optional[int] = None
    ) -> Tuple[str, int]:
        """Like allocate(), also returning how many draws were spent"""
        budget = self.max_attempts if max_attempts is None else max_attempts
        for attempt in range(1, budget + 1):
            candidate = generate_account_number(self.rng)
            if candidate in exclude or self.registry.account_number_in_use(candidate):
                logger.debug(f"Account number collision on attempt {attempt}, retrying")
                continue
            return candidate, attempt

        logger.warning(f"Account number allocation exhausted after {self.max_attempts} attempts")
        raise AllocationExhausted(self.max_attempts)
