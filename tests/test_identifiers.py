"""
Tests for account number generation, validation and bounded allocation
"""

import pytest

from account_provisioning.errors import AllocationExhausted
from account_provisioning.identifiers import (
    ACCOUNT_NUMBER_MAX, ACCOUNT_NUMBER_MIN, AccountNumberAllocator,
    generate_account_number, is_valid_account_number
)


class ScriptedRandom:
    """Returns a fixed sequence of draws"""

    def __init__(self, values):
        self.values = list(values)

    def randint(self, a, b):
        return self.values.pop(0)


class StubRegistry:
    def __init__(self, taken=(), always_taken=False):
        self.taken = set(taken)
        self.always_taken = always_taken
        self.checks = []

    def account_number_in_use(self, account_number):
        self.checks.append(account_number)
        return self.always_taken or account_number in self.taken


class TestGeneration:
    """Test account number format"""

    def test_generated_numbers_are_valid(self):
        for _ in range(200):
            number = generate_account_number()
            assert len(number) == 12
            assert number[0] != "0"
            assert is_valid_account_number(number)

    def test_range_bounds(self):
        assert generate_account_number(ScriptedRandom([ACCOUNT_NUMBER_MIN])) == "100000000000"
        assert generate_account_number(ScriptedRandom([ACCOUNT_NUMBER_MAX])) == "999999999999"

    @pytest.mark.parametrize("value", [
        "012345678901", "12345678901", "1234567890123", "12345678901a",
        "１２３４５６７８９０１２", 123456789012, None, ""
    ])
    def test_invalid_account_numbers(self, value):
        assert not is_valid_account_number(value)


class TestAllocator:
    """Test bounded collision retry"""

    def test_first_free_candidate_is_returned(self):
        registry = StubRegistry()
        allocator = AccountNumberAllocator(registry, rng=ScriptedRandom([123456789012]))

        assert allocator.allocate() == "123456789012"
        assert registry.checks == ["123456789012"]

    def test_collision_triggers_fresh_draw(self):
        registry = StubRegistry(taken={"111111111111"})
        allocator = AccountNumberAllocator(
            registry, rng=ScriptedRandom([111111111111, 222222222222])
        )

        assert allocator.allocate() == "222222222222"
        assert registry.checks == ["111111111111", "222222222222"]

    def test_excluded_numbers_count_as_taken(self):
        registry = StubRegistry()
        allocator = AccountNumberAllocator(
            registry, rng=ScriptedRandom([111111111111, 222222222222])
        )

        assert allocator.allocate(exclude={"111111111111"}) == "222222222222"
        assert registry.checks == ["222222222222"]

    def test_exhaustion_after_exactly_max_attempts(self):
        registry = StubRegistry(always_taken=True)
        allocator = AccountNumberAllocator(registry)

        with pytest.raises(AllocationExhausted) as exc_info:
            allocator.allocate()

        assert exc_info.value.attempts == 10
        assert len(registry.checks) == 10

    def test_custom_bound(self):
        registry = StubRegistry(always_taken=True)
        allocator = AccountNumberAllocator(registry, max_attempts=3)

        with pytest.raises(AllocationExhausted):
            allocator.allocate()
        assert len(registry.checks) == 3

    def test_bound_must_be_positive(self):
        with pytest.raises(ValueError):
            AccountNumberAllocator(StubRegistry(), max_attempts=0)

    def test_counted_allocation_reports_draws(self):
        registry = StubRegistry(taken={"111111111111"})
        allocator = AccountNumberAllocator(
            registry, rng=ScriptedRandom([111111111111, 222222222222])
        )

        assert allocator.allocate_counted() == ("222222222222", 2)

    def test_per_call_budget_overrides_bound(self):
        registry = StubRegistry(always_taken=True)
        allocator = AccountNumberAllocator(registry, max_attempts=10)

        with pytest.raises(AllocationExhausted) as exc_info:
            allocator.allocate(max_attempts=2)

        assert len(registry.checks) == 2
        assert exc_info.value.attempts == 10

    def test_spent_budget_draws_nothing(self):
        registry = StubRegistry()
        allocator = AccountNumberAllocator(registry, rng=ScriptedRandom([123456789012]))

        with pytest.raises(AllocationExhausted):
            allocator.allocate(max_attempts=0)
        assert registry.checks == []
