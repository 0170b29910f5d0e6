"""
Test suite for the transfer engine

Tests tax withholding, precondition ordering, conservation of money,
all-or-nothing behaviour on failure and non-negativity under concurrent
load, on both storage backends.
"""

import pytest
import random
import threading
from decimal import Decimal

from game_economy.amounts import Amount, Currency, TaxCategory
from game_economy.errors import (
    AccountFrozen, InsufficientFunds, InvalidAmount, InvalidCurrency,
    RateLimitExceeded, SameAccount, StoreUnavailable, UnknownAccount
)
from game_economy.ledger import LedgerStore
from game_economy.rate_limit import RateLimitRule, SlidingWindowRateLimiter
from game_economy.storage import InMemoryStorage, SQLiteStorage
from game_economy.transaction_log import TransactionLog
from game_economy.transfers import TaxSchedule, TransferEngine


def amt(text: str) -> Amount:
    return Amount.parse(text)


def total_money(ledger: LedgerStore, account_ids, currency: Currency) -> Amount:
    total = ledger.get_treasury().funds[currency]
    for account_id in account_ids:
        total = total + ledger.get_balance(account_id, currency)
    return total


class EconomyFixture:
    def __init__(self, storage, rate_limiter=None, max_transfer_amount=None):
        self.storage = storage
        self.ledger = LedgerStore(storage)
        self.log = TransactionLog(storage)
        self.engine = TransferEngine(
            self.ledger, self.log, TaxSchedule(), rate_limiter=rate_limiter,
            max_transfer_amount=max_transfer_amount
        )


@pytest.fixture(params=["memory", "sqlite"])
def economy(request):
    storage = InMemoryStorage() if request.param == "memory" else SQLiteStorage(":memory:")
    yield EconomyFixture(storage)
    storage.close()


class TestTransferScenarios:
    """Concrete transfer scenarios"""

    def test_transfer_with_tax(self, economy):
        economy.ledger.create_account_if_missing("alice", {Currency.EURO: amt("100")})
        economy.ledger.create_account_if_missing("bob")

        record = economy.engine.transfer("alice", "bob", "EURO", "10", "lunch")

        assert economy.ledger.get_balance("alice", Currency.EURO) == amt("90")
        assert economy.ledger.get_balance("bob", Currency.EURO) == amt("9.5")
        assert economy.ledger.get_treasury().funds[Currency.EURO] == amt("0.5")
        assert record.gross_amount == amt("10")
        assert record.tax_amount == amt("0.5")
        assert record.net_amount == amt("9.5")
        assert record.tax_rate == Decimal("0.05")
        assert record.description == "lunch"

    def test_insufficient_funds_changes_nothing(self, economy):
        economy.ledger.create_account_if_missing("alice", {Currency.EURO: amt("5")})
        economy.ledger.create_account_if_missing("bob")

        with pytest.raises(InsufficientFunds) as exc_info:
            economy.engine.transfer("alice", "bob", Currency.EURO, "10")
        assert exc_info.value.code == "INSUFFICIENT_FUNDS"

        assert economy.ledger.get_balance("alice", Currency.EURO) == amt("5")
        assert economy.ledger.get_balance("bob", Currency.EURO) == Amount.zero()
        assert economy.ledger.get_treasury().funds[Currency.EURO] == Amount.zero()
        assert economy.log.count() == 0

    def test_tiny_transfer_has_zero_tax(self, economy):
        economy.ledger.create_account_if_missing("alice", {Currency.GOLD: amt("1")})
        economy.ledger.create_account_if_missing("bob")

        record = economy.engine.transfer("alice", "bob", "gold", "0.0019")
        assert record.tax_amount == Amount.zero()
        assert economy.ledger.get_balance("bob", Currency.GOLD) == amt("0.0019")

    def test_other_tax_categories(self, economy):
        economy.ledger.create_account_if_missing("company", {Currency.RON: amt("1000")})
        economy.ledger.create_account_if_missing("worker")

        record = economy.engine.transfer("company", "worker", "RON", "100", tax_category=TaxCategory.WORK)
        assert record.tax_amount == amt("15")
        treasury = economy.ledger.get_treasury()
        assert treasury.collected_by_category[TaxCategory.WORK][Currency.RON] == amt("15")

    def test_statistics_recorded(self, economy):
        economy.ledger.create_account_if_missing("alice", {Currency.EURO: amt("100")})
        economy.ledger.create_account_if_missing("bob")
        economy.engine.transfer("alice", "bob", "EURO", "10")

        alice = economy.ledger.get_account("alice")
        assert alice.total_transactions == 1
        assert alice.total_volume[Currency.EURO] == amt("10")
        assert alice.collected_tax[TaxCategory.TRANSFER][Currency.EURO] == amt("0.5")
        assert economy.ledger.get_account("bob").total_transactions == 1


class TestPreconditions:
    """Rejections happen before any write, in a fixed order"""

    def setup_method(self):
        self.economy = EconomyFixture(InMemoryStorage(), max_transfer_amount=amt("1000"))
        self.economy.ledger.create_account_if_missing("alice", {Currency.EURO: amt("100")})
        self.economy.ledger.create_account_if_missing("bob")

    def transfer(self, *args, **kwargs):
        return self.economy.engine.transfer(*args, **kwargs)

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "1.00001", "1e3", "1001"])
    def test_invalid_amounts(self, amount):
        with pytest.raises(InvalidAmount):
            self.transfer("alice", "bob", "EURO", amount)

    def test_invalid_currency(self):
        with pytest.raises(InvalidCurrency):
            self.transfer("alice", "bob", "DOGE", "1")

    def test_amount_checked_before_currency(self):
        with pytest.raises(InvalidAmount):
            self.transfer("alice", "bob", "DOGE", "abc")

    def test_same_account(self):
        with pytest.raises(SameAccount):
            self.transfer("alice", "alice", "EURO", "1")

    def test_unknown_accounts(self):
        with pytest.raises(UnknownAccount):
            self.transfer("alice", "ghost", "EURO", "1")
        with pytest.raises(UnknownAccount):
            self.transfer("ghost", "bob", "EURO", "1")

    def test_frozen_sender(self):
        self.economy.ledger.freeze_account("alice")
        with pytest.raises(AccountFrozen):
            self.transfer("alice", "bob", "EURO", "1")

    def test_frozen_receiver_can_receive(self):
        self.economy.ledger.freeze_account("bob")
        self.transfer("alice", "bob", "EURO", "1")
        assert self.economy.ledger.get_balance("bob", Currency.EURO) == amt("0.95")

    def test_rate_limit_checked_first(self):
        limiter = SlidingWindowRateLimiter({"transfer": RateLimitRule(2, 60)}, clock=lambda: 0.0)
        economy = EconomyFixture(InMemoryStorage(), rate_limiter=limiter)
        economy.ledger.create_account_if_missing("alice", {Currency.EURO: amt("100")})
        economy.ledger.create_account_if_missing("bob")

        economy.engine.transfer("alice", "bob", "EURO", "1")
        economy.engine.transfer("alice", "bob", "EURO", "1")
        with pytest.raises(RateLimitExceeded):
            economy.engine.transfer("alice", "ghost", "DOGE", "abc")
        assert economy.ledger.get_balance("alice", Currency.EURO) == amt("98")


class FailingLog(TransactionLog):
    """Transaction log whose append always fails"""

    def append(self, *args, **kwargs):
        raise StoreUnavailable("log write failed")


class TestAtomicity:
    """A failure after some steps leaves every balance unchanged"""

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_failure_in_last_step_rolls_back(self, backend):
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage(":memory:")
        ledger = LedgerStore(storage)
        engine = TransferEngine(ledger, FailingLog(storage))
        ledger.create_account_if_missing("alice", {Currency.EURO: amt("100")})
        ledger.create_account_if_missing("bob", {Currency.EURO: amt("1")})

        before_alice = ledger.get_account("alice")
        before_bob = ledger.get_account("bob")
        before_treasury = ledger.get_treasury()

        with pytest.raises(StoreUnavailable):
            engine.transfer("alice", "bob", "EURO", "10")

        after_alice = ledger.get_account("alice")
        after_bob = ledger.get_account("bob")
        assert after_alice.balances == before_alice.balances
        assert after_bob.balances == before_bob.balances
        assert after_alice.total_transactions == before_alice.total_transactions
        assert after_alice.total_volume == before_alice.total_volume
        assert ledger.get_treasury().funds == before_treasury.funds
        assert ledger.get_treasury().total_tax_collected == before_treasury.total_tax_collected
        storage.close()

    def test_receiver_spending_before_failure_is_rolled_back(self, economy):
        ledger = economy.ledger
        ledger.create_account_if_missing("alice", {Currency.EURO: amt("100")})
        ledger.create_account_if_missing("bob")
        ledger.create_account_if_missing("carol")

        class SpendThenFail(TransactionLog):
            def append(self, sender_id, receiver_id, currency, split, *args, **kwargs):
                # The receiver passes the credit on before the record is written
                ledger.apply_delta(receiver_id, currency, -split.net)
                ledger.apply_delta("carol", currency, split.net)
                raise StoreUnavailable("log write failed")

        engine = TransferEngine(ledger, SpendThenFail(economy.storage))
        with pytest.raises(StoreUnavailable):
            engine.transfer("alice", "bob", "EURO", "10")

        assert ledger.get_balance("alice", Currency.EURO) == amt("100")
        assert ledger.get_balance("bob", Currency.EURO) == Amount.zero()
        assert ledger.get_balance("carol", Currency.EURO) == Amount.zero()
        assert ledger.get_treasury().funds[Currency.EURO] == Amount.zero()
        assert total_money(ledger, ["alice", "bob", "carol"], Currency.EURO) == amt("100")


class TestConservation:
    """Money is neither created nor destroyed by transfers"""

    def test_random_transfers_conserve_total(self, economy):
        accounts = [f"player{i}" for i in range(6)]
        for account_id in accounts:
            economy.ledger.create_account_if_missing(account_id, {Currency.EURO: amt("50")})
        initial = total_money(economy.ledger, accounts, Currency.EURO)

        rng = random.Random(42)
        for _ in range(60):
            sender, receiver = rng.sample(accounts, 2)
            amount = f"{rng.randint(0, 30)}.{rng.randint(0, 9999):04d}"
            try:
                economy.engine.transfer(sender, receiver, "EURO", amount)
            except (InsufficientFunds, InvalidAmount):
                pass

        assert total_money(economy.ledger, accounts, Currency.EURO) == initial
        assert economy.log.verify_integrity()["valid"]

    def test_concurrent_transfers_never_overdraw(self, economy):
        accounts = ["a", "b", "c", "d"]
        for account_id in accounts:
            economy.ledger.create_account_if_missing(account_id, {Currency.GOLD: amt("20")})
        initial = total_money(economy.ledger, accounts, Currency.GOLD)
        errors = []

        def worker(seed):
            rng = random.Random(seed)
            for _ in range(25):
                sender, receiver = rng.sample(accounts, 2)
                try:
                    economy.engine.transfer(sender, receiver, "GOLD", str(rng.randint(1, 8)))
                except InsufficientFunds:
                    pass
                except Exception as e:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(seed,)) for seed in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        for account_id in accounts:
            assert not economy.ledger.get_balance(account_id, Currency.GOLD).is_negative()
        assert total_money(economy.ledger, accounts, Currency.GOLD) == initial
        assert economy.log.verify_integrity()["valid"]


class TestTaxSchedule:
    """Configurable tax rates"""

    def test_defaults(self):
        schedule = TaxSchedule()
        assert schedule.rate(TaxCategory.TRANSFER, Currency.EURO) == Decimal("0.05")
        assert schedule.rate(TaxCategory.MARKET, Currency.GOLD) == Decimal("0.10")
        assert schedule.rate(TaxCategory.WORK, Currency.RON) == Decimal("0.15")

    def test_from_config(self):
        schedule = TaxSchedule.from_config({"transfer": {"GOLD": "0.02"}})
        assert schedule.rate(TaxCategory.TRANSFER, Currency.GOLD) == Decimal("0.02")
        assert schedule.rate(TaxCategory.TRANSFER, Currency.EURO) == Decimal("0.05")

    def test_invalid_rate(self):
        with pytest.raises(ValueError):
            TaxSchedule.from_config({"transfer": {"EURO": "1.5"}})
        with pytest.raises(ValueError):
            TaxSchedule.from_config({"transfer": {"EURO": "lots"}})
