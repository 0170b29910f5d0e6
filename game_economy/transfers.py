"""
Transfer Engine

Moves an amount of one currency between two accounts, withholding tax for
the treasury. Every precondition is checked before the first write; the
writes themselves run inside one store transaction, so a failure at any
step leaves every balance as it was.
"""

from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Union

from .amounts import Amount, Currency, TaxCategory, TaxSplit, split_tax
from .errors import AccountFrozen, EconomyError, InvalidAmount, SameAccount
from .ledger import Activity, LedgerStore
from .logging_config import get_logger, log_action
from .rate_limit import RateLimiter
from .transaction_log import TransactionLog, TransactionRecord


TRANSFER_OPERATION = "transfer"

DEFAULT_TAX_RATES = {
    TaxCategory.TRANSFER: Decimal("0.05"),
    TaxCategory.MARKET: Decimal("0.10"),
    TaxCategory.WORK: Decimal("0.15"),
}


class TaxSchedule:
    """Tax rate per category and currency"""

    def __init__(self, rates: Optional[Dict[TaxCategory, Dict[Currency, Decimal]]] = None):
        self._rates: Dict[TaxCategory, Dict[Currency, Decimal]] = {
            category: {currency: rate for currency in Currency}
            for category, rate in DEFAULT_TAX_RATES.items()
        }
        for category, by_currency in (rates or {}).items():
            for currency, rate in by_currency.items():
                self.set_rate(category, currency, rate)

    @classmethod
    def from_config(cls, tax_rates: Dict[str, Dict[str, str]]) -> "TaxSchedule":
        """Build from the configuration mapping category -> currency -> rate"""
        rates = {}
        for category_name, by_currency in tax_rates.items():
            category = TaxCategory(category_name.lower())
            rates[category] = {
                Currency.from_code(code): cls._to_rate(value) for code, value in by_currency.items()
            }
        return cls(rates)

    @staticmethod
    def _to_rate(value) -> Decimal:
        try:
            return Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Invalid tax rate: {value!r}")

    def set_rate(self, category: TaxCategory, currency: Currency, rate: Decimal) -> None:
        rate = self._to_rate(rate)
        if not rate.is_finite() or rate < 0 or rate > 1:
            raise ValueError(f"Tax rate must be between 0 and 1, got {rate}")
        self._rates.setdefault(category, {})[currency] = rate

    def rate(self, category: TaxCategory, currency: Currency) -> Decimal:
        return self._rates[category][currency]

    def split(self, gross: Amount, category: TaxCategory, currency: Currency) -> TaxSplit:
        return split_tax(gross, self.rate(category, currency))


class TransferEngine:
    """
    Executes transfers between accounts

    Holds no locks of its own: the store transaction around the writes is
    the only lock a transfer takes, so there is no lock ordering to get
    wrong.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        transaction_log: TransactionLog,
        tax_schedule: Optional[TaxSchedule] = None,
        rate_limiter: Optional[RateLimiter] = None,
        max_transfer_amount: Optional[Amount] = None
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.transaction_log = transaction_log
        self.tax_schedule = tax_schedule or TaxSchedule()
        self.rate_limiter = rate_limiter
        self.max_transfer_amount = max_transfer_amount
        self.logger = get_logger("game_economy.transfers")

    def _parse_amount(self, gross_amount: Union[str, Amount]) -> Amount:
        if isinstance(gross_amount, Amount):
            amount = gross_amount
        else:
            amount = Amount.parse(gross_amount, max_magnitude=self.max_transfer_amount)
        if not amount.is_positive():
            raise InvalidAmount("Amount must be positive")
        if self.max_transfer_amount is not None and amount > self.max_transfer_amount:
            raise InvalidAmount(
                f"Amount exceeds maximum allowed value of {self.max_transfer_amount}",
                {"max_allowed": str(self.max_transfer_amount)}
            )
        return amount

    def transfer(
        self,
        sender_id: str,
        receiver_id: str,
        currency: Union[str, Currency],
        gross_amount: Union[str, Amount],
        description: str = "",
        tax_category: TaxCategory = TaxCategory.TRANSFER
    ) -> TransactionRecord:
        """
        Transfer gross_amount from sender to receiver, withholding tax

        Args:
            sender_id: Paying account
            receiver_id: Receiving account
            currency: Currency or currency code
            gross_amount: Amount or decimal literal debited from the sender
            description: Free text stored on the transaction record
            tax_category: Category whose rate applies

        Returns:
            The recorded TransactionRecord

        Raises:
            RateLimitExceeded, InvalidAmount, InvalidCurrency, SameAccount,
            UnknownAccount, AccountFrozen, InsufficientFunds,
            TransientStoreError, StoreUnavailable
        """
        try:
            if self.rate_limiter is not None:
                self.rate_limiter.check(sender_id, TRANSFER_OPERATION)

            gross = self._parse_amount(gross_amount)
            if not isinstance(currency, Currency):
                currency = Currency.from_code(currency)
            if sender_id == receiver_id:
                raise SameAccount("Cannot transfer to the same account")

            sender = self.ledger.require_account(sender_id)
            self.ledger.require_account(receiver_id)
            if sender.is_frozen:
                raise AccountFrozen(f"Account {sender_id} is frozen", {"account_id": sender_id})

            split = self.tax_schedule.split(gross, tax_category, currency)

            with self.storage.atomic():
                record = self._apply(sender_id, receiver_id, currency, split, tax_category, description)
        except EconomyError as e:
            level = "error" if e.status_code >= 500 else "warning"
            log_action(
                self.logger, level, f"Transfer rejected: {e.message}",
                account_id=sender_id, action="transfer", resource=f"account:{receiver_id}",
                extra={"code": e.code, "amount": str(gross_amount),
                       "currency": getattr(currency, "value", currency)}
            )
            raise

        log_action(
            self.logger, "info", "Transfer completed",
            account_id=sender_id, action="transfer", resource=f"transaction:{record.id}",
            extra={
                "receiver_id": receiver_id,
                "currency": currency.value,
                "gross": str(split.gross),
                "tax": str(split.tax),
                "net": str(split.net),
                "tax_category": tax_category.value,
            }
        )
        return record

    def _apply(
        self,
        sender_id: str,
        receiver_id: str,
        currency: Currency,
        split: TaxSplit,
        tax_category: TaxCategory,
        description: str
    ) -> TransactionRecord:
        """Debit sender, credit receiver, credit treasury, append the record"""
        self.ledger.apply_delta(
            sender_id, currency, -split.gross,
            Activity(volume=split.gross, tax_withheld=split.tax, tax_category=tax_category)
        )
        self.ledger.apply_delta(
            receiver_id, currency, split.net,
            Activity(volume=split.net, tax_category=tax_category)
        )
        if split.tax.is_positive():
            self.ledger.collect_tax(currency, split.tax, tax_category)

        return self.transaction_log.append(
            sender_id, receiver_id, currency, split, tax_category, description
        )
