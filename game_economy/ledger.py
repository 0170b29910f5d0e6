"""
Ledger Store

Account balances and the treasury singleton. Every mutation goes through a
single atomic conditional update against the store, so a balance check and
the write that depends on it can never be separated by another writer.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .amounts import Amount, Currency, TaxCategory
from .errors import AccountFrozen, InsufficientFunds, InvalidAmount, UnknownAccount
from .logging_config import get_logger, log_action
from .storage import StorageInterface


ACCOUNTS_TABLE = "accounts"
TREASURY_TABLE = "treasury"
DEFAULT_TREASURY_ID = "SINGLETON_TREASURY"

logger = get_logger("game_economy.ledger")


def balance_field(currency: Currency) -> str:
    return f"balance_{currency.field_suffix}"


def volume_field(currency: Currency) -> str:
    return f"total_volume_{currency.field_suffix}"


def collected_tax_field(category: TaxCategory, currency: Currency) -> str:
    return f"collected_{category.value}_tax_{currency.field_suffix}"


def _read_amount(document: Dict[str, Any], key: str) -> Amount:
    """Missing fields read as zero; malformed ones are reported, never repaired"""
    value = document.get(key)
    if value is None:
        return Amount.zero()
    try:
        return Amount.parse(str(value), signed=True)
    except InvalidAmount:
        raise InvalidAmount(f"Stored field {key} is malformed: {value!r}")


def _read_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _zero_by_currency() -> Dict[Currency, Amount]:
    return {currency: Amount.zero() for currency in Currency}


@dataclass
class Activity:
    """
    Statistics recorded alongside a balance change

    ``volume`` is added to the account's per-currency volume and
    ``tax_withheld`` to its collected tax for ``tax_category``.
    """
    volume: Amount
    tax_withheld: Amount = field(default_factory=Amount.zero)
    tax_category: TaxCategory = TaxCategory.TRANSFER
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AccountBalance:
    """Per-account balances and statistics"""
    account_id: str
    owner_type: str = "user"
    balances: Dict[Currency, Amount] = field(default_factory=_zero_by_currency)
    collected_tax: Dict[TaxCategory, Dict[Currency, Amount]] = field(
        default_factory=lambda: {category: _zero_by_currency() for category in TaxCategory}
    )
    is_frozen: bool = False
    frozen_reason: Optional[str] = None
    total_transactions: int = 0
    total_volume: Dict[Currency, Amount] = field(default_factory=_zero_by_currency)
    last_transaction_at: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None

    def balance(self, currency: Currency) -> Amount:
        return self.balances.get(currency, Amount.zero())

    def to_document(self) -> Dict[str, Any]:
        """Flatten to the persisted field layout"""
        document: Dict[str, Any] = {
            "account_id": self.account_id,
            "owner_type": self.owner_type,
            "is_frozen": self.is_frozen,
            "frozen_reason": self.frozen_reason,
            "total_transactions": self.total_transactions,
            "last_transaction_at": self.last_transaction_at.isoformat() if self.last_transaction_at else None,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        for currency in Currency:
            document[balance_field(currency)] = str(self.balance(currency))
            document[volume_field(currency)] = str(self.total_volume.get(currency, Amount.zero()))
            for category in TaxCategory:
                collected = self.collected_tax.get(category, {}).get(currency, Amount.zero())
                document[collected_tax_field(category, currency)] = str(collected)
        return document

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "AccountBalance":
        return cls(
            account_id=document["account_id"],
            owner_type=document.get("owner_type") or "user",
            balances={c: _read_amount(document, balance_field(c)) for c in Currency},
            collected_tax={
                category: {c: _read_amount(document, collected_tax_field(category, c)) for c in Currency}
                for category in TaxCategory
            },
            is_frozen=bool(document.get("is_frozen", False)),
            frozen_reason=document.get("frozen_reason"),
            total_transactions=int(document.get("total_transactions") or 0),
            total_volume={c: _read_amount(document, volume_field(c)) for c in Currency},
            last_transaction_at=_read_datetime(document.get("last_transaction_at")),
            version=int(document.get("version") or 0),
            created_at=_read_datetime(document.get("created_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """API view"""
        return {
            "account_id": self.account_id,
            "owner_type": self.owner_type,
            "balances": {c.value: str(a) for c, a in self.balances.items()},
            "is_frozen": self.is_frozen,
            "frozen_reason": self.frozen_reason,
            "total_transactions": self.total_transactions,
            "total_volume": {c.value: str(a) for c, a in self.total_volume.items()},
            "last_transaction_at": self.last_transaction_at.isoformat() if self.last_transaction_at else None,
        }


@dataclass
class Treasury:
    """Singleton holding withheld tax"""
    id: str = DEFAULT_TREASURY_ID
    funds: Dict[Currency, Amount] = field(default_factory=_zero_by_currency)
    total_tax_collected: Dict[Currency, Amount] = field(default_factory=_zero_by_currency)
    collected_by_category: Dict[TaxCategory, Dict[Currency, Amount]] = field(
        default_factory=lambda: {category: _zero_by_currency() for category in TaxCategory}
    )
    total_transactions_processed: int = 0
    last_collection_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "id": self.id,
            "total_transactions_processed": self.total_transactions_processed,
            "last_collection_at": self.last_collection_at.isoformat() if self.last_collection_at else None,
        }
        for currency in Currency:
            suffix = currency.field_suffix
            document[f"funds_{suffix}"] = str(self.funds.get(currency, Amount.zero()))
            document[f"total_tax_collected_{suffix}"] = str(self.total_tax_collected.get(currency, Amount.zero()))
            for category in TaxCategory:
                collected = self.collected_by_category.get(category, {}).get(currency, Amount.zero())
                document[collected_tax_field(category, currency)] = str(collected)
        return document

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Treasury":
        return cls(
            id=document["id"],
            funds={c: _read_amount(document, f"funds_{c.field_suffix}") for c in Currency},
            total_tax_collected={
                c: _read_amount(document, f"total_tax_collected_{c.field_suffix}") for c in Currency
            },
            collected_by_category={
                category: {c: _read_amount(document, collected_tax_field(category, c)) for c in Currency}
                for category in TaxCategory
            },
            total_transactions_processed=int(document.get("total_transactions_processed") or 0),
            last_collection_at=_read_datetime(document.get("last_collection_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "funds": {c.value: str(a) for c, a in self.funds.items()},
            "total_tax_collected": {c.value: str(a) for c, a in self.total_tax_collected.items()},
            "collected_by_category": {
                category.value: {c.value: str(a) for c, a in amounts.items()}
                for category, amounts in self.collected_by_category.items()
            },
            "total_transactions_processed": self.total_transactions_processed,
            "last_collection_at": self.last_collection_at.isoformat() if self.last_collection_at else None,
        }


class LedgerStore:
    """
    Balance bookkeeping on top of a document store

    Balances are stored, not derived; the transaction log is the audit
    trail that explains them.
    """

    def __init__(self, storage: StorageInterface, treasury_id: str = DEFAULT_TREASURY_ID):
        self.storage = storage
        self.treasury_id = treasury_id

    # Accounts

    def get_account(self, account_id: str) -> Optional[AccountBalance]:
        document = self.storage.load(ACCOUNTS_TABLE, account_id)
        return AccountBalance.from_document(document) if document else None

    def require_account(self, account_id: str) -> AccountBalance:
        account = self.get_account(account_id)
        if account is None:
            raise UnknownAccount(f"Account {account_id} not found", {"account_id": account_id})
        return account

    def create_account_if_missing(
        self,
        account_id: str,
        defaults: Optional[Dict[Currency, Amount]] = None,
        owner_type: str = "user"
    ) -> AccountBalance:
        """
        Create a defaulted account unless one already exists

        Args:
            account_id: Account identifier
            defaults: Opening balances per currency (zero when omitted)
            owner_type: "user" or "company"

        Returns:
            The existing or newly created account
        """
        account = AccountBalance(
            account_id=account_id,
            owner_type=owner_type,
            created_at=datetime.now(timezone.utc),
        )
        for currency, amount in (defaults or {}).items():
            if amount.is_negative():
                raise InvalidAmount("Opening balance cannot be negative")
            account.balances[currency] = amount

        if self.storage.insert_if_absent(ACCOUNTS_TABLE, account_id, account.to_document()):
            log_action(logger, "info", "Account created", account_id=account_id,
                       action="create_account", resource="account")
            return account
        return self.require_account(account_id)

    def get_balance(self, account_id: str, currency: Currency) -> Amount:
        return self.require_account(account_id).balance(currency)

    def get_money_supply(self) -> Tuple[int, Dict[Currency, Amount]]:
        """Number of accounts and the sum of their balances per currency"""
        supply = _zero_by_currency()
        documents = self.storage.load_all(ACCOUNTS_TABLE)
        for document in documents:
            for currency in Currency:
                supply[currency] = supply[currency] + _read_amount(document, balance_field(currency))
        return len(documents), supply

    def get_all_balances(self, account_id: str) -> Dict[Currency, Amount]:
        account = self.require_account(account_id)
        return {currency: account.balance(currency) for currency in Currency}

    def apply_delta(
        self,
        account_id: str,
        currency: Currency,
        delta: Amount,
        activity: Optional[Activity] = None
    ) -> Amount:
        """
        Add a signed delta to one currency balance as a single atomic update

        Args:
            account_id: Account to change
            currency: Balance to change
            delta: Signed amount; negative values are debits
            activity: Optional statistics to record in the same update

        Returns:
            The new balance

        Raises:
            UnknownAccount: If the account does not exist
            AccountFrozen: If the account is frozen and delta is a debit
            InsufficientFunds: If the balance would become negative
        """
        def mutate(document: Dict[str, Any]) -> Dict[str, Any]:
            account = AccountBalance.from_document(document)
            if delta.is_negative() and account.is_frozen:
                raise AccountFrozen(f"Account {account_id} is frozen", {"account_id": account_id})

            current = account.balance(currency)
            new_balance = current + delta
            if new_balance.is_negative():
                raise InsufficientFunds(
                    f"Insufficient {currency.value} balance",
                    {"available": str(current), "required": str(abs(delta))}
                )
            account.balances[currency] = new_balance

            if activity is not None:
                account.total_transactions += 1
                account.total_volume[currency] = account.total_volume[currency] + activity.volume
                by_currency = account.collected_tax[activity.tax_category]
                by_currency[currency] = by_currency[currency] + activity.tax_withheld
                account.last_transaction_at = activity.timestamp

            account.version += 1
            # Keep any extra fields the document carries
            document.update(account.to_document())
            return document

        updated = self.storage.update(ACCOUNTS_TABLE, account_id, mutate)
        if updated is None:
            raise UnknownAccount(f"Account {account_id} not found", {"account_id": account_id})
        return _read_amount(updated, balance_field(currency))

    def freeze_account(self, account_id: str, reason: str = "") -> AccountBalance:
        return self._set_frozen(account_id, True, reason or None)

    def unfreeze_account(self, account_id: str) -> AccountBalance:
        return self._set_frozen(account_id, False, None)

    def _set_frozen(self, account_id: str, frozen: bool, reason: Optional[str]) -> AccountBalance:
        def mutate(document):
            document["is_frozen"] = frozen
            document["frozen_reason"] = reason
            document["version"] = int(document.get("version") or 0) + 1
            return document

        updated = self.storage.update(ACCOUNTS_TABLE, account_id, mutate)
        if updated is None:
            raise UnknownAccount(f"Account {account_id} not found", {"account_id": account_id})

        log_action(logger, "warning" if frozen else "info",
                   "Account frozen" if frozen else "Account unfrozen",
                   account_id=account_id, action="freeze" if frozen else "unfreeze",
                   resource="account", extra={"reason": reason} if reason else None)
        return AccountBalance.from_document(updated)

    # Treasury

    def get_treasury(self) -> Treasury:
        """Current treasury; an empty one until the first collection"""
        document = self.storage.load(TREASURY_TABLE, self.treasury_id)
        if document is None:
            return Treasury(id=self.treasury_id)
        return Treasury.from_document(document)

    def collect_tax(self, currency: Currency, amount: Amount, category: TaxCategory) -> Treasury:
        """Credit withheld tax to the treasury"""
        if amount.is_negative():
            raise InvalidAmount("Collected tax cannot be negative")

        # First collection creates the singleton
        self.storage.insert_if_absent(
            TREASURY_TABLE, self.treasury_id, Treasury(id=self.treasury_id).to_document()
        )

        def mutate(document):
            treasury = Treasury.from_document(document)
            treasury.funds[currency] = treasury.funds[currency] + amount
            treasury.total_tax_collected[currency] = treasury.total_tax_collected[currency] + amount
            by_currency = treasury.collected_by_category[category]
            by_currency[currency] = by_currency[currency] + amount
            treasury.total_transactions_processed += 1
            treasury.last_collection_at = datetime.now(timezone.utc)
            return treasury.to_document()

        return Treasury.from_document(self.storage.update(TREASURY_TABLE, self.treasury_id, mutate))
