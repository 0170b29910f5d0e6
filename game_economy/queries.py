"""
Balance Query Service

Read-only views over balances, transaction history and the treasury.
"""

from dataclasses import dataclass
from typing import Any, Dict, List

from .amounts import Amount, Currency
from .ledger import LedgerStore
from .transaction_log import TransactionLog, TransactionRecord


DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
MAX_PAGE = 1_000_000


@dataclass
class HistoryPage:
    """One page of an account's transactions, newest first"""
    items: List[TransactionRecord]
    page: int
    page_size: int
    has_more: bool


class BalanceQueryService:
    """Reads only; never mutates the ledger"""

    def __init__(self, ledger: LedgerStore, transaction_log: TransactionLog,
                 default_page_size: int = DEFAULT_PAGE_SIZE, max_page_size: int = MAX_PAGE_SIZE):
        self.ledger = ledger
        self.transaction_log = transaction_log
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def get_balance(self, account_id: str, currency: Currency) -> Amount:
        return self.ledger.get_balance(account_id, currency)

    def get_all_balances(self, account_id: str) -> Dict[Currency, Amount]:
        return self.ledger.get_all_balances(account_id)

    def get_history(self, account_id: str, page: int = 1, page_size: int = None) -> HistoryPage:
        """
        Transactions where the account is sender or receiver

        Args:
            account_id: Account to list
            page: 1-based page number, clamped to [1, MAX_PAGE]
            page_size: Records per page, clamped to [1, max_page_size]

        Returns:
            HistoryPage, newest transaction first
        """
        self.ledger.require_account(account_id)

        if page_size is None:
            page_size = self.default_page_size
        page_size = max(1, min(int(page_size), self.max_page_size))
        page = max(1, min(int(page), MAX_PAGE))

        # One extra row tells whether another page exists
        rows = self.transaction_log.for_account(
            account_id, limit=page_size + 1, offset=(page - 1) * page_size
        )
        return HistoryPage(
            items=rows[:page_size],
            page=page,
            page_size=page_size,
            has_more=len(rows) > page_size,
        )

    def get_treasury_report(self) -> Dict[str, Any]:
        report = self.ledger.get_treasury().to_dict()
        report["transaction_count"] = self.transaction_log.count()
        return report

    def get_economic_stats(self) -> Dict[str, Any]:
        """
        Money supply and transfer totals per currency

        ``total_supply`` is account balances plus treasury funds; transfers
        never change it. Every treasury collection comes from a logged
        transfer, so the treasury's collected tax must equal the tax on the
        log.
        """
        account_count, supply = self.ledger.get_money_supply()
        treasury = self.ledger.get_treasury()
        transactions = self.transaction_log.get_stats()

        return {
            "account_count": account_count,
            "money_supply": {c.value: str(a) for c, a in supply.items()},
            "treasury_funds": {c.value: str(a) for c, a in treasury.funds.items()},
            "total_supply": {c.value: str(supply[c] + treasury.funds[c]) for c in Currency},
            "transactions": {
                c.value: {"count": entry["count"], "volume": str(entry["volume"]), "tax": str(entry["tax"])}
                for c, entry in transactions.items()
            },
            "treasury_matches_log": all(
                treasury.total_tax_collected[c] == transactions[c]["tax"] for c in Currency
            ),
        }

    def verify_integrity(self) -> Dict[str, Any]:
        """Hash chain check, economic stats and the treasury report in one consistent read"""
        with self.ledger.storage.atomic():
            chain = self.transaction_log.verify_integrity()
            stats = self.get_economic_stats()
            treasury = self.get_treasury_report()
        return {
            "valid": chain["valid"] and stats["treasury_matches_log"],
            "chain": chain,
            "economic_stats": stats,
            "treasury": treasury,
        }
