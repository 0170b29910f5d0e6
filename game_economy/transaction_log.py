"""
Transaction Log Module

Append-only, hash-chained record of completed transfers. Each record
carries the SHA-256 hash of its predecessor so any later edit or deletion
is detectable by verify_integrity().
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .amounts import Amount, Currency, TaxCategory, TaxSplit
from .storage import StorageInterface


TRANSACTIONS_TABLE = "transactions"


@dataclass(frozen=True)
class TransactionRecord:
    """
    Immutable record of one completed transfer

    net_amount + tax_amount == gross_amount always holds.
    """
    id: str
    sender_id: str
    receiver_id: str
    currency: Currency
    gross_amount: Amount
    tax_amount: Amount
    net_amount: Amount
    tax_rate: Decimal
    tax_category: TaxCategory
    description: str
    created_at: datetime
    sequence: int
    previous_hash: str
    current_hash: str

    def hash_payload(self) -> Dict[str, Any]:
        """Every field except current_hash, in storable form"""
        return {
            'id': self.id,
            'sender_id': self.sender_id,
            'receiver_id': self.receiver_id,
            'currency': self.currency.value,
            'gross_amount': str(self.gross_amount),
            'tax_amount': str(self.tax_amount),
            'net_amount': str(self.net_amount),
            'tax_rate': str(self.tax_rate),
            'tax_category': self.tax_category.value,
            'description': self.description,
            'created_at': self.created_at.isoformat(),
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
        }

    def calculate_hash(self) -> str:
        json_data = json.dumps(self.hash_payload(), sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = self.hash_payload()
        result['current_hash'] = self.current_hash
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransactionRecord':
        return cls(
            id=data['id'],
            sender_id=data['sender_id'],
            receiver_id=data['receiver_id'],
            currency=Currency(data['currency']),
            gross_amount=Amount.parse(data['gross_amount']),
            tax_amount=Amount.parse(data['tax_amount']),
            net_amount=Amount.parse(data['net_amount']),
            tax_rate=Decimal(data['tax_rate']),
            tax_category=TaxCategory(data['tax_category']),
            description=data.get('description', ''),
            created_at=datetime.fromisoformat(data['created_at']),
            sequence=int(data['sequence']),
            previous_hash=data.get('previous_hash', ''),
            current_hash=data.get('current_hash', ''),
        )


class TransactionLog:
    """
    Hash-chained transaction log

    The lock only serializes reading the chain tail and writing the new
    record; balance updates never wait on it.
    """

    def __init__(self, storage: StorageInterface, table_name: str = TRANSACTIONS_TABLE):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self.storage.ensure_index(self.table_name, ['sender_id', 'created_at'])
        self.storage.ensure_index(self.table_name, ['receiver_id', 'created_at'])
        self.storage.ensure_index(self.table_name, ['sequence'])

    def _tail(self) -> Optional[Dict[str, Any]]:
        rows = self.storage.find(self.table_name, {}, order_by='sequence', descending=True, limit=1)
        return rows[0] if rows else None

    def append(
        self,
        sender_id: str,
        receiver_id: str,
        currency: Currency,
        split: TaxSplit,
        tax_category: TaxCategory,
        description: str = "",
        transaction_id: Optional[str] = None
    ) -> TransactionRecord:
        """
        Append a record for a transfer whose balance updates already applied

        Returns:
            The stored TransactionRecord
        """
        # Store first, then the chain lock, the same order a transfer takes them
        with self.storage.atomic(), self._lock:
            # Re-read the tail so a rolled-back append never leaves a gap
            tail = self._tail()
            previous_hash = tail['current_hash'] if tail else ""
            sequence = int(tail['sequence']) + 1 if tail else 1

            unsigned = TransactionRecord(
                id=transaction_id or str(uuid.uuid4()),
                sender_id=sender_id,
                receiver_id=receiver_id,
                currency=currency,
                gross_amount=split.gross,
                tax_amount=split.tax,
                net_amount=split.net,
                tax_rate=split.rate,
                tax_category=tax_category,
                description=description,
                created_at=datetime.now(timezone.utc),
                sequence=sequence,
                previous_hash=previous_hash,
                current_hash="",
            )
            record = replace(unsigned, current_hash=unsigned.calculate_hash())

            if not self.storage.insert_if_absent(self.table_name, record.id, record.to_dict()):
                raise ValueError(f"Transaction {record.id} already recorded")
            return record

    def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        data = self.storage.load(self.table_name, transaction_id)
        return TransactionRecord.from_dict(data) if data else None

    def for_account(self, account_id: str, limit: Optional[int] = None, offset: int = 0) -> List[TransactionRecord]:
        """Records where the account is sender or receiver, newest first"""
        rows = self.storage.find(
            self.table_name,
            {},
            any_of=[{'sender_id': account_id}, {'receiver_id': account_id}],
            order_by='sequence',
            descending=True,
            limit=limit,
            offset=offset,
        )
        return [TransactionRecord.from_dict(row) for row in rows]

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def get_stats(self) -> Dict[Currency, Dict[str, Any]]:
        """Per-currency transaction count, gross volume and withheld tax"""
        stats = {
            currency: {'count': 0, 'volume': Amount.zero(), 'tax': Amount.zero()}
            for currency in Currency
        }
        for row in self.storage.load_all(self.table_name):
            record = TransactionRecord.from_dict(row)
            entry = stats[record.currency]
            entry['count'] += 1
            entry['volume'] = entry['volume'] + record.gross_amount
            entry['tax'] = entry['tax'] + record.tax_amount
        return stats

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify every record hash and the continuity of the chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_records': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        rows = self.storage.find(self.table_name, {}, order_by='sequence')
        records = [TransactionRecord.from_dict(row) for row in rows]
        result['total_records'] = len(records)

        previous_hash = ""
        for position, record in enumerate(records):
            if not record.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'transaction_id': record.id,
                    'position': position,
                    'expected_hash': record.calculate_hash(),
                    'actual_hash': record.current_hash,
                })
            if record.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'transaction_id': record.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': record.previous_hash,
                })
            previous_hash = record.current_hash

        return result
