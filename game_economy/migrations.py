"""
Field Migration System

Backfills default values into account documents that predate a field.
Only missing fields are written; existing values, even malformed ones, are
left alone. Each account is updated atomically on its own, so a run never
blocks transfers for longer than one account update and can be repeated
safely.

Named backfills are versioned and recorded in ``schema_migrations`` with a
checksum of their defaults.
"""

from typing import List, Optional, Dict, Any, Tuple
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import json
import logging

from .amounts import Amount, Currency, TaxCategory
from .errors import EconomyError, MigrationFailed
from .ledger import ACCOUNTS_TABLE, balance_field, collected_tax_field, volume_field
from .logging_config import log_action
from .storage import StorageInterface


logger = logging.getLogger(__name__)


def _storable(value: Any) -> Any:
    if isinstance(value, Amount):
        return str(value)
    return value


@dataclass
class BackfillResult:
    """Counts reported by one backfill run"""
    matched: int
    modified: int
    still_missing: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "matched": self.matched,
            "modified": self.modified,
            "still_missing": self.still_missing,
        }


class BackfillRunner:
    """Sets default values on documents missing one or more fields"""

    def __init__(self, storage: StorageInterface, table: str = ACCOUNTS_TABLE,
                 id_field: str = "account_id", log_every: int = 100):
        self.storage = storage
        self.table = table
        self.id_field = id_field
        self.log_every = max(1, log_every)

    @staticmethod
    def _missing(document: Dict[str, Any], field_defaults: Dict[str, Any]) -> List[str]:
        return [name for name in field_defaults if name not in document]

    def find_missing(self, field_defaults: Dict[str, Any]) -> List[str]:
        """Ids of documents missing at least one of the fields"""
        return [
            document[self.id_field]
            for document in self.storage.load_all(self.table)
            if self._missing(document, field_defaults)
        ]

    def count_missing(self, field_defaults: Dict[str, Any]) -> int:
        return len(self.find_missing(field_defaults))

    def run_backfill(self, field_defaults: Dict[str, Any]) -> BackfillResult:
        """
        Backfill default values for missing fields

        Args:
            field_defaults: Field name -> default value (Amounts are stored
                as fixed-point strings)

        Returns:
            BackfillResult with matched, modified and still_missing counts

        Raises:
            MigrationFailed: If an update fails; counts cover the accounts
                already committed
        """
        if not field_defaults:
            raise ValueError("At least one field default is required")
        defaults = {name: _storable(value) for name, value in field_defaults.items()}

        matched_ids = self.find_missing(defaults)
        matched = len(matched_ids)
        modified = 0
        logger.info(f"Backfill matched {matched} documents in {self.table} for fields {sorted(defaults)}")

        def fill(document: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            missing = self._missing(document, defaults)
            if not missing:
                # Filled concurrently since selection
                return None
            for name in missing:
                document[name] = defaults[name]
            return document

        for position, record_id in enumerate(matched_ids, start=1):
            changed = []

            def tracked(document, changed=changed):
                result = fill(document)
                changed.append(result is not None)
                return result

            try:
                self.storage.update(self.table, record_id, tracked)
            except EconomyError as e:
                logger.error(f"Backfill halted at {record_id}: {e.message}")
                raise MigrationFailed(
                    f"Backfill halted at {record_id}: {e.message}", matched=matched, modified=modified
                ) from e
            if changed and changed[-1]:
                modified += 1
            if position % self.log_every == 0:
                logger.info(f"Backfill progress: {position}/{matched} processed, {modified} modified")

        still_missing = self.count_missing(defaults)
        if still_missing:
            logger.warning(f"Backfill verification: {still_missing} documents still missing fields")

        result = BackfillResult(matched=matched, modified=modified, still_missing=still_missing)
        log_action(logger, "info", "Backfill completed", action="backfill",
                   resource=self.table, extra=result.to_dict())
        return result


class Migration:
    """A named, versioned backfill"""

    def __init__(self, version: int, name: str, field_defaults: Dict[str, Any]):
        self.version = version
        self.name = name
        self.field_defaults = field_defaults
        self.applied_at: Optional[datetime] = None

    @property
    def checksum(self) -> str:
        payload = json.dumps({k: _storable(v) for k, v in self.field_defaults.items()}, sort_keys=True)
        return hashlib.md5(payload.encode()).hexdigest()

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


class MigrationManager:
    """Manages versioned account backfills"""

    def __init__(self, storage: StorageInterface, runner: Optional[BackfillRunner] = None):
        self.storage = storage
        self.runner = runner or BackfillRunner(storage)
        self.migrations: List[Migration] = []
        self._migration_table = "schema_migrations"
        self._init_migrations()

    def _init_migrations(self) -> None:
        """Register built-in backfills"""
        zero = Amount.zero()

        # v001: balances for accounts created before multi-currency support
        self.add_migration(1, "Initialize currency balances", {
            balance_field(currency): zero for currency in Currency
        })

        # v002: statistics fields
        stats: Dict[str, Any] = {"total_transactions": 0, "last_transaction_at": None, "version": 0}
        stats.update({volume_field(currency): zero for currency in Currency})
        self.add_migration(2, "Add statistics fields", stats)

        # v003: fraud freeze and tax reserve fields
        reserves: Dict[str, Any] = {"is_frozen": False, "frozen_reason": None}
        reserves.update({
            collected_tax_field(category, currency): zero
            for category in TaxCategory for currency in Currency
        })
        self.add_migration(3, "Add fraud and tax reserve fields", reserves)

    def add_migration(self, version: int, name: str, field_defaults: Dict[str, Any]) -> None:
        """Add a migration to the manager"""
        if any(m.version == version for m in self.migrations):
            raise ValueError(f"Migration v{version:03d} already registered")
        self.migrations.append(Migration(version, name, field_defaults))
        self.migrations.sort(key=lambda m: m.version)

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        return self.storage.load_all(self._migration_table)

    def get_current_version(self) -> int:
        versions = [m["version"] for m in self.get_applied_migrations() if isinstance(m.get("version"), int)]
        return max(versions) if versions else 0

    def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        applied = {m["version"] for m in self.get_applied_migrations()}
        max_version = target_version or max((m.version for m in self.migrations), default=0)
        return [m for m in self.migrations if m.version not in applied and m.version <= max_version]

    def migrate_up(self, target_version: Optional[int] = None) -> List[Tuple[Migration, BackfillResult]]:
        """Apply pending backfills up to target version"""
        pending = self.get_pending_migrations(target_version)
        applied = []

        if not pending:
            logger.info("No pending migrations to apply")
            return applied

        logger.info(f"Applying {len(pending)} pending migrations")

        for migration in pending:
            logger.info(f"Applying {migration}")
            try:
                result = self.runner.run_backfill(migration.field_defaults)
            except MigrationFailed as e:
                logger.error(f"Failed to apply {migration}: {e.message}")
                raise

            migration.applied_at = datetime.now(timezone.utc)
            self.storage.save(self._migration_table, f"v{migration.version:03d}", {
                "version": migration.version,
                "name": migration.name,
                "applied_at": migration.applied_at.isoformat(),
                "checksum": migration.checksum,
                **result.to_dict(),
            })
            applied.append((migration, result))
            logger.info(f"Successfully applied {migration}")

        logger.info(f"Successfully applied {len(applied)} migrations")
        return applied

    def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        for applied_migration in self.get_applied_migrations():
            version = applied_migration["version"]
            migration = next((m for m in self.migrations if m.version == version), None)
            if not migration:
                logger.warning(f"Applied migration v{version} not found in definitions")
                continue

            stored_checksum = applied_migration.get("checksum", "")
            if stored_checksum != migration.checksum:
                logger.error(
                    f"Checksum mismatch for v{version}: expected {migration.checksum}, got {stored_checksum}"
                )
                return False

        logger.info("All applied migrations validated successfully")
        return True

    def get_migration_status(self) -> Dict[str, Any]:
        """Get detailed migration status"""
        pending = self.get_pending_migrations()
        applied = self.get_applied_migrations()

        return {
            "current_version": self.get_current_version(),
            "latest_version": max((m.version for m in self.migrations), default=0),
            "pending_count": len(pending),
            "applied_count": len(applied),
            "pending_migrations": [
                {"version": m.version, "name": m.name} for m in pending
            ],
            "needs_migration": len(pending) > 0
        }
