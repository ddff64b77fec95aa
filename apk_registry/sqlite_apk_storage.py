"""
SQLITE PERSISTENCE LAYER FOR APK REGISTRY STATE

Provides ACID-compliant storage for the registry with:
- Crash consistency (a save is one transaction)
- Integrity verification (checksum on every row)
- History invariant checks on load

ARCHITECTURE:
- quorum_apks: current apk per quorum
- apk_updates: every ApkUpdate, keyed by (quorum_number, update_index)
- pubkeys: compendium bindings (operator <-> BN254 pubkey)
- registry_metadata: chain id and coordinator address

USAGE:
    storage = SQLiteApkStorage("registry_data/apk_registry.db")
    storage.save_registry(registry)
    registry = storage.load_registry(clock)
"""

import sqlite3
import json
import hashlib
import os
from typing import Dict, List, Optional, Tuple, Any

from apk_registry import config
from apk_registry.access import CoordinatorGate
from apk_registry.apk_history import QuorumApkHistory
from apk_registry.bn254 import g1_to_dict, g1_from_dict
from apk_registry.errors import StorageIntegrityError
from apk_registry.pubkey_compendium import PubkeyCompendium
from apk_registry.registry import BLSApkRegistry, RegistryHooks


class SQLiteApkStorage:
    """
    SQLite-based persistence for the APK registry.

    The whole registry is written in a single transaction, so a crash leaves
    either the previous or the new state on disk, never a mix.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str, auto_migrate: bool = True):
        """
        Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
            auto_migrate: Automatically create tables on open
        """
        self.db_path = db_path
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(db_path) if os.path.dirname(db_path) else ".", exist_ok=True)

        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA busy_timeout=5000")

        if auto_migrate:
            self._initialize_schema()

    def _initialize_schema(self):
        """Create tables if they don't exist."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS registry_metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS quorum_apks (
                quorum_number INTEGER PRIMARY KEY,
                apk_json TEXT NOT NULL,
                apk_checksum TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS apk_updates (
                quorum_number INTEGER NOT NULL,
                update_index INTEGER NOT NULL,
                apk_hash TEXT NOT NULL,
                from_block INTEGER NOT NULL,
                until_block INTEGER,
                update_json TEXT NOT NULL,
                update_checksum TEXT NOT NULL,
                PRIMARY KEY (quorum_number, update_index),
                FOREIGN KEY (quorum_number) REFERENCES quorum_apks(quorum_number) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS pubkeys (
                pubkey_hash TEXT PRIMARY KEY,
                operator TEXT NOT NULL UNIQUE,
                pubkey_json TEXT NOT NULL,
                pubkey_checksum TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_apk_updates_block ON apk_updates(quorum_number, from_block)
        """)

        cursor.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1")
        row = cursor.fetchone()
        if not row:
            cursor.execute("INSERT INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,))

        self.conn.commit()

    def _compute_checksum(self, data: str) -> str:
        """Compute SHA-256 checksum of data."""
        return hashlib.sha256(data.encode()).hexdigest()

    def _verify_checksum(self, data: str, checksum: str) -> bool:
        """Verify data integrity against checksum."""
        return self._compute_checksum(data) == checksum

    def save_registry(self, registry: BLSApkRegistry):
        """
        Store the full registry state atomically.

        Replaces whatever was stored before. On failure the transaction is
        rolled back and the error is re-raised.
        """
        try:
            cursor = self.conn.cursor()

            cursor.execute("DELETE FROM apk_updates")
            cursor.execute("DELETE FROM quorum_apks")
            cursor.execute("DELETE FROM pubkeys")
            cursor.execute("DELETE FROM registry_metadata")

            metadata = {'chain_id': registry.compendium.chain_id}
            if isinstance(registry.gate, CoordinatorGate):
                metadata['coordinator'] = registry.gate.coordinator
            for key, value in metadata.items():
                cursor.execute(
                    "INSERT INTO registry_metadata (key, value) VALUES (?, ?)", (key, value)
                )

            for quorum_number in registry.get_quorum_numbers():
                history_data = registry.quorum_apks[quorum_number].to_dict()
                apk_json = json.dumps(history_data['apk'], sort_keys=True)
                cursor.execute("""
                    INSERT INTO quorum_apks (quorum_number, apk_json, apk_checksum)
                    VALUES (?, ?, ?)
                """, (quorum_number, apk_json, self._compute_checksum(apk_json)))

                for index, update in enumerate(history_data['updates']):
                    update_json = json.dumps(update, sort_keys=True)
                    cursor.execute("""
                        INSERT INTO apk_updates
                        (quorum_number, update_index, apk_hash, from_block, until_block,
                         update_json, update_checksum)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                    """, (
                        quorum_number,
                        index,
                        update['apk_hash'],
                        update['from_block'],
                        update['until_block'],
                        update_json,
                        self._compute_checksum(update_json)
                    ))

            compendium = registry.compendium
            for pubkey_hash, operator in sorted(compendium.pubkey_hash_to_operator.items()):
                pubkey_json = json.dumps(g1_to_dict(compendium.pubkeys[pubkey_hash]), sort_keys=True)
                cursor.execute("""
                    INSERT INTO pubkeys (pubkey_hash, operator, pubkey_json, pubkey_checksum)
                    VALUES (?, ?, ?, ?)
                """, (pubkey_hash, operator, pubkey_json, self._compute_checksum(pubkey_json)))

            self.conn.commit()
            print(f"📦 SQLite: Saved {len(registry.get_quorum_numbers())} quorums, "
                  f"{len(compendium)} pubkeys")

        except Exception as e:
            self.conn.rollback()
            print(f"❌ SQLite save_registry failed: {e}")
            raise

    def get_metadata(self) -> Dict[str, str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT key, value FROM registry_metadata")
        return {row['key']: row['value'] for row in cursor.fetchall()}

    def load_quorum(self, quorum_number: int) -> Optional[QuorumApkHistory]:
        """
        Load one quorum's apk and history.

        Raises StorageIntegrityError on checksum failure.
        """
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT apk_json, apk_checksum FROM quorum_apks WHERE quorum_number = ?",
            (quorum_number,)
        )
        row = cursor.fetchone()
        if not row:
            return None

        if not self._verify_checksum(row['apk_json'], row['apk_checksum']):
            print(f"⚠️ INTEGRITY ERROR: Apk for quorum {quorum_number} failed checksum")
            raise StorageIntegrityError(f"Apk for quorum {quorum_number} failed checksum")

        cursor.execute("""
            SELECT update_index, update_json, update_checksum FROM apk_updates
            WHERE quorum_number = ? ORDER BY update_index
        """, (quorum_number,))

        updates = []
        for update_row in cursor.fetchall():
            if not self._verify_checksum(update_row['update_json'], update_row['update_checksum']):
                print(f"⚠️ INTEGRITY ERROR: Update {update_row['update_index']} "
                      f"of quorum {quorum_number} failed checksum")
                raise StorageIntegrityError(
                    f"Update {update_row['update_index']} of quorum {quorum_number} failed checksum"
                )
            updates.append(json.loads(update_row['update_json']))

        return QuorumApkHistory.from_dict({
            'quorum_number': quorum_number,
            'apk': json.loads(row['apk_json']),
            'updates': updates
        })

    def load_compendium(self) -> PubkeyCompendium:
        metadata = self.get_metadata()
        compendium = PubkeyCompendium(chain_id=metadata.get('chain_id', config.CHAIN_ID))

        cursor = self.conn.cursor()
        cursor.execute("SELECT pubkey_hash, operator, pubkey_json, pubkey_checksum FROM pubkeys")
        for row in cursor.fetchall():
            if not self._verify_checksum(row['pubkey_json'], row['pubkey_checksum']):
                print(f"⚠️ INTEGRITY ERROR: Pubkey {row['pubkey_hash']} failed checksum")
                raise StorageIntegrityError(f"Pubkey {row['pubkey_hash']} failed checksum")
            pubkey_hash = compendium.restore_binding(
                row['operator'], g1_from_dict(json.loads(row['pubkey_json']))
            )
            if pubkey_hash != row['pubkey_hash']:
                raise StorageIntegrityError(
                    f"Pubkey stored under {row['pubkey_hash']} hashes to {pubkey_hash}"
                )
        return compendium

    def load_registry(self, clock, gate=None, hooks: Optional[RegistryHooks] = None,
                      verbose: bool = config.VERBOSE_LOGGING) -> BLSApkRegistry:
        """
        Rebuild a BLSApkRegistry from storage.

        Args:
            clock: Block clock for future mutations
            gate: Access gate (default: CoordinatorGate for the stored coordinator)
            hooks: Optional RegistryHooks
            verbose: Print one line per mutation

        Returns:
            BLSApkRegistry with every stored quorum restored
        """
        metadata = self.get_metadata()
        if gate is None:
            coordinator = metadata.get('coordinator')
            if not coordinator:
                raise StorageIntegrityError("No coordinator stored and no gate supplied")
            gate = CoordinatorGate(coordinator)

        registry = BLSApkRegistry(
            gate=gate,
            compendium=self.load_compendium(),
            clock=clock,
            hooks=hooks,
            verbose=verbose
        )

        for quorum_number in self.get_quorum_numbers():
            registry.restore_quorum(self.load_quorum(quorum_number))

        errors = registry.check_invariants()
        if errors:
            raise StorageIntegrityError("; ".join(errors))

        return registry

    def get_quorum_numbers(self) -> List[int]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT quorum_number FROM quorum_apks ORDER BY quorum_number")
        return [row['quorum_number'] for row in cursor.fetchall()]

    def get_block_range(self) -> Tuple[int, int]:
        """Get the range of update blocks stored (min, max); (0, -1) when empty."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT MIN(from_block) as min_b, MAX(from_block) as max_b FROM apk_updates")
        row = cursor.fetchone()

        min_b = row['min_b'] if row['min_b'] is not None else 0
        max_b = row['max_b'] if row['max_b'] is not None else -1

        return min_b, max_b

    def verify_integrity(self) -> Tuple[bool, List[str]]:
        """
        Verify integrity of all stored data.

        Returns:
            Tuple of (all_valid, list_of_errors)
        """
        errors = []
        cursor = self.conn.cursor()

        cursor.execute("SELECT quorum_number, apk_json, apk_checksum FROM quorum_apks")
        for row in cursor.fetchall():
            if not self._verify_checksum(row['apk_json'], row['apk_checksum']):
                errors.append(f"Apk for quorum {row['quorum_number']} checksum mismatch")

        cursor.execute("""
            SELECT quorum_number, update_index, apk_hash, from_block, until_block,
                   update_json, update_checksum
            FROM apk_updates ORDER BY quorum_number, update_index
        """)
        for row in cursor.fetchall():
            label = f"Update {row['update_index']} of quorum {row['quorum_number']}"
            if not self._verify_checksum(row['update_json'], row['update_checksum']):
                errors.append(f"{label} checksum mismatch")
                continue
            stored = json.loads(row['update_json'])
            if (stored['apk_hash'], stored['from_block'], stored.get('until_block')) != \
                    (row['apk_hash'], row['from_block'], row['until_block']):
                errors.append(f"{label} columns do not match stored json")

        cursor.execute("SELECT pubkey_hash, pubkey_json, pubkey_checksum FROM pubkeys")
        for row in cursor.fetchall():
            if not self._verify_checksum(row['pubkey_json'], row['pubkey_checksum']):
                errors.append(f"Pubkey {row['pubkey_hash']} checksum mismatch")

        if not errors:
            for quorum_number in self.get_quorum_numbers():
                errors.extend(self.load_quorum(quorum_number).check_invariants())

        all_valid = len(errors) == 0

        if all_valid:
            min_b, max_b = self.get_block_range()
            print(f"✅ SQLite integrity check passed: updates from block {min_b} to {max_b}")
        else:
            print(f"❌ SQLite integrity check failed: {len(errors)} errors found")
            for error in errors[:10]:
                print(f"   - {error}")
            if len(errors) > 10:
                print(f"   ... and {len(errors) - 10} more errors")

        return all_valid, errors

    def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        cursor = self.conn.cursor()

        stats = {}

        cursor.execute("SELECT COUNT(*) as cnt FROM quorum_apks")
        stats['total_quorums'] = cursor.fetchone()['cnt']

        cursor.execute("SELECT COUNT(*) as cnt FROM apk_updates")
        stats['total_updates'] = cursor.fetchone()['cnt']

        cursor.execute("SELECT COUNT(*) as cnt FROM pubkeys")
        stats['total_pubkeys'] = cursor.fetchone()['cnt']

        stats['db_path'] = self.db_path
        return stats

    def close(self):
        self.conn.close()
