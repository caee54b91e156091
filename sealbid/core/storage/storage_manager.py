import json
from pathlib import Path
from typing import List, Optional

from sealbid.core.storage.sqlite_adapter import SQLiteAdapter
from sealbid.crypto.fhe import MockFHEBackend
from sealbid.utils.logger import get_logger

logger = get_logger("storage.manager")

BACKEND_BUCKET = "backend"
SETTLEMENT_BUCKET = "settlement"


class StorageManager:
    """
    Manages persistent storage for auction engines.

    Coordinates data persistence using SQLite adapter.
    Handles:
    - Engine checkpoints (tagged step + progress + encrypted vectors)
    - The mock coprocessor's handle table and handle-derivation state
    - Settlement state (claim flags, blind slots, pending requests, escrow)
    """

    def __init__(self, data_dir: Path, db_name: str = "sealbid.db"):
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)

        logger.info(f"StorageManager initialized at {self.db_path}")

    def close(self):
        self.adapter.close()

    # =========================================================================
    # Engine Checkpoints
    # =========================================================================

    def save_engine_state(self, auction_id: str, step: int, snapshot: dict):
        """Persist an engine snapshot, replacing the previous one."""
        self.adapter.save_engine_state(auction_id, step, json.dumps(snapshot, sort_keys=True))
        logger.debug(f"Checkpoint saved for auction {auction_id} at step {step}")

    def load_engine_state(self, auction_id: str) -> Optional[dict]:
        row = self.adapter.get_engine_state(auction_id)
        if row is None:
            return None
        _, data = row
        return json.loads(data)

    def list_auctions(self) -> List[str]:
        return self.adapter.list_auctions()

    # =========================================================================
    # Coprocessor Table
    # =========================================================================

    def save_backend(self, backend: MockFHEBackend):
        """Persist every handle plus the salt and counter used to derive new ones."""
        self.adapter.save_ciphertexts(backend.export_table())
        self.adapter.put(b"salt", backend.salt, bucket=BACKEND_BUCKET)
        self.adapter.put(b"counter", str(backend.counter).encode(), bucket=BACKEND_BUCKET)

    def load_backend(self) -> Optional[MockFHEBackend]:
        """Rebuild the mock backend, or None if none was saved."""
        salt = self.adapter.get(b"salt")
        if salt is None:
            return None
        backend = MockFHEBackend(salt=bytes(salt))
        backend.import_table(self.adapter.get_all_ciphertexts())
        counter = self.adapter.get(b"counter")
        if counter is not None:
            backend.restore_counter(int(bytes(counter).decode()))
        logger.info(f"Restored {self.adapter.get_ciphertext_count()} ciphertext(s)")
        return backend

    # =========================================================================
    # Settlement State
    # =========================================================================

    def save_settlement(self, auction_id: str, snapshot: dict):
        """Persist the claim-side state of an auction, replacing the previous one."""
        key = f"settlement:{auction_id}".encode()
        self.adapter.put(key, json.dumps(snapshot, sort_keys=True).encode(), bucket=SETTLEMENT_BUCKET)
        logger.debug(f"Settlement state saved for auction {auction_id}")

    def load_settlement(self, auction_id: str) -> Optional[dict]:
        data = self.adapter.get(f"settlement:{auction_id}".encode())
        if data is None:
            return None
        return json.loads(bytes(data).decode())
