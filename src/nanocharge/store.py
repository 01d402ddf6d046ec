"""Charge store with a dual index and snapshot persistence.

Charges are indexed by id and by the address they currently own. Both maps
and the sub-account allocation cursor sit behind one re-entrant lock; no
other component touches them directly.

Persistence is a single JSON snapshot. Routine mutations call
``schedule_save()``, which coalesces bursts into one write after a quiet
period. State-critical transitions call ``flush()`` to write immediately.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from pathlib import Path
from typing import Iterable, Optional, Union

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from .exceptions import ChargeConflictError, SnapshotError
from .models import ACTIVE_STATUSES, Charge, ChargeSnapshot, ChargeStatus

logger = logging.getLogger(__name__)

DEFAULT_STARTING_INDEX = 1000
DEFAULT_SAVE_DEBOUNCE_SECONDS = 0.5


class SnapshotFile:
    """Reads and atomically writes the JSON snapshot."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Optional[ChargeSnapshot]:
        """Load the snapshot, or None if no snapshot has been written yet.

        Raises:
            SnapshotError: If the file exists but cannot be parsed.
        """
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise SnapshotError(f"Cannot read snapshot: {e}", path=str(self.path)) from e

        try:
            return ChargeSnapshot.from_dict(data)
        except ValidationError as e:
            raise SnapshotError(f"Invalid snapshot contents: {e}", path=str(self.path)) from e

    def write(self, snapshot: ChargeSnapshot) -> None:
        """Write via a temp file and ``os.replace`` so readers never see a partial file."""
        data = snapshot.to_dict()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=False)
        os.replace(str(tmp), str(self.path))


class ChargeStore:
    """In-memory registry of charges, keyed by id and by owned address."""

    def __init__(
        self,
        snapshot: Optional[SnapshotFile] = None,
        *,
        starting_index: int = DEFAULT_STARTING_INDEX,
        save_debounce_seconds: float = DEFAULT_SAVE_DEBOUNCE_SECONDS,
    ):
        self._snapshot = snapshot
        self._starting_index = starting_index
        self._debounce = save_debounce_seconds
        self._by_id: dict[str, Charge] = {}
        self._by_address: dict[str, Charge] = {}
        self._next_index = starting_index
        self._lock = threading.RLock()
        self._save_handle: Optional[asyncio.TimerHandle] = None

    @classmethod
    def from_path(
        cls,
        persist_path: Optional[Union[str, Path]],
        **kwargs,
    ) -> "ChargeStore":
        """Build a store for ``persist_path``; ``None`` keeps it in memory only."""
        snapshot = SnapshotFile(persist_path) if persist_path is not None else None
        return cls(snapshot, **kwargs)

    @property
    def persist_path(self) -> Optional[Path]:
        return self._snapshot.path if self._snapshot else None

    @property
    def next_account_index(self) -> int:
        with self._lock:
            return self._next_index

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    def __contains__(self, charge_id: object) -> bool:
        with self._lock:
            return charge_id in self._by_id

    # -------------------------------------------------------------------------
    # Index operations
    # -------------------------------------------------------------------------

    def allocate_account_index(self) -> int:
        """Reserve the next unused sub-account index."""
        with self._lock:
            index = self._next_index
            self._next_index += 1
            return index

    def create(self, charge: Charge) -> Charge:
        """Register a new charge under its id and address."""
        with self._lock:
            if charge.id in self._by_id:
                raise ChargeConflictError(
                    f"Charge '{charge.id}' already exists",
                    details={"charge_id": charge.id},
                )
            owner = self._by_address.get(charge.address)
            if owner is not None:
                raise ChargeConflictError(
                    f"Address {charge.address} is already registered to charge '{owner.id}'",
                    details={"charge_id": charge.id, "owner_id": owner.id},
                )
            self._by_id[charge.id] = charge
            self._by_address[charge.address] = charge
            if charge.account_index >= self._next_index:
                self._next_index = charge.account_index + 1
            return charge

    def get(self, charge_id: str) -> Optional[Charge]:
        with self._lock:
            return self._by_id.get(charge_id)

    def get_by_address(self, address: str) -> Optional[Charge]:
        with self._lock:
            return self._by_address.get(address)

    def list(self, status: Optional[ChargeStatus] = None) -> list[Charge]:
        """All charges in creation order, optionally filtered by status."""
        with self._lock:
            charges = list(self._by_id.values())
        if status is None:
            return charges
        return [c for c in charges if c.status == status]

    def list_active(self) -> list[Charge]:
        with self._lock:
            return [c for c in self._by_id.values() if c.status in ACTIVE_STATUSES]

    def delete(self, charge_id: str) -> Optional[Charge]:
        """Remove a charge from both indices."""
        with self._lock:
            charge = self._by_id.pop(charge_id, None)
            if charge is None:
                return None
            if self._by_address.get(charge.address) is charge:
                del self._by_address[charge.address]
            return charge

    def release_address(self, charge: Charge) -> None:
        """Drop the address mapping but keep the charge record."""
        with self._lock:
            if self._by_address.get(charge.address) is charge:
                del self._by_address[charge.address]

    def import_charges(self, charges: Iterable[Charge]) -> list[Charge]:
        """Insert or replace charges, e.g. when restoring an export.

        Returns the imported charges. Raises ChargeConflictError if an
        imported charge claims an address owned by a different charge.
        """
        imported = []
        with self._lock:
            for charge in charges:
                existing = self._by_id.get(charge.id)
                if existing is not None and self._by_address.get(existing.address) is existing:
                    del self._by_address[existing.address]
                if charge.holds_address:
                    owner = self._by_address.get(charge.address)
                    if owner is not None and owner.id != charge.id:
                        raise ChargeConflictError(
                            f"Address {charge.address} is already registered to charge '{owner.id}'",
                            details={"charge_id": charge.id, "owner_id": owner.id},
                        )
                    self._by_address[charge.address] = charge
                self._by_id[charge.id] = charge
                if charge.account_index >= self._next_index:
                    self._next_index = charge.account_index + 1
                imported.append(charge)
        return imported

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def load(self) -> int:
        """Replace in-memory state with the snapshot contents.

        Returns the number of charges loaded. A missing snapshot leaves an
        empty store allocating from ``starting_index``.
        """
        snapshot = self._snapshot.read() if self._snapshot else None

        with self._lock:
            self._by_id.clear()
            self._by_address.clear()
            self._next_index = self._starting_index
            if snapshot is None:
                return 0

            next_index = snapshot.next_account_index
            for charge in snapshot.charges:
                if charge.id in self._by_id:
                    raise SnapshotError(
                        f"Duplicate charge id '{charge.id}' in snapshot",
                        path=str(self.persist_path),
                    )
                self._by_id[charge.id] = charge
                if charge.holds_address:
                    if charge.address in self._by_address:
                        raise SnapshotError(
                            f"Address {charge.address} is held by more than one charge",
                            path=str(self.persist_path),
                        )
                    self._by_address[charge.address] = charge
                next_index = max(next_index, charge.account_index + 1)
            self._next_index = next_index

            logger.info(
                f"Loaded {len(self._by_id)} charge(s) from {self.persist_path}, "
                f"next account index {self._next_index}"
            )
            return len(self._by_id)

    def to_snapshot(self) -> ChargeSnapshot:
        with self._lock:
            return ChargeSnapshot(
                next_account_index=self._next_index,
                charges=list(self._by_id.values()),
            )

    def save(self) -> bool:
        """Write the snapshot now. Returns False if the write failed."""
        if self._snapshot is None:
            return True
        snapshot = self.to_snapshot()
        try:
            self._snapshot.write(snapshot)
        except OSError:
            logger.exception(f"Failed to write snapshot to {self._snapshot.path}")
            return False
        except (PydanticSerializationError, TypeError, ValueError):
            logger.exception(f"Failed to serialize snapshot for {self._snapshot.path}")
            return False
        logger.debug(f"Saved {len(snapshot.charges)} charge(s) to {self._snapshot.path}")
        return True

    @property
    def has_pending_save(self) -> bool:
        return self._save_handle is not None

    def schedule_save(self) -> None:
        """Request a save after the debounce window; repeated calls re-arm it."""
        if self._snapshot is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save()
            return
        if self._save_handle is not None:
            self._save_handle.cancel()
        self._save_handle = loop.call_later(self._debounce, self._run_scheduled_save)

    def _run_scheduled_save(self) -> None:
        self._save_handle = None
        self.save()

    def flush(self) -> bool:
        """Cancel any pending debounced save and write immediately."""
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        return self.save()
