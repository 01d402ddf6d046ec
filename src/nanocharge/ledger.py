"""Ledger client interface and an in-memory simulated ledger.

The processor only consumes ledger results; key derivation, block signing
and work generation live behind ``LedgerClient``. ``SimulatedLedgerClient``
mirrors the settlement rules of the Nano block lattice (incoming sends sit
as pending until received, sends require an opened account and enough
settled balance) so the processor can run end to end without a node.
"""
from __future__ import annotations

import hashlib
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from .exceptions import AccountNotOpenedError, InsufficientBalanceError, LedgerError
from .models import AccountBalance, PendingItem, ReceiveResult, SendResult

logger = logging.getLogger(__name__)

# Nano base32 alphabet used in account addresses
ADDRESS_ALPHABET = "13456789abcdefghijkmnopqrstuwxyz"
ADDRESS_PREFIX = "nano_"


class LedgerClient(ABC):
    """Abstract interface for ledger access.

    Implementations should raise ``LedgerError`` (or a subclass) for node
    and transport failures. Status checks treat any failure from
    ``get_balance`` or ``get_pending_items`` as "no data available".
    """

    @abstractmethod
    def derive_address(self, index: int) -> str:
        """Derive the address for a sub-account index (deterministic)."""
        pass

    def get_address(self, index: int = 0) -> str:
        """Get the address for a sub-account index."""
        return self.derive_address(index)

    @abstractmethod
    async def get_balance(self, index: int) -> AccountBalance:
        """Get settled balance and pending total for a sub-account."""
        pass

    @abstractmethod
    async def get_pending_items(self, index: int) -> List[PendingItem]:
        """List unsettled incoming sends for a sub-account."""
        pass

    @abstractmethod
    async def receive_pending(self, index: int) -> List[ReceiveResult]:
        """Settle every pending item on a sub-account.

        Raises LedgerError naming the item that failed.
        """
        pass

    @abstractmethod
    async def send(self, to_address: str, amount_raw: int, from_index: int) -> SendResult:
        """Send ``amount_raw`` from a sub-account.

        Raises InsufficientBalanceError if the amount exceeds the settled
        balance, AccountNotOpenedError if the account never received funds.
        """
        pass

    async def close(self) -> None:
        """Release any underlying connections."""
        return None


def _derive_simulated_address(seed: bytes, index: int) -> str:
    digest = hashlib.blake2b(seed + index.to_bytes(4, "big"), digest_size=64).digest()
    # 60 characters after the prefix; real addresses start with 1 or 3
    body = "".join(ADDRESS_ALPHABET[b % 32] for b in digest[1:60])
    return ADDRESS_PREFIX + ("1" if digest[0] % 2 else "3") + body


def _new_block_hash() -> str:
    return secrets.token_hex(32).upper()


@dataclass
class _SimulatedAccount:
    address: str
    balance: int = 0
    opened: bool = False
    pending: Dict[str, PendingItem] = field(default_factory=dict)


class SimulatedLedgerClient(LedgerClient):
    """In-memory ledger for development and testing.

    Note: balances live only in process memory.
    """

    def __init__(self, seed: Optional[str] = None):
        self._seed = bytes.fromhex(seed) if seed else secrets.token_bytes(32)
        self._accounts: Dict[int, _SimulatedAccount] = {}
        self._index_by_address: Dict[str, int] = {}
        self._external: Dict[str, int] = {}

    @property
    def seed(self) -> str:
        return self._seed.hex().upper()

    def derive_address(self, index: int) -> str:
        if index < 0:
            raise ValueError(f"Account index must be non-negative: {index}")
        account = self._accounts.get(index)
        if account is None:
            address = _derive_simulated_address(self._seed, index)
            account = _SimulatedAccount(address=address)
            self._accounts[index] = account
            self._index_by_address[address] = index
        return account.address

    def _account(self, index: int) -> _SimulatedAccount:
        self.derive_address(index)
        return self._accounts[index]

    def fund(
        self,
        target: Union[int, str],
        amount_raw: int,
        source: str = "",
        block_hash: Optional[str] = None,
    ) -> PendingItem:
        """Create a pending incoming send, as if someone paid ``target``."""
        if amount_raw <= 0:
            raise ValueError("Funding amount must be positive")
        index = target if isinstance(target, int) else self._index_by_address.get(target)
        if index is None:
            raise ValueError(f"Address is not managed by this ledger: {target}")

        item = PendingItem(
            hash=block_hash or _new_block_hash(),
            amount_raw=amount_raw,
            source=source or ADDRESS_PREFIX + "1" + "1" * 59,
        )
        self._account(index).pending[item.hash] = item
        return item

    def external_balance(self, address: str) -> int:
        """Total received by an address outside the managed sub-accounts."""
        return self._external.get(address, 0)

    async def get_balance(self, index: int) -> AccountBalance:
        account = self._account(index)
        pending = sum(item.amount_raw for item in account.pending.values())
        return AccountBalance(balance=account.balance, pending=pending)

    async def get_pending_items(self, index: int) -> List[PendingItem]:
        return list(self._account(index).pending.values())

    async def receive_pending(self, index: int) -> List[ReceiveResult]:
        account = self._account(index)
        results = []
        for block_hash in list(account.pending):
            item = account.pending.pop(block_hash)
            account.balance += item.amount_raw
            account.opened = True
            results.append(ReceiveResult(hash=_new_block_hash(), amount_raw=item.amount_raw))
        if results:
            logger.debug(f"Simulated receive of {len(results)} block(s) on account {index}")
        return results

    async def send(self, to_address: str, amount_raw: int, from_index: int) -> SendResult:
        account = self._account(from_index)
        if not account.opened:
            raise AccountNotOpenedError(
                "Account not opened. Receive some funds first.",
                action="send",
                account_index=from_index,
            )
        if amount_raw <= 0:
            raise LedgerError("Send amount must be positive", action="send", account_index=from_index)
        if amount_raw > account.balance:
            raise InsufficientBalanceError(
                f"Insufficient balance on account {from_index}",
                available=account.balance,
                required=amount_raw,
                account_index=from_index,
            )

        account.balance -= amount_raw
        send_hash = _new_block_hash()

        target_index = self._index_by_address.get(to_address)
        if target_index is not None:
            self._account(target_index).pending[send_hash] = PendingItem(
                hash=send_hash,
                amount_raw=amount_raw,
                source=account.address,
            )
        else:
            self._external[to_address] = self._external.get(to_address, 0) + amount_raw

        return SendResult(hash=send_hash)
