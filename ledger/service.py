import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from .models import (
    TransactionType,
    CreditTransaction,
    MemberBalance,
    CreditHistoryResponse,
)

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    pass


class MemberNotFoundError(LedgerError):
    pass


class LedgerStorage:
    """Members and the transaction log, keyed by id. Rows are plain dicts."""

    def __init__(self):
        self.members: dict[str, dict] = {}
        self.transactions: dict[str, dict] = {}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Ledger:
    def __init__(self, storage: LedgerStorage, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or utc_now

    def append(
        self,
        member_id: str,
        type: TransactionType,
        amount: int,
        description: str,
        session_id: Optional[str] = None,
    ) -> CreditTransaction:
        member = self.storage.members.get(member_id)
        if member is None:
            raise MemberNotFoundError(f"Member {member_id} not found")

        current_balance = member["credits"]
        new_balance = max(0, current_balance + amount)
        applied = new_balance - current_balance
        if applied != amount:
            logger.info(
                "Clamped %s delta for %s from %d to %d", type.value, member_id, amount, applied
            )

        entry_data = {
            "id": f"transaction-{uuid4().hex}",
            "member_id": member_id,
            "type": type,
            "amount": applied,
            "description": description,
            "session_id": session_id,
            "timestamp": self.clock(),
            "balance_after": new_balance,
            "sequence": self._next_sequence(),
        }

        self.storage.transactions[entry_data["id"]] = entry_data
        member["credits"] = new_balance

        return CreditTransaction(**entry_data)

    def history(self, member_id: str) -> list[CreditTransaction]:
        entries = [
            CreditTransaction(**e) for e in self.storage.transactions.values()
            if e["member_id"] == member_id
        ]
        entries.sort(key=lambda e: (e.timestamp, e.sequence), reverse=True)
        return entries

    def get_history(self, member_id: str, limit: int = 50, offset: int = 0) -> CreditHistoryResponse:
        all_entries = self.history(member_id)
        member = self.storage.members.get(member_id)
        if member is not None:
            current = member["credits"]
        else:
            # Deleted members keep their log; fall back to its last snapshot.
            current = self.replay_balance(member_id) or 0

        return CreditHistoryResponse(
            member_id=member_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=current,
        )

    def get_balance(self, member_id: str) -> MemberBalance:
        member = self.storage.members.get(member_id)
        if member is None:
            raise MemberNotFoundError(f"Member {member_id} not found")

        entries = self.history(member_id)
        return MemberBalance(
            member_id=member_id,
            current_balance=member["credits"],
            total_entries=len(entries),
            last_transaction_at=entries[0].timestamp if entries else None,
        )

    def replay_balance(self, member_id: str) -> Optional[int]:
        # The newest entry's snapshot is authoritative; None when the member has no entries.
        entries = [e for e in self.storage.transactions.values() if e["member_id"] == member_id]
        if not entries:
            return None
        return max(entries, key=lambda e: e["sequence"])["balance_after"]

    def verify(self, member_id: str) -> bool:
        entries = sorted(
            (e for e in self.storage.transactions.values() if e["member_id"] == member_id),
            key=lambda e: e["sequence"],
        )
        previous = None
        for entry in entries:
            if entry["balance_after"] < 0:
                return False
            if previous is not None and entry["balance_after"] != previous + entry["amount"]:
                return False
            previous = entry["balance_after"]
        return True

    def _next_sequence(self) -> int:
        if not self.storage.transactions:
            return 1
        return max(e["sequence"] for e in self.storage.transactions.values()) + 1
