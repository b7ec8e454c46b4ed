from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class TransactionType(str, Enum):
    EARNED = "earned"
    SPENT = "spent"
    REFUND = "refund"


class CreditTransaction(BaseModel):
    id: str
    member_id: str
    type: TransactionType
    amount: int
    description: str
    session_id: Optional[str] = None
    timestamp: datetime
    balance_after: int
    sequence: int

    model_config = ConfigDict(from_attributes=True)


class MemberBalance(BaseModel):
    member_id: str
    current_balance: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class CreditHistoryResponse(BaseModel):
    member_id: str
    entries: list[CreditTransaction]
    total_count: int
    current_balance: int
