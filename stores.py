# stores.py
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from errors import MemberNotFound
from models import Bill, BillStatus, LedgerEntry


class BillStore(ABC):

    @abstractmethod
    async def get(self, bill_id: str) -> Optional[Bill]:
        pass

    @abstractmethod
    async def mark_paid_if_unpaid(self, bill_id: str, changes: Dict[str, Any]) -> bool:
        """Compare-and-swap to paid. Returns False when the bill was already paid at write time."""
        pass


class LedgerStore(ABC):

    @abstractmethod
    async def append_if_absent(self, member_email: str, entry: LedgerEntry) -> bool:
        """
        Append ``entry`` unless one with the same ``dedupeKey`` exists.
        Returns False for a duplicate, raises MemberNotFound for an unknown member.
        """
        pass

    @abstractmethod
    async def list_entries(self, member_email: str) -> List[LedgerEntry]:
        pass


class MongoBillStore(BillStore):
    def __init__(self, collection):
        self.collection = collection

    async def get(self, bill_id: str) -> Optional[Bill]:
        doc = await self.collection.find_one({"_id": bill_id})
        if not doc:
            return None
        doc["id"] = str(doc.pop("_id"))
        return Bill(**doc)

    async def mark_paid_if_unpaid(self, bill_id: str, changes: Dict[str, Any]) -> bool:
        result = await self.collection.update_one(
            {"_id": bill_id, "status": {"$ne": BillStatus.PAID.value}},
            {"$set": {**changes, "status": BillStatus.PAID.value, "updatedAt": datetime.utcnow()}},
        )
        return result.modified_count == 1


class MongoLedgerStore(LedgerStore):
    """Ledger kept as the ``payments`` array on each member document."""

    def __init__(self, collection):
        self.collection = collection

    async def append_if_absent(self, member_email: str, entry: LedgerEntry) -> bool:
        result = await self.collection.update_one(
            {"email": member_email, "payments.dedupeKey": {"$ne": entry.dedupeKey}},
            {"$push": {"payments": entry.dict()}},
        )
        if result.modified_count == 1:
            return True
        if await self.collection.count_documents({"email": member_email}, limit=1) == 0:
            raise MemberNotFound(member_email)
        return False

    async def list_entries(self, member_email: str) -> List[LedgerEntry]:
        doc = await self.collection.find_one({"email": member_email}, {"payments": 1})
        if doc is None:
            raise MemberNotFound(member_email)
        entries = []
        for payment in doc.get("payments") or []:
            # entries written before dedupe keys existed are not settlement records
            if "dedupeKey" in payment:
                entries.append(LedgerEntry(**payment))
        return entries
