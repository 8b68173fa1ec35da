"""Inbound settlement notifications and the outcomes reported back to the sender."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

INVOICE_SETTLED = "InvoiceSettled"


class SettlementEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    store_id: str = Field(alias="storeId", min_length=1, max_length=128)
    invoice_id: str = Field(alias="invoiceId", min_length=1, max_length=128)
    delivery_id: Optional[str] = Field(default=None, alias="deliveryId", max_length=128)
    type: str = Field(min_length=1, max_length=64)
    timestamp: Optional[int] = Field(default=None)
    manually_marked: bool = Field(default=False, alias="manuallyMarked")

    @property
    def is_settlement(self) -> bool:
        return self.type == INVOICE_SETTLED


class OutcomeStatus(str, enum.Enum):
    IGNORED = "ignored"
    CONFLICT = "conflict"
    ALREADY_DONE = "already_done"
    MANUALLY_MARKED = "manually_marked"
    NOT_SETTLED = "not_settled"
    INCONSISTENT = "inconsistent"
    FAILED = "failed"
    PROCESSED = "processed"


ACKNOWLEDGED_STATUSES = {
    OutcomeStatus.IGNORED,
    OutcomeStatus.ALREADY_DONE,
    OutcomeStatus.MANUALLY_MARKED,
    OutcomeStatus.NOT_SETTLED,
    OutcomeStatus.PROCESSED,
}


@dataclass
class SettlementOutcome:
    status: OutcomeStatus
    message: str = ""
    owner_payment_id: Optional[str] = None
    owner_payout_msat: Optional[int] = None
    fee_retained_msat: Optional[int] = None
    tip_payment_ids: List[str] = field(default_factory=list)
    failed_tip_recipients: List[str] = field(default_factory=list)
    off_ramp_payment_id: Optional[str] = None

    @property
    def acknowledged(self) -> bool:
        """True when the sender should not redeliver this event."""
        return self.status in ACKNOWLEDGED_STATUSES

    def as_dict(self) -> dict:
        return {
            "status": self.status.value,
            "message": self.message,
            "owner_payment_id": self.owner_payment_id,
            "owner_payout_msat": self.owner_payout_msat,
            "fee_retained_msat": self.fee_retained_msat,
            "tip_payment_ids": list(self.tip_payment_ids),
            "failed_tip_recipients": list(self.failed_tip_recipients),
            "off_ramp_payment_id": self.off_ramp_payment_id,
        }
