from __future__ import annotations

from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..errors import MalformedInput
from ..schemas import DateRange, ManualEntry, ManualSource, Transaction
from .base import FetchResult, finalize

# manual form types -> canonical types; a bare "transfer" is an inbound move
MANUAL_TYPES = {
    "buy": "buy",
    "sell": "sell",
    "transfer": "transfer-in",
    "transfer-in": "transfer-in",
    "transfer-out": "transfer-out",
    "stake": "stake-reward",
    "airdrop": "airdrop",
    "fee": "fee",
}


def entry_to_transaction(entry: ManualEntry) -> Transaction:
    return Transaction(
        id=entry.id,
        timestamp=entry.date,
        type=MANUAL_TYPES[entry.type],
        asset=entry.asset,
        amount=entry.amount,
        fiat_value=entry.amount * entry.price,
        fee_amount=entry.fee,
        source_ref="manual",
        price_source="source",
    )


class ManualConnector:
    data_source = "manual"

    def fetch(self, payload: ManualSource, date_range: Optional[DateRange] = None) -> FetchResult:
        txs: List[Transaction] = []
        warnings: List[MalformedInput] = []
        # row_index is 1-based, matching how the entry list is shown to users
        for i, raw in enumerate(payload.entries, start=1):
            try:
                txs.append(entry_to_transaction(ManualEntry.model_validate(raw)))
            except PydanticValidationError as ve:
                reason = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or 'entry'}: {err['msg']}" for err in ve.errors()
                )
                warnings.append(MalformedInput(row_index=i, reason=reason, raw=dict(raw)))
        return FetchResult(transactions=finalize(txs, date_range or payload.date_range), warnings=warnings)
