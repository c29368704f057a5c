"""
Feed and like-count response schemas.
The feed shape matches the precomputed feed endpoint.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class FeedItemSchema(BaseModel):
    """One decoded event."""
    sig: str = Field(description="Transaction signature")
    slot: int = Field(description="Ledger slot")
    time: int = Field(description="Block time in milliseconds, 0 when unknown")
    p: Dict[str, Any] = Field(description="Event payload in wire form")


class FeedPageResponse(BaseModel):
    """A feed page with an opaque continuation token."""
    model_config = ConfigDict(populate_by_name=True)

    items: List[FeedItemSchema] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(default=None, alias="nextCursor")


class TipSchema(BaseModel):
    """One incoming tip to the owner."""
    sig: str = Field(description="Transaction signature")
    sender: str = Field(description="Fee payer of the tip transaction")
    lamports: int = Field(description="Amount received in lamports")
    sol: str = Field(description="Amount received in SOL, four decimals")
    time: int = Field(description="Block time in milliseconds, 0 when unknown")
