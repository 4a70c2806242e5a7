"""
Wire models for bundles, records and fill preparations.

Conventions:
- uint256 values travel as decimal strings (JSON numbers lose precision past 2^53).
- byte strings travel as 0x-prefixed hex.
- addresses are 0x-prefixed hex; checksumming happens in the domain types.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict

from optionrelay.execution.order_lifecycle import OrderState
from optionrelay.execution.records import FillReceipt, OrderRecord
from optionrelay.execution.relay import FillPreparation
from optionrelay.trading.builder import OrderBundle

Uint256Str = Annotated[str, Field(pattern=r"^[0-9]{1,78}$", description="uint256 as a decimal string")]
AddressStr = Annotated[str, Field(pattern=r"^0x[0-9a-fA-F]{40}$", description="20-byte address")]
Bytes32Hex = Annotated[str, Field(pattern=r"^0x[0-9a-fA-F]{64}$", description="32 bytes, 0x hex")]
HexBytes = Annotated[str, Field(pattern=r"^0x([0-9a-fA-F]{2})*$", description="bytes, 0x hex")]


class OrderModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    salt: Uint256Str
    maker: AddressStr
    receiver: AddressStr
    maker_asset: AddressStr
    taker_asset: AddressStr
    making_amount: Uint256Str
    taking_amount: Uint256Str
    maker_traits: Uint256Str


class OptionTermsModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    underlying_asset: AddressStr
    strike_asset: AddressStr
    maker: AddressStr
    strike_price: Uint256Str
    expiry: Uint256Str
    amount: Uint256Str
    salt: Uint256Str


class SignatureModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    r: Bytes32Hex
    s: Bytes32Hex
    v: int = Field(..., ge=0, le=28, description="27/28 (0/1 accepted on input)")


class OrderBundleModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    order: OrderModel
    order_signature: SignatureModel
    option_terms: Optional[OptionTermsModel] = None
    terms_signature: Optional[SignatureModel] = None
    interaction: Optional[HexBytes] = None
    lop_address: AddressStr
    options_nft_address: Optional[AddressStr] = None
    chain_id: int = Field(..., gt=0)

    @classmethod
    def from_domain(cls, bundle: OrderBundle) -> "OrderBundleModel":
        return cls.model_validate(bundle.to_dict())

    def to_domain(self) -> OrderBundle:
        return OrderBundle.from_dict(self.model_dump())


class FillReceiptModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    tx_hash: Bytes32Hex
    filled_making: Uint256Str
    filled_taking: Uint256Str
    order_hash: Optional[Bytes32Hex] = None
    taker: Optional[AddressStr] = None
    block_number: Optional[int] = Field(default=None, ge=0)

    @classmethod
    def from_domain(cls, receipt: FillReceipt) -> "FillReceiptModel":
        return cls.model_validate(receipt.to_dict())

    def to_domain(self) -> FillReceipt:
        return FillReceipt.from_dict(self.model_dump())


class OrderRecordModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    order_id: Bytes32Hex
    bundle: OrderBundleModel
    state: OrderState
    created_at: datetime
    updated_at: datetime
    fill_receipt: Optional[FillReceiptModel] = None
    cancelled_by: Optional[AddressStr] = None

    @classmethod
    def from_domain(cls, record: OrderRecord) -> "OrderRecordModel":
        return cls(
            order_id=record.order_id,
            bundle=OrderBundleModel.from_domain(record.bundle),
            state=record.state,
            created_at=record.created_at,
            updated_at=record.updated_at,
            fill_receipt=None if record.fill_receipt is None else FillReceiptModel.from_domain(record.fill_receipt),
            cancelled_by=record.cancelled_by,
        )

    def to_domain(self) -> OrderRecord:
        return OrderRecord.from_dict(self.model_dump())


class FillPreparationModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    order_id: Bytes32Hex
    to: AddressStr
    calldata: HexBytes
    order_tuple: List[Uint256Str] = Field(..., min_length=8, max_length=8)
    r: Bytes32Hex
    vs: Bytes32Hex
    fill_amount: Uint256Str
    taker_traits: Uint256Str
    interaction: HexBytes
    taker: AddressStr

    @classmethod
    def from_domain(cls, prep: FillPreparation) -> "FillPreparationModel":
        return cls.model_validate(prep.to_dict())


class ErrorModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    error: str
    message: str
    order_id: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)
