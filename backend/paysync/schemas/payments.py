"""Pydantic schemas for payment ingress routes"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional

from paysync.schemas.events import DAYS_PER_MONTH, MAX_EXTENSION_DAYS


class ConfirmRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(alias="accountId", min_length=1)
    reference: str = Field(min_length=1)
    days: Optional[int] = Field(default=None, le=MAX_EXTENSION_DAYS)
    months: Optional[int] = Field(default=None, le=MAX_EXTENSION_DAYS // DAYS_PER_MONTH)


class InitiateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(alias="accountId", min_length=1)
    email: str = Field(min_length=3)
    amount: float = Field(gt=0)  # major currency units
    currency: Optional[str] = None
    days: Optional[int] = Field(default=None, le=MAX_EXTENSION_DAYS)


class PlayVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform: str = "android"
    account_id: Optional[str] = Field(default=None, alias="accountId")
    package_name: Optional[str] = Field(default=None, alias="packageName")
    product_id: Optional[str] = Field(default=None, alias="productId")
    purchase_token: Optional[str] = Field(default=None, alias="purchaseToken")
