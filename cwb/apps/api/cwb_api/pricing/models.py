"""
Pydantic models for the CWB plan table
"""

from typing import List, Literal

from pydantic import BaseModel, Field, model_validator


class PlanModel(BaseModel):
    """One purchasable price and the slot ceiling it grants"""
    price_ref: str
    display_name: str
    quota: int = Field(..., ge=1)


class TrialModel(BaseModel):
    """Locally managed trial parameters"""
    price_ref: str = "trial"
    duration_days: int = 14
    reminder_days: List[int] = Field(default_factory=lambda: [7, 11, 14])


class UnknownPriceFallbackModel(BaseModel):
    """Policy for processor prices missing from the table"""
    rule: Literal["UNKNOWN_PRICE_LOWEST_TIER"]


class PlanTableModel(BaseModel):
    """Root plan table document"""
    plans_version: str
    currency: str
    trial: TrialModel
    unknown_price_fallback: UnknownPriceFallbackModel
    plans: List[PlanModel]

    @model_validator(mode="after")
    def _unique_price_refs(self) -> "PlanTableModel":
        refs = [plan.price_ref for plan in self.plans]
        if len(refs) != len(set(refs)):
            raise ValueError("plans must not repeat a price_ref")
        if self.trial.price_ref in refs:
            raise ValueError("trial price_ref must not be a purchasable plan")
        return self
