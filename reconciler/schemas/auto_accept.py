"""JSON document shape of the auto-accept merchant map."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class AutoAcceptStatistic(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    match_count: int = 0
    last_matched: datetime | None = None


class AutoAcceptMapDocument(BaseModel):
    """``{version, description, caseSensitive, matchMode, mappings, statistics}``"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: str = "1.0"
    description: str = ""
    case_sensitive: bool = False
    match_mode: Literal["CONTAINS", "EXACT", "STARTS_WITH"] = "CONTAINS"
    mappings: dict[str, str] = Field(default_factory=dict)
    statistics: dict[str, AutoAcceptStatistic] = Field(default_factory=dict)

    @field_validator("match_mode", mode="before")
    @classmethod
    def _upper(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    @field_validator("mappings")
    @classmethod
    def _drop_blank(cls, mappings: dict[str, str]) -> dict[str, str]:
        return {k.strip(): v.strip() for k, v in mappings.items() if k.strip() and v.strip()}


class MerchantUsage(BaseModel):
    merchant: str
    count: int


class AutoAcceptStats(BaseModel):
    total_mappings: int
    total_auto_accepted: int
    most_used: list[MerchantUsage] = Field(default_factory=list)
    least_used: list[MerchantUsage] = Field(default_factory=list)
