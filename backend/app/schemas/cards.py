"""Pydantic schemas for saved dashboard card configurations."""
from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator


class CardFilter(BaseModel):
    filter_field: str = Field("", alias="filterField")
    filter_values: list[Any] = Field(default_factory=list, alias="filterValues")

    class Config:
        populate_by_name = True
        extra = "allow"

    @field_validator("filter_values", mode="before")
    @classmethod
    def _as_list(cls, value):
        if value is None or value == "":
            return []
        if isinstance(value, (list, tuple, set)):
            return list(value)
        return [value]


class SeriesSpec(BaseModel):
    id: Optional[Union[int, str]] = None
    label: Optional[str] = None
    field: str = ""
    aggregation: str = "sum"
    axis: Optional[Any] = None
    type: Optional[str] = None
    filters: list[CardFilter] = Field(default_factory=list)

    class Config:
        populate_by_name = True
        extra = "allow"

    @property
    def alias(self) -> str:
        return str(self.id or self.label or self.field)


class CardConfig(BaseModel):
    segment_by: Optional[str] = Field(None, alias="segmentBy")
    multi_axis_series: list[SeriesSpec] = Field(default_factory=list, alias="multiAxisSeries")
    override_date_filter: bool = Field(False, alias="overrideDateFilter")
    enable_stacking: bool = Field(False, alias="enableStacking")

    class Config:
        populate_by_name = True
        extra = "allow"


class CardSpec(BaseModel):
    id: Optional[Union[int, str]] = None
    title: str = ""
    chart_type: str = Field("bar", alias="chartType")
    group_by: Optional[str] = Field(None, alias="groupBy")
    value_field: Optional[str] = Field(None, alias="valueField")
    aggregation: str = "sum"
    top_n: Optional[int] = Field(None, alias="topN")
    filters: list[CardFilter] = Field(default_factory=list)
    card_config: CardConfig = Field(default_factory=CardConfig, alias="cardConfig")
    is_active: Optional[bool] = Field(None, alias="isActive")
    # Per-card date window computed by the caller
    from_date: Optional[str] = Field(None, alias="_fromDate")
    to_date: Optional[str] = Field(None, alias="_toDate")

    class Config:
        populate_by_name = True
        extra = "allow"

    @field_validator("top_n", mode="before")
    @classmethod
    def _blank_top_n(cls, value):
        if value in ("", 0, "0"):
            return None
        return value

    @field_validator("filters", mode="before")
    @classmethod
    def _null_filters(cls, value):
        return value or []

    @field_validator("card_config", mode="before")
    @classmethod
    def _null_config(cls, value):
        return value or {}

    @property
    def key(self) -> Union[int, str]:
        return self.id if self.id is not None else self.title
