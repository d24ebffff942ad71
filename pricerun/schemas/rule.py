from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

RoundingMode = Literal["none", "up", "down", "nearest", "nearest_99"]


class SelectorIn(BaseModel):
    tags: list[str] | None = Field(default=None, max_length=50)
    sku_pattern: str | None = Field(default=None, min_length=1, max_length=120)
    category: str | None = Field(default=None, min_length=1, max_length=120)

    model_config = ConfigDict(extra="forbid")


class _BoundedTransform(BaseModel):
    floor: int | None = Field(default=None, ge=0)
    ceiling: int | None = Field(default=None, ge=0)
    round: RoundingMode = "none"
    precision: int = Field(default=2, ge=0, le=2)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def validate_bounds(self):
        if self.floor is not None and self.ceiling is not None and self.floor > self.ceiling:
            raise ValueError("floor must be less than or equal to ceiling")
        return self


class PercentTransform(_BoundedTransform):
    op: Literal["percent"]
    value: float = Field(ge=-100, le=1000)


class AbsoluteTransform(_BoundedTransform):
    op: Literal["absolute"]
    value: int


class SetTransform(_BoundedTransform):
    op: Literal["set"]
    value: int = Field(ge=0)


class MultiplyTransform(_BoundedTransform):
    op: Literal["multiply"]
    factor: float = Field(gt=0, le=100)


TransformModel = PercentTransform | AbsoluteTransform | SetTransform | MultiplyTransform

Transform = Annotated[
    Union[PercentTransform, AbsoluteTransform, SetTransform, MultiplyTransform],
    Field(discriminator="op"),
]

_transform_adapter: TypeAdapter[Transform] = TypeAdapter(Transform)


def parse_transform(data: dict[str, Any]) -> TransformModel:
    return _transform_adapter.validate_python(data)


class PricingRuleCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    selector: SelectorIn = Field(default_factory=SelectorIn)
    transform: Transform
    enabled: bool = True
    schedule_at: datetime | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Summer uplift",
                "selector": {"tags": ["summer"], "sku_pattern": "TS-*"},
                "transform": {"op": "percent", "value": 5, "floor": 1000, "round": "nearest_99"},
                "enabled": True,
            }
        }
    )


class PricingRuleOut(BaseModel):
    id: str
    tenant_id: str
    project_id: str
    name: str
    description: str | None = None
    selector: dict[str, Any]
    transform: dict[str, Any]
    enabled: bool
    version: int
    schedule_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
