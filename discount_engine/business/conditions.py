# ==== RULE CONDITIONS ==== #

"""
Typed rule conditions keyed by rule_type.

Stored conditions are a free-form JSON map. They are parsed into one of the
models below; unknown keys are ignored and absent or null keys fall back to
the rule family's default.
"""

from decimal import Decimal
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _BaseConditions(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    min_amount: Decimal = Field(default=Decimal("0"), ge=0)

    def meets_min_amount(self, amount: Decimal) -> bool:
        return amount >= self.min_amount


class ReferralConditions(_BaseConditions):
    rule_type: Literal["referral"] = "referral"


class RepeatClientConditions(_BaseConditions):
    rule_type: Literal["repeat_client"] = "repeat_client"
    min_previous_orders: int = Field(default=2, ge=0)


class VolumeConditions(_BaseConditions):
    rule_type: Literal["volume"] = "volume"
    min_amount: Decimal = Field(default=Decimal("5000"), ge=0)


class SeasonalConditions(_BaseConditions):
    rule_type: Literal["seasonal"] = "seasonal"


class CustomConditions(_BaseConditions):
    rule_type: Literal["custom"] = "custom"


RuleConditions = Annotated[
    Union[
        ReferralConditions,
        RepeatClientConditions,
        VolumeConditions,
        SeasonalConditions,
        CustomConditions,
    ],
    Field(discriminator="rule_type"),
]

_conditions_adapter = TypeAdapter(RuleConditions)


def parse_conditions(rule_type: str, raw: Optional[Mapping[str, Any]]) -> RuleConditions:
    """
    Parse a stored conditions map for the given rule type.

    Raises:
        pydantic.ValidationError: unknown rule_type or malformed values
    """
    if raw is not None and not isinstance(raw, Mapping):
        raise ValueError("conditions must be a JSON object")

    payload = {k: v for k, v in (raw or {}).items() if v is not None}
    payload["rule_type"] = rule_type
    return _conditions_adapter.validate_python(payload)
