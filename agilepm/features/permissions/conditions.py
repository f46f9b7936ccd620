"""
Condition evaluation for conditional role-permission assignments.

Each known ``condition_type`` maps to one Pydantic variant carrying a typed
payload. Anything else parses to ``UnsupportedCondition``, which always
fails closed.

Example condition configs:
    own_only        {"owner_field": "assigned_to"}
    partial         {"filter": {"summaryOnly": true}}
    qa_fields_only  {"fields": ["test_status", "test_notes"]}
    time_between    {"start": "09:00", "end": "17:00"}
    ip_range        {"networks": ["192.168.1.0/24"]}
"""
from datetime import datetime, time
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, IPvAnyAddress, IPvAnyNetwork, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from agilepm.core.exceptions import UnknownConditionError
from agilepm.features.permissions.schemas import AccessRequest
from agilepm.utils import get_logger


log = get_logger(__name__)


class OwnOnlyCondition(BaseModel):
    """Allow only when the requesting user owns the resource."""
    condition_type: Literal["own_only"] = "own_only"
    owner_field: str = "assigned_to"

    model_config = ConfigDict(extra="ignore")

    def check(self, request: AccessRequest) -> bool:
        if request.resource_owner_id is None:
            log.debug(f"own_only: no owner known for {request.resource_type}:{request.resource_id}")
            return False
        return request.resource_owner_id == request.user_id


class PartialCondition(BaseModel):
    """Allow; the caller applies the restriction payload itself."""
    condition_type: Literal["partial"] = "partial"
    filter: Dict[str, Any] = Field(default_factory=dict)
    restriction: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")

    def check(self, request: AccessRequest) -> bool:
        return True


class QaFieldsOnlyCondition(BaseModel):
    """Allow only when every touched field is in the allowed list."""
    condition_type: Literal["qa_fields_only"] = "qa_fields_only"
    allowed_fields: List[str] = Field(validation_alias=AliasChoices("fields", "allowed_fields"))

    model_config = ConfigDict(extra="ignore")

    def check(self, request: AccessRequest) -> bool:
        touched = set(request.touched_fields or ())
        extra = touched - set(self.allowed_fields)
        if extra:
            log.debug(f"qa_fields_only: fields outside allow-list {sorted(extra)}")
            return False
        return True


class TimeWindowCondition(BaseModel):
    """Allow only inside a daily time window; windows may wrap past midnight."""
    condition_type: Literal["time_between"] = "time_between"
    start: time
    end: time

    model_config = ConfigDict(extra="ignore")

    def check(self, request: AccessRequest) -> bool:
        current = (request.requested_at or datetime.now()).time()
        if self.start <= self.end:
            allowed = self.start <= current <= self.end
        else:
            allowed = current >= self.start or current <= self.end
        if not allowed:
            log.debug(f"time_between: {current} not between {self.start} and {self.end}")
        return allowed


class IpRangeCondition(BaseModel):
    """Allow only from the listed networks."""
    condition_type: Literal["ip_range"] = "ip_range"
    networks: List[IPvAnyNetwork]

    model_config = ConfigDict(extra="ignore")

    def check(self, request: AccessRequest) -> bool:
        if not request.ip_address:
            return False
        try:
            address = TypeAdapter(IPvAnyAddress).validate_python(request.ip_address)
        except PydanticValidationError:
            log.debug(f"ip_range: unparseable address {request.ip_address!r}")
            return False
        return any(address in network for network in self.networks)


class UnsupportedCondition(BaseModel):
    """A condition type this evaluator does not know. Never grants access."""
    condition_type: Optional[str]
    config: Dict[str, Any] = Field(default_factory=dict)

    def check(self, request: AccessRequest) -> bool:
        raise UnknownConditionError(self.condition_type)


Condition = Union[
    OwnOnlyCondition,
    PartialCondition,
    QaFieldsOnlyCondition,
    TimeWindowCondition,
    IpRangeCondition,
    UnsupportedCondition,
]

CONDITION_TYPES: dict[str, type[BaseModel]] = {
    "own_only": OwnOnlyCondition,
    "partial": PartialCondition,
    "qa_fields_only": QaFieldsOnlyCondition,
    "time_between": TimeWindowCondition,
    "ip_range": IpRangeCondition,
}


def is_known_condition(condition_type: Optional[str]) -> bool:
    return condition_type in CONDITION_TYPES


def parse_condition(condition_type: Optional[str], condition_config: Optional[Dict[str, Any]]) -> Condition:
    """
    Turn a stored (condition_type, condition_config) pair into a typed variant.

    Raises:
        UnknownConditionError: if the type is known but its payload is malformed
    """
    config = dict(condition_config or {})
    model = CONDITION_TYPES.get(condition_type or "")
    if model is None:
        return UnsupportedCondition(condition_type=condition_type, config=config)

    config["condition_type"] = condition_type
    try:
        return model.model_validate(config)
    except PydanticValidationError as e:
        raise UnknownConditionError(
            condition_type,
            f"Invalid {condition_type} condition config: {e.error_count()} validation error(s)",
        ) from e


class ConditionEvaluator:
    """
    Evaluates conditional assignments against an access request.

    Usage:
        evaluator = ConditionEvaluator()
        evaluator.evaluate("own_only", {"owner_field": "assigned_to"}, request)
    """

    def evaluate(
        self,
        condition_type: Optional[str],
        condition_config: Optional[Dict[str, Any]],
        request: AccessRequest,
    ) -> bool:
        """
        Returns:
            True if the condition holds for the request

        Raises:
            UnknownConditionError: for unsupported types or malformed payloads
        """
        condition = parse_condition(condition_type, condition_config)
        return self.evaluate_condition(condition, request)

    def evaluate_condition(self, condition: Condition, request: AccessRequest) -> bool:
        allowed = condition.check(request)
        log.debug(f"Condition {condition.condition_type} for user {request.user_id}: {allowed}")
        return allowed
