"""Data models shared by the controller, drivers and queue client"""

import time
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import InvalidStatusTransition


class QueueStatus(str, Enum):
    """Lifecycle of a work item in the remote queue"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    # Set by the queue service for price review; the automation only reads it
    FLAGGED = "flagged"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETE, QueueStatus.ERROR, QueueStatus.FLAGGED)


ALLOWED_TRANSITIONS = {
    QueueStatus.PENDING: {QueueStatus.RUNNING},
    QueueStatus.RUNNING: {QueueStatus.COMPLETE, QueueStatus.ERROR},
    QueueStatus.COMPLETE: set(),
    QueueStatus.ERROR: set(),
    QueueStatus.FLAGGED: set(),
}


def check_transition(vehicle_id: str, current: QueueStatus, requested: QueueStatus) -> None:
    """Raise InvalidStatusTransition unless current -> requested moves forward"""
    if requested not in ALLOWED_TRANSITIONS[QueueStatus(current)]:
        raise InvalidStatusTransition(vehicle_id, QueueStatus(current).value, QueueStatus(requested).value)


# Flat keys used by the older queue endpoints
LEGACY_SELECTION_KEYS = {
    "lexMakeCode": "makeCode",
    "lexModelCode": "modelCode",
    "lexVariantCode": "variantCode",
    "capCode": "capCode",
}

LEGACY_ITEM_KEYS = {
    "paymentPlan": "paymentPlanCode",
    "contractType": "contractTypeCode",
    "customOtrp": "priceOverride",
    "annualMileage": "mileage",
}


class SelectionCodes(BaseModel):
    """Provider-specific vehicle identity: make/model/variant or one catalog code"""
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    make_code: Optional[str] = Field(default=None, alias="makeCode")
    model_code: Optional[str] = Field(default=None, alias="modelCode")
    variant_code: Optional[str] = Field(default=None, alias="variantCode")
    cap_code: Optional[str] = Field(default=None, alias="capCode")

    @field_validator("make_code", "model_code", "variant_code", "cap_code", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class WorkItem(BaseModel):
    """One requested quote for a vehicle/provider/terms combination.

    Owned by the remote queue. The controller reads it and patches its status;
    it never creates or deletes items during a run.
    """
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    vehicle_id: str = Field(alias="vehicleId")
    selection_codes: SelectionCodes = Field(default_factory=SelectionCodes, alias="selectionCodes")
    term: int
    mileage: int
    payment_plan_code: Optional[str] = Field(default=None, alias="paymentPlanCode")
    contract_type_code: Optional[str] = Field(default=None, alias="contractTypeCode")
    price_override: Optional[int] = Field(default=None, alias="priceOverride")  # pence
    co2: Optional[int] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    variant: Optional[str] = None
    status: QueueStatus = QueueStatus.PENDING
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        codes = data.pop("selectionCodes", None) or data.pop("selection_codes", None) or {}
        if isinstance(codes, SelectionCodes):
            codes = codes.model_dump(by_alias=True)
        codes = dict(codes)
        for legacy, key in LEGACY_SELECTION_KEYS.items():
            if legacy in data:
                value = data.pop(legacy)
                codes.setdefault(key, value)
        data["selectionCodes"] = codes

        for legacy, alias in LEGACY_ITEM_KEYS.items():
            if legacy in data:
                value = data.pop(legacy)
                if alias not in data:
                    data[alias] = value
        return data

    @field_validator("vehicle_id", mode="before")
    @classmethod
    def _vehicle_id_text(cls, value: Any) -> str:
        return str(value)

    @property
    def label(self) -> str:
        name = " ".join(part for part in (self.manufacturer, self.model) if part)
        return f"{self.vehicle_id} ({name})" if name else self.vehicle_id

    def to_message(self) -> Dict[str, Any]:
        """JSON-safe dict for the controller -> driver message"""
        return self.model_dump(by_alias=True, mode="json")

    def identity(self) -> Dict[str, Any]:
        """Fields that pick out this row when one vehicle is queued at several terms"""
        fields = {
            "capCode": self.selection_codes.cap_code,
            "term": self.term,
            "mileage": self.mileage,
            "contractType": self.contract_type_code,
        }
        return {key: value for key, value in fields.items() if value is not None}


class ExtractionResult(BaseModel):
    """Structured quote output.

    `source` says whether the figures came from the provider's own API
    response or from scraping the rendered page. DOM-sourced results may
    leave most fields empty.
    """
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    quote_id: Optional[str] = Field(default=None, alias="quoteId")
    monthly_rental: Optional[float] = Field(default=None, alias="monthlyRental")
    monthly_rental_inc_vat: Optional[float] = Field(default=None, alias="monthlyRentalIncVat")
    initial_rental: Optional[float] = Field(default=None, alias="initialRental")
    otrp: Optional[float] = None
    broker_otrp: Optional[int] = Field(default=None, alias="brokerOtrp")  # pence
    list_price: Optional[float] = Field(default=None, alias="listPrice")
    co2: Optional[int] = None
    cap_code: Optional[str] = Field(default=None, alias="capCode")
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    description: Optional[str] = None
    term: Optional[int] = None
    mileage: Optional[int] = None
    contract_type: Optional[str] = Field(default=None, alias="contractType")
    source: str = "intercepted"

    @field_validator("quote_id", mode="before")
    @classmethod
    def _quote_id_text(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)

    def has_quote(self) -> bool:
        return self.quote_id is not None or self.monthly_rental is not None

    def to_payload(self) -> Dict[str, Any]:
        """camelCase dict for the queue API, nulls dropped"""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class InterceptedResponse(BaseModel):
    """One network payload captured from the provider page"""
    payload: Any
    matched_url: str
    message_type: str
    received_at: float = Field(default_factory=time.monotonic)


class RunSummary(BaseModel):
    """Outcome counts for one run_queue call"""
    processed: int = 0
    errors: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return self.model_dump()
