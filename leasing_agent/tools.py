from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .clock import Clock
from .logs import log_event
from .metrics import M


# ---------------------------------------------------------------------------
# Input / output contracts
# ---------------------------------------------------------------------------


class PrequalificationInput(BaseModel):
    model_config = ConfigDict(extra="forbid")
    monthlyIncome: str = Field(description="Monthly income")
    hasPets: str = Field(description="Do you have pets")
    isSmoker: str = Field(description="Are you a smoker? yes or no")


class PrequalificationResult(BaseModel):
    qualified: Literal["yes", "no"]
    why: Optional[str] = None


class UnitSearchInput(BaseModel):
    model_config = ConfigDict(extra="forbid")
    cityAndState: Optional[str] = Field(default=None, description="City, State")
    maxBudget: Optional[float] = Field(default=None, ge=0, description="Maximum monthly rent budget in dollars")
    minBedrooms: Optional[int] = Field(default=None, ge=0, description="Minimum number of bedrooms required")
    maxBedrooms: Optional[int] = Field(default=None, ge=0, description="Maximum number of bedrooms")
    amenities: Optional[list[str]] = Field(
        default=None,
        description='List of required amenities (e.g., "parking", "gym", "in-unit laundry", "pool", "pet-friendly")',
    )


def _exactly_three(value: Any) -> Any:
    # Generators sometimes over-produce; keep the first three, reject fewer.
    if isinstance(value, list) and len(value) > 3:
        return value[:3]
    return value


class Unit(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    address: str = Field(description="Short address: house number, street, city and state")
    bedrooms: float
    bathrooms: float
    monthlyRent: float = Field(description="Monthly rent in dollars")
    squareFeet: float
    amenities: list[str] = Field(min_length=3, max_length=3, description="3 amenities available in the unit")
    upcomingAppointmentTimes: list[str] = Field(
        min_length=3,
        max_length=3,
        description="3 upcoming appointment times over the coming 7 days in ISO format",
    )

    @field_validator("amenities", "upcomingAppointmentTimes", mode="before")
    @classmethod
    def keep_first_three(cls, value: Any) -> Any:
        return _exactly_three(value)


class UnitListing(BaseModel):
    units: list[Unit]


class AppointmentInput(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str = Field(min_length=1, description="Full name of the caller")
    phoneNumber: str = Field(min_length=1, description="10-digit phone number")
    unitId: str = Field(min_length=1, description="Unit ID of the property")
    appointmentTime: str = Field(min_length=1, description="Time of appointment in ISO format")


class AppointmentResult(BaseModel):
    success: bool


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


class ListingProvider(Protocol):
    async def search(self, query: UnitSearchInput, *, count: int) -> list[dict[str, Any]]: ...


class BookingService(Protocol):
    async def book(self, request: AppointmentInput) -> bool: ...


def build_listing_prompt(query: UnitSearchInput, *, count: int = 5) -> str:
    bedrooms = f"At least {query.minBedrooms}" if query.minBedrooms else "Any"
    if query.maxBedrooms:
        bedrooms = f"{bedrooms} up to {query.maxBedrooms}"
    budget = f"${query.maxBudget:g}/month" if query.maxBudget else "No limit"
    amenities = ", ".join(query.amenities or []) or "None specified"
    return (
        f"Generate {count} rental unit listings that match these criteria:\n"
        f"- City and State: {query.cityAndState or 'Any'}\n"
        f"- Maximum budget: {budget}\n"
        f"- Bedrooms: {bedrooms}\n"
        f"- Required amenities: {amenities}\n\n"
        "Create realistic apartment/house listings with varied prices, sizes, and features. "
        "Each listing has exactly 3 amenities and exactly 3 upcoming appointment times "
        "over the coming 7 days in ISO format."
    )


class LLMListingProvider:
    """Structured generation of mock listings; a real deployment would query its inventory."""

    def __init__(self, llm: Any) -> None:
        self._llm = llm

    async def search(self, query: UnitSearchInput, *, count: int) -> list[dict[str, Any]]:
        obj = await self._llm.generate_json(
            prompt=build_listing_prompt(query, count=count),
            schema=UnitListing,
        )
        units = obj.get("units") if isinstance(obj, dict) else None
        if not isinstance(units, list):
            raise ValueError("listing generator returned no units")
        return units


_CATALOGUE: tuple[dict[str, Any], ...] = (
    {"id": "unit-101", "address": "101 Maple Street, Austin, TX", "bedrooms": 1, "bathrooms": 1,
     "monthlyRent": 1450, "squareFeet": 680, "amenities": ["parking", "gym", "pool"]},
    {"id": "unit-214", "address": "214 Oak Avenue, Austin, TX", "bedrooms": 2, "bathrooms": 2,
     "monthlyRent": 2100, "squareFeet": 1040, "amenities": ["in-unit laundry", "parking", "balcony"]},
    {"id": "unit-330", "address": "330 Cedar Lane, Denver, CO", "bedrooms": 3, "bathrooms": 2,
     "monthlyRent": 2850, "squareFeet": 1420, "amenities": ["pet-friendly", "garage", "yard"]},
    {"id": "unit-412", "address": "412 Pine Road, Denver, CO", "bedrooms": 2, "bathrooms": 1,
     "monthlyRent": 1750, "squareFeet": 900, "amenities": ["gym", "pet-friendly", "in-unit laundry"]},
    {"id": "unit-505", "address": "505 Birch Court, Seattle, WA", "bedrooms": 1, "bathrooms": 1,
     "monthlyRent": 1950, "squareFeet": 720, "amenities": ["pool", "concierge", "parking"]},
    {"id": "unit-618", "address": "618 Elm Drive, Seattle, WA", "bedrooms": 4, "bathrooms": 3,
     "monthlyRent": 3900, "squareFeet": 2100, "amenities": ["garage", "in-unit laundry", "yard"]},
)


class StaticListingProvider:
    """Deterministic inventory filtered by the query."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock

    def _slots(self, index: int) -> list[str]:
        base = dt.datetime.fromtimestamp(self._clock.wall_ms() / 1000.0, tz=dt.timezone.utc)
        day = base.replace(hour=0, minute=0, second=0, microsecond=0)
        hours = (10, 13, 16)
        return [
            (day + dt.timedelta(days=1 + ((index + i) % 7), hours=h)).isoformat()
            for i, h in enumerate(hours)
        ]

    @staticmethod
    def _matches(unit: dict[str, Any], query: UnitSearchInput) -> bool:
        if query.cityAndState:
            city = query.cityAndState.split(",")[0].strip().lower()
            if city and city not in unit["address"].lower():
                return False
        if query.maxBudget is not None and unit["monthlyRent"] > query.maxBudget:
            return False
        if query.minBedrooms is not None and unit["bedrooms"] < query.minBedrooms:
            return False
        if query.maxBedrooms is not None and unit["bedrooms"] > query.maxBedrooms:
            return False
        wanted = {a.strip().lower() for a in (query.amenities or []) if a.strip()}
        return wanted.issubset({a.lower() for a in unit["amenities"]})

    async def search(self, query: UnitSearchInput, *, count: int) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for index, unit in enumerate(_CATALOGUE):
            if self._matches(unit, query):
                out.append({**unit, "upcomingAppointmentTimes": self._slots(index)})
            if len(out) >= count:
                break
        return out


class AcceptAllBookingService:
    """Stand-in for the booking API; keeps the most recent accepted bookings."""

    def __init__(self, *, keep_last: int = 100) -> None:
        self.bookings: deque[AppointmentInput] = deque(maxlen=max(1, int(keep_last)))

    async def book(self, request: AppointmentInput) -> bool:
        self.bookings.append(request)
        log_event("tools", "booking_accepted", unit_id=request.unitId, appointment_time=request.appointmentTime)
        return True


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ToolCallRecord:
    tool_call_id: str
    name: str
    arguments: dict[str, Any]
    started_at_ms: int
    completed_at_ms: int
    ok: bool
    result: Any

    def pretty_result(self) -> str:
        return json.dumps(self.result, indent=2, sort_keys=False, default=str)


# Each body receives an instance of the input model it was registered with.
ToolFn = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class _Tool:
    spec: ToolSpec
    input_model: type[BaseModel]
    fn: ToolFn


def check_prequalification(data: PrequalificationInput) -> PrequalificationResult:
    # The only embedded business rule: an answer of exactly "yes" disqualifies; income and pets are not considered.
    if data.isSmoker == "yes":
        return PrequalificationResult(qualified="no", why="None of our properties accept smokers.")
    return PrequalificationResult(qualified="yes")


class ToolRegistry:
    def __init__(
        self,
        *,
        session_id: str,
        clock: Clock,
        listings: ListingProvider,
        booking: BookingService,
        timeout_ms: int = 10000,
        listing_count: int = 5,
        metrics: Any | None = None,
    ) -> None:
        self._session_id = session_id
        self._clock = clock
        self._listings = listings
        self._booking = booking
        self._timeout_ms = int(timeout_ms)
        self._listing_count = max(1, int(listing_count))
        self._metrics = metrics
        self._tool_seq = 0
        self._tools: dict[str, _Tool] = {}
        self._register(
            "fetch_prequalification_questions",
            "Fetch pre-qualification screening questions for rental applicants",
            PrequalificationInput,
            self._fetch_prequalification_questions,
        )
        self._register(
            "get_units",
            "Fetch available units and properties based on budget, bedrooms, and amenity requirements",
            UnitSearchInput,
            self._get_units,
        )
        self._register(
            "book_appointment",
            "Book a property tour appointment",
            AppointmentInput,
            self._book_appointment,
        )

    def _register(self, name: str, description: str, model: type[BaseModel], fn: ToolFn) -> None:
        spec = ToolSpec(name=name, description=description, parameters=model.model_json_schema())
        self._tools[name] = _Tool(spec=spec, input_model=model, fn=fn)

    def specs(self) -> list[ToolSpec]:
        return [t.spec for t in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def _new_tool_call_id(self) -> str:
        self._tool_seq += 1
        return f"{self._session_id}:tool:{self._tool_seq}"

    def _inc(self, key: str) -> None:
        if self._metrics is not None:
            self._metrics.inc(M[key], 1)

    async def invoke(
        self,
        *,
        name: str,
        arguments: dict[str, Any],
        tool_call_id: Optional[str] = None,
    ) -> ToolCallRecord:
        """
        Validate, then execute. Failures come back as ok=False records carrying a
        failure payload; nothing is raised to the caller.
        """

        call_id = tool_call_id or self._new_tool_call_id()
        started = self._clock.now_ms()
        self._inc("tool_invocations_total")

        def record(ok: bool, result: Any) -> ToolCallRecord:
            completed = self._clock.now_ms()
            if self._metrics is not None:
                self._metrics.observe(M["tool_latency_ms"], completed - started)
            if not ok:
                self._inc("tool_failures_total")
            return ToolCallRecord(
                tool_call_id=call_id,
                name=name,
                arguments=dict(arguments or {}),
                started_at_ms=started,
                completed_at_ms=completed,
                ok=ok,
                result=result,
            )

        tool = self._tools.get(str(name or "").strip())
        if tool is None:
            log_event("tools", "unknown_tool", level=logging.WARNING, session_id=self._session_id, tool=name)
            return record(False, {"ok": False, "error": "unknown_tool", "tool": name})

        try:
            data = tool.input_model.model_validate(arguments or {})
        except ValidationError as e:
            self._inc("tool_invalid_arguments_total")
            details = [
                {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
                for err in e.errors()
            ]
            log_event(
                "tools",
                "invalid_arguments",
                level=logging.WARNING,
                session_id=self._session_id,
                tool=name,
                fields=[d["field"] for d in details],
            )
            return record(False, {"ok": False, "error": "invalid_arguments", "details": details})

        try:
            result = await self._clock.run_with_timeout(tool.fn(data), self._timeout_ms)
        except (TimeoutError, asyncio.TimeoutError):
            log_event("tools", "timeout", level=logging.WARNING, session_id=self._session_id, tool=name)
            return record(False, {"ok": False, "error": "tool_timeout"})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_event(
                "tools",
                "collaborator_error",
                level=logging.WARNING,
                session_id=self._session_id,
                tool=name,
                error=type(e).__name__,
            )
            return record(False, {"ok": False, "error": f"tool_error:{type(e).__name__}"})

        return record(True, result)

    # ---------------------------------------------------------------------
    # Tool bodies
    # ---------------------------------------------------------------------

    async def _fetch_prequalification_questions(self, data: PrequalificationInput) -> Any:
        return check_prequalification(data).model_dump(exclude_none=True)

    async def _get_units(self, data: UnitSearchInput) -> Any:
        raw = await self._listings.search(data, count=self._listing_count)
        units = [Unit.model_validate(u) for u in raw]
        return [u.model_dump() for u in units]

    async def _book_appointment(self, data: AppointmentInput) -> Any:
        ok = await self._booking.book(data)
        return AppointmentResult(success=bool(ok)).model_dump()
