from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, fields, replace
from datetime import date
from enum import Enum
from typing import Callable, Mapping, Optional, Protocol, Tuple, Union

from booking_config import BookingSettings, session_logger
from booking_policies import (
    DATE_REQUIRED_MESSAGE,
    PAYMENT_DATE_MESSAGE,
    convert_to_local,
    days_until,
    format_price,
    is_past_date,
    parse_iso_date,
    region_converts_currency,
    sanitize_date_input,
    validate_card_number,
    validate_departure_date,
)
from flight_catalog import Flight, FlightCatalog

logger = logging.getLogger("skydrift.wizard")

# Shown on the payment panel when no flight is selected.
FALLBACK_TOTAL_USD = 120


class Step(str, Enum):
    SEARCH = "search"
    RESULTS = "results"
    DETAILS = "details"
    PAYMENT = "payment"
    SUCCESS = "success"


STEP_ORDER: Tuple[Step, ...] = (Step.SEARCH, Step.RESULTS, Step.DETAILS, Step.PAYMENT, Step.SUCCESS)

BACK_TRANSITIONS: Mapping[Step, Step] = {
    Step.RESULTS: Step.SEARCH,
    Step.DETAILS: Step.RESULTS,
    Step.PAYMENT: Step.DETAILS,
}

STEPS_WITH_SELECTION = frozenset({Step.DETAILS, Step.PAYMENT, Step.SUCCESS})

ERROR_DATE = "date"
ERROR_CARD = "card"
ERROR_PAYMENT_DATE = "paymentDate"


@dataclass(frozen=True)
class BookingForm:
    route_from: str = "Istanbul (IST)"
    route_to: str = "London (LHR)"
    departure_date: str = ""
    passengers: int = 1
    first_name: str = ""
    last_name: str = ""
    passport: str = ""
    email: str = ""
    card_number: str = ""
    expiry: str = ""
    cvv: str = ""

    @property
    def passenger_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# Persisted layout uses the browser form's camelCase keys.
FORM_JSON_KEYS: Mapping[str, str] = {
    "route_from": "from",
    "route_to": "to",
    "departure_date": "date",
    "passengers": "passengers",
    "first_name": "firstName",
    "last_name": "lastName",
    "passport": "passport",
    "email": "email",
    "card_number": "cardNumber",
    "expiry": "expiry",
    "cvv": "cvv",
}

_FORM_FIELD_NAMES = frozenset(f.name for f in fields(BookingForm))


def _clean_date(raw: str) -> str:
    sanitized = sanitize_date_input(raw)
    if not sanitized:
        return ""
    try:
        parse_iso_date(sanitized)
    except ValueError:
        return ""
    return sanitized


def form_to_json(form: BookingForm) -> dict[str, object]:
    return {json_key: getattr(form, attr) for attr, json_key in FORM_JSON_KEYS.items()}


def form_from_json(raw: Mapping[str, object]) -> BookingForm:
    """
    Best-effort decode of a persisted form; unknown keys are ignored and bad values fall
    back to the defaults.
    """
    defaults = BookingForm()
    values: dict[str, object] = {}
    for attr, json_key in FORM_JSON_KEYS.items():
        if json_key not in raw:
            continue
        v = raw.get(json_key)
        if attr == "passengers":
            try:
                values[attr] = max(1, int(v))  # type: ignore[arg-type]
            except (TypeError, ValueError):
                values[attr] = defaults.passengers
        elif attr == "departure_date":
            values[attr] = _clean_date(str(v or ""))
        else:
            values[attr] = "" if v is None else str(v)
    return replace(defaults, **values)


@dataclass(frozen=True)
class WizardState:
    step: Step = Step.SEARCH
    loading: bool = False
    form: BookingForm = field(default_factory=BookingForm)
    search_results: Tuple[Flight, ...] = ()
    selected_flight_id: Optional[int] = None
    errors: Mapping[str, str] = field(default_factory=dict)

    def error(self, key: str) -> str:
        return str(self.errors.get(key) or "")

    @property
    def has_errors(self) -> bool:
        return any(self.errors.values())


def _without_errors(errors: Mapping[str, str], *keys: str) -> dict[str, str]:
    return {k: v for k, v in errors.items() if k not in keys and v}


def _with_error(errors: Mapping[str, str], key: str, message: str) -> dict[str, str]:
    out = _without_errors(errors, key)
    out[key] = message
    return out


# region schedulers


class Scheduler(Protocol):
    def __call__(self, delay_s: float, callback: Callable[[], None], *, label: str) -> None: ...


@dataclass(frozen=True)
class PendingCompletion:
    label: str
    delay_s: float
    callback: Callable[[], None]


class ManualScheduler:
    """
    Queue deferred completions until the owner fires them.

    The Streamlit page sleeps for `next_delay_s` under a spinner and then calls
    `run_pending()`; tests call `run_pending()` directly.
    """

    def __init__(self) -> None:
        self._pending: list[PendingCompletion] = []

    def __call__(self, delay_s: float, callback: Callable[[], None], *, label: str) -> None:
        self._pending.append(PendingCompletion(label=label, delay_s=float(delay_s), callback=callback))

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    @property
    def pending_labels(self) -> list[str]:
        return [p.label for p in self._pending]

    @property
    def next_delay_s(self) -> float:
        return max((p.delay_s for p in self._pending), default=0.0)

    def run_pending(self) -> int:
        # Completions may schedule more work; only fire what was queued on entry.
        batch, self._pending = self._pending, []
        for p in batch:
            p.callback()
        return len(batch)


class BlockingScheduler:
    """
    Sleep for the delay, then fire the completion inline. Used by offline scripts.
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    def __call__(self, delay_s: float, callback: Callable[[], None], *, label: str) -> None:
        self._sleep(max(0.0, float(delay_s)))
        callback()


# endregion schedulers


class BookingWizard:
    """
    The booking flow: search -> results -> details -> payment -> success.

    Actions validate synchronously and record field-scoped messages in `state.errors`
    instead of raising. Search and payment finish through the injected scheduler; while a
    completion is pending `state.loading` is True and both submits are ignored.

    `on_state_change` is called with the new state after every action that changed it.
    Log records are tagged with `session_id` so diagnostics stay per session.
    """

    def __init__(
        self,
        catalog: Optional[FlightCatalog] = None,
        *,
        settings: Optional[BookingSettings] = None,
        today: Optional[Callable[[], date]] = None,
        scheduler: Optional[Scheduler] = None,
        on_state_change: Optional[Callable[[WizardState], None]] = None,
        session_id: str = "",
    ) -> None:
        self.catalog = catalog if catalog is not None else FlightCatalog()
        self.settings = settings if settings is not None else BookingSettings()
        self._today = today or date.today
        self._schedule: Scheduler = scheduler if scheduler is not None else ManualScheduler()
        self._on_state_change = on_state_change
        self._log = session_logger(logger, session_id)
        self._state = WizardState()
        # Bumped on reset so completions scheduled before it become no-ops.
        self._epoch = 0

    @property
    def state(self) -> WizardState:
        return self._state

    @property
    def scheduler(self) -> Scheduler:
        return self._schedule

    def today(self) -> date:
        return self._today()

    def _set_state(self, new_state: WizardState) -> None:
        if new_state == self._state:
            return
        self._state = new_state
        if self._on_state_change is not None:
            self._on_state_change(new_state)

    # region queries

    def selected_flight(self) -> Optional[Flight]:
        return self.catalog.get(self._state.selected_flight_id)

    def total_price_usd(self) -> int:
        flight = self.selected_flight()
        return flight.price if flight is not None else FALLBACK_TOTAL_USD

    def display_price(self, price_usd: int, *, show_both: Optional[bool] = None) -> str:
        both = self.settings.show_both_prices if show_both is None else show_both
        return format_price(price_usd, self.settings.region, show_both=both, rate=self.settings.usd_to_local_rate)

    def can_go_back(self) -> bool:
        return not self._state.loading and self._state.step in BACK_TRANSITIONS

    # endregion queries

    def update_form(self, **changes: object) -> None:
        """
        Apply field edits. Editing the departure date sanitizes it and re-runs the date
        window check so the error appears (or clears) as the user types.
        """
        unknown = set(changes) - _FORM_FIELD_NAMES
        if unknown:
            raise ValueError(f"unknown booking form field(s): {', '.join(sorted(unknown))}")

        values = dict(changes)
        errors: Mapping[str, str] = self._state.errors
        if "passengers" in values:
            try:
                values["passengers"] = max(1, int(values["passengers"]))  # type: ignore[arg-type]
            except (TypeError, ValueError):
                values["passengers"] = self._state.form.passengers
        for k, v in list(values.items()):
            if k != "passengers":
                values[k] = "" if v is None else str(v)

        if "departure_date" in values:
            sanitized = _clean_date(str(values["departure_date"]))
            values["departure_date"] = sanitized
            errors = _without_errors(errors, ERROR_DATE)
            if sanitized:
                check = validate_departure_date(
                    sanitized, self.today(), max_booking_days=self.settings.max_booking_days
                )
                if check.is_error:
                    errors = _with_error(errors, ERROR_DATE, check.message())
                    self._log.warning(
                        "[SkyDrift] Date validation failed: %s. Selected: %s, Today: %s",
                        check.kind.value,
                        sanitized,
                        self.today().isoformat(),
                    )

        form = replace(self._state.form, **values)
        self._set_state(replace(self._state, form=form, errors=dict(errors)))

    def submit_search(self) -> bool:
        """
        Validate the departure date and schedule the (simulated) search.

        Returns True when a search completion was scheduled.
        """
        state = self._state
        if state.loading:
            self._log.info("[SkyDrift] Search ignored: a request is already in flight.")
            return False
        if state.step != Step.SEARCH:
            self._log.warning("[SkyDrift] Search ignored on step %s.", state.step.value)
            return False

        errors = _without_errors(state.errors, ERROR_DATE)
        departure = state.form.departure_date
        if not departure:
            self._set_state(replace(state, errors=_with_error(errors, ERROR_DATE, DATE_REQUIRED_MESSAGE)))
            return False

        today = self.today()
        check = validate_departure_date(departure, today, max_booking_days=self.settings.max_booking_days)
        if not check.ok:
            self._log.warning("[SkyDrift] Date validation failed: %s. Selected: %s", check.kind.value, departure)
            if check.days_over:
                self._log.info(
                    "[SkyDrift] Business rule: Maximum booking window is %d days. Days over limit: %d",
                    self.settings.max_booking_days,
                    check.days_over,
                )
            self._set_state(replace(state, errors=_with_error(errors, ERROR_DATE, check.message())))
            return False

        self._log.info("[SkyDrift] Searching flights for route: %s to %s", state.form.route_from, state.form.route_to)
        self._log.info(
            "[SkyDrift] Departure date: %s (%d days from today, max: %d days)",
            departure,
            days_until(departure, today),
            self.settings.max_booking_days,
        )
        self._set_state(replace(state, loading=True, errors=errors))
        epoch = self._epoch
        self._schedule(self.settings.search_delay_s, lambda: self._complete_search(epoch), label="search")
        return True

    def _complete_search(self, epoch: int) -> None:
        if epoch != self._epoch:
            self._log.debug("[SkyDrift] Dropping search completion from before reset.")
            return
        state = self._state
        departure = state.form.departure_date
        # Re-check in case the day rolled over while the search was pending.
        check = validate_departure_date(departure, self.today(), max_booking_days=self.settings.max_booking_days)
        if not check.ok:
            self._log.warning("[SkyDrift] API response: 200 OK, but no flights found (%s).", check.kind.value)
            results: Tuple[Flight, ...] = ()
        else:
            results = self.catalog.flights
            self._log.info("[SkyDrift] API response: 200 OK, %d flights found", len(results))
            if region_converts_currency(self.settings.region):
                self._log.info(
                    "[SkyDrift] Applying currency conversion: USD -> TL (Rate: %s)", self.settings.usd_to_local_rate
                )
                for f in results:
                    self._log.debug(
                        "[SkyDrift] Flight %d: $%d USD = %d TL",
                        f.id,
                        f.price,
                        convert_to_local(f.price, self.settings.usd_to_local_rate),
                    )
        self._set_state(replace(state, loading=False, step=Step.RESULTS, search_results=results))

    def select_flight(self, flight: Union[Flight, int]) -> bool:
        """
        Pick a flight from the results. An id that is not in the catalog is a caller bug and
        raises UnknownFlightError.
        """
        flight_id = flight.id if isinstance(flight, Flight) else int(flight)
        chosen = self.catalog.require(flight_id)
        state = self._state
        if state.loading or state.step != Step.RESULTS:
            self._log.warning("[SkyDrift] Flight selection ignored on step %s.", state.step.value)
            return False
        self._log.info("[SkyDrift] Flight selected: ID %d", chosen.id)
        if region_converts_currency(self.settings.region):
            self._log.info(
                "[SkyDrift] Currency conversion: $%d USD -> %s (Rate: %s)",
                chosen.price,
                self.display_price(chosen.price, show_both=False),
                self.settings.usd_to_local_rate,
            )
        self._set_state(replace(state, selected_flight_id=chosen.id, step=Step.DETAILS))
        return True

    def submit_details(self) -> bool:
        state = self._state
        if state.step != Step.DETAILS:
            self._log.warning("[SkyDrift] Details submit ignored on step %s.", state.step.value)
            return False
        self._log.info("[SkyDrift] Passenger details captured.")
        self._set_state(replace(state, step=Step.PAYMENT))
        return True

    def submit_payment(self) -> bool:
        """
        Re-check the departure date (past dates only) and the card length, then schedule the
        (simulated) payment. Returns True when a payment completion was scheduled.
        """
        state = self._state
        if state.loading:
            self._log.info("[SkyDrift] Payment ignored: a request is already in flight.")
            return False
        if state.step != Step.PAYMENT:
            self._log.warning("[SkyDrift] Payment ignored on step %s.", state.step.value)
            return False

        errors = _without_errors(state.errors, ERROR_CARD, ERROR_PAYMENT_DATE)
        departure = state.form.departure_date
        today = self.today()
        if departure and is_past_date(departure, today):
            self._log.error("[SkyDrift] Booking Failed: Unable to create booking")
            self._log.error(
                "[SkyDrift] Selected departure date: %s (%d day(s) in the past)",
                departure,
                -days_until(departure, today),
            )
            self._set_state(replace(state, errors=_with_error(errors, ERROR_PAYMENT_DATE, PAYMENT_DATE_MESSAGE)))
            return False

        card = validate_card_number(state.form.card_number)
        if not card.ok:
            self._log.error("[SkyDrift] Card Number Validation Error: %s", card.message())
            self._set_state(replace(state, errors=_with_error(errors, ERROR_CARD, card.message())))
            return False

        self._log.info("[SkyDrift] Initiating transaction...")
        self._log.info("[SkyDrift] Payment Gateway: Connecting...")
        self._set_state(replace(state, loading=True, errors=errors))
        epoch = self._epoch
        self._schedule(self.settings.payment_delay_s, lambda: self._complete_payment(epoch), label="payment")
        return True

    def _complete_payment(self, epoch: int) -> None:
        if epoch != self._epoch:
            self._log.debug("[SkyDrift] Dropping payment completion from before reset.")
            return
        self._log.info("[SkyDrift] Payment Gateway: Handshake successful.")
        self._log.info("[SkyDrift] Payment approved.")
        self._set_state(replace(self._state, loading=False, step=Step.SUCCESS))

    def go_back(self) -> bool:
        state = self._state
        if state.loading:
            return False
        target = BACK_TRANSITIONS.get(state.step)
        if target is None:
            return False
        self._set_state(replace(state, step=target))
        return True

    def reset(self) -> None:
        self._epoch += 1
        self._log.info("[SkyDrift] Booking flow reset.")
        self._set_state(WizardState())

    def restore(
        self,
        *,
        step: Step,
        form: BookingForm,
        selected_flight_id: Optional[int],
    ) -> WizardState:
        """
        Rehydrate from a persisted snapshot at startup.

        Transient state (loading, errors) is never restored. A selection that is not in the
        catalog is dropped, and a step that needs a selection falls back to search without one.
        """
        sel = selected_flight_id if selected_flight_id in self.catalog else None
        if selected_flight_id is not None and sel is None:
            self._log.warning("[SkyDrift] Snapshot referenced unknown flight %r; dropping it.", selected_flight_id)
        target = step
        if target in STEPS_WITH_SELECTION and sel is None:
            target = Step.SEARCH

        results: Tuple[Flight, ...] = ()
        if target != Step.SEARCH:
            check = validate_departure_date(
                form.departure_date, self.today(), max_booking_days=self.settings.max_booking_days
            )
            if check.ok:
                results = self.catalog.flights
        self._set_state(
            WizardState(step=target, form=form, search_results=results, selected_flight_id=sel)
        )
        return self._state
