from __future__ import annotations

import logging
import time
import uuid
from datetime import date
from typing import Callable, Literal, Optional, TypedDict

import streamlit as st

from assistant import (
    AssistantConfigError,
    AssistantError,
    format_issue_markdown,
    generate_assistant_chat,
    generate_issue_draft,
)
from booking_config import BookingSettings, configure_logging, load_settings
from booking_policies import parse_iso_date, region_converts_currency
from booking_wizard import (
    ERROR_CARD,
    ERROR_DATE,
    ERROR_PAYMENT_DATE,
    STEP_ORDER,
    BookingWizard,
    ManualScheduler,
    Step,
)
from confirmation_pdf import build_confirmation_artifact, long_date_label, make_confirmation_pdf_bytes
from diagnostics import DiagnosticsBuffer, diagnostics_router, summarize_context
from flight_catalog import FareClass, FlightCatalog
from session_snapshot import (
    JsonFileSnapshotStore,
    SnapshotStore,
    is_browser_id,
    persist_on_change,
    restore_wizard,
    snapshot_key_for,
)

logger = logging.getLogger("skydrift.app")

BROWSER_ID_PARAM = "sid"
PROGRESS_LABELS: tuple[str, ...] = ("Search", "Flight", "Details", "Payment")
PASSENGER_CHOICES: tuple[int, ...] = (1, 2)


class ChatMessage(TypedDict, total=False):
    role: Literal["assistant", "user"]
    content: str
    created_at_ms: int


# region session objects


def _browser_id() -> str:
    """
    Id of this browser tab's booking, carried in the URL so a reload (which starts a fresh
    `session_state`) finds the same snapshot. A missing or malformed value is replaced.
    """
    raw = st.query_params.get(BROWSER_ID_PARAM)
    if is_browser_id(raw):
        return str(raw)
    browser_id = uuid.uuid4().hex
    st.query_params[BROWSER_ID_PARAM] = browser_id
    return browser_id


def _build_store(settings: BookingSettings, browser_id: str) -> SnapshotStore:
    return JsonFileSnapshotStore(settings.snapshot_path, key=snapshot_key_for(browser_id))


def _init_state(settings: BookingSettings) -> None:
    """
    Create the per-session wizard, scheduler, diagnostics buffer and snapshot store once,
    restoring this browser's saved snapshot on the first run of a session.
    """
    if "log_session_id" not in st.session_state:
        # Per session, not per browser: two tabs on one URL keep separate diagnostics.
        st.session_state["log_session_id"] = uuid.uuid4().hex
    if "diagnostics" not in st.session_state:
        st.session_state["diagnostics"] = DiagnosticsBuffer()
    router = diagnostics_router()
    router.register(st.session_state["log_session_id"], st.session_state["diagnostics"])
    configure_logging(settings.log_level, extra_handlers=(router,))

    if "wizard" not in st.session_state:
        scheduler = ManualScheduler()
        store = _build_store(settings, _browser_id())
        wizard = BookingWizard(
            FlightCatalog(),
            settings=settings,
            scheduler=scheduler,
            on_state_change=persist_on_change(store),
            session_id=st.session_state["log_session_id"],
        )
        restore_wizard(wizard, store)
        st.session_state["scheduler"] = scheduler
        st.session_state["snapshot_store"] = store
        st.session_state["wizard"] = wizard
    if "chat_messages" not in st.session_state:
        st.session_state["chat_messages"] = []
    if "issue_draft_markdown" not in st.session_state:
        st.session_state["issue_draft_markdown"] = ""


def _wizard() -> BookingWizard:
    return st.session_state["wizard"]


def _diagnostics() -> DiagnosticsBuffer:
    return st.session_state["diagnostics"]


def _run_pending_completions(scheduler: ManualScheduler, *, sleep: Callable[[float], None] = time.sleep) -> int:
    """
    Play out the simulated latency of queued search/payment completions, then fire them.
    """
    fired = 0
    while scheduler.has_pending:
        sleep(scheduler.next_delay_s)
        fired += scheduler.run_pending()
    return fired


def _reset_booking() -> None:
    _wizard().reset()
    _diagnostics().clear()
    st.session_state["issue_draft_markdown"] = ""


# endregion session objects


# region chat


def _chat_messages() -> list[ChatMessage]:
    raw = st.session_state.get("chat_messages")
    if not isinstance(raw, list):
        return []
    out: list[ChatMessage] = []
    for item in raw:
        if (
            isinstance(item, dict)
            and item.get("role") in ("assistant", "user")
            and isinstance(item.get("content"), str)
        ):
            out.append(
                {
                    "role": item["role"],  # type: ignore[index]
                    "content": item["content"],  # type: ignore[index]
                    "created_at_ms": int(item.get("created_at_ms") or 0),
                }
            )
    return out


def _chat_add(*, role: Literal["assistant", "user"], content: str) -> None:
    clean = (content or "").strip()
    if not clean:
        return
    messages = _chat_messages()
    messages.append({"role": role, "content": clean, "created_at_ms": int(time.time() * 1000)})
    st.session_state["chat_messages"] = messages


def _chat_history_for_upstream(messages: list[ChatMessage]) -> list[dict[str, str]]:
    return [{"role": m["role"], "content": m["content"]} for m in messages if m.get("content")]


def _handle_chat_input(text: str, *, settings: BookingSettings) -> None:
    clean = (text or "").strip()
    if not clean:
        return
    history = _chat_history_for_upstream(_chat_messages())
    _chat_add(role="user", content=clean)
    buffer = _diagnostics()
    try:
        reply = generate_assistant_chat(
            user_message=clean,
            context=summarize_context(_wizard(), buffer),
            history=history,
            images=buffer.latest_screenshots(),
            settings=settings,
            diagnostics=buffer,
        )
    except AssistantConfigError as exc:
        _chat_add(role="assistant", content=f"The assistant is not configured ({exc}).")
        return
    except AssistantError as exc:
        logger.warning("Assistant chat failed: %s", exc)
        _chat_add(role="assistant", content=f"Sorry, the assistant is unavailable right now: {exc}")
        return
    _chat_add(role="assistant", content=reply or "(no reply)")


def _handle_issue_draft(details: str, *, settings: BookingSettings) -> Optional[str]:
    """
    Returns a user-facing error message, or None when the draft was stored.
    """
    buffer = _diagnostics()
    try:
        draft = generate_issue_draft(
            context=summarize_context(_wizard(), buffer),
            details=details,
            images=buffer.latest_screenshots(),
            settings=settings,
            diagnostics=buffer,
        )
    except AssistantConfigError as exc:
        return f"The assistant is not configured ({exc})."
    except AssistantError as exc:
        logger.warning("Issue draft failed: %s", exc)
        return str(exc)
    st.session_state["issue_draft_markdown"] = format_issue_markdown(draft)
    return None


# endregion chat


_DETAILS_FIELD_LABELS: tuple[tuple[str, str], ...] = (
    ("first_name", "First Name"),
    ("last_name", "Last Name"),
    ("passport", "Passport Number"),
    ("email", "Email Address"),
)


def _missing_required_fields(values: dict[str, str]) -> list[str]:
    return [label for key, label in _DETAILS_FIELD_LABELS if not str(values.get(key) or "").strip()]


def _progress_index(step: Step) -> int:
    return STEP_ORDER.index(step)


def _results_caption(route_from: str, route_to: str, departure: str) -> str:
    when = ""
    if departure:
        try:
            d = parse_iso_date(departure)
            when = f"{d.strftime('%b')} {d.day}, {d.year}"
        except ValueError:
            when = departure
    return f"{route_from} to {route_to} • {when}"


def _render_progress(step: Step) -> None:
    if step == Step.SUCCESS:
        return
    idx = _progress_index(step)
    cols = st.columns(len(PROGRESS_LABELS))
    for i, (col, label) in enumerate(zip(cols, PROGRESS_LABELS)):
        marker = "🔷" if i == idx else "✅" if i < idx else "⬜"
        col.markdown(f"{marker} **{i + 1}. {label}**" if i <= idx else f"{marker} {i + 1}. {label}")


def _render_search(wizard: BookingWizard) -> None:
    form = wizard.state.form
    today = wizard.today()
    st.subheader("Find your next adventure")
    with st.form("search_form", clear_on_submit=False):
        left, right = st.columns(2)
        route_from = left.text_input("From", value=form.route_from)
        route_to = right.text_input("To", value=form.route_to)
        left, right = st.columns(2)
        current: Optional[date] = None
        if form.departure_date:
            try:
                current = parse_iso_date(form.departure_date)
            except ValueError:
                current = None
        picked = left.date_input("Departure", value=current, format="YYYY-MM-DD")
        left.caption(f"Book up to {wizard.settings.max_booking_days} days in advance")
        passengers = right.selectbox(
            "Passengers",
            PASSENGER_CHOICES,
            index=PASSENGER_CHOICES.index(form.passengers) if form.passengers in PASSENGER_CHOICES else 0,
            format_func=lambda n: f"{n} Adult" + ("s" if n > 1 else ""),
        )
        submitted = st.form_submit_button(
            "Searching..." if wizard.state.loading else "Search Flights",
            disabled=wizard.state.loading,
            use_container_width=True,
        )

    if not submitted:
        if wizard.state.error(ERROR_DATE):
            st.error(wizard.state.error(ERROR_DATE))
        return

    wizard.update_form(
        route_from=route_from,
        route_to=route_to,
        departure_date=picked.isoformat() if isinstance(picked, date) else "",
        passengers=passengers,
    )
    if wizard.submit_search():
        with st.spinner("Searching flights..."):
            _run_pending_completions(st.session_state["scheduler"])
    st.rerun()


def _render_results(wizard: BookingWizard) -> None:
    state = wizard.state
    if st.button("← Change Search", key="results_back", disabled=not wizard.can_go_back()):
        wizard.go_back()
        st.rerun()
    st.subheader("Select your outbound flight")
    st.caption(_results_caption(state.form.route_from, state.form.route_to, state.form.departure_date))

    if not state.search_results:
        st.info("No flights found. We couldn't find any flights matching your search criteria.")
        return

    converts = region_converts_currency(wizard.settings.region)
    for flight in state.search_results:
        with st.container(border=True):
            left, right = st.columns([3, 2])
            left.markdown(f"**{flight.time}**")
            left.caption(f"{flight.airline} • Direct • {flight.duration}")
            right.markdown(f"### {wizard.display_price(flight.price)}")
            badge = "🟣" if flight.fare_class == FareClass.BUSINESS else "🟢"
            right.caption(f"{badge} {flight.fare_class.value}")
            if converts:
                right.caption(f"Converted from ${flight.price} USD")
            if st.button("Select", key=f"select_flight_{flight.id}", use_container_width=True):
                wizard.select_flight(flight)
                st.rerun()


def _render_details(wizard: BookingWizard) -> None:
    form = wizard.state.form
    st.subheader("Who is flying?")
    with st.form("details_form"):
        left, right = st.columns(2)
        first_name = left.text_input("First Name", value=form.first_name, placeholder="e.g. John")
        last_name = right.text_input("Last Name", value=form.last_name, placeholder="e.g. Doe")
        passport = st.text_input("Passport Number", value=form.passport, placeholder="U12345678")
        email = st.text_input("Email Address", value=form.email, placeholder="john@example.com")
        back_col, next_col = st.columns([1, 3])
        back = back_col.form_submit_button("Back", disabled=not wizard.can_go_back(), use_container_width=True)
        submitted = next_col.form_submit_button("Continue to Payment", use_container_width=True)

    if back:
        wizard.go_back()
        st.rerun()
    if not submitted:
        return
    values = {"first_name": first_name, "last_name": last_name, "passport": passport, "email": email}
    missing = _missing_required_fields(values)
    wizard.update_form(**values)
    if missing:
        # Required-field presence is a form concern, not a wizard rule.
        st.error(f"Please fill in: {', '.join(missing)}")
        return
    wizard.submit_details()
    st.rerun()


def _render_payment(wizard: BookingWizard) -> None:
    state = wizard.state
    st.subheader("Payment Method")
    with st.container(border=True):
        left, right = st.columns([2, 1])
        left.write("Total Amount")
        right.markdown(f"**{wizard.display_price(wizard.total_price_usd())}**")
        note = "Includes taxes and fees"
        if region_converts_currency(wizard.settings.region):
            note += " (Converted from USD)"
        st.caption(note)

    if state.error(ERROR_PAYMENT_DATE):
        st.error(f"**Unable to Create Booking**\n\n{state.error(ERROR_PAYMENT_DATE)}")

    with st.form("payment_form"):
        card_number = st.text_input("Card Number", value=state.form.card_number, placeholder="0000 0000 0000 0000")
        left, right = st.columns(2)
        expiry = left.text_input("Expiry", value=state.form.expiry, placeholder="MM/YY")
        cvv = right.text_input("CVV", value=state.form.cvv, placeholder="123")
        back_col, pay_col = st.columns([1, 3])
        back = back_col.form_submit_button("Back", disabled=not wizard.can_go_back(), use_container_width=True)
        submitted = pay_col.form_submit_button(
            "Processing Transaction..." if state.loading else "Pay & Book Flight",
            disabled=state.loading,
            use_container_width=True,
        )
    if state.error(ERROR_CARD):
        st.error(state.error(ERROR_CARD))

    if back:
        wizard.go_back()
        st.rerun()
    if not submitted:
        return
    wizard.update_form(card_number=card_number, expiry=expiry, cvv=cvv)
    if wizard.submit_payment():
        with st.spinner("Processing payment..."):
            _run_pending_completions(st.session_state["scheduler"])
    st.rerun()


def _render_success(wizard: BookingWizard) -> None:
    form = wizard.state.form
    st.success("**Booking Confirmed!** Your flight has been successfully booked")
    with st.container(border=True):
        st.markdown(f"**Route:** {form.route_from} → {form.route_to}")
        st.markdown(f"**Date:** {long_date_label(form.departure_date)}")
        st.markdown(f"**Passenger:** {form.passenger_name}")
        st.markdown(f"**Confirmation:** A confirmation email has been sent to {form.email}")
    st.write("Thank you for choosing SkyDrift Airlines. We look forward to serving you!")

    try:
        pdf_bytes = make_confirmation_pdf_bytes(build_confirmation_artifact(wizard))
    except ValueError as exc:
        st.warning(f"Could not build the confirmation PDF: {exc}")
    else:
        st.download_button(
            "Download confirmation (PDF)",
            data=pdf_bytes,
            file_name="skydrift_confirmation.pdf",
            mime="application/pdf",
            use_container_width=True,
        )

    if st.button("Book Another Flight", key="success_reset", use_container_width=True):
        _reset_booking()
        st.rerun()


def _assistant_disabled_caption(settings: BookingSettings) -> str:
    if settings.has_openai_key:
        return "Assistant disabled via `SKYDRIFT_ASSISTANT_ENABLED`."
    return "Set `OPENAI_API_KEY` (or `SKYDRIFT_ASSISTANT_ENABLED=true`) to enable."


def _render_assistant_sidebar(settings: BookingSettings) -> None:
    st.sidebar.header("BugScribe Assistant")
    if not settings.assistant_enabled:
        st.sidebar.caption(_assistant_disabled_caption(settings))
        return

    for m in _chat_messages()[-20:]:
        speaker = "You" if m["role"] == "user" else "Assistant"
        st.sidebar.markdown(f"**{speaker}:** {m['content']}")

    with st.sidebar.form("assistant_chat_form", clear_on_submit=True):
        text = st.text_area("Ask about this page", height=80)
        sent = st.form_submit_button("Send", use_container_width=True)
    if sent and text.strip():
        with st.spinner("Thinking..."):
            _handle_chat_input(text, settings=settings)
        st.rerun()

    upload = st.sidebar.file_uploader("Attach a screenshot", type=["png", "jpg", "jpeg"], key="screenshot_upload")
    if upload is not None and st.sidebar.button("Add screenshot", key="add_screenshot"):
        try:
            _diagnostics().add_screenshot(upload.getvalue(), label=upload.name)
        except (OSError, ValueError) as exc:
            st.sidebar.warning(f"Could not read screenshot: {exc}")
        else:
            st.sidebar.caption(f"Screenshots attached: {len(_diagnostics().screenshots)}")

    with st.sidebar.expander("Report a bug", expanded=False):
        with st.form("issue_draft_form"):
            details = st.text_area("What went wrong?", height=100)
            drafted = st.form_submit_button("Draft issue", use_container_width=True)
        if drafted:
            with st.spinner("Drafting..."):
                error = _handle_issue_draft(details, settings=settings)
            if error:
                st.warning(error)
        draft_md = str(st.session_state.get("issue_draft_markdown") or "")
        if draft_md:
            st.code(draft_md, language="markdown")
            st.download_button("Download draft (MD)", data=draft_md, file_name="issue_draft.md", mime="text/markdown")

    if st.sidebar.button("Clear chat", key="clear_chat", use_container_width=True):
        st.session_state["chat_messages"] = []
        st.rerun()


def main() -> None:
    st.set_page_config(page_title="SkyDrift Airlines", layout="centered")
    st.title("✈️ SkyDrift Airlines")
    st.caption("Star Alliance Member")

    settings = load_settings(secrets=st.secrets)
    _init_state(settings)
    wizard = _wizard()

    # A rerun can land here while a completion is still queued (e.g. the browser refreshed).
    scheduler: ManualScheduler = st.session_state["scheduler"]
    if scheduler.has_pending:
        with st.spinner("Finishing up..."):
            _run_pending_completions(scheduler)

    step = wizard.state.step
    _render_progress(step)
    if step == Step.SEARCH:
        _render_search(wizard)
    elif step == Step.RESULTS:
        _render_results(wizard)
    elif step == Step.DETAILS:
        _render_details(wizard)
    elif step == Step.PAYMENT:
        _render_payment(wizard)
    else:
        _render_success(wizard)

    _render_assistant_sidebar(settings)


if __name__ == "__main__":
    main()
