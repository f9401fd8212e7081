from __future__ import annotations

"""
Smoke test for the booking demo (local, offline).

This script simulates "button presses" against the booking wizard one step at a time
(no Streamlit, no network), then:
- checks the step/error state after every press
- writes a confirmation PDF for scenarios that reach the Success step (confirmation_pdf)
- writes a JSON report with the diagnostics context the assistant would see

It writes into `out/smoke_test_demo/` and exits non-zero if anything breaks.

Usage:
  python3 scripts/smoke_test_demo.py
  python3 scripts/smoke_test_demo.py --out-dir out/smoke_test_demo --today 2026-03-01
"""

import argparse
import json
import logging
import sys
import traceback
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Callable, Optional

# Allow running as `python3 scripts/smoke_test_demo.py` (module imports live at repo root).
_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from booking_config import BookingSettings, configure_logging
from booking_policies import parse_iso_date
from booking_wizard import BlockingScheduler, BookingWizard, Step
from confirmation_pdf import build_confirmation_artifact, make_confirmation_pdf_bytes
from diagnostics import DiagnosticsBuffer, DiagnosticsRouter, summarize_context
from flight_catalog import FlightCatalog
from session_snapshot import JsonFileSnapshotStore, persist_on_change


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


@dataclass(frozen=True)
class Press:
    label: str
    apply: Callable[[BookingWizard], object]
    expect_step: Step
    expect_error: Optional[str] = None


def _run_scenario(
    *,
    name: str,
    presses: list[Press],
    today: date,
    settings: BookingSettings,
    out_dir: Path,
) -> dict[str, object]:
    buffer = DiagnosticsBuffer()
    router = DiagnosticsRouter()
    router.register(name, buffer)
    configure_logging(settings.log_level, extra_handlers=(router,))
    store = JsonFileSnapshotStore(out_dir / f"{name}_snapshot.json")
    wizard = BookingWizard(
        FlightCatalog(),
        settings=settings,
        today=lambda: today,
        scheduler=BlockingScheduler(sleep=lambda _s: None),
        on_state_change=persist_on_change(store),
        session_id=name,
    )

    print("")
    print("=" * 72)
    print(f"SCENARIO: {name}")
    print("=" * 72)

    try:
        for i, press in enumerate(presses, start=1):
            press.apply(wizard)
            state = wizard.state
            print(f"[{i}/{len(presses)}] {press.label}")
            print(f"  - step: {state.step.value}  loading: {state.loading}  results: {len(state.search_results)}")
            if state.has_errors:
                print(f"  - errors: {dict(state.errors)}")
            if state.step != press.expect_step:
                raise RuntimeError(f"{name}/{press.label}: expected step {press.expect_step.value}, got {state.step.value}")
            if press.expect_error and not state.error(press.expect_error):
                raise RuntimeError(f"{name}/{press.label}: expected an error on {press.expect_error!r}")

        pdf_name = None
        if wizard.state.step == Step.SUCCESS:
            pdf_bytes = make_confirmation_pdf_bytes(build_confirmation_artifact(wizard))
            if not pdf_bytes.startswith(b"%PDF"):
                raise RuntimeError("Generated PDF does not start with %PDF header.")
            for marker in (b"SkyDrift Airlines", b"Confirmation"):
                if marker not in pdf_bytes:
                    raise RuntimeError(f"Generated PDF missing expected marker: {marker!r}")
            pdf_name = f"{name}.pdf"
            (out_dir / pdf_name).write_bytes(pdf_bytes)
            print(f"  - pdf: {pdf_name}")

        stored = store.load()
        if stored is None or stored.step != wizard.state.step:
            raise RuntimeError(f"{name}: snapshot on disk does not match the final step")

        return {
            "scenario": name,
            "final_step": wizard.state.step.value,
            "errors": dict(wizard.state.errors),
            "pdf": pdf_name,
            "context": summarize_context(wizard, buffer),
        }
    finally:
        logging.getLogger("skydrift").removeHandler(router)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--out-dir",
        default=str(_repo_root() / "out" / "smoke_test_demo"),
        help="Directory to write PDFs and the report into (default: out/smoke_test_demo).",
    )
    parser.add_argument("--today", default="", help="Pin 'today' as YYYY-MM-DD (default: the real date).")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args(argv)

    out_dir = Path(args.out_dir).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    today = parse_iso_date(args.today) if args.today else date.today()
    settings = BookingSettings(log_level=args.log_level, search_delay_s=0.0, payment_delay_s=0.0)

    def d(days: int) -> str:
        return (today + timedelta(days=days)).isoformat()

    passenger = {
        "first_name": "Demo",
        "last_name": "Traveller",
        "passport": "U12345678",
        "email": "demo@example.com",
    }

    # Scenario 1: happy path through to the confirmation.
    happy = [
        Press("set_date", lambda w: w.update_form(departure_date=d(10)), Step.SEARCH),
        Press("press_search", lambda w: w.submit_search(), Step.RESULTS),
        Press("press_select_first", lambda w: w.select_flight(w.state.search_results[0]), Step.DETAILS),
        Press("fill_details", lambda w: w.update_form(**passenger), Step.DETAILS),
        Press("press_continue", lambda w: w.submit_details(), Step.PAYMENT),
        Press("fill_card", lambda w: w.update_form(card_number="4111 1111 1111 1111"), Step.PAYMENT),
        Press("press_pay", lambda w: w.submit_payment(), Step.SUCCESS),
    ]

    # Scenario 2: booking-window and card errors, then recovery.
    errors = [
        Press("set_far_date", lambda w: w.update_form(departure_date=d(65)), Step.SEARCH, "date"),
        Press("press_search_rejected", lambda w: w.submit_search(), Step.SEARCH, "date"),
        Press("fix_date", lambda w: w.update_form(departure_date=d(30)), Step.SEARCH),
        Press("press_search", lambda w: w.submit_search(), Step.RESULTS),
        Press("press_select_business", lambda w: w.select_flight(5), Step.DETAILS),
        Press("press_continue", lambda w: w.submit_details(), Step.PAYMENT),
        Press("fill_short_card", lambda w: w.update_form(card_number="1234"), Step.PAYMENT),
        Press("press_pay_rejected", lambda w: w.submit_payment(), Step.PAYMENT, "card"),
        Press("press_back", lambda w: w.go_back(), Step.DETAILS),
    ]

    # Scenario 3: start over from the confirmation.
    restart = happy + [Press("press_reset", lambda w: w.reset(), Step.SEARCH)]

    report = [
        _run_scenario(name="happy_path", presses=happy, today=today, settings=settings, out_dir=out_dir),
        _run_scenario(name="validation_errors", presses=errors, today=today, settings=settings, out_dir=out_dir),
        _run_scenario(name="start_over", presses=restart, today=today, settings=settings, out_dir=out_dir),
    ]
    (out_dir / "report.json").write_text(json.dumps(report, indent=2), encoding="utf-8")

    print("")
    print(f"OK: wrote report + PDFs to {out_dir}")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except Exception:
        traceback.print_exc()
        raise SystemExit(1)
