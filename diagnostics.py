from __future__ import annotations

import base64
import logging
import time
import weakref
from collections import deque
from dataclasses import dataclass
from io import BytesIO
from typing import Deque, Optional, Sequence

from PIL import Image

from booking_config import SESSION_LOG_ATTR
from booking_wizard import BookingWizard

DEFAULT_MAX_CONSOLE = 50
DEFAULT_MAX_NETWORK = 30
DEFAULT_MAX_SCREENSHOTS = 3
SCREENSHOT_MAX_WIDTH = 1024
SCREENSHOT_JPEG_QUALITY = 70


@dataclass(frozen=True)
class ConsoleEvent:
    level: str
    message: str
    ts_ms: int


@dataclass(frozen=True)
class NetworkEvent:
    method: str
    url: str
    status: int
    duration_ms: int
    ts_ms: int
    error: str = ""


@dataclass(frozen=True)
class Screenshot:
    data_url: str
    label: str
    ts_ms: int


def _now_ms() -> int:
    return int(time.time() * 1000)


def compress_screenshot(image_bytes: bytes, *, max_width: int = SCREENSHOT_MAX_WIDTH) -> str:
    """
    Downscale an uploaded screenshot and encode it as a JPEG data URL small enough to
    forward to the assistant.
    """
    if not isinstance(image_bytes, (bytes, bytearray)) or not image_bytes:
        raise ValueError("image_bytes must be non-empty bytes")
    with Image.open(BytesIO(bytes(image_bytes))) as img:
        rgb = img.convert("RGB")
    if rgb.width > max_width:
        ratio = max_width / float(rgb.width)
        rgb = rgb.resize((max_width, max(1, int(round(rgb.height * ratio)))), Image.LANCZOS)
    out = BytesIO()
    rgb.save(out, format="JPEG", quality=SCREENSHOT_JPEG_QUALITY, optimize=True)
    encoded = base64.b64encode(out.getvalue()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"


class DiagnosticsBuffer:
    """
    Rolling buffers of recent console lines, network calls and screenshots.

    The buffer owns the caps; producers just record.
    """

    def __init__(
        self,
        *,
        max_console: int = DEFAULT_MAX_CONSOLE,
        max_network: int = DEFAULT_MAX_NETWORK,
        max_screenshots: int = DEFAULT_MAX_SCREENSHOTS,
    ) -> None:
        self.console: Deque[ConsoleEvent] = deque(maxlen=max(1, max_console))
        self.network: Deque[NetworkEvent] = deque(maxlen=max(1, max_network))
        self.screenshots: Deque[Screenshot] = deque(maxlen=max(1, max_screenshots))

    def record_console(self, level: str, message: str) -> None:
        clean = (message or "").strip()
        if clean:
            self.console.append(ConsoleEvent(level=(level or "info").lower(), message=clean, ts_ms=_now_ms()))

    def record_network(
        self,
        method: str,
        url: str,
        status: int,
        duration_ms: int,
        *,
        error: str = "",
    ) -> None:
        self.network.append(
            NetworkEvent(
                method=(method or "GET").upper(),
                url=url,
                status=int(status),
                duration_ms=max(0, int(duration_ms)),
                ts_ms=_now_ms(),
                error=error,
            )
        )

    def add_screenshot(self, image: bytes | str, *, label: str = "") -> Screenshot:
        if isinstance(image, str):
            if not image.startswith("data:image/"):
                raise ValueError("screenshot strings must be image data URLs")
            data_url = image
        else:
            data_url = compress_screenshot(image)
        shot = Screenshot(data_url=data_url, label=label, ts_ms=_now_ms())
        self.screenshots.append(shot)
        return shot

    def latest_screenshots(self, n: int = DEFAULT_MAX_SCREENSHOTS) -> list[str]:
        if n <= 0:
            return []
        return [s.data_url for s in list(self.screenshots)[-n:]]

    def clear(self) -> None:
        self.console.clear()
        self.network.clear()
        self.screenshots.clear()


class DiagnosticsRouter(logging.Handler):
    """
    Process-wide logging sink that delivers each record to the buffer of the session it is
    tagged with (see `booking_config.session_logger`).

    Untagged records and records for unregistered sessions are dropped. Buffers are held
    weakly, so a session that goes away takes its registration with it.
    """

    def __init__(self, level: int = logging.DEBUG) -> None:
        super().__init__(level=level)
        self._buffers: "weakref.WeakValueDictionary[str, DiagnosticsBuffer]" = weakref.WeakValueDictionary()
        self.setFormatter(logging.Formatter("%(message)s"))

    def register(self, session_id: str, buffer: DiagnosticsBuffer) -> None:
        if not session_id:
            raise ValueError("session_id is required")
        self._buffers[session_id] = buffer

    def unregister(self, session_id: str) -> None:
        self._buffers.pop(session_id, None)

    @property
    def session_ids(self) -> list[str]:
        return sorted(self._buffers.keys())

    def emit(self, record: logging.LogRecord) -> None:
        session_id = getattr(record, SESSION_LOG_ATTR, "")
        if not session_id:
            return
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return
        try:
            buffer.record_console(record.levelname, self.format(record))
        except Exception:
            self.handleError(record)


_router: Optional[DiagnosticsRouter] = None


def diagnostics_router() -> DiagnosticsRouter:
    """
    The one router the app attaches to the `skydrift` logger; every Streamlit session
    registers its buffer here instead of adding a handler of its own.
    """
    global _router
    if _router is None:
        _router = DiagnosticsRouter()
    return _router


def _tail(lines: Sequence[str], n: int) -> list[str]:
    return list(lines)[-n:] if n > 0 else []


def summarize_context(
    wizard: BookingWizard,
    buffer: Optional[DiagnosticsBuffer] = None,
    *,
    console_lines: int = 15,
    network_lines: int = 10,
) -> str:
    """
    Plain-text snapshot of the booking flow for the assistant. Read-only.
    """
    state = wizard.state
    form = state.form
    out: list[str] = [
        "App: SkyDrift Airlines booking demo",
        f"Step: {state.step.value}",
        f"Loading: {'yes' if state.loading else 'no'}",
        f"Route: {form.route_from} -> {form.route_to}",
        f"Departure date: {form.departure_date or '(not set)'} (today: {wizard.today().isoformat()})",
        f"Passengers: {form.passengers}",
        f"Region: {wizard.settings.region}",
        f"Search results: {len(state.search_results)}",
    ]
    flight = wizard.selected_flight()
    if flight is not None:
        out.append(
            f"Selected flight: #{flight.id} {flight.time} {flight.fare_class.value} "
            f"{wizard.display_price(flight.price, show_both=True)}"
        )
    else:
        out.append("Selected flight: none")

    active = {k: v for k, v in state.errors.items() if v}
    if active:
        out.append("Errors:")
        out.extend(f"- {k}: {v}" for k, v in sorted(active.items()))
    else:
        out.append("Errors: none")

    if buffer is not None:
        console = _tail([f"[{e.level}] {e.message}" for e in buffer.console], console_lines)
        if console:
            out.append("Recent console:")
            out.extend(f"- {line}" for line in console)
        network = _tail(
            [
                f"{e.method} {e.url} -> {e.status} ({e.duration_ms} ms){' ' + e.error if e.error else ''}"
                for e in buffer.network
            ],
            network_lines,
        )
        if network:
            out.append("Recent network:")
            out.extend(f"- {line}" for line in network)
        if buffer.screenshots:
            out.append(f"Screenshots attached: {len(buffer.screenshots)}")
    return "\n".join(out)
