from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from booking_policies import DEFAULT_REGION, MAX_BOOKING_DAYS, USD_TO_TL_RATE

DEFAULT_ASSISTANT_MODEL = "gpt-4o"
DEFAULT_SEARCH_DELAY_S = 0.8
DEFAULT_PAYMENT_DELAY_S = 2.0
DEFAULT_SNAPSHOT_PATH = ".skydrift/sessions.json"

# LogRecord attribute that tags a record with the Streamlit session it belongs to.
SESSION_LOG_ATTR = "skydrift_session"

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class BookingSettings:
    region: str = DEFAULT_REGION
    usd_to_local_rate: float = USD_TO_TL_RATE
    show_both_prices: bool = False
    max_booking_days: int = MAX_BOOKING_DAYS
    search_delay_s: float = DEFAULT_SEARCH_DELAY_S
    payment_delay_s: float = DEFAULT_PAYMENT_DELAY_S
    snapshot_path: str = DEFAULT_SNAPSHOT_PATH
    openai_api_key: str = ""
    assistant_model: str = DEFAULT_ASSISTANT_MODEL
    assistant_enabled: bool = False
    log_level: str = "INFO"

    @property
    def has_openai_key(self) -> bool:
        return bool(self.openai_api_key.strip())


def truthy_str(value: object) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def read_secret_or_env_str(
    key: str,
    *,
    environ: Optional[Mapping[str, str]] = None,
    secrets: Optional[Mapping[str, object]] = None,
) -> str:
    """
    Read a configuration value from Streamlit Secrets (preferred) or environment variables.

    Returns a stripped string; returns "" when missing.
    """
    val: object = ""
    if secrets is not None:
        try:
            # `st.secrets` is Mapping-like but raises when no secrets file exists.
            val = secrets.get(key, "")
        except Exception:
            val = ""
    if not val:
        env = os.environ if environ is None else environ
        val = env.get(key, "")
    if isinstance(val, str):
        return val.strip()
    return str(val).strip() if val is not None else ""


def _float_or(raw: str, default: float) -> float:
    if not raw:
        return default
    try:
        f = float(raw)
    except ValueError:
        return default
    if f != f or f < 0:  # NaN or negative
        return default
    return f


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    secrets: Optional[Mapping[str, object]] = None,
    *,
    dotenv_path: Optional[str] = None,
) -> BookingSettings:
    """
    Build settings from `.env`, Streamlit secrets and the process environment.

    The `.env` file is only loaded when reading the real process environment, so tests that
    pass an explicit `environ` never see local developer overrides.
    """
    if environ is None:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    def get(key: str) -> str:
        return read_secret_or_env_str(key, environ=environ, secrets=secrets)

    api_key = get("OPENAI_API_KEY") or get("VITE_OPENAI_API_KEY")
    enabled_raw = get("SKYDRIFT_ASSISTANT_ENABLED")
    assistant_enabled = truthy_str(enabled_raw) if enabled_raw else bool(api_key)

    return BookingSettings(
        region=(get("SKYDRIFT_REGION") or DEFAULT_REGION).upper(),
        usd_to_local_rate=_float_or(get("SKYDRIFT_USD_RATE"), float(USD_TO_TL_RATE)),
        show_both_prices=truthy_str(get("SKYDRIFT_SHOW_BOTH_PRICES")),
        search_delay_s=_float_or(get("SKYDRIFT_SEARCH_DELAY_S"), DEFAULT_SEARCH_DELAY_S),
        payment_delay_s=_float_or(get("SKYDRIFT_PAYMENT_DELAY_S"), DEFAULT_PAYMENT_DELAY_S),
        snapshot_path=get("SKYDRIFT_SNAPSHOT_PATH") or DEFAULT_SNAPSHOT_PATH,
        openai_api_key=api_key,
        assistant_model=get("SKYDRIFT_ASSISTANT_MODEL") or DEFAULT_ASSISTANT_MODEL,
        assistant_enabled=assistant_enabled,
        log_level=(get("SKYDRIFT_LOG_LEVEL") or "INFO").upper(),
    )


def configure_logging(level: str = "INFO", *, extra_handlers: tuple[logging.Handler, ...] = ()) -> logging.Logger:
    """
    Attach a stream handler (and any extra handlers, e.g. the diagnostics sink) to the
    `skydrift` logger. Safe to call on every Streamlit rerun: handlers are added once.
    """
    logger = logging.getLogger("skydrift")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if not any(getattr(h, "_skydrift_stream", False) for h in logger.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter(_LOG_FORMAT))
        stream._skydrift_stream = True  # type: ignore[attr-defined]
        logger.addHandler(stream)
    for handler in extra_handlers:
        if handler not in logger.handlers:
            logger.addHandler(handler)
    return logger


def session_logger(logger: logging.Logger, session_id: str) -> logging.LoggerAdapter:
    """
    Wrap a module logger so every record carries `session_id`; the diagnostics router uses
    it to deliver the record to that session's buffer only.
    """
    return logging.LoggerAdapter(logger, {SESSION_LOG_ATTR: session_id})
