from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Union

from booking_wizard import BookingForm, BookingWizard, Step, WizardState, form_from_json, form_to_json

logger = logging.getLogger("skydrift.snapshot")

SNAPSHOT_KEY = "skydrift_session"

_BROWSER_ID_RE = re.compile(r"^[0-9a-f]{32}$")

_FILE_LOCKS: dict[str, threading.Lock] = {}
_FILE_LOCKS_GUARD = threading.Lock()


def is_browser_id(value: object) -> bool:
    return isinstance(value, str) and bool(_BROWSER_ID_RE.match(value))


def snapshot_key_for(browser_id: str) -> str:
    """
    Storage key for one browser's snapshot: `skydrift_session:<32 hex chars>`.

    Raises ValueError for anything that is not a browser id, so a tampered URL can never
    address another key in the shared file.
    """
    if not is_browser_id(browser_id):
        raise ValueError(f"not a browser id: {browser_id!r}")
    return f"{SNAPSHOT_KEY}:{browser_id}"


@dataclass(frozen=True)
class SessionSnapshot:
    """
    The persisted subset of wizard state. Versionless; the last write wins.
    """

    step: Step = Step.SEARCH
    form: BookingForm = field(default_factory=BookingForm)
    selected_flight_id: Optional[int] = None

    @classmethod
    def from_state(cls, state: WizardState) -> "SessionSnapshot":
        return cls(step=state.step, form=state.form, selected_flight_id=state.selected_flight_id)

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "step": self.step.value,
            "formData": form_to_json(self.form),
        }
        if self.selected_flight_id is not None:
            payload["selectedFlightId"] = int(self.selected_flight_id)
        return payload

    @classmethod
    def from_json(cls, payload: Any) -> Optional["SessionSnapshot"]:
        """
        Decode a persisted payload. Anything that does not look like a snapshot yields None.
        """
        if not isinstance(payload, dict):
            return None
        try:
            step = Step(str(payload.get("step") or ""))
        except ValueError:
            return None
        form_raw = payload.get("formData")
        form = form_from_json(form_raw) if isinstance(form_raw, dict) else BookingForm()
        sel_raw = payload.get("selectedFlightId")
        selected: Optional[int] = None
        # bool is an int subclass; a persisted `true` is not a flight id.
        if isinstance(sel_raw, int) and not isinstance(sel_raw, bool):
            selected = sel_raw
        return cls(step=step, form=form, selected_flight_id=selected)


def encode_snapshot(snapshot: SessionSnapshot) -> str:
    return json.dumps(snapshot.to_json(), sort_keys=True)


def decode_snapshot(text: Optional[str]) -> Optional[SessionSnapshot]:
    t = (text or "").strip()
    if not t:
        return None
    try:
        payload = json.loads(t)
    except ValueError:
        logger.warning("Ignoring malformed session snapshot (not JSON).")
        return None
    snapshot = SessionSnapshot.from_json(payload)
    if snapshot is None:
        logger.warning("Ignoring malformed session snapshot (unexpected shape).")
    return snapshot


class SnapshotStore:
    """
    Single-key snapshot storage. Read and write failures are logged and swallowed so the
    booking flow keeps working without persistence.
    """

    key: str = SNAPSHOT_KEY

    def _read(self) -> Optional[str]:
        raise NotImplementedError

    def _write(self, text: str) -> None:
        raise NotImplementedError

    def _delete(self) -> None:
        raise NotImplementedError

    def load(self) -> Optional[SessionSnapshot]:
        try:
            text = self._read()
        except Exception as exc:
            logger.warning("Could not read session snapshot: %s", exc)
            return None
        return decode_snapshot(text)

    def save(self, snapshot: SessionSnapshot) -> bool:
        try:
            self._write(encode_snapshot(snapshot))
        except Exception as exc:
            logger.warning("Could not write session snapshot: %s", exc)
            return False
        return True

    def clear(self) -> None:
        try:
            self._delete()
        except Exception as exc:
            logger.warning("Could not clear session snapshot: %s", exc)


class JsonFileSnapshotStore(SnapshotStore):
    """
    Key-value JSON document on disk; survives process restarts and page reloads.

    Several browsers can share one file as long as each uses its own key (see
    `snapshot_key_for`). Read-modify-write cycles on a path are serialized within the
    process because Streamlit runs sessions on separate threads.
    """

    def __init__(self, path: Union[str, Path], key: str = SNAPSHOT_KEY) -> None:
        self.path = Path(path)
        self.key = key

    def _lock(self) -> threading.Lock:
        resolved = str(self.path.resolve())
        with _FILE_LOCKS_GUARD:
            return _FILE_LOCKS.setdefault(resolved, threading.Lock())

    def _load_document(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        doc = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        if not isinstance(doc, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return doc

    def _dump_document(self, doc: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(doc, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def _read(self) -> Optional[str]:
        with self._lock():
            try:
                doc = self._load_document()
            except ValueError:
                logger.warning("Ignoring malformed snapshot file %s", self.path)
                return None
        raw = doc.get(self.key)
        return raw if isinstance(raw, str) else None

    def _write(self, text: str) -> None:
        with self._lock():
            try:
                doc = self._load_document()
            except ValueError:
                doc = {}
            doc[self.key] = text
            self._dump_document(doc)

    def _delete(self) -> None:
        with self._lock():
            doc = self._load_document()
            if self.key in doc:
                doc.pop(self.key)
                self._dump_document(doc)


def persist_on_change(store: SnapshotStore) -> Callable[[WizardState], None]:
    """
    Build an `on_state_change` hook that writes a snapshot after every wizard mutation.
    """

    def _hook(state: WizardState) -> None:
        store.save(SessionSnapshot.from_state(state))

    return _hook


def restore_wizard(wizard: BookingWizard, store: SnapshotStore) -> Optional[SessionSnapshot]:
    snapshot = store.load()
    if snapshot is None:
        return None
    wizard.restore(step=snapshot.step, form=snapshot.form, selected_flight_id=snapshot.selected_flight_id)
    logger.info("Restored booking session at step %s", wizard.state.step.value)
    return snapshot
