from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from api_explorer import models
from api_explorer.relay import ForwardRequest, ForwardResponse, RelayClient, RelayClientError


logger = logging.getLogger("api_explorer.credentials")

DEFAULT_STORAGE_KEY = "managefy-token-data"
DEFAULT_CHECK_PATH = "/Suppliers"
DEFAULT_FRESHNESS_SEC = 60 * 60.0
DEFAULT_REVALIDATE_INTERVAL_SEC = 30 * 60.0

EMPTY_TOKEN_MESSAGE = "Token cannot be empty"
INVALID_TOKEN_MESSAGE = "Token invalid or expired"
NETWORK_ERROR_MESSAGE = "Network error: check your internet connection"
VALIDATION_FAILED_MESSAGE = "Error validating token"
STORE_FAILED_MESSAGE = "Token could not be saved"


class CredentialStoreError(ValueError):
    """Raised when a persisted credential record cannot be decoded."""


class Validity(str, Enum):
    unknown = "unknown"
    valid = "valid"
    invalid = "invalid"


class CredentialStatus(str, Enum):
    empty = "empty"
    validating = "validating"
    valid = "valid"
    invalid = "invalid"


@dataclass(frozen=True, slots=True)
class StoredCredentialRecord:
    token: str
    timestamp_ms: int
    is_valid: bool

    @property
    def timestamp(self) -> float:
        return self.timestamp_ms / 1000.0

    def to_json(self) -> str:
        return json.dumps({"token": self.token, "timestamp": self.timestamp_ms, "isValid": self.is_valid})

    @classmethod
    def from_json(cls, payload: str) -> "StoredCredentialRecord":
        try:
            data = json.loads(payload)
        except ValueError as exc:
            raise CredentialStoreError("Stored credential is not valid JSON") from exc

        if not isinstance(data, dict):
            raise CredentialStoreError("Stored credential must be a JSON object")

        token = data.get("token")
        timestamp = data.get("timestamp")
        is_valid = data.get("isValid")
        if not isinstance(token, str) or not token.strip():
            raise CredentialStoreError("Stored credential has no token")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise CredentialStoreError("Stored credential has no numeric timestamp")
        if not isinstance(is_valid, bool):
            raise CredentialStoreError("Stored credential has no validity flag")
        return cls(token=token, timestamp_ms=int(timestamp), is_valid=is_valid)


@dataclass(frozen=True, slots=True)
class CredentialSnapshot:
    status: CredentialStatus
    token: str
    validity: Validity
    validating: bool
    error: str | None
    validated_at: float | None

    @property
    def is_trusted(self) -> bool:
        return self.validity is Validity.valid


class CredentialStore(Protocol):
    def read(self, key: str) -> str | None:
        ...

    def write(self, key: str, payload: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryCredentialStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._items: dict[str, str] = dict(initial or {})

    def read(self, key: str) -> str | None:
        return self._items.get(key)

    def write(self, key: str, payload: str) -> None:
        self._items[key] = payload

    def delete(self, key: str) -> None:
        self._items.pop(key, None)


class SqlCredentialStore:
    """Durable credential store keeping one row per storage key."""

    def __init__(self, *, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def _get_row(self, db: Session, key: str) -> models.StoredCredential | None:
        return db.scalar(select(models.StoredCredential).where(models.StoredCredential.storage_key == key))

    def read(self, key: str) -> str | None:
        with self.session_factory() as db:
            row = self._get_row(db, key)
            return row.payload if row is not None else None

    def write(self, key: str, payload: str) -> None:
        with self.session_factory() as db:
            row = self._get_row(db, key)
            if row is None:
                db.add(models.StoredCredential(storage_key=key, payload=payload))
            else:
                row.payload = payload
            db.commit()

    def delete(self, key: str) -> None:
        with self.session_factory() as db:
            row = self._get_row(db, key)
            if row is not None:
                db.delete(row)
                db.commit()


def _run_in_daemon_thread(task: Callable[[], object]) -> None:
    threading.Thread(target=task, name="credential-revalidation", daemon=True).start()


class CredentialManager:
    """
    Owns the single access token and decides when it is trusted.

    Trust is refreshed only by checking the relay. All mutations go through
    ``_lock``; a check outcome is applied only while the checked token is still
    the current one, so a completing check never overwrites a clear or a newer
    token.
    """

    def __init__(
        self,
        *,
        relay: RelayClient,
        store: CredentialStore,
        storage_key: str = DEFAULT_STORAGE_KEY,
        check_path: str = DEFAULT_CHECK_PATH,
        freshness_sec: float = DEFAULT_FRESHNESS_SEC,
        clock: Callable[[], float] = time.time,
        background: Callable[[Callable[[], object]], None] | None = None,
    ) -> None:
        self.relay = relay
        self.store = store
        self.storage_key = storage_key
        self.check_path = check_path
        self.freshness_sec = freshness_sec
        self._clock = clock
        self._background = background or _run_in_daemon_thread
        self._lock = threading.RLock()
        self._token: str | None = None
        self._validated_at: float | None = None
        self._validity = Validity.unknown
        self._error: str | None = None
        self._inflight = 0
        self._generation = 0

    @property
    def token(self) -> str:
        with self._lock:
            return self._token or ""

    def snapshot(self) -> CredentialSnapshot:
        with self._lock:
            if not self._token:
                status = CredentialStatus.empty
            elif self._inflight > 0 or self._validity is Validity.unknown:
                status = CredentialStatus.validating
            elif self._validity is Validity.valid:
                status = CredentialStatus.valid
            else:
                status = CredentialStatus.invalid

            return CredentialSnapshot(
                status=status,
                token=self._token or "",
                validity=self._validity,
                validating=self._inflight > 0,
                error=self._error,
                validated_at=self._validated_at,
            )

    def set_token(self, token: str) -> bool:
        if not token.strip():
            with self._lock:
                self._error = EMPTY_TOKEN_MESSAGE
            return False

        with self._lock:
            self._generation += 1
            self._inflight = 0
            self._token = token
            self._validated_at = None
            self._validity = Validity.unknown
            self._error = None
        logger.info("credential_set")
        return self.validate(token)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._inflight = 0
            self._token = None
            self._validated_at = None
            self._validity = Validity.unknown
            self._error = None
            self.store.delete(self.storage_key)
        logger.info("credential_cleared")

    def revalidate_if_valid(self) -> bool | None:
        with self._lock:
            token = self._token
            if not token or self._validity is not Validity.valid:
                return None
        return self.validate(token)

    def validate(self, token: str | None = None) -> bool:
        with self._lock:
            candidate = token or self._token
            if not candidate:
                return False
            generation = self._generation
            counted = candidate == self._token
            if counted:
                self._inflight += 1
                self._error = None

        try:
            outcome: ForwardResponse | None = self.relay.forward(
                ForwardRequest(method="GET", path=self.check_path, access_token=candidate)
            )
            failure: str | None = None
        except RelayClientError as exc:
            logger.error("credential_check_relay_error error=%s", exc)
            outcome, failure = None, f"Relay error: {exc}"
        except Exception:
            logger.exception("credential_check_failed")
            outcome, failure = None, VALIDATION_FAILED_MESSAGE

        with self._lock:
            is_current = generation == self._generation and candidate == self._token
            if counted and is_current:
                self._inflight -= 1
            if outcome is None:
                if is_current:
                    self._validity = Validity.unknown
                    self._error = failure
                return False
            return self._apply_check_outcome(candidate, outcome, is_current=is_current)

    def _apply_check_outcome(self, token: str, outcome: ForwardResponse, *, is_current: bool) -> bool:
        if outcome.is_success:
            if is_current:
                now = self._clock()
                self._validity = Validity.valid
                self._validated_at = now
                self._error = None
                record = StoredCredentialRecord(token=token, timestamp_ms=int(now * 1000), is_valid=True)
                if not self._persist(record):
                    self._error = STORE_FAILED_MESSAGE
            logger.info("credential_check_valid status=%s current=%s", outcome.status, is_current)
            return True

        if outcome.status in (401, 403):
            if is_current:
                self._validity = Validity.invalid
                self._error = INVALID_TOKEN_MESSAGE
                self._mark_stored_invalid(token)
            logger.info("credential_check_rejected status=%s current=%s", outcome.status, is_current)
            return False

        if outcome.is_transport_failure:
            message = NETWORK_ERROR_MESSAGE
            logger.warning("credential_check_network_error error=%s", outcome.error)
        else:
            message = f"API error: {outcome.status} {outcome.status_text}".rstrip()
            logger.warning("credential_check_api_error status=%s", outcome.status)

        if is_current:
            self._validity = Validity.unknown
            self._error = message
        return False

    def _persist(self, record: StoredCredentialRecord) -> bool:
        try:
            self.store.write(self.storage_key, record.to_json())
        except Exception:
            logger.exception("credential_store_write_failed key=%s", self.storage_key)
            return False
        return True

    def _mark_stored_invalid(self, token: str) -> None:
        try:
            payload = self.store.read(self.storage_key)
        except Exception:
            logger.exception("credential_store_read_failed key=%s", self.storage_key)
            return
        if payload is None:
            return
        try:
            record = StoredCredentialRecord.from_json(payload)
        except CredentialStoreError:
            return
        if record.token != token or not record.is_valid:
            return
        self._persist(StoredCredentialRecord(token=token, timestamp_ms=record.timestamp_ms, is_valid=False))

    def load(self) -> CredentialSnapshot:
        """
        Restore the persisted credential.

        Within the freshness window the record is trusted as stored; past half
        the window a background check is dispatched. Past the full window the
        token is restored untrusted and checked before returning.
        """

        revalidate_now = False
        revalidate_later = False
        with self._lock:
            payload = self.store.read(self.storage_key)
            if payload is None:
                return self.snapshot()

            try:
                record = StoredCredentialRecord.from_json(payload)
            except CredentialStoreError as exc:
                logger.warning("credential_restore_discarded error=%s", exc)
                self.store.delete(self.storage_key)
                return self.snapshot()

            age = self._clock() - record.timestamp
            self._generation += 1
            self._inflight = 0
            self._token = record.token
            self._validated_at = record.timestamp
            self._error = None

            if age < self.freshness_sec:
                self._validity = Validity.valid if record.is_valid else Validity.invalid
                revalidate_later = record.is_valid and age > self.freshness_sec / 2
            else:
                self._validity = Validity.unknown
                revalidate_now = True

        logger.info(
            "credential_restored age_sec=%.0f revalidate_now=%s revalidate_later=%s",
            age,
            revalidate_now,
            revalidate_later,
        )
        if revalidate_now:
            self.validate(record.token)
        elif revalidate_later:
            token = record.token
            self._background(lambda: self.validate(token))
        return self.snapshot()


class RevalidationScheduler:
    def __init__(
        self,
        *,
        manager: CredentialManager,
        interval_sec: float = DEFAULT_REVALIDATE_INTERVAL_SEC,
    ) -> None:
        self.manager = manager
        self.interval_sec = interval_sec
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="credential-revalidation-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None

    def run_once(self) -> bool:
        return self.manager.revalidate_if_valid() is not None

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self.interval_sec):
            try:
                self.run_once()
            except Exception:
                logger.exception("credential_revalidation_failed")
