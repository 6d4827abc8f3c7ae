"""OCR service contract, the Azure Read adapter, and the polling gateway.

The external recogniser is a long-running operation: ``submit`` hands over
the image and returns an operation handle, ``poll`` reports the status of
that handle until it is terminal. ``OCRGateway`` turns that into one blocking
``recognize`` call with a bounded polling budget.

Classes:
    RawFragment       - One recognised text line with confidence and polygon
    PollStatus        - Status reported by the service for an operation
    PollResponse      - Parsed poll payload
    OCRService        - Abstract two-call service contract
    AzureReadService  - Azure Computer Vision Read v3.2 over urllib
    OperationState    - Gateway-side state of one operation
    OCROperation      - State machine driving one submit/poll cycle
    OCRGateway        - Blocking ``recognize`` with retries, cancellation, slots
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import numpy as np

from .errors import EmptyResultError, PollTimeoutError, ServiceError
from .variants import encode_image

log = logging.getLogger(__name__)

Point = Tuple[float, float]
Region = Tuple[Point, ...]


# ---------------------------------------------------------------------------
# Region geometry
# ---------------------------------------------------------------------------


def region_bounds(region: Region) -> Tuple[float, float, float, float]:
    """Axis-aligned (x0, y0, x1, y1) bounds of a polygon."""
    xs = [p[0] for p in region]
    ys = [p[1] for p in region]
    return min(xs), min(ys), max(xs), max(ys)


def region_union(regions: Sequence[Region]) -> Region:
    """Smallest axis-aligned rectangle (4 points, clockwise) covering all regions."""
    bounds = [region_bounds(r) for r in regions if r]
    if not bounds:
        return ()
    x0 = min(b[0] for b in bounds)
    y0 = min(b[1] for b in bounds)
    x1 = max(b[2] for b in bounds)
    y1 = max(b[3] for b in bounds)
    return ((x0, y0), (x1, y0), (x1, y1), (x0, y1))


def polygon_from_flat(values: Sequence[float]) -> Region:
    """Convert ``[x1, y1, x2, y2, ...]`` into a tuple of points."""
    if len(values) < 8 or len(values) % 2:
        raise ValueError(f"Expected an even list of at least 8 coordinates, got {len(values)}")
    return tuple((float(values[i]), float(values[i + 1])) for i in range(0, len(values), 2))


# ---------------------------------------------------------------------------
# RawFragment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawFragment:
    """One text line as recognised by the OCR service."""

    text: str
    confidence: float  # 0.0-1.0
    region: Region

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return region_bounds(self.region)

    @property
    def center_y(self) -> float:
        _, y0, _, y1 = self.bounds
        return (y0 + y1) / 2.0

    @property
    def height(self) -> float:
        _, y0, _, y1 = self.bounds
        return y1 - y0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "region": [list(p) for p in self.region],
        }


# ---------------------------------------------------------------------------
# Service contract
# ---------------------------------------------------------------------------


class PollStatus(Enum):
    """Operation status as reported by the service."""

    NOT_STARTED = "notStarted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PollResponse:
    """One poll result. ``lines`` is only meaningful once SUCCEEDED."""

    status: PollStatus
    lines: List[RawFragment] = field(default_factory=list)
    message: Optional[str] = None


class OCRService(ABC):
    """Two-call asynchronous OCR contract."""

    @abstractmethod
    def submit(self, image: bytes) -> str:
        """Start recognition of an encoded image. Returns an operation handle."""

    @abstractmethod
    def poll(self, handle: str) -> PollResponse:
        """Query the status of a previously submitted operation."""


# ---------------------------------------------------------------------------
# Azure Read adapter
# ---------------------------------------------------------------------------

_STATUS_NAMES = {s.value.lower(): s for s in PollStatus}


def parse_read_result(payload: Dict[str, Any]) -> PollResponse:
    """Parse an Azure Read v3.x ``GET analyzeResults`` payload.

    Lines without a usable bounding box are skipped. A line's confidence is
    the mean of its word confidences, or 1.0 when no words are reported.

    Raises:
        ServiceError: Unknown or missing status, or a payload that does not
            have the analyzeResults shape.
    """
    if not isinstance(payload, dict):
        raise ServiceError(f"Malformed read result: expected an object, got {type(payload).__name__}")

    raw_status = str(payload.get("status", "")).lower()
    status = _STATUS_NAMES.get(raw_status)
    if status is None:
        raise ServiceError(f"Unrecognised operation status: {payload.get('status')!r}")

    try:
        if status is PollStatus.FAILED:
            error = payload.get("error") or {}
            return PollResponse(status=status, message=error.get("message") or "Operation failed")

        if status is not PollStatus.SUCCEEDED:
            return PollResponse(status=status)

        lines: List[RawFragment] = []
        analyze = payload.get("analyzeResult") or {}
        for page in analyze.get("readResults") or []:
            for line in page.get("lines") or []:
                text = line.get("text") or ""
                try:
                    region = polygon_from_flat(line.get("boundingBox") or [])
                except ValueError:
                    log.debug("Skipping line %r without a usable bounding box", text)
                    continue
                words = line.get("words") or []
                confs = [float(w["confidence"]) for w in words if "confidence" in w]
                confidence = sum(confs) / len(confs) if confs else 1.0
                confidence = max(0.0, min(1.0, confidence))
                lines.append(RawFragment(text=str(text), confidence=confidence, region=region))
    except (TypeError, ValueError, AttributeError, KeyError) as e:
        raise ServiceError(f"Malformed read result: {e}") from e

    return PollResponse(status=status, lines=lines)


class AzureReadService(OCRService):
    """Azure Computer Vision Read API (v3.2) over plain HTTP.

    Args:
        endpoint: Resource endpoint, e.g. ``https://<name>.cognitiveservices.azure.com``.
        key: Subscription key.
        timeout: Socket timeout per HTTP request, seconds.
        language: Optional BCP-47 language hint.
    """

    READ_PATH = "/vision/v3.2/read/analyze"
    USER_AGENT = "sailcam/0.1"

    def __init__(
        self,
        endpoint: str,
        key: str,
        timeout: float = 30.0,
        language: Optional[str] = None,
    ):
        if not endpoint or not key:
            raise ValueError("AzureReadService needs an endpoint and a key")
        self.endpoint = endpoint.rstrip("/")
        self.key = key
        self.timeout = timeout
        self.language = language

    def _headers(self, content_type: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Ocp-Apim-Subscription-Key": self.key,
            "User-Agent": self.USER_AGENT,
        }
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def submit(self, image: bytes) -> str:
        url = self.endpoint + self.READ_PATH
        if self.language:
            url += "?" + urlencode({"language": self.language})

        req = Request(
            url,
            data=image,
            method="POST",
            headers=self._headers("application/octet-stream"),
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                handle = resp.headers.get("Operation-Location")
        except HTTPError as e:
            raise ServiceError(f"Read submit failed: HTTP {e.code} {e.reason}", status=e.code) from e
        except (URLError, OSError) as e:
            raise ServiceError(f"Read submit failed: {e}") from e

        if not handle:
            raise ServiceError("Read submit response has no Operation-Location header")
        return handle

    def poll(self, handle: str) -> PollResponse:
        req = Request(handle, method="GET", headers=self._headers())
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                body = resp.read()
        except HTTPError as e:
            raise ServiceError(f"Read poll failed: HTTP {e.code} {e.reason}", status=e.code) from e
        except (URLError, OSError) as e:
            raise ServiceError(f"Read poll failed: {e}") from e

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ServiceError(f"Read poll returned invalid JSON: {e}") from e
        return parse_read_result(payload)


# ---------------------------------------------------------------------------
# Gateway state machine
# ---------------------------------------------------------------------------


class OperationState(Enum):
    """Gateway-side lifecycle of one OCR operation."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = (OperationState.SUCCEEDED, OperationState.FAILED, OperationState.TIMED_OUT)


class OCROperation:
    """Drives one submit/poll cycle to a terminal state.

    Instances are single-use. ``handle`` is cleared once the operation is
    terminal so nothing keeps referencing an abandoned remote operation.

    Args:
        service: OCR service.
        poll_interval: Seconds to wait before each poll.
        max_attempts: Polls allowed before giving up.
        wait: ``wait(seconds, cancel)`` used between polls.
        cancel: Optional event; when set, the operation times out locally.
    """

    def __init__(
        self,
        service: OCRService,
        poll_interval: float,
        max_attempts: int,
        wait: Callable[[float, Optional[threading.Event]], None],
        cancel: Optional[threading.Event] = None,
    ):
        self.service = service
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._wait = wait
        self.cancel = cancel

        self.state = OperationState.PENDING
        self.handle: Optional[str] = None
        self.attempts = 0
        self.history: List[OperationState] = [self.state]

    def _transition(self, state: OperationState) -> None:
        log.debug("OCR operation %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)
        if state in TERMINAL_STATES:
            self.handle = None

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def _time_out(self, reason: str) -> PollTimeoutError:
        self._transition(OperationState.TIMED_OUT)
        return PollTimeoutError(reason)

    def run(self, image: bytes) -> List[RawFragment]:
        """Submit ``image`` and poll until the service reports a terminal status.

        Raises:
            ServiceError: Submission/poll failed or the operation reported Failed.
            PollTimeoutError: Attempts exhausted or cancelled.
            EmptyResultError: Succeeded without any text line.
        """
        if self.state is not OperationState.PENDING:
            raise RuntimeError("OCROperation instances are single-use")
        if self._cancelled():
            raise self._time_out("Scan cancelled before submission")

        try:
            self.handle = self.service.submit(image)
        except ServiceError:
            self._transition(OperationState.FAILED)
            raise
        self._transition(OperationState.SUBMITTED)
        self._transition(OperationState.POLLING)

        last_status = PollStatus.NOT_STARTED
        while self.attempts < self.max_attempts:
            self._wait(self.poll_interval, self.cancel)
            if self._cancelled():
                log.warning("OCR polling cancelled after %d attempts", self.attempts)
                raise self._time_out(f"Scan cancelled after {self.attempts} polls")

            self.attempts += 1
            try:
                response = self.service.poll(self.handle)
            except ServiceError:
                self._transition(OperationState.FAILED)
                raise
            last_status = response.status
            log.debug("Poll %d/%d: %s", self.attempts, self.max_attempts, response.status.value)

            if response.status is PollStatus.SUCCEEDED:
                self._transition(OperationState.SUCCEEDED)
                if not response.lines:
                    raise EmptyResultError("OCR succeeded but returned no text")
                return list(response.lines)

            if response.status is PollStatus.FAILED:
                self._transition(OperationState.FAILED)
                raise ServiceError(response.message or "OCR operation failed")

        raise self._time_out(
            f"OCR still {last_status.value} after {self.attempts} polls "
            f"({self.attempts * self.poll_interval:.0f}s)"
        )


class OCRGateway:
    """Blocking OCR front end over an asynchronous ``OCRService``.

    Args:
        service: OCR service adapter.
        poll_interval: Seconds between polls.
        max_attempts: Poll budget per image.
        sleep: Injectable ``sleep(seconds)``. When ``None`` the gateway waits
            on the cancel event (or ``time.sleep`` without one).
        max_outstanding: Maximum operations in flight across threads sharing
            this gateway. ``None`` means unbounded.
    """

    def __init__(
        self,
        service: OCRService,
        poll_interval: float = 1.0,
        max_attempts: int = 60,
        sleep: Optional[Callable[[float], None]] = None,
        max_outstanding: Optional[int] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if poll_interval < 0:
            raise ValueError("poll_interval must not be negative")
        self.service = service
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(max_outstanding) if max_outstanding else None

    def _wait(self, seconds: float, cancel: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel is not None:
            cancel.wait(seconds)
        else:
            time.sleep(seconds)

    def _acquire_slot(self, cancel: Optional[threading.Event]) -> None:
        while not self._slots.acquire(timeout=max(self.poll_interval, 0.05)):
            if cancel is not None and cancel.is_set():
                raise PollTimeoutError("Scan cancelled while waiting for an OCR slot")

    def recognize(
        self,
        image: Union[bytes, np.ndarray],
        cancel: Optional[threading.Event] = None,
    ) -> List[RawFragment]:
        """Recognise text in ``image`` (encoded bytes or an array).

        Returns:
            All recognised lines as RawFragments.

        Raises:
            ServiceError, PollTimeoutError, EmptyResultError
        """
        payload = image if isinstance(image, (bytes, bytearray)) else encode_image(image)
        operation = OCROperation(
            self.service,
            poll_interval=self.poll_interval,
            max_attempts=self.max_attempts,
            wait=self._wait,
            cancel=cancel,
        )

        if self._slots is None:
            return operation.run(bytes(payload))

        self._acquire_slot(cancel)
        try:
            return operation.run(bytes(payload))
        finally:
            self._slots.release()
