"""Detection pipeline orchestration and scan sessions.

One scan: image -> variants -> (per variant) OCR -> candidates -> groups ->
ranked results, then the variant with the best mean confidence wins.

Classes:
    VariantOutcome     - One variant's ranked results
    VariantFailure     - A variant whose OCR call failed
    VariantTrace       - Intermediate data for one variant (debug only)
    ScanTrace          - All VariantTraces of one scan
    DetectionPipeline  - Runs every variant and selects the winner
    ScanReport         - What a ScanSession hands back to its caller
    ScanSession        - Owns at most one in-flight scan, supports stop()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import ScanConfig
from .errors import (
    EmptyResultError,
    NoTextDetectedError,
    PollTimeoutError,
    ScanInProgressError,
    ServiceError,
)
from .ocr import AzureReadService, OCRGateway, OCRService, RawFragment
from .recognition import (
    CandidateExtractor,
    ConfidenceRanker,
    FragmentGroup,
    NumericCandidate,
    RankedResult,
    SpatialGrouper,
)
from .registry import Competitor, CompetitorRegistry, DetectionLog, DetectionRecord
from .variants import ImageVariantGenerator, decode_image

log = logging.getLogger(__name__)

ImageInput = Union[bytes, bytearray, np.ndarray]


# ---------------------------------------------------------------------------
# Outcomes and traces
# ---------------------------------------------------------------------------


@dataclass
class VariantOutcome:
    """Ranked results of one image variant."""

    variant_name: str
    results: List[RankedResult] = field(default_factory=list)

    @property
    def mean_confidence(self) -> float:
        if not self.results:
            return 0.0
        return sum(r.confidence for r in self.results) / len(self.results)

    def to_dict(self) -> dict:
        return {
            "variant_name": self.variant_name,
            "mean_confidence": self.mean_confidence,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class VariantFailure:
    """A variant whose OCR step raised."""

    variant_name: str
    error: Exception


@dataclass
class VariantTrace:
    """Everything one variant produced on its way to the ranked results."""

    variant_name: str
    fragments: List[RawFragment] = field(default_factory=list)
    groups: List[FragmentGroup] = field(default_factory=list)
    candidates: List[NumericCandidate] = field(default_factory=list)
    discarded: List[NumericCandidate] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "variant_name": self.variant_name,
            "error": self.error,
            "fragments": [f.to_dict() for f in self.fragments],
            "groups": [[f.text for f in g.fragments] for g in self.groups],
            "candidates": [c.to_dict() for c in self.candidates],
            "discarded": [c.to_dict() for c in self.discarded],
        }


@dataclass
class ScanTrace:
    """Read-only diagnostics side channel for one scan."""

    variants: List[VariantTrace] = field(default_factory=list)
    winner: Optional[str] = None

    def get(self, variant_name: str) -> Optional[VariantTrace]:
        for vt in self.variants:
            if vt.variant_name == variant_name:
                return vt
        return None

    def to_dict(self) -> dict:
        return {
            "winner": self.winner,
            "variants": [vt.to_dict() for vt in self.variants],
        }


# ---------------------------------------------------------------------------
# DetectionPipeline
# ---------------------------------------------------------------------------


class DetectionPipeline:
    """Runs OCR over every image variant and picks the best one.

    A failing variant never aborts the scan: ``ServiceError`` and
    ``PollTimeoutError`` are recorded and the next variant runs. An OCR call
    that succeeds with no text counts as an empty outcome.

    Args:
        gateway: OCR gateway shared by all variants.
        generator: Image variant generator.
        extractor: Candidate extractor.
        grouper: Spatial grouper.
        ranker: Deduplicator and ranker.
        max_workers: Variants processed concurrently (1 = sequential).
    """

    def __init__(
        self,
        gateway: OCRGateway,
        generator: Optional[ImageVariantGenerator] = None,
        extractor: Optional[CandidateExtractor] = None,
        grouper: Optional[SpatialGrouper] = None,
        ranker: Optional[ConfidenceRanker] = None,
        max_workers: int = 1,
    ):
        self.gateway = gateway
        self.generator = generator or ImageVariantGenerator()
        self.extractor = extractor or CandidateExtractor()
        self.grouper = grouper or SpatialGrouper()
        self.ranker = ranker or ConfidenceRanker()
        self.max_workers = max(1, max_workers)

    @classmethod
    def from_config(
        cls,
        config: ScanConfig,
        service: Optional[OCRService] = None,
        generator: Optional[ImageVariantGenerator] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> "DetectionPipeline":
        """Wire a pipeline from a ScanConfig.

        Without ``service`` an ``AzureReadService`` is built from the
        config's endpoint and key.
        """
        if service is None:
            service = AzureReadService(
                config.ocr_endpoint or "",
                config.ocr_key or "",
                timeout=config.request_timeout,
            )
        gateway = OCRGateway(
            service,
            poll_interval=config.poll_interval,
            max_attempts=config.max_attempts,
            sleep=sleep,
            max_outstanding=config.max_outstanding,
        )
        extractor = CandidateExtractor(
            min_digits=config.min_digits,
            max_digits=config.max_digits,
            min_value=config.min_value,
            max_value=config.max_value,
            reversed_confidence_scale=config.reversed_confidence_scale,
        )
        return cls(
            gateway,
            generator=generator,
            extractor=extractor,
            grouper=SpatialGrouper(config.adjacency_factor),
            ranker=ConfidenceRanker(config.min_confidence),
            max_workers=config.max_workers,
        )

    # -- per-variant stages --------------------------------------------------

    def process_fragments(
        self,
        variant_name: str,
        fragments: Sequence[RawFragment],
        vtrace: Optional[VariantTrace] = None,
    ) -> VariantOutcome:
        """Extraction, grouping and ranking over one variant's fragments."""
        candidates: List[NumericCandidate] = []
        for fragment in fragments:
            candidates.extend(self.extractor.extract(fragment))

        groups = self.grouper.group(fragments)
        for group in groups:
            # Single-fragment groups read the same as the fragment itself
            if len(group) > 1:
                candidates.extend(self.extractor.extract_group(group))

        results, discarded = self.ranker.rank_with_discards(candidates)

        if vtrace is not None:
            vtrace.fragments = list(fragments)
            vtrace.groups = groups
            vtrace.candidates = candidates
            vtrace.discarded = discarded

        log.debug(
            "Variant %s: %d fragments, %d groups, %d candidates, %d results",
            variant_name,
            len(fragments),
            len(groups),
            len(candidates),
            len(results),
        )
        return VariantOutcome(variant_name, results)

    def _run_variant(
        self,
        name: str,
        image: np.ndarray,
        cancel: Optional[threading.Event],
    ) -> Tuple[Union[VariantOutcome, VariantFailure], VariantTrace]:
        vtrace = VariantTrace(name)
        try:
            fragments = self.gateway.recognize(image, cancel=cancel)
        except EmptyResultError:
            log.debug("Variant %s: OCR returned no text", name)
            return VariantOutcome(name), vtrace
        except (ServiceError, PollTimeoutError) as e:
            log.warning("Variant %s: OCR failed: %s", name, e)
            vtrace.error = f"{type(e).__name__}: {e}"
            return VariantFailure(name, e), vtrace

        return self.process_fragments(name, fragments, vtrace), vtrace

    def run_variants(
        self,
        image: ImageInput,
        cancel: Optional[threading.Event] = None,
        trace: Optional[ScanTrace] = None,
    ) -> Tuple[List[VariantOutcome], List[VariantFailure]]:
        """Run every variant and return outcomes and failures in variant order.

        Raises:
            ValidationError: The input image is unusable; no variant runs.
        """
        if isinstance(image, (bytes, bytearray)):
            image = decode_image(bytes(image))
        variants = self.generator.generate(image)

        if self.max_workers > 1 and len(variants) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [
                    executor.submit(self._run_variant, name, img, cancel)
                    for name, img in variants
                ]
                finished = [f.result() for f in futures]
        else:
            finished = [self._run_variant(name, img, cancel) for name, img in variants]

        outcomes: List[VariantOutcome] = []
        failures: List[VariantFailure] = []
        for result, vtrace in finished:
            if isinstance(result, VariantFailure):
                failures.append(result)
            else:
                outcomes.append(result)
            if trace is not None:
                trace.variants.append(vtrace)
        return outcomes, failures

    @staticmethod
    def _select_error(failures: Sequence[VariantFailure]) -> Exception:
        """Error to surface when every variant failed at the OCR step."""
        kinds = {type(f.error) for f in failures}
        if len(kinds) == 1:
            return failures[0].error
        for f in failures:
            if isinstance(f.error, ServiceError):
                return f.error
        return failures[0].error

    def run(
        self,
        image: ImageInput,
        cancel: Optional[threading.Event] = None,
        trace: Optional[ScanTrace] = None,
    ) -> VariantOutcome:
        """Scan one image and return the winning variant's outcome.

        Args:
            image: Encoded image bytes or a decoded array.
            cancel: Event that stops OCR polling when set.
            trace: Optional ScanTrace to fill with intermediate data.

        Raises:
            ValidationError: The input image is unusable.
            ServiceError, PollTimeoutError: Every variant failed at the OCR step.
            NoTextDetectedError: No variant produced a qualifying result.
        """
        outcomes, failures = self.run_variants(image, cancel=cancel, trace=trace)

        best: Optional[VariantOutcome] = None
        for outcome in outcomes:
            if not outcome.results:
                continue
            if best is None or outcome.mean_confidence > best.mean_confidence:
                best = outcome

        if best is not None:
            if trace is not None:
                trace.winner = best.variant_name
            log.info(
                "Scan winner %s: %s (mean confidence %.2f)",
                best.variant_name,
                [r.value for r in best.results],
                best.mean_confidence,
            )
            return best

        if failures and not outcomes:
            raise self._select_error(failures)

        raise NoTextDetectedError(
            f"No sail number found in {len(outcomes)} variants ({len(failures)} failed)"
        )


# ---------------------------------------------------------------------------
# ScanSession
# ---------------------------------------------------------------------------


@dataclass
class ScanReport:
    """Result handed to the caller of ``ScanSession.scan``.

    ``outcome`` is None when no sail number was found this scan.
    """

    outcome: Optional[VariantOutcome] = None
    records: List[DetectionRecord] = field(default_factory=list)
    competitors: Dict[int, Optional[Competitor]] = field(default_factory=dict)

    @property
    def found(self) -> bool:
        return self.outcome is not None and bool(self.outcome.results)

    @property
    def values(self) -> List[int]:
        return [r.value for r in self.outcome.results] if self.outcome else []


class ScanSession:
    """Exclusive owner of one in-flight scan.

    A second ``scan`` while one is running raises ``ScanInProgressError``.
    ``stop`` cancels the running scan; its OCR polling ends without
    another request. Each scan gets its own cancel event, so a ``stop``
    issued while no scan is running is a no-op and never leaks into the
    next scan.

    Args:
        pipeline: Detection pipeline.
        registry: Optional competitor lookup.
        sink: Optional detection log that receives every winning result.
        clock: Timestamp source for DetectionRecords.
    """

    def __init__(
        self,
        pipeline: DetectionPipeline,
        registry: Optional[CompetitorRegistry] = None,
        sink: Optional[DetectionLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.pipeline = pipeline
        self.registry = registry
        self.sink = sink
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Guards _cancel; _cancel is set only while a scan owns the session
        self._state = threading.Lock()
        self._cancel: Optional[threading.Event] = None

    @property
    def is_scanning(self) -> bool:
        with self._state:
            return self._cancel is not None

    def stop(self) -> None:
        """Cancel the scan in flight, if any."""
        with self._state:
            if self._cancel is None:
                return
            log.info("Stopping scan")
            self._cancel.set()

    def scan(self, image: ImageInput, trace: Optional[ScanTrace] = None) -> ScanReport:
        """Run one scan.

        Returns:
            ScanReport; ``found`` is False when no sail number was detected.

        Raises:
            ScanInProgressError: Another scan owns the session.
            ValidationError, ServiceError, PollTimeoutError: As DetectionPipeline.run.
        """
        with self._state:
            if self._cancel is not None:
                raise ScanInProgressError("A scan is already running in this session")
            cancel = self._cancel = threading.Event()
        try:
            try:
                outcome = self.pipeline.run(image, cancel=cancel, trace=trace)
            except NoTextDetectedError as e:
                log.info("%s", e)
                return ScanReport()

            now = self._clock()
            records = [DetectionRecord.from_result(r, now) for r in outcome.results]
            if self.sink is not None:
                self.sink.write_many(records)

            competitors: Dict[int, Optional[Competitor]] = {}
            if self.registry is not None:
                for r in outcome.results:
                    competitors[r.value] = self.registry.lookup(r.value)

            return ScanReport(outcome=outcome, records=records, competitors=competitors)
        finally:
            with self._state:
                self._cancel = None
