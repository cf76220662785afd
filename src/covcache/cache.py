"""Sparse per-contig coverage and mismatch aggregation.

Items (alignments or features) are pushed in one at a time with
:meth:`CoverageCache.add_item`. Depth is accumulated into sparse
``position -> Bin`` maps keyed by normalized contig name, and the bases observed
by each alignment are retained per position so that mismatch annotations can be
recomputed from scratch whenever a reference becomes available, or changes.

Coordinates are 0-based; intervals are closed.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import itertools
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Dict, Iterable, List, Mapping, Optional, Protocol, Set, Union

import numpy as np
from tqdm import tqdm

from .errors import InvalidRegionError, ReferenceUnavailableError
from .interval import GenomicInterval, normalize_contig
from .models import (
    NON_CONSUMING_OPS,
    QUERY_ONLY_OPS,
    REF_AND_QUERY_OPS,
    REF_ONLY_OPS,
    Alignment,
    Bin,
    CoverageItem,
    Feature,
)

logger = logging.getLogger(__name__)

_EMPTY_BINS: Mapping[int, Bin] = MappingProxyType({})

# Largest window depth_array will materialize densely.
MAX_DENSE_WINDOW = 10_000_000

ReferenceAnswer = Union[str, Awaitable[str], "concurrent.futures.Future[str]"]


class ReferenceSource(Protocol):
    def get_range_as_string(self, interval: GenomicInterval) -> ReferenceAnswer:
        ...


@dataclass(frozen=True)
class MismatchRequest:
    """A tagged mismatch update; ids increase monotonically per cache."""

    request_id: int
    interval: GenomicInterval


@dataclass
class _ContigState:
    bins: Dict[int, Bin] = field(default_factory=dict)
    evidence: Dict[int, Counter] = field(default_factory=dict)
    max_count: int = 0
    last_applied_id: int = 0
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def increment(self, pos: int) -> None:
        b = self.bins.get(pos)
        if b is None:
            b = Bin()
            self.bins[pos] = b
        b.count += 1
        if b.count > self.max_count:
            self.max_count = b.count


class CoverageCache:
    """Incremental depth and mismatch aggregation over many contigs.

    Parameters
    ----------
    reference_source:
        Default reference provider for :meth:`update_mismatches`. Any object with a
        ``get_range_as_string(interval)`` method returning the bases of the interval,
        either directly, as an awaitable, or as a ``concurrent.futures.Future``.
    """

    def __init__(self, reference_source: Optional[ReferenceSource] = None) -> None:
        self.reference_source = reference_source
        self._contigs: Dict[str, _ContigState] = {}
        self._registry_lock = threading.Lock()
        self._request_ids = itertools.count(1)
        self._tasks: Set["asyncio.Task[MismatchRequest]"] = set()

    # ------------------------------------------------------------------
    # ingestion
    # ------------------------------------------------------------------

    def _state(self, contig: str, *, create: bool) -> Optional[_ContigState]:
        key = normalize_contig(contig)
        state = self._contigs.get(key)
        if state is None and create:
            with self._registry_lock:
                state = self._contigs.setdefault(key, _ContigState())
        return state

    def add_item(self, item: CoverageItem) -> None:
        """Add one alignment or feature to the coverage."""
        if isinstance(item, Alignment):
            state = self._state(item.interval.contig, create=True)
            assert state is not None
            with state.lock:
                self._add_alignment(state, item)
        elif isinstance(item, Feature):
            state = self._state(item.position.contig, create=True)
            assert state is not None
            with state.lock:
                for pos in item.position.positions():
                    state.increment(pos)
        else:
            raise TypeError(f"Expected an Alignment or Feature, got {type(item).__name__}")

    def _add_alignment(self, state: _ContigState, read: Alignment) -> None:
        seq = read.sequence().upper()
        ref_pos = read.interval.start
        query_pos = 0

        for cigar in read.cigar_ops:
            op, length = cigar.op, cigar.length
            if length <= 0:
                continue

            if op in REF_AND_QUERY_OPS:
                overrun = ref_pos + length - 1 > read.interval.stop or (
                    seq and query_pos + length > len(seq)
                )
                if overrun:
                    logger.debug(
                        "CIGAR op %d%s overruns read %s at %s; skipping",
                        length,
                        op,
                        read.name or "?",
                        read.interval,
                    )
                else:
                    for offset in range(length):
                        pos = ref_pos + offset
                        state.increment(pos)
                        if seq:
                            observed = state.evidence.get(pos)
                            if observed is None:
                                observed = Counter()
                                state.evidence[pos] = observed
                            observed[seq[query_pos + offset]] += 1
                ref_pos += length
                query_pos += length
            elif op in REF_ONLY_OPS:
                ref_pos += length
            elif op in QUERY_ONLY_OPS:
                query_pos += length
            elif op in NON_CONSUMING_OPS:
                continue
            else:
                logger.debug("Unknown CIGAR op %r in read %s; advancing both cursors", op, read.name or "?")
                ref_pos += length
                query_pos += length

    def add_items(self, items: Iterable[CoverageItem], *, progress: bool = False) -> int:
        """Add every item from an iterable; returns the number of items added."""
        it: Iterable[CoverageItem] = items
        if progress:
            it = tqdm(it, unit="item", desc="Adding coverage")
        n = 0
        for item in it:
            self.add_item(item)
            n += 1
        return n

    # ------------------------------------------------------------------
    # read surfaces
    # ------------------------------------------------------------------

    def bins_for_ref(self, contig: str) -> Mapping[int, Bin]:
        """Live, read-only view of the position -> Bin map for a contig."""
        state = self._state(contig, create=False)
        if state is None:
            return _EMPTY_BINS
        return MappingProxyType(state.bins)

    def max_coverage_for_ref(self, contig: str) -> int:
        state = self._state(contig, create=False)
        return 0 if state is None else state.max_count

    def contigs(self) -> List[str]:
        return sorted(self._contigs)

    def depth_array(self, interval: GenomicInterval) -> np.ndarray:
        """Dense depth over a bounded window; index 0 is ``interval.start``.

        Windows longer than ``MAX_DENSE_WINDOW`` raise :class:`InvalidRegionError`;
        use :meth:`summarize` for chromosome-scale regions.
        """
        if interval.length() > MAX_DENSE_WINDOW:
            raise InvalidRegionError(
                f"{interval} spans {interval.length()} positions; depth_array is limited to {MAX_DENSE_WINDOW}"
            )
        depth = np.zeros(interval.length(), dtype=np.int64)
        state = self._state(interval.contig, create=False)
        if state is None:
            return depth
        with state.lock:
            for pos in self._positions_in(state.bins, interval):
                depth[pos - interval.start] = state.bins[pos].count
        return depth

    def summarize(self, interval: GenomicInterval) -> Dict[str, Any]:
        """Depth statistics over a region, computed from the sparse bins.

        Returns ``covered_positions``, ``max_coverage``, ``mean_depth`` (over the full
        region length, uncovered positions counting as zero) and ``mismatch_positions``.
        """
        covered = 0
        total = 0
        peak = 0
        mismatched = 0
        state = self._state(interval.contig, create=False)
        if state is not None:
            with state.lock:
                for pos in self._positions_in(state.bins, interval):
                    b = state.bins[pos]
                    covered += 1
                    total += b.count
                    peak = max(peak, b.count)
                    if b.mismatches:
                        mismatched += 1
        return {
            "covered_positions": covered,
            "max_coverage": peak,
            "mean_depth": total / interval.length(),
            "mismatch_positions": mismatched,
        }

    @staticmethod
    def _positions_in(table: Mapping[int, Any], interval: GenomicInterval) -> Iterable[int]:
        # Walk whichever is smaller: the window or the populated positions.
        if len(table) < interval.length():
            return sorted(p for p in table if interval.start <= p <= interval.stop)
        return (p for p in interval.positions() if p in table)

    # ------------------------------------------------------------------
    # mismatches
    # ------------------------------------------------------------------

    def _resolve_source(self, reference_source: Optional[ReferenceSource]) -> ReferenceSource:
        source = reference_source if reference_source is not None else self.reference_source
        if source is None:
            raise ValueError("No reference source configured for mismatch updates")
        return source

    def _has_evidence(self, interval: GenomicInterval) -> bool:
        state = self._state(interval.contig, create=False)
        return state is not None and bool(state.evidence)

    def _new_request(self, interval: GenomicInterval) -> MismatchRequest:
        return MismatchRequest(request_id=next(self._request_ids), interval=interval)

    def _ask(self, source: ReferenceSource, request: MismatchRequest) -> ReferenceAnswer:
        try:
            return source.get_range_as_string(request.interval)
        except Exception as e:
            raise ReferenceUnavailableError(
                f"Reference unavailable for {request.interval}: {e}", interval=request.interval
            ) from e

    def update_mismatches(
        self,
        interval: GenomicInterval,
        reference_source: Optional[ReferenceSource] = None,
    ) -> Union[None, "asyncio.Task[MismatchRequest]", "concurrent.futures.Future[MismatchRequest]"]:
        """Recompute ``ref``/``mismatches`` for every position of ``interval`` with evidence.

        Returns None once a synchronously answered request has been applied. When the
        provider answers with an awaitable inside a running event loop, returns the
        ``asyncio.Task`` that applies it; with no running loop the awaitable is driven
        to completion here. The cache holds on to pending tasks until they finish, so
        the returned task may be ignored. When the provider answers with a
        ``concurrent.futures.Future``, returns a future that resolves to the
        :class:`MismatchRequest` after the result has been applied.

        Raises
        ------
        ReferenceUnavailableError
            The provider failed or answered with a malformed sequence; nothing is
            applied.
        asyncio.CancelledError
            An awaited answer was cancelled. Cancellation is passed through unchanged
            rather than reported as an unavailable reference; nothing is applied.
        """
        source = self._resolve_source(reference_source)
        if not self._has_evidence(interval):
            logger.debug("No alignment evidence on %s; nothing to update", interval.contig)
            return None

        request = self._new_request(interval)
        answer = self._ask(source, request)

        if isinstance(answer, str):
            self._apply(request, answer)
            return None

        if isinstance(answer, concurrent.futures.Future):
            done: concurrent.futures.Future = concurrent.futures.Future()

            def _on_reference(fut: concurrent.futures.Future) -> None:
                try:
                    self._apply(request, self._unwrap(request, fut))
                except ReferenceUnavailableError as e:
                    done.set_exception(e)
                else:
                    done.set_result(request)

            answer.add_done_callback(_on_reference)
            return done

        if inspect.isawaitable(answer):
            coro = self._apply_when_ready(request, answer)
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(coro)
                return None
            task = loop.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return task

        raise ReferenceUnavailableError(
            f"Reference provider returned {type(answer).__name__}, expected a string",
            interval=interval,
        )

    async def update_mismatches_async(
        self,
        interval: GenomicInterval,
        reference_source: Optional[ReferenceSource] = None,
    ) -> Optional[MismatchRequest]:
        """Coroutine form of :meth:`update_mismatches`; awaits the provider's answer."""
        source = self._resolve_source(reference_source)
        if not self._has_evidence(interval):
            return None
        request = self._new_request(interval)
        answer = self._ask(source, request)
        if isinstance(answer, concurrent.futures.Future):
            answer = asyncio.wrap_future(answer)
        if inspect.isawaitable(answer):
            return await self._apply_when_ready(request, answer)
        self._apply(request, answer)
        return request

    async def _apply_when_ready(self, request: MismatchRequest, answer: Awaitable[str]) -> MismatchRequest:
        try:
            reference = await answer
        except Exception as e:
            raise ReferenceUnavailableError(
                f"Reference unavailable for {request.interval}: {e}", interval=request.interval
            ) from e
        self._apply(request, reference)
        return request

    @staticmethod
    def _unwrap(request: MismatchRequest, fut: concurrent.futures.Future) -> Any:
        try:
            return fut.result()
        except Exception as e:
            raise ReferenceUnavailableError(
                f"Reference unavailable for {request.interval}: {e}", interval=request.interval
            ) from e

    def _apply(self, request: MismatchRequest, reference: Any) -> None:
        interval = request.interval
        if not isinstance(reference, str):
            raise ReferenceUnavailableError(
                f"Reference provider returned {type(reference).__name__}, expected a string",
                interval=interval,
            )
        if len(reference) != interval.length():
            raise ReferenceUnavailableError(
                f"Reference for {interval} has {len(reference)} bases, expected {interval.length()}",
                interval=interval,
            )
        reference = reference.upper()

        state = self._state(interval.contig, create=False)
        if state is None:
            logger.debug("Mismatch request %d: contig %s has no state", request.request_id, interval.contig)
            return

        with state.lock:
            if request.request_id < state.last_applied_id:
                logger.debug(
                    "Applying mismatch request %d after newer request %d (%s)",
                    request.request_id,
                    state.last_applied_id,
                    interval,
                )
            state.last_applied_id = max(state.last_applied_id, request.request_id)

            for pos in self._positions_in(state.evidence, interval):
                observed = state.evidence[pos]
                if not observed:
                    continue
                ref_base = reference[pos - interval.start]
                b = state.bins[pos]
                b.ref = ref_base
                diff = {base: n for base, n in sorted(observed.items()) if base != ref_base and n > 0}
                b.mismatches = diff or None
