#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Selection Loop

Picks one candidate per call that satisfies every filter, paging through the
catalog source until a match is found or the source has nothing left.
"""

import logging
import random
from collections import Counter
from typing import Optional

from candidate_sources import Candidate, CandidatePage, CandidateSource
from filters import DuplicateLookup, FilterCriteria, RejectReason, evaluate
from pipeline_robustness import FilterExhausted, SourceExhaustedError

logger = logging.getLogger("artwork_curator")


class _RunLookup:
    """Registry view that also treats this run's earlier picks as duplicates."""

    def __init__(self, registry: DuplicateLookup, selected: set[int]):
        self.registry = registry
        self.selected = selected

    def is_duplicate(self, artwork_id: int) -> bool:
        return artwork_id in self.selected or self.registry.is_duplicate(artwork_id)

    def was_deleted(self, artwork_id: int) -> bool:
        return self.registry.was_deleted(artwork_id)


class SelectionLoop:
    """
    Stateful candidate selection for one pipeline run.

    The current page is kept between calls, so later picks continue where
    earlier ones left off. Each page is shuffled once on arrival so ties in
    ranking position are not always resolved the same way.
    """

    def __init__(
        self,
        source: CandidateSource,
        criteria: FilterCriteria,
        registry: DuplicateLookup,
        rng: Optional[random.Random] = None,
    ):
        self.source = source
        self.criteria = criteria
        self.rng = rng or random.Random()
        self.selected_ids: set[int] = set()
        self.lookup = _RunLookup(registry, self.selected_ids)
        self.rejections: Counter[RejectReason] = Counter()
        self.pages_fetched = 0
        self.page: Optional[CandidatePage] = None
        self._order: list[Candidate] = []

    async def next_match(self) -> Candidate:
        """
        Return the next candidate satisfying every filter.

        Raises:
            SourceExhaustedError: The source has no further pages.
            TransportError: A page fetch failed.
        """
        if self.page is None:
            self._accept_page(await self.source.fetch_first_page())

        while True:
            try:
                candidate = self._scan()
            except FilterExhausted as e:
                logger.info(str(e))
                if self.page.is_terminal:
                    raise SourceExhaustedError(
                        f"No candidate satisfied the filters after {self.pages_fetched} page(s)"
                    ) from e
                self._accept_page(await self.source.fetch_next_page(self.page.continuation))
                continue

            self.selected_ids.add(candidate.id)
            logger.info(f"Selected {candidate}")
            return candidate

    def _scan(self) -> Candidate:
        """
        Linear scan of the shuffled page with early exit on the first match.

        Every candidate leaves the page order once evaluated, so a later call
        resumes with the untried remainder and each rejection is counted once.
        """
        while self._order:
            candidate = self._order.pop(0)
            result = evaluate(
                candidate,
                self.criteria,
                self.lookup,
                skip_rating=self.source.rating_prefiltered,
            )
            if result.passed:
                return candidate
            self.rejections[result.reason] += 1
        raise FilterExhausted(
            f"All {len(self.page.candidates)} candidates on page {self.pages_fetched} traversed, fetching a new page"
        )

    def _accept_page(self, page: CandidatePage) -> None:
        self.page = page
        self.pages_fetched += 1
        self._order = list(page.candidates)
        self.rng.shuffle(self._order)

    def rejection_summary(self) -> dict[str, int]:
        return {reason.value: count for reason, count in self.rejections.items()}
