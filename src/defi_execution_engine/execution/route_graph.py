"""Enumeration of simple multi-hop routes across trading venues."""

from __future__ import annotations

import math
from typing import AbstractSet, Iterator, List, Sequence, Tuple, Union

from ..datalake.schemas import RoutePath, Venue
from ..exceptions import InvalidParameters

VenueCollection = Union[Sequence[Venue], AbstractSet[Venue]]


def expected_path_count(venue_count: int, max_hops: int) -> int:
    """Number of ordered, non-repeating selections of 1..max_hops venues."""

    return sum(math.perm(venue_count, k) for k in range(1, min(max_hops, venue_count) + 1))


class RouteGraphBuilder:
    """Produce every simple path of length 1..max_hops in depth-first order."""

    def ordered_ids(self, venues: VenueCollection) -> Tuple[str, ...]:
        if isinstance(venues, AbstractSet):
            ordered = sorted(venues, key=lambda venue: venue.venue_id)
        else:
            ordered = list(venues)
        if not ordered:
            raise InvalidParameters("At least one venue is required to build routes")
        ids = tuple(venue.venue_id for venue in ordered)
        if len(set(ids)) != len(ids):
            raise InvalidParameters("Venue identifiers must be unique", {"venues": list(ids)})
        return ids

    def iter_paths(self, venues: VenueCollection, max_hops: int) -> Iterator[RoutePath]:
        if max_hops < 1:
            raise InvalidParameters("max_hops must be at least 1", {"max_hops": max_hops})
        ids = self.ordered_ids(venues)
        stack: List[Tuple[str, ...]] = [(venue_id,) for venue_id in reversed(ids)]
        while stack:
            prefix = stack.pop()
            yield RoutePath(prefix)
            if len(prefix) >= max_hops:
                continue
            for venue_id in reversed(ids):
                if venue_id not in prefix:
                    stack.append(prefix + (venue_id,))

    def enumerate_paths(self, venues: VenueCollection, max_hops: int) -> List[RoutePath]:
        # Validate eagerly so callers see InvalidParameters at the call site.
        if max_hops < 1:
            raise InvalidParameters("max_hops must be at least 1", {"max_hops": max_hops})
        self.ordered_ids(venues)
        return list(self.iter_paths(venues, max_hops))


__all__ = ["RouteGraphBuilder", "expected_path_count"]
