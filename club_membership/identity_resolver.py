"""Identity Resolver for the club membership engine.

Decides which existing member (if any) an incoming record refers to,
using a per-batch index of members by normalized email and phone.

Resolution strategy (priority order):
    1. Email AND phone both hit      -> the members sharing both channels
         - exactly one               -> Resolved
         - more than one             -> Ambiguous(DUPLICATE_RECORD)
         - none (channels disagree)  -> name tie-break over the union,
                                        else Ambiguous(CROSS_CHANNEL)
    2. Only one channel hits         -> that channel's members
         - exactly one               -> Resolved
         - several                   -> name tie-break,
                                        else Ambiguous(SHARED_CHANNEL)
    3. Nothing hits                  -> NotFound (a new member)

An ambiguous result is never auto-applied: a membership update applied
to the wrong person is worse than asking a human.  DUPLICATE_RECORD means
the member table itself is corrupt (two rows with the same email and
phone) and is logged as an error; the other two kinds are ordinary
data ambiguity and are logged as warnings.

Also provides the pairwise similarity measure used to spot members who
joined again instead of renewing.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Union

from .models import Member, Transaction

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Similarity weights: an email match alone outweighs every other signal.
EMAIL_WEIGHT = 4
PHONE_WEIGHT = 1
FIRST_NAME_WEIGHT = 1
LAST_NAME_WEIGHT = 1
IDENTICAL_SCORE = EMAIL_WEIGHT + PHONE_WEIGHT + FIRST_NAME_WEIGHT + LAST_NAME_WEIGHT

# Minimum similarity for two member rows to be flagged as the same person.
SAME_PERSON_THRESHOLD = 2


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _normalize_email(email: str | None) -> str:
    """Lowercase and trim an email address."""
    if not email:
        return ""
    return str(email).strip().lower()


def _normalize_phone(phone: str | None) -> str:
    """Digits only; a leading US country code is dropped.

    ``"(831) 555-1234"``, ``"831.555.1234"`` and ``"+1 831 555 1234"`` all
    normalize to ``"8315551234"``.
    """
    if phone is None:
        return ""
    digits = re.sub(r"\D", "", str(phone))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits


def _normalize_name(name: str | None) -> str:
    """Lowercase, strip, drop trailing punctuation, collapse whitespace."""
    if not name:
        return ""
    result = str(name).lower().strip()
    result = result.rstrip(".,;:")
    result = re.sub(r"\s+", " ", result)
    return result


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

class AmbiguityKind(Enum):
    """Why a candidate could not be pinned to a single member."""
    DUPLICATE_RECORD = "duplicate_record"   # several rows share email AND phone
    CROSS_CHANNEL = "cross_channel"         # email says one member, phone another
    SHARED_CHANNEL = "shared_channel"       # several members share the one channel that hit


@dataclass(frozen=True)
class Resolved:
    index: int


@dataclass(frozen=True)
class Ambiguous:
    indices: frozenset[int]
    kind: AmbiguityKind


@dataclass(frozen=True)
class NotFound:
    pass


Resolution = Union[Resolved, Ambiguous, NotFound]


@dataclass
class Candidate:
    """The identifying fields of an incoming record."""
    email: str = ""
    phone: str = ""
    first: str = ""
    last: str = ""

    @classmethod
    def from_transaction(cls, txn: Transaction) -> Candidate:
        return cls(email=txn.email, phone=txn.phone, first=txn.first, last=txn.last)

    @classmethod
    def from_member(cls, member: Member) -> Candidate:
        return cls(email=member.email, phone=member.phone, first=member.first, last=member.last)

    def describe(self) -> str:
        name = f"{self.first} {self.last}".strip() or "(no name)"
        return f"{name} <{self.email or 'no email'}> {self.phone or 'no phone'}"


class MultiMap:
    """A key -> set-of-indices map whose lookups never raise."""

    def __init__(self) -> None:
        self._data: dict[str, set[int]] = defaultdict(set)

    def add(self, key: str, index: int) -> None:
        if key:
            self._data[key].add(index)

    def remove(self, key: str, index: int) -> None:
        values = self._data.get(key)
        if values is None:
            return
        values.discard(index)
        if not values:
            del self._data[key]

    def get(self, key: str) -> set[int]:
        """Return a copy of the indices for *key* (empty set when absent)."""
        return set(self._data.get(key, ()))

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)


@dataclass
class MemberIndex:
    """Email and phone multi-maps over one member collection.

    Built fresh at the start of a batch and discarded at the end.  Indices
    refer to positions in the member list the index was built from.
    """
    email_map: MultiMap = field(default_factory=MultiMap)
    phone_map: MultiMap = field(default_factory=MultiMap)

    @classmethod
    def build(cls, members: list[Member], active_only: bool = True) -> MemberIndex:
        index = cls()
        for i, member in enumerate(members):
            if active_only and not member.is_active:
                continue
            index.add(i, member)
        return index

    def add(self, i: int, member: Member) -> None:
        self.email_map.add(_normalize_email(member.email), i)
        self.phone_map.add(_normalize_phone(member.phone), i)

    def remove(self, i: int, member: Member) -> None:
        self.email_map.remove(_normalize_email(member.email), i)
        self.phone_map.remove(_normalize_phone(member.phone), i)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def _match_by_name(
    candidate: Candidate,
    indices: Iterable[int],
    members: list[Member],
) -> set[int]:
    """Indices whose normalized first AND last name equal the candidate's."""
    first = _normalize_name(candidate.first)
    last = _normalize_name(candidate.last)
    if not first and not last:
        return set()
    return {
        i for i in indices
        if _normalize_name(members[i].first) == first
        and _normalize_name(members[i].last) == last
    }


def _ambiguous(candidate: Candidate, indices: set[int], kind: AmbiguityKind) -> Ambiguous:
    ordered = sorted(indices)
    if kind is AmbiguityKind.DUPLICATE_RECORD:
        logger.error(
            "Member table has %d rows sharing email and phone with %s (rows %s) "
            "-- duplicate records need cleanup",
            len(ordered), candidate.describe(), ordered,
        )
    elif kind is AmbiguityKind.CROSS_CHANNEL:
        logger.warning(
            "Email and phone of %s point at different members (rows %s) "
            "and the name does not decide -- manual review required",
            candidate.describe(), ordered,
        )
    else:
        logger.warning(
            "%d members share a contact channel with %s (rows %s) "
            "and the name does not decide -- manual review required",
            len(ordered), candidate.describe(), ordered,
        )
    return Ambiguous(indices=frozenset(indices), kind=kind)


def resolve(
    candidate: Candidate,
    members: list[Member],
    index: MemberIndex,
) -> Resolution:
    """Decide which member *candidate* refers to.

    Pure function over its inputs; see the module docstring for the rules.
    """
    email = _normalize_email(candidate.email)
    phone = _normalize_phone(candidate.phone)
    by_email = index.email_map.get(email) if email else set()
    by_phone = index.phone_map.get(phone) if phone else set()

    if by_email and by_phone:
        both = by_email & by_phone
        if len(both) == 1:
            return Resolved(next(iter(both)))
        if len(both) > 1:
            return _ambiguous(candidate, both, AmbiguityKind.DUPLICATE_RECORD)

        union = by_email | by_phone
        named = _match_by_name(candidate, union, members)
        if len(named) == 1:
            logger.debug("Channels disagree for %s; name picked row %s",
                         candidate.describe(), next(iter(named)))
            return Resolved(next(iter(named)))
        return _ambiguous(candidate, union, AmbiguityKind.CROSS_CHANNEL)

    hits = by_email or by_phone
    if not hits:
        return NotFound()
    if len(hits) == 1:
        return Resolved(next(iter(hits)))

    named = _match_by_name(candidate, hits, members)
    if len(named) == 1:
        return Resolved(next(iter(named)))
    return _ambiguous(candidate, hits, AmbiguityKind.SHARED_CHANNEL)


# ---------------------------------------------------------------------------
# Similarity / possible renewals
# ---------------------------------------------------------------------------

def similarity_score(a: Member, b: Member) -> int:
    """Weighted count of matching identity fields (0 .. IDENTICAL_SCORE)."""
    score = 0
    email_a = _normalize_email(a.email)
    if email_a and email_a == _normalize_email(b.email):
        score += EMAIL_WEIGHT
    phone_a = _normalize_phone(a.phone)
    if phone_a and phone_a == _normalize_phone(b.phone):
        score += PHONE_WEIGHT
    first_a = _normalize_name(a.first)
    if first_a and first_a == _normalize_name(b.first):
        score += FIRST_NAME_WEIGHT
    last_a = _normalize_name(a.last)
    if last_a and last_a == _normalize_name(b.last):
        score += LAST_NAME_WEIGHT
    return score


@dataclass
class PossibleRenewal:
    """Two active member rows that look like one person who re-joined.

    ``earlier`` joined first; ``later`` joined on or before ``earlier``
    expired, so ``later`` should have been a renewal of ``earlier``.
    """
    earlier: int
    later: int
    score: int


def is_possible_renewal(earlier: Member, later: Member) -> bool:
    if earlier.joined is None or later.joined is None or earlier.expires is None:
        return False
    return later.joined <= earlier.expires


def find_possible_renewals(members: list[Member]) -> list[PossibleRenewal]:
    """All pairs of active members that look like a missed renewal."""
    active = [(i, m) for i, m in enumerate(members) if m.is_active]
    results: list[PossibleRenewal] = []
    for pos, (i, a) in enumerate(active):
        for j, b in active[pos + 1:]:
            score = similarity_score(a, b)
            if score < SAME_PERSON_THRESHOLD:
                continue
            if a.joined is None or b.joined is None:
                continue
            (e_idx, earlier), (l_idx, later) = sorted(
                [(i, a), (j, b)], key=lambda pair: (pair[1].joined, pair[0])
            )
            if is_possible_renewal(earlier, later):
                results.append(PossibleRenewal(earlier=e_idx, later=l_idx, score=score))
    logger.info("Found %d possible renewal pair(s) among %d active members",
                len(results), len(active))
    return results
