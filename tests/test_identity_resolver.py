"""Tests for club_membership.identity_resolver -- member identity resolution.

Covers:
- Email / phone / name normalization
- MultiMap lookups never raising
- MemberIndex build (active only) and incremental add/remove
- resolve(): single-channel hits, intersection, name tie-break,
  duplicate records, cross-channel and shared-channel ambiguity
- Similarity scoring and possible-renewal detection
"""

import logging
from datetime import date

import pytest

from club_membership.identity_resolver import (
    EMAIL_WEIGHT,
    IDENTICAL_SCORE,
    Ambiguous,
    AmbiguityKind,
    Candidate,
    MemberIndex,
    MultiMap,
    NotFound,
    Resolved,
    _normalize_email,
    _normalize_name,
    _normalize_phone,
    find_possible_renewals,
    is_possible_renewal,
    resolve,
    similarity_score,
)
from club_membership.models import Member, MemberStatus, Transaction


# ============================================================================
# Test Data Helpers
# ============================================================================

def _make_member(email="a@example.com", phone="111", first="Alice", last="A", **overrides):
    """Create a Member with reasonable defaults."""
    defaults = {
        "email": email,
        "phone": phone,
        "first": first,
        "last": last,
        "joined": date(2024, 1, 1),
        "expires": date(2025, 1, 1),
        "status": MemberStatus.ACTIVE,
    }
    defaults.update(overrides)
    return Member(**defaults)


def _resolve(members, email="", phone="", first="", last=""):
    index = MemberIndex.build(members)
    return resolve(Candidate(email=email, phone=phone, first=first, last=last), members, index)


# ============================================================================
# Normalization
# ============================================================================

class TestNormalizeEmail:

    def test_lowercase_and_strip(self):
        assert _normalize_email("  Alice@Example.COM ") == "alice@example.com"

    def test_none(self):
        assert _normalize_email(None) == ""


class TestNormalizePhone:
    """Phones compare on digits only."""

    @pytest.mark.parametrize("raw", [
        "(831) 555-1234",
        "831.555.1234",
        "831-555-1234",
        "+1 831 555 1234",
        "18315551234",
    ])
    def test_formats_collapse(self, raw):
        assert _normalize_phone(raw) == "8315551234"

    def test_empty(self):
        assert _normalize_phone("") == ""
        assert _normalize_phone(None) == ""

    def test_short_numbers_kept(self):
        assert _normalize_phone("111") == "111"


class TestNormalizeName:

    def test_lowercase(self):
        assert _normalize_name("Alice") == "alice"

    def test_trailing_punctuation(self):
        assert _normalize_name("Smith Jr.") == "smith jr"

    def test_collapse_spaces(self):
        assert _normalize_name("  Mary   Ann ") == "mary ann"

    def test_empty(self):
        assert _normalize_name("") == ""


# ============================================================================
# MultiMap / MemberIndex
# ============================================================================

class TestMultiMap:

    def test_missing_key_is_empty_set(self):
        assert MultiMap().get("nobody") == set()

    def test_get_returns_copy(self):
        mm = MultiMap()
        mm.add("k", 1)
        mm.get("k").add(99)
        assert mm.get("k") == {1}

    def test_blank_key_ignored(self):
        mm = MultiMap()
        mm.add("", 3)
        assert len(mm) == 0

    def test_remove_last_value_drops_key(self):
        mm = MultiMap()
        mm.add("k", 1)
        mm.remove("k", 1)
        assert "k" not in mm

    def test_remove_unknown_is_noop(self):
        mm = MultiMap()
        mm.remove("k", 1)
        assert len(mm) == 0


class TestMemberIndex:

    def test_expired_members_not_indexed(self):
        members = [
            _make_member("a@example.com", "111"),
            _make_member("b@example.com", "222", status=MemberStatus.EXPIRED),
        ]
        index = MemberIndex.build(members)
        assert index.email_map.get("a@example.com") == {0}
        assert index.email_map.get("b@example.com") == set()

    def test_build_all(self):
        members = [_make_member("b@example.com", "222", status=MemberStatus.EXPIRED)]
        index = MemberIndex.build(members, active_only=False)
        assert index.email_map.get("b@example.com") == {0}

    def test_normalized_keys(self):
        index = MemberIndex.build([_make_member("Alice@Example.com", "(831) 555-1234")])
        assert index.email_map.get("alice@example.com") == {0}
        assert index.phone_map.get("8315551234") == {0}

    def test_add_and_remove(self):
        member = _make_member("c@example.com", "333")
        index = MemberIndex()
        index.add(5, member)
        assert index.phone_map.get("333") == {5}
        index.remove(5, member)
        assert index.phone_map.get("333") == set()


# ============================================================================
# Resolution
# ============================================================================

class TestResolve:
    """Identity-first resolution over email and phone multi-maps."""

    def test_no_match_is_not_found(self):
        members = [_make_member("a@example.com", "111", "Alice", "A")]
        result = _resolve(members, "nomatch@example.com", "999", "No", "Match")
        assert result == NotFound()

    def test_single_email_match(self):
        members = [
            _make_member("a@example.com", "111", "Alice", "A"),
            _make_member("b@example.com", "222", "Bob", "B"),
        ]
        assert _resolve(members, "b@example.com", "", "Bob", "B") == Resolved(1)

    def test_single_phone_match(self):
        members = [
            _make_member("a@example.com", "111", "Alice", "A"),
            _make_member("b@example.com", "222", "Bob", "B"),
        ]
        assert _resolve(members, "", "111", "Alice", "A") == Resolved(0)

    def test_intersection_picks_single_index(self):
        """Phone 111 is shared, but only member 0 also has the email."""
        members = [
            _make_member("a@example.com", "111", "Alice", "A"),
            _make_member("a2@example.com", "222", "Bob", "B"),
            _make_member("b@example.com", "111", "Carol", "C"),
        ]
        assert _resolve(members, "a@example.com", "111", "Alice", "A") == Resolved(0)

    def test_shared_email_same_name_is_ambiguous(self):
        members = [
            _make_member("same@example.com", "111", "Alice", "A"),
            _make_member("same@example.com", "222", "Alice", "A"),
        ]
        result = _resolve(members, "same@example.com", "", "Alice", "A")
        assert isinstance(result, Ambiguous)
        assert result.indices == frozenset({0, 1})
        assert result.kind is AmbiguityKind.SHARED_CHANNEL

    def test_name_disambiguates_shared_email(self):
        members = [
            _make_member("same@example.com", "111", "Alice", "A"),
            _make_member("same@example.com", "222", "Bob", "B"),
        ]
        assert _resolve(members, "same@example.com", "", "Bob", "B") == Resolved(1)

    def test_cross_channel_without_name_is_ambiguous(self):
        members = [
            _make_member("a@example.com", "111", "Alice", "A"),
            _make_member("b@example.com", "222", "Bob", "B"),
        ]
        result = _resolve(members, "a@example.com", "222", "Someone", "Else")
        assert isinstance(result, Ambiguous)
        assert result.indices == frozenset({0, 1})
        assert result.kind is AmbiguityKind.CROSS_CHANNEL

    def test_cross_channel_name_tie_break(self):
        members = [
            _make_member("a@example.com", "111", "Alice", "A"),
            _make_member("b@example.com", "222", "Bob", "B"),
        ]
        assert _resolve(members, "a@example.com", "222", "Bob", "B") == Resolved(1)

    def test_duplicate_records_are_ambiguous(self):
        """Two rows sharing email AND phone: the name is not used to pick one."""
        members = [
            _make_member("dup@example.com", "555", "Alice", "A"),
            _make_member("dup@example.com", "555", "Alicia", "A"),
        ]
        result = _resolve(members, "dup@example.com", "555", "Alice", "A")
        assert isinstance(result, Ambiguous)
        assert result.indices == frozenset({0, 1})
        assert result.kind is AmbiguityKind.DUPLICATE_RECORD

    def test_duplicate_records_logged_as_error(self, caplog):
        members = [
            _make_member("dup@example.com", "555"),
            _make_member("dup@example.com", "555"),
        ]
        with caplog.at_level(logging.WARNING, logger="club_membership.identity_resolver"):
            _resolve(members, "dup@example.com", "555")
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    def test_cross_channel_logged_as_warning(self, caplog):
        members = [_make_member("a@example.com", "111"), _make_member("b@example.com", "222")]
        with caplog.at_level(logging.WARNING, logger="club_membership.identity_resolver"):
            _resolve(members, "a@example.com", "222", "X", "Y")
        levels = {r.levelno for r in caplog.records}
        assert levels == {logging.WARNING}

    def test_matching_is_normalized(self):
        members = [_make_member("Alice@Example.com", "(831) 555-1234")]
        assert _resolve(members, " alice@example.COM", "831.555.1234") == Resolved(0)

    def test_expired_member_is_not_found(self):
        members = [_make_member("a@example.com", "111", status=MemberStatus.EXPIRED)]
        assert _resolve(members, "a@example.com", "111") == NotFound()

    def test_blank_candidate_is_not_found(self):
        assert _resolve([_make_member()], "", "") == NotFound()

    def test_candidate_from_transaction(self):
        txn = Transaction(email="t@example.com", first="Tea", last="Tee", phone="444")
        candidate = Candidate.from_transaction(txn)
        assert (candidate.email, candidate.phone, candidate.first, candidate.last) == (
            "t@example.com", "444", "Tea", "Tee",
        )


# ============================================================================
# Similarity / possible renewals
# ============================================================================

class TestSimilarityScore:

    def test_identical(self):
        a = _make_member()
        assert similarity_score(a, _make_member()) == IDENTICAL_SCORE

    def test_email_alone(self):
        a = _make_member("x@example.com", "1", "A", "B")
        b = _make_member("X@example.com", "2", "C", "D")
        assert similarity_score(a, b) == EMAIL_WEIGHT

    def test_name_and_phone(self):
        a = _make_member("x@example.com", "831-555-1234", "Pat", "Lee")
        b = _make_member("y@example.com", "8315551234", "Pat", "Lee")
        assert similarity_score(a, b) == 3

    def test_blank_fields_never_match(self):
        a = _make_member("", "", "", "")
        b = _make_member("", "", "", "")
        assert similarity_score(a, b) == 0


class TestPossibleRenewals:

    def test_later_join_before_expiry(self):
        earlier = _make_member(joined=date(2024, 1, 1), expires=date(2025, 1, 1))
        later = _make_member(joined=date(2024, 12, 15), expires=date(2025, 12, 15))
        assert is_possible_renewal(earlier, later)

    def test_later_join_after_expiry(self):
        earlier = _make_member(joined=date(2024, 1, 1), expires=date(2025, 1, 1))
        later = _make_member(joined=date(2025, 3, 1), expires=date(2026, 3, 1))
        assert not is_possible_renewal(earlier, later)

    def test_missing_dates(self):
        assert not is_possible_renewal(_make_member(joined=None), _make_member())

    def test_find_pairs_orders_by_join_date(self):
        members = [
            _make_member("new@example.com", "111", "Alice", "A",
                         joined=date(2024, 12, 1), expires=date(2025, 12, 1)),
            _make_member("old@example.com", "111", "Alice", "A",
                         joined=date(2024, 1, 1), expires=date(2025, 1, 1)),
            _make_member("other@example.com", "999", "Zed", "Z"),
        ]
        pairs = find_possible_renewals(members)
        assert len(pairs) == 1
        assert (pairs[0].earlier, pairs[0].later) == (1, 0)
        assert pairs[0].score == 3

    def test_expired_members_ignored(self):
        members = [
            _make_member(joined=date(2024, 1, 1)),
            _make_member(joined=date(2024, 6, 1), status=MemberStatus.EXPIRED),
        ]
        assert find_possible_renewals(members) == []

    def test_dissimilar_members_ignored(self):
        members = [
            _make_member("a@example.com", "111", "Alice", "A"),
            _make_member("b@example.com", "222", "Bob", "B", joined=date(2024, 6, 1)),
        ]
        assert find_possible_renewals(members) == []
