"""Tests for uid derivation and namespace recognition."""

import pytest

from roomsync.identity import canonical_uid, derive_uid, is_managed_uid, parse_offer_id


class TestDeriveUid:

    def test_format(self):
        assert derive_uid("42", "ostrom") == "offer-42@ostrom.opensourcevillage.org"

    def test_custom_domain(self):
        assert derive_uid("42", "ostrom", "example.org") == "offer-42@ostrom.example.org"

    def test_stable_across_calls(self):
        assert derive_uid("abc", "ostrom") == derive_uid("abc", "ostrom")

    def test_no_collisions_over_ten_thousand_ids(self):
        uids = {derive_uid(str(i), "ostrom") for i in range(10000)}
        assert len(uids) == 10000

    def test_whitespace_is_significant(self):
        assert derive_uid("a", "ostrom") != derive_uid(" a", "ostrom")

    def test_rooms_do_not_share_uids(self):
        assert derive_uid("1", "ostrom") != derive_uid("1", "satoshi")

    @pytest.mark.parametrize("offer_id,room_id", [("", "ostrom"), ("  ", "ostrom"), ("1", "")])
    def test_rejects_empty_parts(self, offer_id, room_id):
        with pytest.raises(ValueError):
            derive_uid(offer_id, room_id)


class TestNamespace:

    def test_parse_offer_id_round_trip(self):
        assert parse_offer_id(derive_uid("x-17", "ostrom")) == "x-17"

    def test_parse_offer_id_with_at_sign(self):
        assert parse_offer_id(derive_uid("me@home", "ostrom")) == "me@home"

    def test_parse_legacy_uid(self):
        assert parse_offer_id("offer-9@opensourcevillage.org") == "9"

    def test_parse_foreign_uid(self):
        assert parse_offer_id("abc@google.com") is None
        assert parse_offer_id("offer-1@elsewhere.net") is None
        assert parse_offer_id(None) is None

    def test_canonical_uid_same_room(self):
        uid = derive_uid("5", "ostrom")
        assert canonical_uid(uid, "ostrom") == uid

    def test_canonical_uid_legacy_form(self):
        assert canonical_uid("offer-5@opensourcevillage.org", "ostrom") == derive_uid("5", "ostrom")

    def test_canonical_uid_other_room(self):
        assert canonical_uid(derive_uid("5", "satoshi"), "ostrom") is None

    def test_canonical_uid_blank_offer(self):
        assert canonical_uid("offer- @opensourcevillage.org", "ostrom") is None

    def test_is_managed_uid(self):
        assert is_managed_uid(derive_uid("5", "ostrom"), "ostrom")
        assert not is_managed_uid("5@calendar.google.com", "ostrom")
