"""Tests for SRI parsing and verification."""

import base64
import hashlib

import pytest

from common.errors import IntegrityViolation
from security import integrity


def _sri(algorithm, data):
    return f"{algorithm}-" + base64.b64encode(hashlib.new(algorithm, data).digest()).decode("ascii")


class TestParse:

    def test_strongest_first(self):
        text = " ".join([_sri("sha1", b"x"), _sri("sha512", b"x"), _sri("sha256", b"x")])

        hashes = integrity.parse_integrity(text)

        assert [h.algorithm for h in hashes] == ["sha512", "sha256", "sha1"]
        assert integrity.strongest(text).algorithm == "sha512"

    def test_ignores_unknown_and_malformed(self):
        text = "md5-AAAA sha256-!!!notbase64 " + _sri("sha384", b"x") + "?opt"

        hashes = integrity.parse_integrity(text)

        assert [h.sri for h in hashes] == [_sri("sha384", b"x")]

    def test_empty(self):
        assert integrity.parse_integrity(None) == []
        assert integrity.strongest("") is None

    def test_hex_property(self):
        parsed = integrity.strongest(_sri("sha512", b"data"))

        assert parsed.hex == hashlib.sha512(b"data").hexdigest()


class TestShasum:

    def test_shasum_to_integrity(self):
        shasum = hashlib.sha1(b"legacy").hexdigest()

        assert integrity.shasum_to_integrity(shasum) == _sri("sha1", b"legacy")
        assert integrity.shasum_to_integrity("zz") is None
        assert integrity.shasum_to_integrity("abcd") is None

    def test_expected_prefers_sri(self):
        sri = _sri("sha512", b"x")
        shasum = hashlib.sha1(b"x").hexdigest()

        assert integrity.expected_integrity(sri, shasum) == sri
        assert integrity.expected_integrity(None, shasum) == _sri("sha1", b"x")
        assert integrity.expected_integrity(None, None) is None


class TestVerify:

    def test_matching_content(self):
        checked = integrity.verify(b"payload", _sri("sha512", b"payload"), "pkg@1.0.0")

        assert checked.algorithm == "sha512"

    def test_strongest_hash_decides(self):
        text = _sri("sha1", b"payload") + " " + _sri("sha512", b"other")

        with pytest.raises(IntegrityViolation):
            integrity.verify(b"payload", text, "pkg@1.0.0")

    def test_mismatch_reports_both_digests(self):
        expected = _sri("sha512", b"good")

        with pytest.raises(IntegrityViolation) as excinfo:
            integrity.verify(b"evil", expected, "pkg@1.0.0")

        assert excinfo.value.package == "pkg@1.0.0"
        assert excinfo.value.expected == expected
        assert excinfo.value.actual == _sri("sha512", b"evil")

    def test_missing_expected_fails_closed(self):
        with pytest.raises(IntegrityViolation):
            integrity.verify(b"payload", None, "pkg@1.0.0")

    def test_missing_expected_allowed_when_not_required(self, caplog):
        assert integrity.verify(b"payload", None, "pkg@1.0.0", require=False) is None
        assert "unverified" in caplog.text

    def test_compute_rejects_unknown_algorithm(self):
        with pytest.raises(ValueError):
            integrity.compute_integrity(b"x", "md5")
