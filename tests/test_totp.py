"""Tests for the TOTP engine (RFC 6238)."""

import base64
import struct
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
import segno

from sessionguard.service.entropy import SecretGenerator
from sessionguard.service.errors import ConfigurationError
from sessionguard.service.totp import TotpEngine, format_manual_entry_key, render_qr_png

# RFC 6238 appendix B seed for SHA-1: ASCII "12345678901234567890"
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


@pytest.fixture
def engine():
    return TotpEngine(SecretGenerator(), issuer="SessionGuard", digits=8)


@pytest.fixture
def six_digit():
    return TotpEngine(SecretGenerator(), issuer="SessionGuard")


class TestCodeDerivation:
    @pytest.mark.parametrize(
        "epoch, expected",
        [
            (59, "94287082"),
            (1111111109, "07081804"),
            (1234567890, "89005924"),
            (2000000000, "69279037"),
        ],
    )
    def test_rfc_vectors(self, engine, epoch, expected):
        assert engine.current_code(RFC_SECRET, epoch) == expected

    def test_six_digit_code(self, six_digit):
        code = six_digit.current_code(RFC_SECRET, 59)
        assert code == "287082"

    def test_deterministic_within_step(self, six_digit):
        start = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert six_digit.current_code(RFC_SECRET, start) == six_digit.current_code(
            RFC_SECRET, start + timedelta(seconds=29)
        )

    def test_naive_datetime_treated_as_utc(self, six_digit):
        aware = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        naive = aware.replace(tzinfo=None)
        assert six_digit.current_code(RFC_SECRET, naive) == six_digit.current_code(RFC_SECRET, aware)


class TestWindow:
    def test_adjacent_steps_accepted(self, six_digit):
        t = 1_700_000_010
        code = six_digit.current_code(RFC_SECRET, t)
        assert six_digit.verify(RFC_SECRET, code, t)
        assert six_digit.verify(RFC_SECRET, code, t - 30)
        assert six_digit.verify(RFC_SECRET, code, t + 30)

    def test_two_steps_away_rejected(self, six_digit):
        t = 1_700_000_010
        code = six_digit.current_code(RFC_SECRET, t)
        assert not six_digit.verify(RFC_SECRET, code, t + 60)
        assert not six_digit.verify(RFC_SECRET, code, t - 60)

    def test_window_cannot_be_widened(self):
        engine = TotpEngine(SecretGenerator(), valid_window=5)
        assert engine.valid_window == 1

    def test_zero_window_accepts_only_current(self):
        engine = TotpEngine(SecretGenerator(), valid_window=0)
        t = 1_700_000_010
        code = engine.current_code(RFC_SECRET, t)
        assert engine.verify(RFC_SECRET, code, t)
        assert not engine.verify(RFC_SECRET, code, t + 30)


class TestSubmittedCode:
    def test_wrong_code_rejected(self, six_digit):
        t = 1_700_000_010
        code = six_digit.current_code(RFC_SECRET, t)
        wrong = str((int(code) + 1) % 1_000_000).zfill(6)
        assert not six_digit.verify(RFC_SECRET, wrong, t)

    def test_spaces_are_ignored(self, six_digit):
        t = 1_700_000_010
        code = six_digit.current_code(RFC_SECRET, t)
        assert six_digit.verify(RFC_SECRET, f"{code[:3]} {code[3:]}", t)

    @pytest.mark.parametrize("submitted", ["", "12345", "1234567", "abcdef", None])
    def test_malformed_codes_rejected(self, six_digit, submitted):
        assert not six_digit.verify(RFC_SECRET, submitted, 1_700_000_010)


class TestSecrets:
    def test_invalid_secret_is_configuration_error(self, six_digit):
        with pytest.raises(ConfigurationError):
            six_digit.verify("not base32!!", "123456", 0)

    def test_empty_secret_is_configuration_error(self, six_digit):
        with pytest.raises(ConfigurationError):
            six_digit.current_code("", 0)

    def test_generated_secret_round_trips(self, six_digit):
        secret = six_digit.generate_secret()
        code = six_digit.current_code(secret, 1_700_000_000)
        assert six_digit.verify(secret, code, 1_700_000_000)

    def test_unsupported_algorithm(self):
        with pytest.raises(ConfigurationError):
            TotpEngine(SecretGenerator(), algorithm="md5")


class TestProvisioning:
    def test_setup_returns_uri_and_manual_key(self, six_digit):
        setup = six_digit.setup("alice@example.com")
        parsed = urlparse(setup.provisioning_uri)
        params = parse_qs(parsed.query)

        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert params["secret"] == [setup.secret]
        assert params["issuer"] == ["SessionGuard"]
        assert params["algorithm"] == ["SHA1"]
        assert params["digits"] == ["6"]
        assert params["period"] == ["30"]
        assert setup.manual_entry_key.replace(" ", "") == setup.secret

    def test_manual_entry_key_groups_of_four(self):
        assert format_manual_entry_key("ABCDEFGHIJ") == "ABCD EFGH IJ"

    def test_qr_image_is_png_of_provisioning_uri(self, six_digit):
        setup = six_digit.setup("alice@example.com")
        png = base64.b64decode(setup.qr_image)

        assert png.startswith(b"\x89PNG\r\n\x1a\n")
        width, height = struct.unpack(">II", png[16:24])
        expected = segno.make(setup.provisioning_uri, error="m", micro=False)
        assert (width, height) == expected.symbol_size(scale=5, border=4)
        assert setup.qr_image == render_qr_png(setup.provisioning_uri)
