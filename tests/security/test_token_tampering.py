"""
Token forgery tests.

Any change to a signed token's header or payload must make it invalid,
and swapping claims without re-signing must never be accepted.
"""

import base64
import json
import string

import pytest

from storegate.core.token_codec import ClaimNaming, TenantClaims, TokenCodec

SECRET = "tamper-test-secret-long-enough-0123456789"
B64_ALPHABET = string.ascii_letters + string.digits + "-_"


@pytest.fixture
def codec():
    return TokenCodec(SECRET)


@pytest.fixture
def claims():
    return TenantClaims(
        user_id="user-victim",
        tenant_id="tenant-a",
        tenant_user_id="tu-victim",
        session_id="session-victim",
        email="victim@example.com",
        role="salesperson",
        stores=("store-1",),
    )


def _replace_char(segment: str, index: int, shift: int) -> str:
    current = segment[index]
    position = B64_ALPHABET.index(current) if current in B64_ALPHABET else 0
    replacement = B64_ALPHABET[(position + shift) % len(B64_ALPHABET)]
    return segment[:index] + replacement + segment[index + 1:]


def _encode_segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _decode_segment(segment: str) -> dict:
    padded = segment + "=" * (-len(segment) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


class TestByteLevelTampering:
    """Every single-character change of header or payload is rejected."""

    @pytest.mark.parametrize("shift", [1, 7, 31])
    @pytest.mark.parametrize("naming", list(ClaimNaming))
    def test_every_payload_position(self, codec, claims, naming, shift):
        header, payload, signature = codec.sign(claims, naming=naming).split(".")

        accepted = []
        for index in range(len(payload)):
            forged = ".".join([header, _replace_char(payload, index, shift), signature])
            if codec.verify_session(forged) is not None:
                accepted.append(index)

        assert accepted == []

    @pytest.mark.parametrize("shift", [1, 13])
    def test_every_header_position(self, codec, claims, shift):
        header, payload, signature = codec.sign(claims).split(".")

        accepted = []
        for index in range(len(header)):
            forged = ".".join([_replace_char(header, index, shift), payload, signature])
            if codec.verify_session(forged) is not None:
                accepted.append(index)

        assert accepted == []

    def test_truncated_signature(self, codec, claims):
        token = codec.sign(claims)
        for cut in range(1, 20):
            assert codec.verify_session(token[:-cut]) is None


class TestClaimSubstitution:
    """Re-encoded payloads reusing the original signature."""

    @pytest.mark.parametrize(
        "field,value",
        [
            ("tenant_id", "tenant-b"),
            ("sub", "user-admin"),
            ("session_id", "session-other"),
            ("role", "owner"),
            ("stores", ["store-1", "store-2"]),
            ("exp", 4102444800),
        ],
    )
    def test_substituted_claim_rejected(self, codec, claims, field, value):
        header, payload, signature = codec.sign(claims).split(".")
        data = _decode_segment(payload)
        data[field] = value

        forged = ".".join([header, _encode_segment(data), signature])

        assert codec.verify(forged) is None
        assert codec.verify_session(forged) is None

    def test_tenant_marker_removed(self, codec, claims):
        """Dropping tenant claims must not downgrade a token to single-tenant."""
        header, payload, signature = codec.sign(claims).split(".")
        data = _decode_segment(payload)
        data.pop("tenant_id")
        data.pop("tenant_user_id")

        forged = ".".join([header, _encode_segment(data), signature])

        assert codec.verify_session(forged) is None

    def test_signature_from_other_token(self, codec, claims):
        other = TenantClaims(
            user_id="user-attacker",
            tenant_id="tenant-b",
            tenant_user_id="tu-attacker",
            session_id="session-attacker",
        )
        victim_header, victim_payload, _ = codec.sign(claims).split(".")
        _, _, attacker_signature = codec.sign(other).split(".")

        forged = ".".join([victim_header, victim_payload, attacker_signature])

        assert codec.verify_session(forged) is None
